"""
Catch per unit effort from interview data.

Two ratio estimators are available:

- ``ratio_of_means``: ``sum(w*catch) / sum(w*effort)``, robust for
  incomplete (in-progress) trips
- ``mean_of_ratios``: weighted mean of per-interview ``catch / effort``,
  preferred when every interview is a completed trip

``mode='auto'`` reads a boolean trip-completion column. All-complete data
uses the mean of ratios; all-incomplete data uses the ratio of means after
dropping incomplete trips shorter than ``min_trip_hours``. Mixed data gets
the hybrid estimator

    R = w_c * R_c + w_i * R_i
    SE = sqrt(w_c^2 SE_c^2 + w_i^2 SE_i^2)

where ``w_c`` and ``w_i`` are the shares of estimated effort (``sum(w*effort)``)
in the complete and incomplete domains. Each domain is estimated over the
full design, so the two parts share strata and PSU counts.
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Sequence, Union

import numpy as np
import polars as pl

from ..core import diagnostics as diag
from ..core.design import SamplingDesign
from ..core.diagnostics import Diagnostic, Diagnostics, Severity
from ..core.exceptions import EstimandError
from .constants import LINEARIZATION
from .engine import VarianceEngine, VarianceResult
from .estimand import Estimand, EstimandKind
from .variance import calculate_confidence_interval

logger = logging.getLogger(__name__)

AUTO = "auto"
CPUE_MODES = (
    AUTO,
    EstimandKind.RATIO_OF_MEANS.value,
    EstimandKind.MEAN_OF_RATIOS.value,
)

# Trip status domains used by mode='auto'
COMPLETE = "complete"
INCOMPLETE = "incomplete"
TRUNCATED = "truncated"
UNKNOWN = "unknown"
_STATUS = "__trip_status"


def estimate_cpue(
    design: SamplingDesign,
    catch_col: str,
    effort_col: str,
    mode: str = EstimandKind.RATIO_OF_MEANS.value,
    group_by: Optional[Union[str, Sequence[str]]] = None,
    method: str = LINEARIZATION,
    conf_level: Optional[float] = None,
    n_replicates: Optional[int] = None,
    engine: Optional[VarianceEngine] = None,
    trip_complete: str = "trip_complete",
    min_trip_hours: float = 0.5,
) -> list[VarianceResult]:
    """
    Estimate catch per unit effort from interview-level data.

    Parameters
    ----------
    design : SamplingDesign
        Interview-level design, usually clustered by sampling day.
    catch_col : str
        Catch (numerator) column. Aggregate categories with
        ``aggregate_columns`` first when a group spans several.
    effort_col : str
        Effort (denominator) column, e.g. hours fished.
    mode : str, default 'ratio_of_means'
        'ratio_of_means', 'mean_of_ratios' or 'auto'; reported as
        ``VarianceResult.estimator`` ('hybrid' for a mixed auto estimate).
    group_by, method, conf_level, n_replicates
        Passed to ``VarianceEngine.compute``.
    engine : VarianceEngine, optional
        Engine to use; a default-configured one otherwise.
    trip_complete : str, default 'trip_complete'
        Boolean trip-completion column read by ``mode='auto'``.
    min_trip_hours : float, default 0.5
        Incomplete trips with less effort are dropped by ``mode='auto'``.

    Returns
    -------
    list[VarianceResult]
        One result per group, sorted by key.

    Raises
    ------
    EstimandError
        ``mode='auto'`` without a usable ``trip_complete`` column.
    """
    if mode not in CPUE_MODES:
        raise ValueError(f"CPUE mode must be one of {CPUE_MODES}, got {mode!r}")
    engine = engine if engine is not None else VarianceEngine()
    by = _as_tuple(group_by)
    kwargs = {"method": method, "conf_level": conf_level, "n_replicates": n_replicates}

    if mode != AUTO:
        estimand = Estimand.ratio(catch_col, effort_col, mode=mode, group_by=by)
        return engine.compute(design, estimand, **kwargs)

    if min_trip_hours < 0:
        raise ValueError(f"min_trip_hours must be non-negative, got {min_trip_hours}")
    items: list[Diagnostic] = []
    design = _with_trip_status(design, effort_col, trip_complete, min_trip_hours, items)
    statuses = set(design.data[_STATUS].unique().to_list())
    domains = [*by, _STATUS]

    parts: dict[str, list[VarianceResult]] = {}
    if COMPLETE in statuses:
        parts[COMPLETE] = engine.compute(
            design,
            Estimand.ratio(catch_col, effort_col, mode=EstimandKind.MEAN_OF_RATIOS),
            group_by=domains,
            **kwargs,
        )
    if INCOMPLETE in statuses:
        parts[INCOMPLETE] = engine.compute(
            design,
            Estimand.ratio(catch_col, effort_col, mode=EstimandKind.RATIO_OF_MEANS),
            group_by=domains,
            **kwargs,
        )
    if not parts:
        raise EstimandError(
            "No complete or incomplete trips left to estimate CPUE",
            field=trip_complete,
            expected=f"trips with {effort_col!r} >= {min_trip_hours} or completed trips",
            actual=sorted(statuses),
            n_rows=design.n,
        )
    logger.info(
        "Auto CPUE: %s",
        ", ".join(f"{status} trips by {parts[status][0].estimator}" for status in parts),
    )

    by_key: dict[tuple, dict[str, VarianceResult]] = {}
    for status, results in parts.items():
        for result in results:
            if result.group[_STATUS] != status:
                continue
            key = tuple(result.group[b] for b in by)
            by_key.setdefault(key, {})[status] = result

    effort = _domain_effort(design, effort_col, domains)
    conf_level = engine.config["conf_level"] if conf_level is None else conf_level
    combined = []
    for key in sorted(by_key, key=_sort_key):
        group = dict(zip(by, key))
        found = by_key[key]
        if len(found) == 1:
            (result,) = found.values()
            combined.append(_strip_status(result, group, items))
        else:
            combined.append(
                _hybrid(
                    found[COMPLETE],
                    found[INCOMPLETE],
                    effort.get(key + (COMPLETE,), 0.0),
                    effort.get(key + (INCOMPLETE,), 0.0),
                    group,
                    conf_level,
                    items,
                )
            )
    return combined


def _as_tuple(group_by) -> tuple:
    if group_by is None:
        return ()
    if isinstance(group_by, str):
        return (group_by,)
    return tuple(group_by)


def _sort_key(key: tuple) -> tuple:
    return tuple((v is None, v) for v in key)


def _with_trip_status(
    design: SamplingDesign,
    effort_col: str,
    trip_complete: str,
    min_trip_hours: float,
    items: list[Diagnostic],
) -> SamplingDesign:
    """Label every interview complete, incomplete, truncated or unknown."""
    if trip_complete not in design.data.columns:
        raise EstimandError(
            f"mode='auto' requires a {trip_complete!r} column; add it or choose a mode",
            field=trip_complete,
            expected="boolean trip completion column",
            actual=sorted(design.data.columns),
        )
    dtype = design.data.schema[trip_complete]
    if dtype != pl.Boolean:
        raise EstimandError(
            f"Trip completion column {trip_complete!r} must be boolean",
            field=trip_complete,
            expected="Boolean",
            actual=str(dtype),
        )

    done = pl.col(trip_complete)
    design = design.with_columns(
        pl.when(done.is_null())
        .then(pl.lit(UNKNOWN))
        .when(done)
        .then(pl.lit(COMPLETE))
        .when(pl.col(effort_col).cast(pl.Float64) < min_trip_hours)
        .then(pl.lit(TRUNCATED))
        .otherwise(pl.lit(INCOMPLETE))
        .alias(_STATUS)
    )
    counts = dict(design.data[_STATUS].value_counts().iter_rows())

    n_unknown = counts.get(UNKNOWN, 0)
    if n_unknown == design.n:
        raise EstimandError(
            f"Every interview is missing {trip_complete!r}",
            field=trip_complete,
            expected="at least one non-missing value",
            actual=0,
            n_rows=n_unknown,
        )
    if n_unknown:
        diag.report_data_quality(
            items,
            diag.EXCLUDED_UNITS,
            f"{n_unknown} interview(s) with a missing {trip_complete!r} excluded",
            count=n_unknown,
            field=trip_complete,
            stacklevel=4,
        )
    n_truncated = counts.get(TRUNCATED, 0)
    if n_truncated:
        diag.record(
            items,
            Severity.WARNING,
            diag.TRUNCATED_TRIPS,
            f"{n_truncated} incomplete trip(s) shorter than {min_trip_hours} hours excluded",
            count=n_truncated,
            field=effort_col,
        )
    return design


def _domain_effort(design: SamplingDesign, effort_col: str, domains: list[str]) -> dict:
    """Estimated effort ``sum(w*effort)`` per domain over positive finite efforts."""
    h = design.data[effort_col].cast(pl.Float64).fill_null(float("nan")).to_numpy()
    with np.errstate(invalid="ignore"):
        usable = np.isfinite(h) & (h > 0)
    frame = design.data.select(domains).with_columns(
        pl.Series("__effort", np.where(usable, design.effective_weight() * h, 0.0))
    )
    totals = frame.group_by(domains).agg(pl.col("__effort").sum())
    return {tuple(row[:-1]): row[-1] for row in totals.iter_rows()}


def _strip_status(result: VarianceResult, group: dict, items: list[Diagnostic]) -> VarianceResult:
    """Single-domain result relabelled with the caller's group keys."""
    return VarianceResult(
        estimate=result.estimate,
        se=result.se,
        variance=result.variance,
        ci_low=result.ci_low,
        ci_high=result.ci_high,
        deff=result.deff,
        method=result.method,
        requested_method=result.requested_method,
        n_used=result.n_used,
        conf_level=result.conf_level,
        estimator=result.estimator,
        group=group,
        unstable=result.unstable,
        diagnostics=result.diagnostics.merge(Diagnostics(tuple(items))),
        details={"trip_status": result.group[_STATUS]},
    )


def _hybrid(
    complete: VarianceResult,
    incomplete: VarianceResult,
    effort_complete: float,
    effort_incomplete: float,
    group: dict,
    conf_level: float,
    upstream: list[Diagnostic],
) -> VarianceResult:
    items = list(upstream)
    effort_total = effort_complete + effort_incomplete
    if effort_total > 0:
        w_c = effort_complete / effort_total
        w_i = effort_incomplete / effort_total
    else:
        w_c = w_i = float("nan")

    estimate = w_c * complete.estimate + w_i * incomplete.estimate
    variance = w_c**2 * complete.se**2 + w_i**2 * incomplete.se**2
    se = math.sqrt(variance) if variance >= 0 else float("nan")
    ci_low, ci_high = calculate_confidence_interval(estimate, se, conf_level)
    diag.record(
        items,
        Severity.INFO,
        diag.DEFF_UNAVAILABLE,
        "Hybrid CPUE combines two estimators; deff is NaN",
    )

    return VarianceResult(
        estimate=estimate,
        se=se,
        variance=variance,
        ci_low=ci_low,
        ci_high=ci_high,
        deff=float("nan"),
        method=complete.method,
        requested_method=complete.requested_method,
        n_used=complete.n_used + incomplete.n_used,
        conf_level=conf_level,
        estimator="hybrid",
        group=group,
        unstable=complete.unstable or incomplete.unstable,
        diagnostics=complete.diagnostics.merge(incomplete.diagnostics, Diagnostics(tuple(items))),
        details={
            "n_complete": complete.n_used,
            "n_incomplete": incomplete.n_used,
            "cpue_complete": complete.estimate,
            "cpue_incomplete": incomplete.estimate,
            "se_complete": complete.se,
            "se_incomplete": incomplete.se,
            "effort_complete": effort_complete,
            "effort_incomplete": effort_incomplete,
            "weight_complete": w_c,
            "weight_incomplete": w_i,
        },
    )
