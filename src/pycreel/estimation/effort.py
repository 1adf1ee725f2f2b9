"""
Fishing effort estimators.

Each survey method turns raw count rows into one effort record per sampled
day (PSU) and group, in angler-hours:

- INSTANTANEOUS: mean count over the day's counts x period length
- PROGRESSIVE: sum over passes of count x route minutes / 60
- BUS_ROUTE: Horvitz-Thompson sum of count x wait minutes / 60 / pi
- AERIAL: sum of count / visibility x calibration (x period hours)

The day-level records are aligned to a day-level ``SamplingDesign`` and the
total is estimated by the variance engine like any other estimand.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from enum import Enum
from typing import Optional, Sequence, Union

import polars as pl

from ..core import diagnostics as diag
from ..core.design import SamplingDesign
from ..core.diagnostics import Diagnostics
from ..core.exceptions import DesignError
from .constants import DEFAULT_ENGINE_CONFIG, LINEARIZATION, MINUTES_PER_HOUR
from .engine import VarianceEngine, VarianceResult
from .estimand import Estimand
from .horvitz_thompson import align_to_psu_design, ht_contributions

logger = logging.getLogger(__name__)

EFFORT_COL = "effort"


class EffortMethod(str, Enum):
    """Count-survey method used to produce daily effort."""

    INSTANTANEOUS = "instantaneous"
    PROGRESSIVE = "progressive"
    BUS_ROUTE = "bus_route"
    AERIAL = "aerial"


def _require(counts: pl.DataFrame, cols: Sequence[str], method: EffortMethod) -> None:
    missing = [c for c in cols if c not in counts.columns]
    if missing:
        raise DesignError(
            f"Count data missing columns for {method.value} effort",
            field=missing[0],
            expected="column present",
            actual=sorted(counts.columns),
        )


def _factor(value: Union[str, float]) -> pl.Expr:
    """A column reference, or a constant broadcast to every row."""
    if isinstance(value, str):
        return pl.col(value).cast(pl.Float64)
    return pl.lit(float(value))


def _instantaneous(
    counts: pl.DataFrame,
    keys: list[str],
    count: str,
    minutes: Optional[str],
    total_minutes: Optional[str],
    items: list,
) -> pl.DataFrame:
    if total_minutes is not None:
        period = pl.col(total_minutes).cast(pl.Float64).first()
    elif minutes is not None:
        diag.report_data_quality(
            items,
            diag.PERIOD_APPROXIMATED,
            f"Instantaneous effort uses the sum of {minutes!r} per day and group "
            f"as the period length; supply total_minutes for proper expansion",
            field=minutes,
        )
        period = pl.col(minutes).cast(pl.Float64).sum()
    else:
        raise ValueError("Instantaneous effort needs total_minutes or minutes")
    return counts.group_by(keys).agg(
        (pl.col(count).cast(pl.Float64).mean() * period / MINUTES_PER_HOUR).alias(
            EFFORT_COL
        ),
    )


def _progressive(
    counts: pl.DataFrame,
    keys: list[str],
    count: str,
    route_minutes: str,
    pass_id: Optional[str],
) -> pl.DataFrame:
    pass_keys = keys + ([pass_id] if pass_id else [])
    passes = counts.group_by(pass_keys).agg(
        (
            (pl.col(count).cast(pl.Float64) * pl.col(route_minutes).cast(pl.Float64)).sum()
            / MINUTES_PER_HOUR
        ).alias("pass_effort")
    )
    return passes.group_by(keys).agg(pl.col("pass_effort").sum().alias(EFFORT_COL))


def _bus_route(
    counts: pl.DataFrame,
    keys: list[str],
    count: str,
    route_minutes: str,
    inclusion_prob: str,
    contrib_hours: Optional[str],
    floor: float,
    items: list,
) -> pl.DataFrame:
    if contrib_hours is not None:
        hours = counts.with_columns(pl.col(contrib_hours).cast(pl.Float64).alias("__hours"))
    else:
        hours = counts.with_columns(
            (
                pl.col(count).cast(pl.Float64)
                * pl.col(route_minutes).cast(pl.Float64)
                / MINUTES_PER_HOUR
            ).alias("__hours")
        )
    contributions, ht_diags = ht_contributions(
        hours, "__hours", inclusion_prob, out="__ht", floor=floor
    )
    items.extend(ht_diags)
    return contributions.group_by(keys).agg(pl.col("__ht").sum().alias(EFFORT_COL))


def _aerial(
    counts: pl.DataFrame,
    keys: list[str],
    count: str,
    visibility: Union[str, float],
    calibration: Union[str, float],
    hours: Optional[str],
) -> pl.DataFrame:
    adjusted = pl.col(count).cast(pl.Float64) / _factor(visibility) * _factor(calibration)
    if hours is not None:
        adjusted = adjusted * pl.col(hours).cast(pl.Float64)
    return counts.group_by(keys).agg(adjusted.sum().alias(EFFORT_COL))


def effort_records(
    method: Union[EffortMethod, str],
    counts: pl.DataFrame,
    psu: str,
    by: Optional[Sequence[str]] = None,
    count: str = "count",
    minutes: Optional[str] = None,
    total_minutes: Optional[str] = None,
    route_minutes: str = "route_minutes",
    pass_id: Optional[str] = None,
    inclusion_prob: str = "inclusion_prob",
    contrib_hours: Optional[str] = None,
    visibility: Union[str, float] = 1.0,
    calibration: Union[str, float] = 1.0,
    hours: Optional[str] = None,
    probability_floor: float = DEFAULT_ENGINE_CONFIG["probability_floor"],
) -> tuple[pl.DataFrame, Diagnostics]:
    """
    Build one effort record per PSU and group from raw counts.

    Parameters
    ----------
    method : EffortMethod or str
        Count-survey method.
    counts : pl.DataFrame
        Count rows with the PSU (day) column and the method's inputs.
    psu : str
        PSU (sampling day) column.
    by : sequence of str, optional
        Grouping columns kept on the records.
    count : str, default 'count'
        Anglers or parties counted.
    minutes, total_minutes : str, optional
        Instantaneous: per-count minutes, or the day's period length.
    route_minutes : str, default 'route_minutes'
        Progressive route time, or bus-route wait time at a site.
    pass_id : str, optional
        Progressive pass identifier.
    inclusion_prob : str, default 'inclusion_prob'
        Bus-route site inclusion probability.
    contrib_hours : str, optional
        Bus-route precomputed angler-hours; replaces count x minutes.
    visibility, calibration : str or float, default 1.0
        Aerial detection probability and calibration factor.
    hours : str, optional
        Aerial period length in hours.
    probability_floor : float, default 1e-6
        Bus-route clamp for inclusion probabilities.

    Returns
    -------
    tuple[pl.DataFrame, Diagnostics]
        Columns ``psu``, ``by`` and ``effort``, sorted by key.
    """
    method = EffortMethod(method)
    keys = [psu, *(by or ())]
    items: list = []

    match method:
        case EffortMethod.INSTANTANEOUS:
            _require(counts, [*keys, count], method)
            records = _instantaneous(counts, keys, count, minutes, total_minutes, items)
        case EffortMethod.PROGRESSIVE:
            _require(counts, [*keys, count, route_minutes], method)
            records = _progressive(counts, keys, count, route_minutes, pass_id)
        case EffortMethod.BUS_ROUTE:
            needed = [*keys, inclusion_prob]
            needed += [contrib_hours] if contrib_hours else [count, route_minutes]
            _require(counts, needed, method)
            records = _bus_route(
                counts, keys, count, route_minutes, inclusion_prob,
                contrib_hours, probability_floor, items,
            )
        case EffortMethod.AERIAL:
            extra = [c for c in (visibility, calibration, hours) if isinstance(c, str)]
            _require(counts, [*keys, count, *extra], method)
            records = _aerial(counts, keys, count, visibility, calibration, hours)

    return records.sort(keys, nulls_last=True), Diagnostics(tuple(items))


def estimate_effort(
    method: Union[EffortMethod, str],
    counts: pl.DataFrame,
    day_design: SamplingDesign,
    psu: str,
    by: Optional[Sequence[str]] = None,
    variance_method: str = LINEARIZATION,
    conf_level: Optional[float] = None,
    n_replicates: Optional[int] = None,
    engine: Optional[VarianceEngine] = None,
    **columns,
) -> list[VarianceResult]:
    """
    Estimate total effort (angler-hours) from counts over a day-level design.

    ``day_design`` holds one row per sampled day with its weight, strata and
    any replicate weights. ``columns`` are passed to ``effort_records``.
    """
    engine = engine if engine is not None else VarianceEngine()
    by = list(by or ())
    columns.setdefault("probability_floor", engine.config["probability_floor"])
    records, record_diags = effort_records(method, counts, psu, by, **columns)
    design, align_diags = align_to_psu_design(day_design, records, psu, [EFFORT_COL], by)
    estimand = Estimand.total(EFFORT_COL, group_by=by, name=f"{EffortMethod(method).value} effort")
    results = engine.compute(
        design,
        estimand,
        method=variance_method,
        conf_level=conf_level,
        n_replicates=n_replicates,
    )
    upstream = record_diags.merge(align_diags)
    return [replace(r, diagnostics=upstream.merge(r.diagnostics)) for r in results]
