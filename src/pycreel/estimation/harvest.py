"""
Total harvest as the product of effort and CPUE.

The delta method gives, for ``H = E * C``,

    Var(H) = E^2 Var(C) + C^2 Var(E) + 2 E C Cov(E, C)
    Cov(E, C) = rho * SE(E) * SE(C)

with ``rho = 0`` when effort and CPUE come from independent instruments
(counts vs. interviews), the default.
"""

from __future__ import annotations

import logging
import math
import numbers
from typing import Optional, Sequence, Union

from ..core import diagnostics as diag
from ..core.diagnostics import Diagnostics, Severity
from ..core.exceptions import UnsupportedFeature
from .engine import VarianceResult
from .variance import calculate_confidence_interval

logger = logging.getLogger(__name__)

Results = Union[VarianceResult, Sequence[VarianceResult]]


def _validate_correlation(correlation) -> float:
    """Numeric correlation in [-1, 1]; None means independence."""
    if correlation is None:
        return 0.0
    if isinstance(correlation, str):
        if correlation == "auto":
            raise UnsupportedFeature(
                "correlation='auto' is not yet supported; pass None for "
                "independent estimates or a number in [-1, 1]",
                field="correlation",
                expected="None or a number in [-1, 1]",
                actual=correlation,
            )
        raise ValueError(f"Invalid correlation {correlation!r}; expected None or a number")
    if isinstance(correlation, bool) or not isinstance(correlation, numbers.Real):
        raise ValueError(
            f"Invalid correlation type {type(correlation).__name__}; expected a number"
        )
    rho = float(correlation)
    if not -1.0 <= rho <= 1.0:
        raise ValueError(f"correlation must be between -1 and 1, got {rho}")
    return rho


def _as_list(results: Results) -> list[VarianceResult]:
    if isinstance(results, VarianceResult):
        return [results]
    return list(results)


def _key(result: VarianceResult, by: Sequence[str], role: str) -> tuple:
    missing = [b for b in by if b not in result.group]
    if missing:
        raise ValueError(
            f"{role} result is missing grouping key(s) {missing}; has {sorted(result.group)}"
        )
    return tuple(result.group[b] for b in by)


def _product(
    effort: VarianceResult,
    cpue: VarianceResult,
    rho: float,
    group: dict,
    conf_level: float,
    upstream: list,
) -> VarianceResult:
    e, c = effort.estimate, cpue.estimate
    var_e, var_c = effort.se**2, cpue.se**2
    cov = rho * effort.se * cpue.se
    estimate = e * c
    variance = e**2 * var_c + c**2 * var_e + 2 * e * c * cov
    se = math.sqrt(variance) if variance >= 0 else float("nan")
    ci_low, ci_high = calculate_confidence_interval(estimate, se, conf_level)
    method = "product:independent" if rho == 0 else "product:correlated"

    items = list(upstream)
    if (
        math.isfinite(effort.deff)
        and math.isfinite(cpue.deff)
        and effort.deff > 0
        and cpue.deff > 0
    ):
        deff = math.sqrt(effort.deff * cpue.deff)
        diag.record(
            items,
            Severity.INFO,
            diag.DEFF_HEURISTIC,
            "Design effect is the geometric mean of the effort and CPUE design "
            "effects, a heuristic rather than a derived quantity",
        )
    else:
        deff = float("nan")

    details = {
        "effort_estimate": e,
        "cpue_estimate": c,
        "var_effort": var_e,
        "var_cpue": var_c,
        "var_total": variance,
        "correlation_used": rho,
        "covariance": cov,
    }
    return VarianceResult(
        estimate=estimate,
        se=se,
        variance=variance,
        ci_low=ci_low,
        ci_high=ci_high,
        deff=deff,
        method=method,
        requested_method=method,
        n_used=min(effort.n_used, cpue.n_used),
        conf_level=conf_level,
        estimator="product",
        group=group,
        unstable=effort.unstable or cpue.unstable,
        diagnostics=effort.diagnostics.merge(cpue.diagnostics, Diagnostics(tuple(items))),
        details=details,
    )


def combine(
    effort_result: Results,
    cpue_result: Results,
    by: Optional[Sequence[str]] = None,
    correlation: Optional[Union[float, str]] = None,
    conf_level: Optional[float] = None,
) -> Union[VarianceResult, list[VarianceResult]]:
    """
    Combine effort and CPUE estimates into total harvest.

    Parameters
    ----------
    effort_result : VarianceResult or sequence of VarianceResult
        Effort estimates (angler-hours).
    cpue_result : VarianceResult or sequence of VarianceResult
        CPUE estimates (fish per angler-hour). May carry group keys beyond
        ``by`` (e.g. species); they are kept in the output.
    by : sequence of str, optional
        Keys joining the two result sets. When None, both inputs must hold
        exactly one result and a single ``VarianceResult`` is returned.
    correlation : float or str, optional
        None (independent, default), a number in [-1, 1], or ``'auto'``,
        which is not supported and raises ``UnsupportedFeature``.
    conf_level : float, optional
        Confidence level; defaults to that of the effort result.

    Returns
    -------
    VarianceResult or list[VarianceResult]
        Single result when ``by`` is None, else one per matched group.

    Raises
    ------
    UnsupportedFeature
        If ``correlation='auto'``.
    ValueError
        If no groups match, or ``correlation`` is invalid.
    """
    rho = _validate_correlation(correlation)
    efforts = _as_list(effort_result)
    cpues = _as_list(cpue_result)
    if not efforts or not cpues:
        raise ValueError("combine needs at least one effort and one CPUE result")

    if by is None:
        if len(efforts) != 1 or len(cpues) != 1:
            raise ValueError(
                "When by is None both inputs must hold exactly one result "
                f"(effort: {len(efforts)}, cpue: {len(cpues)})"
            )
        effort, cpue = efforts[0], cpues[0]
        level = conf_level if conf_level is not None else effort.conf_level
        return _product(effort, cpue, rho, dict(cpue.group), level, [])

    by = [by] if isinstance(by, str) else list(by)
    effort_by_key = {}
    for effort in efforts:
        key = _key(effort, by, "effort")
        if key in effort_by_key:
            raise ValueError(f"Effort results hold more than one row for group {key}")
        effort_by_key[key] = effort

    pairs = []
    matched_effort = set()
    unmatched_cpue = 0
    for cpue in cpues:
        key = _key(cpue, by, "cpue")
        if key in effort_by_key:
            pairs.append((effort_by_key[key], cpue))
            matched_effort.add(key)
        else:
            unmatched_cpue += 1

    if not pairs:
        raise ValueError(
            f"No matching groups between effort and CPUE results on {by}: "
            f"effort groups {sorted(map(str, effort_by_key))[:5]}, "
            f"cpue groups {sorted({str(_key(c, by, 'cpue')) for c in cpues})[:5]}"
        )

    items: list = []
    unmatched_effort = len(effort_by_key) - len(matched_effort)
    if unmatched_effort or unmatched_cpue:
        diag.report_data_quality(
            items,
            diag.UNMATCHED_GROUPS,
            f"Not all groups matched on {by}: {unmatched_effort} effort and "
            f"{unmatched_cpue} CPUE group(s) dropped; only matched groups are returned",
            count=unmatched_effort + unmatched_cpue,
            field=", ".join(by),
        )

    out = []
    for effort, cpue in pairs:
        level = conf_level if conf_level is not None else effort.conf_level
        group = {**{b: effort.group[b] for b in by}, **cpue.group}
        out.append(_product(effort, cpue, rho, group, level, items))
    return out
