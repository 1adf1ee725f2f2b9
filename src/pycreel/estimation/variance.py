"""
Variance calculation functions for design-based creel estimation.

This module provides the Taylor-series (linearization) variance shared by
every estimator, plus the small numeric helpers used around it.

Linearized variance of a total, mean or ratio:
----------------------------------------------

Every supported estimator can be written as ``theta = A / B`` with
``A = sum_i w_i a_i`` and ``B = sum_i w_i b_i`` (``B`` is absent for a
total). Its linearized score for unit i is

    u_i = (a_i - theta * b_i) / B        (u_i = a_i for a total)

and the design variance is that of the weighted score total:

    t_hj = sum_{i in PSU j, stratum h} w_i u_i

    V(theta) = sum_h (1 - f_h) * n_h / (n_h - 1) * sum_j (t_hj - tbar_h)^2

Where:
- n_h = number of PSUs sampled in stratum h
- f_h = n_h / N_h when the population PSU count N_h is known, else 0
- unclustered designs treat each unit as its own PSU
- unstratified designs use a single stratum

Strata with a single PSU ("lonely PSUs") have no within-stratum
variability and are handled by an explicit policy:

- ``adjust``: centre the lonely PSU total at the grand mean of all PSU
  totals instead of its own stratum mean
- ``average``: give the stratum the mean contribution of the strata
  with two or more PSUs; when every stratum is lonely there is nothing to
  average and ``adjust`` is applied instead
- ``certainty``: treat the stratum as sampled with certainty (zero)
- ``fail``: raise ``DesignError``

Domain (group) estimates use the full design with ``a_i`` and ``b_i`` set
to zero outside the domain, so strata and PSUs without domain members still
count toward n_h.

Reference:
    Wolter, K.M. 2007. Introduction to Variance Estimation, 2nd ed.
    Springer. Chapter 6 (Taylor series methods).
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import polars as pl
from scipy.stats import norm

from ..core.exceptions import DesignError
from .constants import LONELY_PSU_POLICIES, Z_SCORE_90, Z_SCORE_95, Z_SCORE_99

logger = logging.getLogger(__name__)


def ratio_estimate(
    w: np.ndarray, a: np.ndarray, b: Optional[np.ndarray] = None
) -> float:
    """Point estimate ``sum(w*a) / sum(w*b)``, or ``sum(w*a)`` when ``b`` is None."""
    total_a = float(np.dot(w, a))
    if b is None:
        return total_a
    total_b = float(np.dot(w, b))
    if total_b == 0:
        return float("nan")
    return total_a / total_b


def linearized_scores(
    w: np.ndarray, a: np.ndarray, b: Optional[np.ndarray], estimate: float
) -> np.ndarray:
    """Per-unit influence values ``u_i`` for a total or ratio estimator."""
    if b is None:
        return np.asarray(a, dtype=float)
    total_b = float(np.dot(w, b))
    return (a - estimate * b) / total_b


def calculate_stratified_variance(
    scores: pl.DataFrame,
    score_col: str = "__score",
    stratum_col: str = "__stratum",
    psu_col: str = "__psu",
    fpc_col: str = "__fpc",
    lonely_psu: str = "adjust",
) -> dict:
    """Calculate the with-replacement stratified cluster variance of a total.

    Parameters
    ----------
    scores : pl.DataFrame
        Unit-level frame with stratum, PSU, population PSU count (may be
        null) and weighted score ``w_i * u_i`` columns.
    score_col : str, default '__score'
        Column holding the weighted score.
    stratum_col : str, default '__stratum'
        Stratum label column.
    psu_col : str, default '__psu'
        PSU label column, unique across strata.
    fpc_col : str, default '__fpc'
        Population PSU count per stratum, or null.
    lonely_psu : str, default 'adjust'
        Policy for strata holding a single PSU.

    Returns
    -------
    dict
        Dictionary with keys:
        - variance: Variance of the score total
        - n_strata: Number of strata
        - n_psu: Number of PSUs
        - n_lonely: Number of single-PSU strata
        - lonely_psu: Policy applied (None when no stratum was lonely)
    """
    if lonely_psu not in LONELY_PSU_POLICIES:
        raise ValueError(
            f"lonely_psu must be one of {LONELY_PSU_POLICIES}, got {lonely_psu!r}"
        )

    # Collapse to PSU totals
    psu_totals = scores.group_by([stratum_col, psu_col]).agg(
        [
            pl.col(score_col).sum().alias("t_hj"),
            pl.col(fpc_col).first().cast(pl.Float64).alias("N_h"),
        ]
    )

    strata_stats = psu_totals.group_by(stratum_col).agg(
        [
            pl.len().alias("n_h"),
            ((pl.col("t_hj") - pl.col("t_hj").mean()) ** 2).sum().alias("ss_h"),
            pl.col("t_hj").first().alias("t_first"),
            pl.col("N_h").first().alias("N_h"),
        ]
    )

    # Finite population correction (1 - n_h/N_h), 1 when N_h is unknown
    strata_stats = strata_stats.with_columns(
        [
            pl.when(pl.col("N_h").is_null())
            .then(1.0)
            .otherwise(1.0 - pl.col("n_h").cast(pl.Float64) / pl.col("N_h"))
            .clip(lower_bound=0.0)
            .alias("f_h"),
        ]
    )

    strata_stats = strata_stats.with_columns(
        [
            pl.when(pl.col("n_h") > 1)
            .then(
                pl.col("n_h").cast(pl.Float64)
                / (pl.col("n_h") - 1).cast(pl.Float64)
                * pl.col("ss_h")
                * pl.col("f_h")
            )
            .otherwise(0.0)
            .alias("v_h"),
        ]
    )

    variance = float(strata_stats["v_h"].sum())
    lonely = strata_stats.filter(pl.col("n_h") == 1)
    n_lonely = lonely.height
    applied = lonely_psu

    if n_lonely:
        others = strata_stats.filter(pl.col("n_h") > 1)
        if lonely_psu == "average" and others.height == 0:
            # Nothing to average over
            logger.warning(
                "All %d strata hold a single PSU; lonely_psu='average' replaced by 'adjust'",
                n_lonely,
            )
            applied = "adjust"

        if applied == "fail":
            raise DesignError(
                "Stratum contains a single PSU",
                field=stratum_col,
                expected="at least 2 PSUs per stratum",
                actual=lonely[stratum_col].to_list()[:5],
                n_rows=n_lonely,
            )
        elif applied == "adjust":
            grand_mean = float(psu_totals["t_hj"].mean())
            variance += float(
                ((lonely["t_first"] - grand_mean) ** 2 * lonely["f_h"]).sum()
            )
        elif applied == "average":
            variance += n_lonely * float(others["v_h"].mean())
        # certainty: lonely strata contribute nothing

    if variance < 0:
        variance = 0.0

    return {
        "variance": variance,
        "n_strata": strata_stats.height,
        "n_psu": psu_totals.height,
        "n_lonely": n_lonely,
        "lonely_psu": applied if n_lonely else None,
    }


def calculate_srs_variance(
    w: np.ndarray, u: np.ndarray, in_domain: np.ndarray
) -> float:
    """Variance the same estimator would have under simple random sampling.

    ``V_srs = W^2 * s_w^2(u) / n`` over the ``n`` domain units, where ``W``
    is their weight total and ``s_w^2`` the weighted sample variance of the
    scores. Returns NaN when ``n < 2``.
    """
    mask = np.asarray(in_domain, dtype=bool)
    n = int(mask.sum())
    if n < 2:
        return float("nan")
    w_d = w[mask]
    u_d = u[mask]
    w_sum = float(w_d.sum())
    if w_sum <= 0:
        return float("nan")
    u_bar = float(np.dot(w_d, u_d) / w_sum)
    s2 = float(np.dot(w_d, (u_d - u_bar) ** 2) / w_sum) * n / (n - 1)
    return w_sum**2 * s2 / n


def calculate_design_effect(variance: float, srs_variance: float) -> float:
    """Ratio of design variance to SRS variance, NaN when undefined."""
    if not np.isfinite(srs_variance) or srs_variance <= 0 or not np.isfinite(variance):
        return float("nan")
    return variance / srs_variance


# =============================================================================
# Utility functions
# =============================================================================


def z_score(confidence: float) -> float:
    """Two-sided standard normal quantile for ``confidence``."""
    if not 0 < confidence < 1:
        raise ValueError(f"conf_level must be in (0, 1), got {confidence}")
    if confidence == 0.95:
        return Z_SCORE_95
    elif confidence == 0.90:
        return Z_SCORE_90
    elif confidence == 0.99:
        return Z_SCORE_99
    return float(norm.ppf(0.5 + confidence / 2.0))


def calculate_confidence_interval(
    estimate: float, se: float, confidence: float = 0.95
) -> tuple[float, float]:
    """
    Calculate a symmetric Wald confidence interval.

    Parameters
    ----------
    estimate : float
        Point estimate
    se : float
        Standard error
    confidence : float
        Confidence level (default 0.95 for 95% CI)

    Returns
    -------
    tuple[float, float]
        Lower and upper bounds of confidence interval
    """
    z = z_score(confidence)
    return estimate - z * se, estimate + z * se


def calculate_cv(estimate: float, se: float) -> float:
    """
    Calculate coefficient of variation as percentage.

    Parameters
    ----------
    estimate : float
        Point estimate
    se : float
        Standard error

    Returns
    -------
    float
        Coefficient of variation as percentage, NaN for a zero estimate
    """
    if estimate != 0 and np.isfinite(estimate):
        return 100 * se / abs(estimate)
    return float("nan")
