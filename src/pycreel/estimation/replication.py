"""
Replicate weight construction and replicate variance.

Bootstrap replicates use the Rao-Wu rescaling bootstrap: within each
stratum, ``n_h - 1`` PSUs are drawn with replacement and each unit weight is
multiplied by ``n_h / (n_h - 1) * (times its PSU was drawn)``. The variance
is ``1 / (R - 1) * sum_r (theta_r - mean(theta))^2``.

Jackknife replicates delete one PSU at a time (JKn). Deleting PSU j of
stratum h zeroes its units and inflates the remaining PSUs of that stratum by
``n_h / (n_h - 1)``; its replicate carries ``rscale = (n_h - 1) / n_h``. For
an unstratified design this is the delete-one jackknife with
``(R - 1) / R * sum_r (theta_r - mean(theta))^2``.

Both strategies require a minimum number of PSUs per stratum and raise
``MethodUnavailable`` otherwise, which the variance engine turns into a
fallback to linearization.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
import polars as pl

from ..core.design import ReplicateWeights, SamplingDesign
from ..core.exceptions import MethodUnavailable
from .constants import BOOTSTRAP, JACKKNIFE

logger = logging.getLogger(__name__)


def _psu_layout(design: SamplingDesign) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Integer codes for each unit's stratum and PSU, plus each PSU's stratum.

    Returns ``(unit_psu, psu_stratum, n_psu_per_stratum)``; PSUs are numbered
    ``0..P-1`` and strata ``0..H-1`` in order of first appearance.
    """
    keys = design.design_frame().with_columns(
        (pl.col("__stratum").rank("dense").cast(pl.Int64) - 1).alias("__h"),
        (
            pl.concat_str(["__stratum", "__psu"], separator="\x1f")
            .rank("dense")
            .cast(pl.Int64)
            - 1
        ).alias("__j"),
    )
    unit_psu = keys["__j"].to_numpy()
    unit_stratum = keys["__h"].to_numpy()
    n_psu = int(unit_psu.max()) + 1 if unit_psu.size else 0
    psu_stratum = np.zeros(n_psu, dtype=np.int64)
    psu_stratum[unit_psu] = unit_stratum
    n_strata = int(unit_stratum.max()) + 1 if unit_stratum.size else 0
    n_psu_per_stratum = np.bincount(psu_stratum, minlength=n_strata)
    return unit_psu, psu_stratum, n_psu_per_stratum


def check_psu_counts(design: SamplingDesign, method: str, minimum: int) -> None:
    """Raise ``MethodUnavailable`` if any stratum has fewer than ``minimum`` PSUs."""
    counts = design.psu_counts()
    short = counts.filter(pl.col("n_psu") < minimum)
    if short.height:
        raise MethodUnavailable(
            method,
            f"{short.height} stratum(s) have fewer than {minimum} PSUs",
            field=design.strata or design.cluster,
            expected=f">= {minimum} PSUs per stratum",
            actual=int(short["n_psu"].min()),
            n_rows=short.height,
        )


def bootstrap_weights(
    design: SamplingDesign,
    n_replicates: int = 1000,
    seed: Optional[int] = None,
    rng: Optional[np.random.Generator] = None,
) -> ReplicateWeights:
    """Rao-Wu rescaling bootstrap replicate weights.

    Parameters
    ----------
    design : SamplingDesign
        Design with every stratum holding at least two PSUs.
    n_replicates : int, default 1000
        Number of bootstrap replicates R.
    seed : int, optional
        Seed for ``numpy.random.default_rng`` when ``rng`` is not given.
    rng : np.random.Generator, optional
        Random generator to draw from.

    Returns
    -------
    ReplicateWeights
        ``n x R`` bootstrap weights with ``scale = 1 / (R - 1)``.
    """
    if n_replicates < 2:
        raise ValueError(f"n_replicates must be at least 2, got {n_replicates}")
    check_psu_counts(design, BOOTSTRAP, 2)
    rng = rng if rng is not None else np.random.default_rng(seed)

    unit_psu, psu_stratum, n_h = _psu_layout(design)
    n_psu = psu_stratum.shape[0]
    multipliers = np.zeros((n_psu, n_replicates))
    for h, size in enumerate(n_h):
        members = np.flatnonzero(psu_stratum == h)
        m_h = size - 1
        # Each column: how many times each PSU of stratum h was drawn
        draws = rng.integers(0, size, size=(m_h, n_replicates))
        counts = np.zeros((size, n_replicates))
        for r in range(n_replicates):
            counts[:, r] = np.bincount(draws[:, r], minlength=size)
        multipliers[members, :] = counts * size / m_h

    base = design.effective_weight()
    matrix = base[:, None] * multipliers[unit_psu, :]
    logger.debug(
        "Built %d bootstrap replicates over %d PSUs in %d strata",
        n_replicates,
        n_psu,
        n_h.shape[0],
    )
    return ReplicateWeights(
        matrix=matrix,
        type="bootstrap",
        scale=1.0 / (n_replicates - 1),
    )


def jackknife_weights(design: SamplingDesign) -> ReplicateWeights:
    """Delete-one-PSU (JKn) jackknife replicate weights.

    One replicate per PSU; strata must hold at least two PSUs.
    """
    check_psu_counts(design, JACKKNIFE, 2)
    unit_psu, psu_stratum, n_h = _psu_layout(design)
    n_psu = psu_stratum.shape[0]

    # multipliers[j, r]: factor for PSU j in the replicate deleting PSU r
    same_stratum = psu_stratum[:, None] == psu_stratum[None, :]
    inflate = (n_h / (n_h - 1.0))[psu_stratum]
    multipliers = np.where(same_stratum, inflate[None, :], 1.0)
    multipliers[np.arange(n_psu), np.arange(n_psu)] = 0.0

    base = design.effective_weight()
    matrix = base[:, None] * multipliers[unit_psu, :]
    rscales = ((n_h - 1.0) / n_h)[psu_stratum]
    logger.debug("Built %d jackknife replicates", n_psu)
    return ReplicateWeights(matrix=matrix, type="jackknife", scale=1.0, rscales=rscales)


def replicate_estimates(
    matrix: np.ndarray, a: np.ndarray, b: Optional[np.ndarray] = None
) -> np.ndarray:
    """Point estimate under every replicate column.

    ``theta_r = (W_r . a) / (W_r . b)``, or ``W_r . a`` for totals.
    Replicates with a zero denominator total give NaN.
    """
    num = matrix.T @ a
    if b is None:
        return num
    den = matrix.T @ b
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(den != 0, num / den, np.nan)
