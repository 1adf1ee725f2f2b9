"""
Structural audit of a sampling design.

``diagnose`` needs no response variable. It reports singleton strata and
clusters, weight dispersion, sample-size adequacy, a missing finite
population correction and stratum imbalance, each with a recommended
remedy. It never raises: a check that cannot run is itself reported.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
import polars as pl

from ..core import diagnostics as diag
from ..core.design import SamplingDesign
from ..core.diagnostics import Diagnostic, Severity
from .constants import (
    EXTREME_WEIGHT_MULTIPLE,
    MAX_WEIGHT_CV,
    MAX_WEIGHT_RATIO,
    MIN_CLUSTER_SIZE,
    MIN_SAMPLE_SIZE,
    MIN_STRATUM_SIZE,
    STRATUM_IMBALANCE_RATIO,
)

logger = logging.getLogger(__name__)

# Finding codes
SINGLETON_STRATA = "singleton_strata"
SINGLETON_CLUSTERS = "singleton_clusters"
WEIGHT_CV = "weight_cv"
WEIGHT_RATIO = "weight_ratio"
EXTREME_WEIGHTS = "extreme_weights"
SMALL_SAMPLE = "small_sample"
SMALL_STRATA = "small_strata"
SMALL_CLUSTERS = "small_clusters"
MISSING_FPC = "missing_fpc"
STRATA_IMBALANCE = "strata_imbalance"
CHECK_FAILED = "check_failed"


@dataclass(frozen=True)
class DesignReport:
    """Findings, remedies and a structural summary of a design."""

    warnings: tuple[Diagnostic, ...] = ()
    recommendations: tuple[str, ...] = ()
    summary: dict = field(default_factory=dict)

    @property
    def codes(self) -> list[str]:
        return [w.code for w in self.warnings]

    @property
    def ok(self) -> bool:
        return not any(w.severity != Severity.INFO for w in self.warnings)

    def has(self, code: str) -> bool:
        return code in self.codes

    def get(self, code: str):
        for w in self.warnings:
            if w.code == code:
                return w
        return None

    def to_dict(self) -> dict:
        return {
            "warnings": [w.to_dict() for w in self.warnings],
            "recommendations": list(self.recommendations),
            "summary": self.summary,
        }


def _unit_counts(design: SamplingDesign, col: str) -> pl.DataFrame:
    return design.data.group_by(col).agg(pl.len().alias("n")).sort(col)


def _check_singletons(design: SamplingDesign, items: list, recs: list) -> None:
    psu_counts = design.psu_counts()
    singles = psu_counts.filter(pl.col("n_psu") == 1)
    if singles.height:
        diag.record(
            items,
            Severity.WARNING,
            SINGLETON_STRATA,
            f"{singles.height} stratum(s) contain a single PSU; between-PSU variance "
            f"is undefined there",
            count=singles.height,
            field=design.strata,
        )
        recs.append(
            "Merge single-PSU strata with similar neighbours, or choose an explicit "
            "lonely_psu policy ('adjust', 'average' or 'certainty')"
        )
    if design.cluster is not None:
        sizes = _unit_counts(design, design.cluster)
        single_clusters = sizes.filter(pl.col("n") == 1).height
        if single_clusters:
            diag.record(
                items,
                Severity.WARNING,
                SINGLETON_CLUSTERS,
                f"{single_clusters} cluster(s) contain a single unit",
                count=single_clusters,
                field=design.cluster,
            )
            recs.append(
                "Combine single-unit clusters or confirm the cluster variable "
                "identifies the primary sampling unit"
            )


def _check_weights(design: SamplingDesign, items: list, recs: list) -> None:
    w = design.effective_weight()
    w = w[np.isfinite(w)]
    if w.size < 2:
        return
    mean = float(w.mean())
    cv = float(w.std(ddof=1) / mean)
    if cv > MAX_WEIGHT_CV:
        diag.record(
            items,
            Severity.WARNING,
            WEIGHT_CV,
            f"Coefficient of variation of weights is {cv:.2f} (> {MAX_WEIGHT_CV:g})",
            field=design.weight,
        )
        recs.append("Highly variable weights inflate variance; consider calibration")
    ratio = float(w.max() / w.min())
    if ratio > MAX_WEIGHT_RATIO:
        diag.record(
            items,
            Severity.WARNING,
            WEIGHT_RATIO,
            f"Max/min weight ratio is {ratio:.1f} (> {MAX_WEIGHT_RATIO:g})",
            field=design.weight,
        )
        recs.append("Consider trimming the largest weights")
    n_extreme = int((w > EXTREME_WEIGHT_MULTIPLE * mean).sum())
    if n_extreme:
        diag.record(
            items,
            Severity.WARNING,
            EXTREME_WEIGHTS,
            f"{n_extreme} weight(s) exceed {EXTREME_WEIGHT_MULTIPLE:g}x the mean weight",
            count=n_extreme,
            field=design.weight,
        )
        recs.append("Review extreme weights; trim or calibrate before estimation")


def _check_sample_size(design: SamplingDesign, items: list, recs: list) -> None:
    if design.n < MIN_SAMPLE_SIZE:
        diag.record(
            items,
            Severity.WARNING,
            SMALL_SAMPLE,
            f"Sample size {design.n} is below {MIN_SAMPLE_SIZE}; insufficient for "
            f"stable variance",
            count=design.n,
        )
        recs.append(f"Collect at least {MIN_SAMPLE_SIZE} units for stable variance")
    if design.strata is not None:
        small = _unit_counts(design, design.strata).filter(pl.col("n") < MIN_STRATUM_SIZE)
        if small.height:
            diag.record(
                items,
                Severity.WARNING,
                SMALL_STRATA,
                f"{small.height} stratum(s) have fewer than {MIN_STRATUM_SIZE} units; "
                f"insufficient for stable variance",
                count=small.height,
                field=design.strata,
            )
            recs.append("Increase sampling in small strata or collapse them")
    if design.cluster is not None:
        small = _unit_counts(design, design.cluster).filter(pl.col("n") < MIN_CLUSTER_SIZE)
        if small.height:
            diag.record(
                items,
                Severity.WARNING,
                SMALL_CLUSTERS,
                f"{small.height} cluster(s) have fewer than {MIN_CLUSTER_SIZE} units; "
                f"insufficient for stable variance",
                count=small.height,
                field=design.cluster,
            )
            recs.append("Sample more units within small clusters")


def _check_fpc(design: SamplingDesign, items: list, recs: list) -> None:
    if design.fpc is None:
        diag.record(
            items,
            Severity.INFO,
            MISSING_FPC,
            "No finite population correction; variance assumes sampling with replacement",
        )
        recs.append(
            "Supply the population PSU count per stratum (fpc) when a large share "
            "of days is sampled"
        )


def _check_balance(design: SamplingDesign, items: list, recs: list) -> None:
    if design.strata is None:
        return
    sizes = _unit_counts(design, design.strata)["n"]
    if sizes.len() < 2:
        return
    ratio = float(sizes.max() / sizes.min())
    if ratio >= STRATUM_IMBALANCE_RATIO:
        diag.record(
            items,
            Severity.WARNING,
            STRATA_IMBALANCE,
            f"Largest stratum is {ratio:.1f}x the smallest",
            field=design.strata,
        )
        recs.append("Rebalance allocation across strata in future sampling")


def summarize(design: SamplingDesign) -> dict:
    """Structural summary: sizes, weight statistics and replicate information."""
    w_all = design.effective_weight()
    w = w_all[np.isfinite(w_all)]
    psu_counts = design.psu_counts()
    summary = {
        "n": design.n,
        "n_strata": psu_counts.height if design.strata is not None else 0,
        "n_psu": int(psu_counts["n_psu"].sum()),
        "n_missing_weights": int((~np.isfinite(w_all)).sum()),
        "has_fpc": design.fpc is not None,
    }
    if design.strata is not None:
        sizes = psu_counts["n_units"]
        summary["stratum_size"] = {
            "min": int(sizes.min()),
            "max": int(sizes.max()),
            "mean": float(sizes.mean()),
        }
    if design.cluster is not None:
        sizes = _unit_counts(design, design.cluster)["n"]
        summary["n_clusters"] = sizes.len()
        summary["cluster_size"] = {
            "min": int(sizes.min()),
            "max": int(sizes.max()),
            "mean": float(sizes.mean()),
        }
    if w.size:
        summary["weights"] = {
            "min": float(w.min()),
            "max": float(w.max()),
            "mean": float(w.mean()),
            "sum": float(w.sum()),
            "cv": float(w.std(ddof=1) / w.mean()) if w.size > 1 else float("nan"),
        }
    if design.replicate_weights is not None:
        rep = design.replicate_weights
        summary["replicates"] = {
            "type": rep.type,
            "n_replicates": rep.n_replicates,
            "scale": rep.scale,
        }
    return summary


def diagnose(design: SamplingDesign) -> DesignReport:
    """
    Audit a design's structure.

    Parameters
    ----------
    design : SamplingDesign
        Design to audit.

    Returns
    -------
    DesignReport
        Non-fatal findings with recommended remedies and a summary mapping.
    """
    items: list = []
    recs: list = []
    for check in (
        _check_singletons,
        _check_weights,
        _check_sample_size,
        _check_fpc,
        _check_balance,
    ):
        try:
            check(design, items, recs)
        except Exception as exc:
            logger.warning("Design check %s could not run: %s", check.__name__, exc)
            diag.record(
                items,
                Severity.WARNING,
                CHECK_FAILED,
                f"Check {check.__name__.lstrip('_')} could not run: {exc}",
            )
    try:
        summary = summarize(design)
    except Exception as exc:
        logger.warning("Design summary could not be computed: %s", exc)
        summary = {"n": design.n, "error": str(exc)}
    return DesignReport(tuple(items), tuple(dict.fromkeys(recs)), summary)
