"""
Variance engine: point estimate, standard error, confidence interval and
design effect for an estimand over a sampling design.

All strategies share one point estimator, ``theta = sum(w*a) / sum(w*b)``;
they differ only in how its variance is obtained:

- ``linearization``: Taylor-series variance of the linearized scores
  under stratified cluster sampling (the reference method)
- ``bootstrap``: Rao-Wu bootstrap replicates generated from the design,
  or the design's own bootstrap replicates when it carries them
- ``jackknife``: delete-one-PSU replicates
- ``replicate_weight_passthrough``: the design's stored replicate weights
  with their own scale factors

A strategy that cannot run on the design raises ``MethodUnavailable``
internally; the engine then falls back to linearization and records the
fallback in both ``VarianceResult.method`` and the diagnostics.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

import numpy as np
import polars as pl

from ..core import diagnostics as diag
from ..core.design import ReplicateWeights, SamplingDesign
from ..core.diagnostics import Diagnostic, Diagnostics, Severity
from ..core.exceptions import EstimandError, MethodUnavailable
from .constants import (
    BOOTSTRAP,
    DEFAULT_ENGINE_CONFIG,
    JACKKNIFE,
    LINEARIZATION,
    LONELY_PSU_POLICIES,
    REPLICATE,
    VARIANCE_METHODS,
)
from .design_diagnostics import diagnose
from .estimand import Estimand, EstimandKind, PreparedUnits, prepare_units
from .replication import (
    bootstrap_weights,
    check_psu_counts,
    jackknife_weights,
    replicate_estimates,
)
from .variance import (
    calculate_confidence_interval,
    calculate_cv,
    calculate_design_effect,
    calculate_srs_variance,
    calculate_stratified_variance,
    linearized_scores,
    ratio_estimate,
    z_score,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VarianceResult:
    """Estimate and uncertainty for one group.

    ``method`` is the variance strategy actually used, which differs from
    ``requested_method`` after a fallback. ``n_used`` counts the units that
    contributed after exclusions.
    """

    estimate: float
    se: float
    variance: float
    ci_low: float
    ci_high: float
    deff: float
    method: str
    requested_method: str
    n_used: int
    conf_level: float = 0.95
    estimator: str = EstimandKind.TOTAL.value
    group: dict = field(default_factory=dict)
    unstable: bool = False
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    details: dict = field(default_factory=dict, repr=False)

    @property
    def n(self) -> int:
        return self.n_used

    @property
    def cv(self) -> float:
        return calculate_cv(self.estimate, self.se)

    @property
    def fallback(self) -> bool:
        return self.method != self.requested_method

    def to_dict(self) -> dict:
        return {
            **self.group,
            "estimate": self.estimate,
            "se": self.se,
            "variance": self.variance,
            "ci_low": self.ci_low,
            "ci_high": self.ci_high,
            "cv": self.cv,
            "deff": self.deff,
            "n": self.n_used,
            "method": self.method,
            "requested_method": self.requested_method,
            "estimator": self.estimator,
            "unstable": self.unstable,
            "n_diagnostics": len(self.diagnostics),
        }


def _failed_result(
    group: dict,
    items: list[Diagnostic],
    method: str,
    requested: str,
    n_used: int,
    conf_level: float,
    estimator: str,
) -> VarianceResult:
    nan = float("nan")
    return VarianceResult(
        estimate=nan,
        se=nan,
        variance=nan,
        ci_low=nan,
        ci_high=nan,
        deff=nan,
        method=method,
        requested_method=requested,
        n_used=n_used,
        conf_level=conf_level,
        estimator=estimator,
        group=group,
        unstable=True,
        diagnostics=Diagnostics(tuple(items)),
    )


class VarianceEngine:
    """
    Compute design-based estimates with a pluggable variance strategy.

    Parameters
    ----------
    config : dict, optional
        Overrides for ``DEFAULT_ENGINE_CONFIG``:

        - lonely_psu : str, default 'adjust'
            'adjust', 'average', 'certainty' or 'fail'
        - n_replicates : int, default 1000
            Bootstrap replicates when not given per call
        - conf_level : float, default 0.95
        - seed : int, optional
            Seed for bootstrap resampling
        - min_psu_per_stratum_bootstrap : int, default 3
        - min_psu_per_stratum_jackknife : int, default 2
        - unstable_group_size : int, default 3
            Groups with fewer usable units are flagged unstable
        - n_workers : int, default 1
            Threads used to estimate groups concurrently
        - probability_floor : float, default 1e-6
            Lower clamp for inclusion probabilities

    Examples
    --------
    >>> engine = VarianceEngine({"lonely_psu": "certainty"})
    >>> results = engine.compute(design, Estimand.total("catch"), method="jackknife")
    """

    def __init__(self, config: Optional[dict] = None):
        config = dict(config or {})
        unknown = sorted(set(config) - set(DEFAULT_ENGINE_CONFIG))
        if unknown:
            raise ValueError(
                f"Unknown engine config key(s) {unknown}; valid keys are "
                f"{sorted(DEFAULT_ENGINE_CONFIG)}"
            )
        self.config = {**DEFAULT_ENGINE_CONFIG, **config}

        if self.config["lonely_psu"] not in LONELY_PSU_POLICIES:
            raise ValueError(
                f"lonely_psu must be one of {LONELY_PSU_POLICIES}, "
                f"got {self.config['lonely_psu']!r}"
            )
        if int(self.config["n_workers"]) < 1:
            raise ValueError("n_workers must be at least 1")
        if not 0 < self.config["probability_floor"] < 1:
            raise ValueError("probability_floor must be in (0, 1)")
        z_score(self.config["conf_level"])

    def compute(
        self,
        design: SamplingDesign,
        estimand: Estimand,
        method: str = LINEARIZATION,
        group_by: Optional[Union[str, Sequence[str]]] = None,
        conf_level: Optional[float] = None,
        n_replicates: Optional[int] = None,
        diagnose_design: bool = False,
    ) -> list[VarianceResult]:
        """
        Estimate ``estimand`` over ``design``, one result per group.

        Parameters
        ----------
        design : SamplingDesign
            Unit-level design.
        estimand : Estimand
            What to estimate.
        method : str, default 'linearization'
            Requested variance strategy.
        group_by : str or list of str, optional
            Domain columns; overrides ``estimand.group_by`` when given.
        conf_level : float, optional
            Confidence level of the Wald interval.
        n_replicates : int, optional
            Bootstrap replicate count.
        diagnose_design : bool, default False
            Attach the structural design audit to every result.

        Returns
        -------
        list[VarianceResult]
            One result per distinct group tuple (sorted by key), or a single
            result when ungrouped.
        """
        if method not in VARIANCE_METHODS:
            raise ValueError(
                f"Unknown variance method {method!r}; expected one of {VARIANCE_METHODS}"
            )
        conf_level = self.config["conf_level"] if conf_level is None else conf_level
        z_score(conf_level)
        n_replicates = self.config["n_replicates"] if n_replicates is None else n_replicates
        if group_by is not None:
            estimand = estimand.with_group_by(group_by)

        prepared = prepare_units(design, estimand)
        base_items = list(prepared.diagnostics.items)
        if diagnose_design:
            base_items.extend(diagnose(design).warnings)
        replicates, actual = self._replicates(
            prepared.design, method, int(n_replicates), base_items
        )

        groups = self._group_keys(design, estimand, base_items)
        members = self._group_members(prepared.design, estimand)
        frame = prepared.design.design_frame()
        w = prepared.design.effective_weight()

        def run(key: dict) -> VarianceResult:
            idx = members.get(tuple(key.values()), np.zeros(0, dtype=np.int64))
            return self._estimate_group(
                prepared, frame, w, idx, key, replicates, actual, method,
                conf_level, estimand, base_items,
            )

        n_workers = int(self.config["n_workers"])
        if n_workers > 1 and len(groups) > 1:
            logger.debug("Estimating %d groups on %d workers", len(groups), n_workers)
            with ThreadPoolExecutor(max_workers=n_workers) as pool:
                results = list(pool.map(run, groups))
        else:
            results = [run(key) for key in groups]

        if not estimand.group_by and results[0].diagnostics.is_fatal:
            failure = results[0].diagnostics.get(diag.ESTIMAND_ERROR)
            raise EstimandError(
                failure.message,
                field=failure.field,
                expected="a finite estimate from usable units",
                actual=results[0].n_used,
                n_rows=prepared.n_excluded,
            )

        n_unstable = sum(r.unstable for r in results)
        if n_unstable:
            logger.warning(
                "%d of %d group(s) have fewer than %d usable units; estimates are unstable",
                n_unstable,
                len(results),
                self.config["unstable_group_size"],
            )
        return results

    def compute_one(self, design: SamplingDesign, estimand: Estimand, **kwargs) -> VarianceResult:
        """Ungrouped ``compute`` returning the single result."""
        if estimand.group_by or kwargs.get("group_by"):
            raise ValueError("compute_one does not accept grouped estimands")
        return self.compute(design, estimand, **kwargs)[0]

    # ------------------------------------------------------------------

    def _replicates(
        self,
        design: SamplingDesign,
        method: str,
        n_replicates: int,
        items: list[Diagnostic],
    ) -> tuple[Optional[ReplicateWeights], str]:
        """Replicate weights for ``method``, or (None, linearization) on fallback."""
        if method == LINEARIZATION:
            return None, LINEARIZATION
        stored = design.replicate_weights
        try:
            if method == BOOTSTRAP:
                if stored is not None and stored.type == "bootstrap":
                    replicates = stored
                else:
                    check_psu_counts(
                        design, BOOTSTRAP, self.config["min_psu_per_stratum_bootstrap"]
                    )
                    replicates = bootstrap_weights(
                        design, n_replicates, seed=self.config["seed"]
                    )
            elif method == JACKKNIFE:
                if stored is not None and stored.type == "jackknife":
                    replicates = stored
                else:
                    check_psu_counts(
                        design, JACKKNIFE, self.config["min_psu_per_stratum_jackknife"]
                    )
                    replicates = jackknife_weights(design)
            else:
                if stored is None:
                    raise MethodUnavailable(
                        REPLICATE,
                        "design carries no replicate weights",
                        field="replicate_weights",
                    )
                replicates = stored
        except MethodUnavailable as exc:
            logger.warning("%s; falling back to %s", exc, LINEARIZATION)
            items.append(
                Diagnostic(
                    Severity.WARNING,
                    diag.METHOD_FALLBACK,
                    f"{exc}; variance computed by {LINEARIZATION}",
                    count=exc.n_rows,
                    field=exc.field,
                )
            )
            return None, LINEARIZATION

        if design.fpc is not None and replicates is not stored:
            diag.record(
                items,
                Severity.INFO,
                diag.FPC_IGNORED,
                f"Finite population correction is not applied to {method} replicates",
                field=design.fpc,
            )
        return replicates, method

    def _group_keys(
        self, design: SamplingDesign, estimand: Estimand, items: list[Diagnostic]
    ) -> list[dict]:
        """Distinct group tuples present in the input, before exclusions."""
        if not estimand.group_by:
            return [{}]
        cols = list(estimand.group_by)
        keys = design.data.select(cols).unique()
        all_null = pl.all_horizontal([pl.col(c).is_null() for c in cols])
        n_keyless = int(design.data.select(all_null.sum()).item())
        if n_keyless:
            diag.record(
                items,
                Severity.INFO,
                diag.KEYLESS_UNITS,
                f"{n_keyless} unit(s) without group keys contribute zero to every group",
                count=n_keyless,
                field=", ".join(cols),
            )
            keys = keys.filter(~all_null)
        return keys.sort(cols, nulls_last=True).to_dicts()

    @staticmethod
    def _group_members(design: SamplingDesign, estimand: Estimand) -> dict:
        """Row positions of each group in the prepared design."""
        n = design.n
        if not estimand.group_by:
            return {(): np.arange(n, dtype=np.int64)}
        cols = list(estimand.group_by)
        indexed = (
            design.data.select(cols)
            .with_row_index("__row")
            .group_by(cols, maintain_order=True)
            .agg(pl.col("__row"))
        )
        members = {}
        for row in indexed.iter_rows():
            members[tuple(row[:-1])] = np.asarray(row[-1], dtype=np.int64)
        return members

    def _estimate_group(
        self,
        prepared: PreparedUnits,
        frame: pl.DataFrame,
        w: np.ndarray,
        idx: np.ndarray,
        group: dict,
        replicates: Optional[ReplicateWeights],
        method: str,
        requested: str,
        conf_level: float,
        estimand: Estimand,
        base_items: list[Diagnostic],
    ) -> VarianceResult:
        items = list(base_items)
        estimator = estimand.kind.value
        n_used = int(idx.shape[0])

        if n_used == 0:
            diag.record(
                items,
                Severity.FATAL,
                diag.ESTIMAND_ERROR,
                f"No usable {estimand.response!r} values in group {group}",
                count=0,
                field=estimand.response,
            )
            return _failed_result(group, items, method, requested, 0, conf_level, estimator)

        # Domain indicator: units outside the group contribute zero
        d = np.zeros(prepared.design.n)
        d[idx] = 1.0
        a = prepared.a * d
        b = None if prepared.b is None else prepared.b * d

        estimate = ratio_estimate(w, a, b)
        if not np.isfinite(estimate):
            diag.record(
                items,
                Severity.FATAL,
                diag.ESTIMAND_ERROR,
                f"Weighted denominator total is zero in group {group}",
                count=n_used,
                field=estimand.denominator or estimand.response,
            )
            return _failed_result(
                group, items, method, requested, n_used, conf_level, estimator
            )

        u = linearized_scores(w, a, b, estimate)
        if replicates is None:
            terms = calculate_stratified_variance(
                frame.with_columns(pl.Series("__score", w * u)),
                lonely_psu=self.config["lonely_psu"],
            )
            variance = terms["variance"]
            if terms["n_lonely"]:
                applied = terms["lonely_psu"]
                note = (
                    ""
                    if applied == self.config["lonely_psu"]
                    else f" in place of {self.config['lonely_psu']!r}, which had no "
                    f"multi-PSU stratum to average"
                )
                diag.record(
                    items,
                    Severity.WARNING,
                    diag.LONELY_PSU,
                    f"{terms['n_lonely']} stratum(s) with a single PSU; "
                    f"applied lonely_psu={applied!r}{note}",
                    count=terms["n_lonely"],
                    field=prepared.design.strata,
                )
        else:
            theta = replicate_estimates(replicates.matrix, a, b)
            n_undefined = int((~np.isfinite(theta)).sum())
            if n_undefined:
                diag.record(
                    items,
                    Severity.WARNING,
                    diag.NONFINITE_RATIOS,
                    f"{n_undefined} replicate(s) with an undefined estimate dropped",
                    count=n_undefined,
                )
            variance = replicates.variance(theta, estimate)

        se = float(np.sqrt(variance)) if variance >= 0 else float("nan")
        ci_low, ci_high = calculate_confidence_interval(estimate, se, conf_level)

        deff = calculate_design_effect(variance, calculate_srs_variance(w, u, d))
        if not np.isfinite(deff):
            diag.record(
                items,
                Severity.INFO,
                diag.DEFF_UNAVAILABLE,
                "Simple random sampling variance not estimable; deff is NaN",
                count=n_used,
            )

        unstable = n_used < self.config["unstable_group_size"]
        if unstable:
            items.append(
                Diagnostic(
                    Severity.WARNING,
                    diag.UNSTABLE_GROUP,
                    f"Only {n_used} usable unit(s) in group {group}",
                    count=n_used,
                )
            )

        return VarianceResult(
            estimate=estimate,
            se=se,
            variance=variance,
            ci_low=ci_low,
            ci_high=ci_high,
            deff=deff,
            method=method,
            requested_method=requested,
            n_used=n_used,
            conf_level=conf_level,
            estimator=estimator,
            group=group,
            unstable=unstable,
            diagnostics=Diagnostics(tuple(items)),
        )


def results_to_frame(results: Sequence[VarianceResult]) -> pl.DataFrame:
    """Convert results to a DataFrame, one row per group."""
    if not results:
        return pl.DataFrame(
            schema={
                "estimate": pl.Float64,
                "se": pl.Float64,
                "variance": pl.Float64,
                "ci_low": pl.Float64,
                "ci_high": pl.Float64,
                "cv": pl.Float64,
                "deff": pl.Float64,
                "n": pl.Int64,
                "method": pl.String,
                "requested_method": pl.String,
                "estimator": pl.String,
                "unstable": pl.Boolean,
                "n_diagnostics": pl.Int64,
            }
        )
    return pl.DataFrame([r.to_dict() for r in results], infer_schema_length=None)
