"""
Sampling design abstraction.

A ``SamplingDesign`` bundles a unit-level polars DataFrame with the names of
its weight, stratum, cluster (PSU) and finite-population-correction columns,
and an optional replicate weight matrix. Designs are immutable: row
selection, derived columns, and reweighting all return a new design.

Row alignment between ``data`` and the replicate matrix is maintained in
exactly one place, ``SamplingDesign.subset``; every other operation that
changes rows goes through it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Optional, Sequence, Union

import numpy as np
import polars as pl

from .exceptions import DesignError

logger = logging.getLogger(__name__)

REPLICATE_TYPES = ("bootstrap", "jackknife")

RowSelector = Union[pl.Expr, np.ndarray, pl.Series, Sequence[bool], Sequence[int]]


@dataclass(frozen=True)
class ReplicateWeights:
    """An ``n x R`` matrix of alternative full-sample weights.

    Parameters
    ----------
    matrix : np.ndarray
        Replicate weights, one column per replicate, one row per unit.
    type : str
        ``"bootstrap"`` or ``"jackknife"``.
    scale : float
        Overall multiplier applied to the sum of squared deviations.
    rscales : np.ndarray, optional
        Per-replicate multipliers. Defaults to ones.
    mse : bool, default False
        Centre deviations at the full-sample estimate instead of the mean
        of the replicate estimates.
    """

    matrix: np.ndarray
    type: str = "bootstrap"
    scale: float = 1.0
    rscales: Optional[np.ndarray] = None
    mse: bool = False

    def __post_init__(self):
        matrix = np.asarray(self.matrix, dtype=float)
        if matrix.ndim != 2:
            raise DesignError(
                "Replicate weights must be a 2-D matrix",
                field="replicate_weights",
                expected="ndim == 2",
                actual=matrix.ndim,
            )
        if self.type not in REPLICATE_TYPES:
            raise DesignError(
                "Unknown replicate weight type",
                field="replicate_weights.type",
                expected=f"one of {REPLICATE_TYPES}",
                actual=self.type,
            )
        n_reps = matrix.shape[1]
        rscales = (
            np.ones(n_reps)
            if self.rscales is None
            else np.asarray(self.rscales, dtype=float).reshape(-1)
        )
        if rscales.shape[0] != n_reps:
            raise DesignError(
                "rscales length does not match the number of replicates",
                field="replicate_weights.rscales",
                expected=f"length {n_reps}",
                actual=rscales.shape[0],
            )
        if not np.isfinite(self.scale) or self.scale <= 0:
            raise DesignError(
                "Replicate scale must be positive and finite",
                field="replicate_weights.scale",
                expected="> 0",
                actual=self.scale,
            )
        matrix.setflags(write=False)
        rscales.setflags(write=False)
        object.__setattr__(self, "matrix", matrix)
        object.__setattr__(self, "rscales", rscales)

    @property
    def n_replicates(self) -> int:
        return self.matrix.shape[1]

    def variance(self, replicate_estimates: np.ndarray, full_estimate: float) -> float:
        """Combine replicate estimates into a variance.

        ``scale * sum_r rscales[r] * (theta_r - centre)^2`` where the centre
        is the replicate mean, or the full-sample estimate when ``mse``.
        """
        theta = np.asarray(replicate_estimates, dtype=float)
        ok = np.isfinite(theta)
        if not ok.any():
            return float("nan")
        theta = theta[ok]
        rscales = self.rscales[ok]
        centre = full_estimate if self.mse else float(theta.mean())
        return float(self.scale * np.sum(rscales * (theta - centre) ** 2))


@dataclass(frozen=True)
class SamplingDesign:
    """Immutable description of a finite-population sampling design.

    Parameters
    ----------
    data : pl.DataFrame
        One row per sampling unit. Holds the design columns and any response
        or grouping columns used by estimands.
    weight : str
        Column of inclusion weights (reciprocal inclusion probabilities).
        Values must be finite and positive; null marks a unit without a
        usable weight, which estimation excludes and reports.
    strata : str, optional
        Stratum label column.
    cluster : str, optional
        Primary sampling unit label column, nested within ``strata``.
    fpc : str, optional
        Population count of PSUs in the unit's stratum.
    replicate_weights : ReplicateWeights, optional
        Pre-built replicate weights aligned row-for-row with ``data``.
    """

    data: pl.DataFrame
    weight: str
    strata: Optional[str] = None
    cluster: Optional[str] = None
    fpc: Optional[str] = None
    replicate_weights: Optional[ReplicateWeights] = field(default=None, repr=False)

    def __post_init__(self):
        self.validate()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """Check structural invariants, raising ``DesignError`` on violation."""
        for role, col in (
            ("weight", self.weight),
            ("strata", self.strata),
            ("cluster", self.cluster),
            ("fpc", self.fpc),
        ):
            if col is not None and col not in self.data.columns:
                raise DesignError(
                    f"Design {role} column not found in data",
                    field=col,
                    expected="column present",
                    actual=self.data.columns,
                )

        weights = self.data[self.weight]
        if not weights.dtype.is_numeric():
            raise DesignError(
                "Weights must be numeric",
                field=self.weight,
                expected="numeric dtype",
                actual=str(weights.dtype),
            )
        w = weights.cast(pl.Float64).drop_nulls().to_numpy()
        bad = int(np.sum(~np.isfinite(w) | (w <= 0)))
        if bad:
            raise DesignError(
                "Weights must be positive and finite",
                field=self.weight,
                expected="0 < weight < inf",
                actual=float(w[~np.isfinite(w) | (w <= 0)][0]),
                n_rows=bad,
            )

        for col in (self.strata, self.cluster):
            if col is not None and self.data[col].null_count() > 0:
                raise DesignError(
                    "Design labels may not be missing",
                    field=col,
                    expected="no nulls",
                    actual="null",
                    n_rows=self.data[col].null_count(),
                )

        if self.strata is not None and self.cluster is not None:
            crossing = (
                self.data.group_by(self.cluster)
                .agg(pl.col(self.strata).n_unique().alias("n_strata"))
                .filter(pl.col("n_strata") > 1)
            )
            if crossing.height > 0:
                raise DesignError(
                    "Clusters must be nested within strata",
                    field=self.cluster,
                    expected="each cluster label in exactly one stratum",
                    actual=crossing[self.cluster].to_list()[:5],
                    n_rows=crossing.height,
                )

        if self.fpc is not None:
            self._validate_fpc()

        if self.replicate_weights is not None:
            rep = self.replicate_weights.matrix
            if rep.shape[0] != self.n:
                raise DesignError(
                    "Replicate weight rows do not match the number of units",
                    field="replicate_weights",
                    expected=f"{self.n} rows",
                    actual=rep.shape[0],
                )
            bad_rep = int(np.sum(~np.isfinite(rep) | (rep < 0)))
            if bad_rep:
                raise DesignError(
                    "Replicate weights must be finite and non-negative",
                    field="replicate_weights",
                    expected=">= 0",
                    actual="negative or non-finite",
                    n_rows=bad_rep,
                )

    def _validate_fpc(self) -> None:
        fpc = self.data[self.fpc].cast(pl.Float64)
        if fpc.null_count() > 0 or (fpc <= 0).any():
            raise DesignError(
                "Finite population correction must be positive",
                field=self.fpc,
                expected="> 0",
                actual="non-positive or missing",
                n_rows=int(fpc.null_count() + (fpc <= 0).sum()),
            )
        keys = self.design_frame()
        per_stratum = keys.group_by("__stratum").agg(
            pl.col("__fpc").n_unique().alias("n_fpc"),
            pl.col("__fpc").first().alias("N_h"),
            pl.col("__psu").n_unique().alias("n_h"),
        )
        varying = per_stratum.filter(pl.col("n_fpc") > 1)
        if varying.height > 0:
            raise DesignError(
                "Finite population correction must be constant within a stratum",
                field=self.fpc,
                expected="one value per stratum",
                actual=varying["__stratum"].to_list()[:5],
                n_rows=varying.height,
            )
        short = per_stratum.filter(pl.col("N_h") < pl.col("n_h"))
        if short.height > 0:
            raise DesignError(
                "Population PSU count is smaller than the sampled PSU count",
                field=self.fpc,
                expected="N_h >= n_h",
                actual=short["__stratum"].to_list()[:5],
                n_rows=short.height,
            )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def n(self) -> int:
        return self.data.height

    @property
    def is_replicate(self) -> bool:
        return self.replicate_weights is not None

    def effective_weight(self, replicate: Optional[int] = None) -> np.ndarray:
        """Return the base sampling weights, or one replicate column.

        Missing base weights are returned as NaN.
        """
        if replicate is None:
            return self.data[self.weight].cast(pl.Float64).fill_null(np.nan).to_numpy()
        if self.replicate_weights is None:
            raise DesignError(
                "Design carries no replicate weights",
                field="replicate_weights",
                expected="replicate design",
                actual=None,
            )
        n_reps = self.replicate_weights.n_replicates
        if not 0 <= replicate < n_reps:
            raise IndexError(f"replicate index {replicate} out of range [0, {n_reps})")
        return np.array(self.replicate_weights.matrix[:, replicate])

    def design_frame(self) -> pl.DataFrame:
        """Design keys for every unit: ``__stratum``, ``__psu``, ``__w``, ``__fpc``.

        Unstratified designs get a single stratum; unclustered designs treat
        each unit as its own PSU. PSU keys are made unique across strata.
        """
        stratum = (
            pl.col(self.strata).cast(pl.String)
            if self.strata is not None
            else pl.lit("1")
        )
        psu = (
            pl.col(self.cluster).cast(pl.String)
            if self.cluster is not None
            else pl.int_range(pl.len()).cast(pl.String)
        )
        fpc = (
            pl.col(self.fpc).cast(pl.Float64)
            if self.fpc is not None
            else pl.lit(None, dtype=pl.Float64)
        )
        return self.data.select(
            stratum.alias("__stratum"),
            psu.alias("__psu"),
            pl.col(self.weight).cast(pl.Float64).alias("__w"),
            fpc.alias("__fpc"),
        )

    def psu_counts(self) -> pl.DataFrame:
        """Number of PSUs and units per stratum."""
        return (
            self.design_frame()
            .group_by("__stratum")
            .agg(
                pl.col("__psu").n_unique().alias("n_psu"),
                pl.len().alias("n_units"),
            )
            .sort("__stratum")
        )

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    def subset(self, predicate: RowSelector) -> "SamplingDesign":
        """Return a new design restricted to the selected rows.

        ``predicate`` is a polars boolean expression, a boolean mask, or an
        array of integer row positions (repeats allowed, order kept). The
        replicate weight matrix is re-indexed with the same positions so
        every replicate column stays aligned with its unit.
        """
        idx = self._resolve_rows(predicate)
        data = self.data.select(pl.all().gather(pl.Series(idx, dtype=pl.UInt32)))
        rep = None
        if self.replicate_weights is not None:
            rep = replace(
                self.replicate_weights,
                matrix=self.replicate_weights.matrix[idx, :],
            )
        return replace(self, data=data, replicate_weights=rep)

    def _resolve_rows(self, predicate: RowSelector) -> np.ndarray:
        if isinstance(predicate, pl.Expr):
            mask = (
                self.data.select(predicate.alias("__mask"))["__mask"]
                .fill_null(False)
                .to_numpy()
            )
            return np.flatnonzero(mask)
        arr = np.asarray(
            predicate.to_numpy() if isinstance(predicate, pl.Series) else predicate
        )
        if arr.dtype == bool:
            if arr.shape[0] != self.n:
                raise DesignError(
                    "Boolean row mask length does not match the design",
                    field="predicate",
                    expected=f"length {self.n}",
                    actual=arr.shape[0],
                )
            return np.flatnonzero(arr)
        if arr.size == 0:
            return np.zeros(0, dtype=np.int64)
        if not np.issubdtype(arr.dtype, np.integer):
            raise TypeError(f"Row selector must be boolean or integer, got {arr.dtype}")
        if arr.min() < 0 or arr.max() >= self.n:
            raise IndexError("Row positions out of range for design")
        return arr.astype(np.int64)

    def with_columns(self, *exprs, **named_exprs) -> "SamplingDesign":
        """Return a new design with derived columns added to ``data``."""
        data = self.data.with_columns(*exprs, **named_exprs)
        if data.height != self.n:
            raise DesignError(
                "Derived columns changed the number of rows",
                field="data",
                expected=f"{self.n} rows",
                actual=data.height,
            )
        return replace(self, data=data)

    def with_weights(
        self,
        weights: np.ndarray,
        replicate_weights: Optional[ReplicateWeights] = None,
    ) -> "SamplingDesign":
        """Return a new design with replaced base (and optionally replicate) weights."""
        weights = np.asarray(weights, dtype=float)
        if weights.shape[0] != self.n:
            raise DesignError(
                "Weight vector length does not match the design",
                field=self.weight,
                expected=f"length {self.n}",
                actual=weights.shape[0],
            )
        data = self.data.with_columns(pl.Series(self.weight, weights))
        rep = replicate_weights if replicate_weights is not None else self.replicate_weights
        return replace(self, data=data, replicate_weights=rep)

    def with_replicate_weights(self, replicate_weights: ReplicateWeights) -> "SamplingDesign":
        return replace(self, replicate_weights=replicate_weights)

    def post_stratify(self, by: str, population_totals: dict) -> "SamplingDesign":
        """Rescale weights so each post-stratum sums to its population total.

        Replicate columns, when present, are rescaled per replicate so they
        also reproduce the population totals.
        """
        labels = self.data[by].to_list()
        missing = sorted({str(v) for v in labels if v not in population_totals})
        if missing:
            raise DesignError(
                "Post-strata without a population total",
                field=by,
                expected="a total for every post-stratum",
                actual=missing[:5],
                n_rows=sum(1 for v in labels if v not in population_totals),
            )
        codes, inverse = np.unique(np.asarray(labels, dtype=object).astype(str), return_inverse=True)
        label_by_code = {str(v): v for v in labels}
        targets = np.array(
            [float(population_totals[label_by_code[c]]) for c in codes]
        )

        def _rescale(w: np.ndarray) -> np.ndarray:
            sums = np.bincount(inverse, weights=w, minlength=codes.shape[0])
            factor = np.divide(targets, sums, out=np.zeros_like(targets), where=sums > 0)
            return w * factor[inverse]

        weights = _rescale(self.effective_weight())
        rep = None
        if self.replicate_weights is not None:
            matrix = np.column_stack(
                [_rescale(self.replicate_weights.matrix[:, r])
                 for r in range(self.replicate_weights.n_replicates)]
            )
            rep = replace(self.replicate_weights, matrix=matrix)
        logger.debug("Post-stratified %d units on %r into %d cells", self.n, by, codes.shape[0])
        return self.with_weights(weights, rep)
