"""
Variance decomposition across nested clustering levels.

Nested ANOVA (default)
----------------------

For ordered levels 1..k (outermost first) and N units with response y:

    SS_l = sum_i (ybar_l(i) - ybar_{l-1}(i))^2       (ybar_0 = grand mean)
    SS_E = sum_i (y_i - ybar_k(i))^2
    df_l = G_l - G_{l-1},  df_E = N - G_k           (G_0 = 1)
    n0_l = (N - sum_g n_g^2 / n_parent(g)) / df_l

Components follow from expected mean squares:

    sigma2_l = (MS_l - MS_{l+1}) / n0_l   (MS_{k+1} = MS_E)
    sigma2_E = MS_E

Negative components are clamped to zero and the clamp is recorded. The
decomposition is unweighted: it describes the sample's structure for
allocation planning, not a population quantity.

Mixed model (optional)
----------------------

``method='mixed'`` fits the same nesting as REML variance components with
statsmodels ``MixedLM``. Any failure to fit falls back to the ANOVA method.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np
import pandas as pd
import polars as pl
import statsmodels.formula.api as smf

from ..core import diagnostics as diag
from ..core.design import SamplingDesign
from ..core.diagnostics import Diagnostics, Severity
from ..core.exceptions import EstimandError
from .estimand import Estimand, EstimandKind, prepare_units

logger = logging.getLogger(__name__)

ANOVA = "anova"
MIXED = "mixed"
DECOMPOSITION_METHODS = (ANOVA, MIXED)
RESIDUAL = "residual"


@dataclass(frozen=True)
class VarianceComponent:
    level: str
    variance: float
    proportion: float
    clamped: bool = False
    df: Optional[float] = None
    mean_square: Optional[float] = None


@dataclass(frozen=True)
class VarianceComponents:
    """Variance components from outermost level to residual, plus derived ratios."""

    components: tuple[VarianceComponent, ...]
    icc: dict
    design_effect: dict
    avg_cluster_size: dict
    n_groups: dict
    variance_ratios: dict
    optimal_allocation: Optional[dict]
    method: str
    requested_method: str
    n_used: int
    diagnostics: Diagnostics = field(default_factory=Diagnostics)

    @property
    def levels(self) -> list[str]:
        return [c.level for c in self.components]

    @property
    def total_variance(self) -> float:
        return float(sum(c.variance for c in self.components))

    def __getitem__(self, level: str) -> VarianceComponent:
        for c in self.components:
            if c.level == level:
                return c
        raise KeyError(level)

    def to_frame(self) -> pl.DataFrame:
        """One row per component with ICC and design effect where defined."""
        return pl.DataFrame(
            {
                "level": [c.level for c in self.components],
                "variance": [c.variance for c in self.components],
                "proportion": [c.proportion for c in self.components],
                "icc": [self.icc.get(c.level) for c in self.components],
                "design_effect": [self.design_effect.get(c.level) for c in self.components],
                "clamped": [c.clamped for c in self.components],
            },
            schema_overrides={"icc": pl.Float64, "design_effect": pl.Float64},
        )


class VarianceDecomposer:
    """
    Split response variance into nested clustering components.

    Parameters
    ----------
    method : str, default 'anova'
        'anova' (nested mean squares) or 'mixed' (REML via statsmodels,
        falling back to 'anova' if the fit fails).

    Examples
    --------
    >>> decomposer = VarianceDecomposer()
    >>> comps = decomposer.decompose(design, Estimand.total("count"), ["date", "shift"])
    >>> comps.icc["date"]
    """

    def __init__(self, method: str = ANOVA):
        if method not in DECOMPOSITION_METHODS:
            raise ValueError(
                f"Unknown decomposition method {method!r}; expected one of "
                f"{DECOMPOSITION_METHODS}"
            )
        self.method = method

    def decompose(
        self,
        design: SamplingDesign,
        estimand: Estimand,
        nested_cluster_levels: Sequence[str],
    ) -> VarianceComponents:
        """
        Decompose the per-unit response over ``nested_cluster_levels``.

        Parameters
        ----------
        design : SamplingDesign
            Unit-level design holding the level columns.
        estimand : Estimand
            Response to decompose; ratio estimands use the per-unit ratio.
        nested_cluster_levels : sequence of str
            Clustering columns, outermost first.

        Returns
        -------
        VarianceComponents
        """
        levels = [nested_cluster_levels] if isinstance(nested_cluster_levels, str) else list(nested_cluster_levels)
        if not levels:
            raise ValueError("At least one clustering level is required")
        if RESIDUAL in levels:
            raise ValueError(f"{RESIDUAL!r} is reserved for the within-cluster component")
        for col in levels:
            if col not in design.data.columns:
                raise EstimandError(
                    "Clustering level not found in design data",
                    field=col,
                    expected="column present",
                    actual=sorted(design.data.columns),
                )

        frame, items = self._unit_frame(design, estimand, levels)
        n = frame.height
        if n < 2:
            raise EstimandError(
                "Variance decomposition needs at least two usable units",
                field=estimand.response,
                expected=">= 2 units",
                actual=n,
            )

        table = _nested_anova(frame, levels)
        method = ANOVA
        variances = None
        if self.method == MIXED:
            try:
                variances = _mixed_model_components(frame, levels, items)
                method = MIXED
            except (np.linalg.LinAlgError, ValueError, RuntimeError) as exc:
                logger.warning("Mixed-model decomposition failed (%s); using ANOVA", exc)
                diag.record(
                    items,
                    Severity.WARNING,
                    diag.METHOD_FALLBACK,
                    f"Mixed-model fit failed ({exc}); variance components computed by ANOVA",
                )
        if variances is None:
            variances = _anova_components(table, levels, items)

        return _assemble(table, levels, variances, method, self.method, n, items)

    @staticmethod
    def _unit_frame(
        design: SamplingDesign, estimand: Estimand, levels: list[str]
    ) -> tuple[pl.DataFrame, list]:
        prepared = prepare_units(design, estimand.with_group_by(()))
        items = list(prepared.diagnostics)
        y = prepared.a
        if prepared.b is not None and estimand.kind == EstimandKind.RATIO_OF_MEANS:
            with np.errstate(divide="ignore", invalid="ignore"):
                y = np.where(prepared.b > 0, prepared.a / prepared.b, np.nan)
        frame = prepared.design.data.select(levels).with_columns(pl.Series("__y", y))

        usable = frame.filter(
            pl.col("__y").is_not_nan() & pl.all_horizontal([pl.col(c).is_not_null() for c in levels])
        )
        n_dropped = frame.height - usable.height
        if n_dropped:
            diag.report_data_quality(
                items,
                diag.EXCLUDED_UNITS,
                f"{n_dropped} unit(s) without a per-unit value or level label excluded "
                f"from the decomposition",
                count=n_dropped,
                field=", ".join(levels),
            )
        return usable, items


def _nested_anova(frame: pl.DataFrame, levels: list[str]) -> list[dict]:
    """Sums of squares, degrees of freedom and n0 per level, then residual."""
    n = frame.height
    stats = frame.with_columns(
        [pl.col("__y").mean().over(levels[: l + 1]).alias(f"__m{l}") for l in range(len(levels))]
        + [pl.len().over(levels[: l + 1]).alias(f"__n{l}") for l in range(len(levels))]
    ).with_columns(pl.col("__y").mean().alias("__m-1"), pl.lit(n).alias("__n-1"))

    table = []
    g_prev = 1
    for l, level in enumerate(levels):
        g = frame.select(pl.struct(levels[: l + 1]).n_unique()).item()
        row = stats.select(
            ((pl.col(f"__m{l}") - pl.col(f"__m{l - 1}")) ** 2).sum().alias("ss"),
            (pl.col(f"__n{l}").cast(pl.Float64) / pl.col(f"__n{l - 1}")).sum().alias("s"),
        ).row(0, named=True)
        df = g - g_prev
        table.append(
            {
                "level": level,
                "ss": row["ss"],
                "df": df,
                "ms": row["ss"] / df if df > 0 else float("nan"),
                "n0": (n - row["s"]) / df if df > 0 else float("nan"),
                "n_groups": g,
            }
        )
        g_prev = g

    last = len(levels) - 1
    sse = stats.select(((pl.col("__y") - pl.col(f"__m{last}")) ** 2).sum()).item()
    df_e = n - g_prev
    table.append(
        {
            "level": RESIDUAL,
            "ss": sse,
            "df": df_e,
            "ms": sse / df_e if df_e > 0 else 0.0,
            "n0": 1.0,
            "n_groups": n,
        }
    )
    return table


def _anova_components(table: list[dict], levels: list[str], items: list) -> list[tuple[float, bool]]:
    """(variance, clamped) per component by expected-mean-square back-substitution."""
    out = []
    for l in range(len(levels)):
        row, below = table[l], table[l + 1]
        if row["df"] <= 0 or not np.isfinite(row["ms"]):
            diag.record(
                items,
                Severity.INFO,
                diag.CLAMPED_COMPONENT,
                f"Level {row['level']!r} has no replication within its parent; "
                f"component set to zero",
                field=row["level"],
            )
            out.append((0.0, False))
            continue
        below_ms = below["ms"] if np.isfinite(below["ms"]) else 0.0
        raw = (row["ms"] - below_ms) / row["n0"]
        out.append(_clamp(raw, row["level"], items))
    out.append((max(float(table[-1]["ms"]), 0.0), False))
    return out


def _mixed_model_components(
    frame: pl.DataFrame, levels: list[str], items: list
) -> list[tuple[float, bool]]:
    """REML variance components for the nesting, outermost first."""
    df = pd.DataFrame({"y": frame["__y"].to_numpy(), "group": 1})
    vc_formula = {}
    for l in range(len(levels)):
        # Label each cluster by its full path so nested labels stay distinct
        labels = frame.select(
            pl.concat_str([pl.col(c).cast(pl.String) for c in levels[: l + 1]], separator="/")
        ).to_series()
        df[f"lvl{l:02d}"] = labels.to_list()
        vc_formula[f"vc{l:02d}"] = f"0 + C(lvl{l:02d})"

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        model = smf.mixedlm("y ~ 1", df, groups="group", vc_formula=vc_formula)
        fit = model.fit(reml=True, method="lbfgs")
    if not getattr(fit, "converged", True):
        raise RuntimeError("MixedLM did not converge")

    vcomp = np.asarray(fit.vcomp, dtype=float)
    if vcomp.shape[0] != len(levels) or not np.all(np.isfinite(vcomp)):
        raise RuntimeError("MixedLM returned unusable variance components")
    out = [_clamp(float(v), levels[l], items) for l, v in enumerate(vcomp)]
    out.append((max(float(fit.scale), 0.0), False))
    return out


def _clamp(raw: float, level: str, items: list) -> tuple[float, bool]:
    if raw < 0:
        diag.record(
            items,
            Severity.WARNING,
            diag.CLAMPED_COMPONENT,
            f"Negative variance component for {level!r} ({raw:.4g}) clamped to zero",
            field=level,
        )
        return 0.0, True
    return raw, False


def _assemble(
    table: list[dict],
    levels: list[str],
    variances: list[tuple[float, bool]],
    method: str,
    requested: str,
    n: int,
    items: list,
) -> VarianceComponents:
    values = np.array([v for v, _ in variances])
    total = float(values.sum())
    if total > 0:
        proportions = values / total
    else:
        proportions = np.zeros_like(values)
        proportions[-1] = 1.0

    names = levels + [RESIDUAL]
    components = tuple(
        VarianceComponent(
            level=name,
            variance=float(values[i]),
            proportion=float(proportions[i]),
            clamped=variances[i][1],
            df=float(table[i]["df"]) if method == ANOVA else None,
            mean_square=float(table[i]["ms"]) if method == ANOVA else None,
        )
        for i, name in enumerate(names)
    )

    icc, deff, avg_size, n_groups = {}, {}, {}, {}
    for l, level in enumerate(levels):
        rest = float(values[l:].sum())
        icc[level] = float(values[l]) / rest if rest > 0 else 0.0
        n_groups[level] = int(table[l]["n_groups"])
        avg_size[level] = n / n_groups[level]
        deff[level] = 1.0 + (avg_size[level] - 1.0) * icc[level]

    ratios = {}
    for i in range(len(names) - 1):
        below = values[i + 1]
        ratios[f"{names[i]}/{names[i + 1]}"] = float(values[i] / below) if below > 0 else float("nan")

    return VarianceComponents(
        components=components,
        icc=icc,
        design_effect=deff,
        avg_cluster_size=avg_size,
        n_groups=n_groups,
        variance_ratios=ratios,
        optimal_allocation=_optimal_allocation(values, names),
        method=method,
        requested_method=requested,
        n_used=n,
        diagnostics=Diagnostics(tuple(items)),
    )


def _optimal_allocation(values: np.ndarray, names: list[str]) -> dict:
    """Neyman-style two-stage guidance: primary/secondary = sqrt(V_between / V_within)."""
    between = float(values[0])
    within = float(values[1:].sum())
    primary, secondary = names[0], names[1]
    if within > 0:
        ratio = float(np.sqrt(between / within))
        guidance = (
            f"For every {ratio:.2f} {primary} unit(s), sample 1 {secondary} unit; "
            f"weigh against the relative cost of each before changing the design"
        )
    else:
        ratio = float("nan")
        guidance = (
            f"No variation within {primary}; allocation ratio undefined, "
            f"prefer more {primary} units"
        )
    return {
        "primary_level": primary,
        "secondary_level": secondary,
        "variance_ratio": between / within if within > 0 else float("nan"),
        "optimal_ratio": ratio,
        "recommendation": guidance,
    }
