"""
Estimands: what is being estimated from each sampling unit.

An ``Estimand`` names a response column (and, for ratios, a denominator
column) plus optional grouping keys. ``prepare_units`` turns it into the
per-unit ``a_i`` / ``b_i`` vectors used by every variance strategy and
excludes, with a recorded count, the units that cannot contribute.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

import numpy as np
import polars as pl

from ..core import diagnostics as diag
from ..core.design import SamplingDesign
from ..core.diagnostics import Diagnostics
from ..core.exceptions import EstimandError

logger = logging.getLogger(__name__)


class EstimandKind(str, Enum):
    """Estimator family applied to the response."""

    TOTAL = "total"
    MEAN = "mean"
    RATIO_OF_MEANS = "ratio_of_means"
    MEAN_OF_RATIOS = "mean_of_ratios"

    @property
    def is_ratio(self) -> bool:
        return self in (EstimandKind.RATIO_OF_MEANS, EstimandKind.MEAN_OF_RATIOS)


@dataclass(frozen=True)
class Estimand:
    """A named per-unit response with optional grouping keys.

    Parameters
    ----------
    kind : EstimandKind or str
        ``total``, ``mean``, ``ratio_of_means`` or ``mean_of_ratios``.
    response : str
        Response column; the numerator for ratio estimands.
    denominator : str, optional
        Denominator column, required for ratio estimands.
    group_by : str or sequence of str, optional
        Columns defining estimation domains.
    name : str, optional
        Label used in results and displays.
    """

    kind: EstimandKind
    response: str
    denominator: Optional[str] = None
    group_by: tuple[str, ...] = ()
    name: Optional[str] = None

    def __post_init__(self):
        try:
            kind = EstimandKind(self.kind)
        except ValueError:
            raise ValueError(
                f"Unknown estimand kind {self.kind!r}; expected one of "
                f"{[k.value for k in EstimandKind]}"
            ) from None
        object.__setattr__(self, "kind", kind)
        object.__setattr__(self, "group_by", _as_tuple(self.group_by))
        if kind.is_ratio and self.denominator is None:
            raise ValueError(f"{kind.value} estimand requires a denominator column")
        if not kind.is_ratio and self.denominator is not None:
            raise ValueError(f"{kind.value} estimand does not take a denominator")

    @classmethod
    def total(cls, response: str, group_by=None, name: Optional[str] = None) -> "Estimand":
        return cls(EstimandKind.TOTAL, response, group_by=group_by or (), name=name)

    @classmethod
    def mean(cls, response: str, group_by=None, name: Optional[str] = None) -> "Estimand":
        return cls(EstimandKind.MEAN, response, group_by=group_by or (), name=name)

    @classmethod
    def ratio(
        cls,
        numerator: str,
        denominator: str,
        mode: Union[str, EstimandKind] = EstimandKind.RATIO_OF_MEANS,
        group_by=None,
        name: Optional[str] = None,
    ) -> "Estimand":
        kind = EstimandKind(mode)
        if not kind.is_ratio:
            raise ValueError(
                f"Ratio mode must be 'ratio_of_means' or 'mean_of_ratios', got {mode!r}"
            )
        return cls(kind, numerator, denominator, group_by=group_by or (), name=name)

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        if self.denominator:
            return f"{self.response}/{self.denominator}"
        return self.response

    @property
    def columns(self) -> list[str]:
        cols = [self.response]
        if self.denominator:
            cols.append(self.denominator)
        return cols + list(self.group_by)

    def with_group_by(self, group_by) -> "Estimand":
        return Estimand(self.kind, self.response, self.denominator, _as_tuple(group_by), self.name)

    def check_columns(self, data: pl.DataFrame) -> None:
        """Raise ``EstimandError`` if a required column is absent or non-numeric."""
        for col in self.columns:
            if col not in data.columns:
                raise EstimandError(
                    "Estimand column not found in design data",
                    field=col,
                    expected="column present",
                    actual=sorted(data.columns),
                )
        for col in (self.response, self.denominator):
            if col is not None and not data[col].dtype.is_numeric():
                raise EstimandError(
                    "Estimand column must be numeric",
                    field=col,
                    expected="numeric dtype",
                    actual=str(data[col].dtype),
                )


@dataclass(frozen=True)
class PreparedUnits:
    """Estimation-ready per-unit vectors aligned with ``design``.

    ``design`` is the input design restricted to usable units. ``a`` and
    ``b`` hold numerator and denominator contributions; ``b`` is None for
    totals.
    """

    design: SamplingDesign
    a: np.ndarray
    b: Optional[np.ndarray]
    diagnostics: Diagnostics
    n_excluded: int


def column_as_float(data: pl.DataFrame, col: str) -> np.ndarray:
    """Numeric column as a float array with nulls as NaN."""
    return data[col].cast(pl.Float64).fill_null(np.nan).to_numpy()


def prepare_units(design: SamplingDesign, estimand: Estimand) -> PreparedUnits:
    """Build the per-unit contribution vectors and exclude unusable units.

    Units are excluded when their weight is missing, their response is
    missing or non-finite, or (for either ratio mode) their denominator is
    missing, zero or negative. Each exclusion reason is recorded with its
    count and emitted as a ``DataQualityWarning``; nothing is coerced to zero.
    """
    estimand.check_columns(design.data)
    data = design.data
    items: list[diag.Diagnostic] = []

    w = design.effective_weight()
    y = column_as_float(data, estimand.response)
    has_weight = np.isfinite(w)
    has_response = np.isfinite(y)

    n_no_response = int((~has_response).sum())
    if n_no_response:
        diag.report_data_quality(
            items,
            diag.EXCLUDED_UNITS,
            f"{n_no_response} unit(s) with missing or non-finite "
            f"{estimand.response!r} excluded",
            count=n_no_response,
            field=estimand.response,
        )
    n_no_weight = int((has_response & ~has_weight).sum())
    if n_no_weight:
        diag.report_data_quality(
            items,
            diag.EXCLUDED_UNITS,
            f"{n_no_weight} unit(s) with a response but no weight excluded",
            count=n_no_weight,
            field=design.weight,
        )

    valid = has_weight & has_response
    x = None
    if estimand.kind.is_ratio:
        x = column_as_float(data, estimand.denominator)
        with np.errstate(invalid="ignore"):
            bad_x = valid & ~(np.isfinite(x) & (x > 0))
        code = (
            diag.NONFINITE_RATIOS
            if estimand.kind == EstimandKind.MEAN_OF_RATIOS
            else diag.EXCLUDED_UNITS
        )
        n_bad_x = int(bad_x.sum())
        if n_bad_x:
            diag.report_data_quality(
                items,
                code,
                f"{n_bad_x} unit(s) with a missing or non-positive "
                f"{estimand.denominator!r} excluded",
                count=n_bad_x,
                field=estimand.denominator,
            )
        valid &= ~bad_x

    n_excluded = int((~valid).sum())
    kept = design if n_excluded == 0 else design.subset(valid)
    if n_excluded:
        logger.debug("Excluded %d of %d units for %s", n_excluded, design.n, estimand.label)

    y = y[valid]
    if estimand.kind == EstimandKind.TOTAL:
        a, b = y, None
    elif estimand.kind == EstimandKind.MEAN:
        a, b = y, np.ones_like(y)
    elif estimand.kind == EstimandKind.RATIO_OF_MEANS:
        a, b = y, x[valid]
    else:
        a, b = y / x[valid], np.ones_like(y)

    return PreparedUnits(kept, a, b, Diagnostics(tuple(items)), n_excluded)


def _as_tuple(group_by) -> tuple[str, ...]:
    if group_by is None:
        return ()
    if isinstance(group_by, str):
        return (group_by,)
    return tuple(group_by)

