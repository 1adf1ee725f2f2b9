"""
Category aggregation before ratio estimation.

A species group's catch is the within-interview sum of its species' catches,
formed before the ratio is estimated. Estimating each species separately
and adding the estimates ignores the covariance between species caught on
the same trip and gives the wrong variance for the group.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import polars as pl

from ..core import diagnostics as diag
from ..core.design import SamplingDesign
from ..core.diagnostics import Diagnostics
from ..core.exceptions import EstimandError

logger = logging.getLogger(__name__)


def _split_requested(
    requested: Sequence, present: set, field: str, items: list
) -> list:
    """Requested categories found in the data; warn about the rest, fail if none."""
    requested = list(dict.fromkeys(requested))
    found = [c for c in requested if c in present]
    missing = [c for c in requested if c not in present]
    if not found:
        raise EstimandError(
            "None of the requested categories are present in the data",
            field=field,
            expected=f"at least one of {requested}",
            actual=sorted(str(c) for c in present)[:10],
        )
    if missing:
        diag.report_data_quality(
            items,
            diag.MISSING_CATEGORIES,
            f"Categories not present in the data: {missing}",
            count=len(missing),
            field=field,
            stacklevel=4,
        )
    return found


def aggregate_categories(
    records: pl.DataFrame,
    unit: str,
    category: str,
    value: str,
    categories: Sequence,
    name: str = "catch_total",
    units: Optional[pl.DataFrame] = None,
) -> tuple[pl.DataFrame, Diagnostics]:
    """
    Sum long-format category values within each sampling unit.

    Parameters
    ----------
    records : pl.DataFrame
        One row per unit and category (e.g. interview x species).
    unit : str
        Sampling unit (interview) identifier column.
    category : str
        Category (e.g. species) column.
    value : str
        Value to sum (e.g. fish kept).
    categories : sequence
        Categories forming the aggregate.
    name : str, default 'catch_total'
        Output column name.
    units : pl.DataFrame, optional
        Frame with the ``unit`` column listing every unit, including those
        that recorded no category at all; defaults to units in ``records``.

    Returns
    -------
    tuple[pl.DataFrame, Diagnostics]
        One row per unit with the aggregate, zero where the unit recorded
        none of the categories, and the missing-category record.

    Raises
    ------
    EstimandError
        If none of ``categories`` occur in ``records``.
    """
    items: list = []
    present = set(records[category].drop_nulls().unique().to_list())
    found = _split_requested(categories, present, category, items)

    summed = (
        records.filter(pl.col(category).is_in(found))
        .group_by(unit)
        .agg(pl.col(value).cast(pl.Float64).fill_null(0.0).sum().alias(name))
    )
    all_units = units.select(unit).unique() if units is not None else records.select(unit).unique()
    out = (
        all_units.join(summed, on=unit, how="left")
        .with_columns(pl.col(name).fill_null(0.0))
        .sort(unit)
    )
    logger.debug("Aggregated %d categories over %d units into %r", len(found), out.height, name)
    return out, Diagnostics(tuple(items))


def aggregate_columns(
    design: SamplingDesign,
    columns: Sequence[str],
    name: str = "catch_total",
) -> tuple[SamplingDesign, Diagnostics]:
    """
    Sum wide-format category columns per unit into a new design column.

    Missing values count as zero catch of that category. Requested columns
    absent from the data are reported and skipped.
    """
    items: list = []
    found = _split_requested(columns, set(design.data.columns), "columns", items)
    total = pl.sum_horizontal(
        [pl.col(c).cast(pl.Float64).fill_null(0.0) for c in found]
    ).alias(name)
    return design.with_columns(total), Diagnostics(tuple(items))
