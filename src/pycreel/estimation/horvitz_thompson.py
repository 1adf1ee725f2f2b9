"""
Horvitz-Thompson contributions and PSU-level collapse.

Observation-level HT contributions (``value / pi``) are summed to one row per
primary sampling unit and group before any variance is computed: variance on
the uncollapsed observation rows would treat observations from the same day
as independent PSUs. ``align_to_psu_design`` performs the collapse itself, so
every path from observations to the engine goes through it.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional, Sequence

import numpy as np
import polars as pl

from ..core import diagnostics as diag
from ..core.design import SamplingDesign
from ..core.diagnostics import Diagnostics, Severity
from ..core.exceptions import DesignError
from .constants import DEFAULT_ENGINE_CONFIG

logger = logging.getLogger(__name__)


def clamp_probabilities(
    probabilities: np.ndarray, floor: float = DEFAULT_ENGINE_CONFIG["probability_floor"]
) -> tuple[np.ndarray, int]:
    """Clamp inclusion probabilities into ``[floor, 1]``.

    Returns the clamped array and the number of finite values that were
    outside ``(0, 1]``. Missing values stay NaN.
    """
    p = np.asarray(probabilities, dtype=float)
    with np.errstate(invalid="ignore"):
        n_out = int(np.sum(np.isfinite(p) & ((p <= 0) | (p > 1))))
    return np.clip(p, floor, 1.0), n_out


def ht_contributions(
    data: pl.DataFrame,
    value: str,
    probability: str,
    out: str = "ht_contrib",
    floor: float = DEFAULT_ENGINE_CONFIG["probability_floor"],
) -> tuple[pl.DataFrame, Diagnostics]:
    """
    Divide each observation by its inclusion probability.

    Parameters
    ----------
    data : pl.DataFrame
        Observation-level rows.
    value : str
        Observed quantity column (e.g. angler-hours).
    probability : str
        Inclusion probability column.
    out : str, default 'ht_contrib'
        Name of the contribution column added.
    floor : float, default 1e-6
        Smallest probability allowed after clamping.

    Returns
    -------
    tuple[pl.DataFrame, Diagnostics]
        Rows with a usable value and probability plus the contribution
        column, and the clamping/exclusion record.
    """
    items: list[diag.Diagnostic] = []
    for col in (value, probability):
        if col not in data.columns:
            raise DesignError(
                "Column required for Horvitz-Thompson contributions not found",
                field=col,
                expected="column present",
                actual=sorted(data.columns),
            )

    p_raw = data[probability].cast(pl.Float64).fill_null(np.nan).to_numpy()
    y = data[value].cast(pl.Float64).fill_null(np.nan).to_numpy()
    p, n_out = clamp_probabilities(p_raw, floor)
    if n_out:
        diag.report_data_quality(
            items,
            diag.CLAMPED_PROBABILITIES,
            f"{n_out} row(s) had inclusion probabilities outside (0, 1]; "
            f"clamped into [{floor:g}, 1]",
            count=n_out,
            field=probability,
        )

    keep = np.isfinite(p) & np.isfinite(y)
    n_dropped = int((~keep).sum())
    if n_dropped:
        diag.report_data_quality(
            items,
            diag.EXCLUDED_UNITS,
            f"{n_dropped} row(s) with a missing value or inclusion probability excluded",
            count=n_dropped,
            field=f"{value}, {probability}",
        )

    result = data.with_columns(pl.Series(out, y / p)).filter(pl.Series(keep))
    return result, Diagnostics(tuple(items))


def collapse_to_psu(
    records: pl.DataFrame,
    psu: str,
    values: Sequence[str],
    group_by: Sequence[str] = (),
) -> pl.DataFrame:
    """Sum ``values`` to one row per PSU and group, with an ``n_obs`` count."""
    keys = [psu, *group_by]
    missing = [c for c in [*keys, *values] if c not in records.columns]
    if missing:
        raise DesignError(
            "Columns required for the PSU collapse not found",
            field=missing[0],
            expected="column present",
            actual=sorted(records.columns),
        )
    return (
        records.group_by(keys)
        .agg(
            [pl.col(v).cast(pl.Float64).sum().alias(v) for v in values]
            + [pl.len().cast(pl.Int64).alias("n_obs")]
        )
        .sort(keys, nulls_last=True)
    )


def align_to_psu_design(
    design: SamplingDesign,
    records: pl.DataFrame,
    psu: str,
    values: Sequence[str],
    group_by: Optional[Sequence[str]] = None,
) -> tuple[SamplingDesign, Diagnostics]:
    """
    Attach PSU-level totals to a design holding one row per sampled PSU.

    ``records`` are collapsed to PSU x group rows, each row is matched to its
    PSU's row in ``design`` and the design is expanded with
    ``design.subset(positions)`` so replicate weights follow their PSU. PSUs
    sampled but without observations get a zero-valued row with null group
    keys, so they still count toward the PSU sample size.

    Returns
    -------
    tuple[SamplingDesign, Diagnostics]
        Design with ``psu`` as its cluster and the value and group columns
        added, and the zero-fill record.
    """
    group_by = list(group_by or ())
    items: list[diag.Diagnostic] = []
    if psu not in design.data.columns:
        raise DesignError(
            "PSU column not found in design data",
            field=psu,
            expected="column present",
            actual=sorted(design.data.columns),
        )
    psu_index = design.data.select(pl.col(psu)).with_row_index("__row")
    n_dupes = int(psu_index[psu].is_duplicated().sum())
    if n_dupes:
        raise DesignError(
            "Design must hold one row per PSU",
            field=psu,
            expected="unique PSU labels",
            actual="duplicated labels",
            n_rows=n_dupes,
        )

    records = records.with_columns(pl.col(psu).cast(design.data.schema[psu]))
    collapsed = collapse_to_psu(records, psu, values, group_by)

    unknown = collapsed.join(psu_index, on=psu, how="anti")
    if unknown.height:
        raise DesignError(
            "Observations reference PSUs absent from the design",
            field=psu,
            expected="every PSU present in the design",
            actual=unknown[psu].unique().to_list()[:5],
            n_rows=unknown.height,
        )

    matched = collapsed.join(psu_index, on=psu, how="inner")
    empty = psu_index.join(collapsed.select(psu).unique(), on=psu, how="anti")
    if empty.height:
        zero_rows = empty.with_columns(
            [pl.lit(0.0).alias(v) for v in values]
            + [pl.lit(None).cast(matched.schema[g]).alias(g) for g in group_by]
            + [pl.lit(0, dtype=pl.Int64).alias("n_obs")]
        ).select(matched.columns)
        matched = pl.concat([matched, zero_rows])
        diag.record(
            items,
            Severity.INFO,
            diag.ZERO_FILLED_PSUS,
            f"{empty.height} sampled PSU(s) without observations entered as zero",
            count=empty.height,
            field=psu,
        )

    combined = matched.sort(["__row", *group_by], nulls_last=True)
    positions = combined["__row"].cast(pl.Int64).to_numpy()
    aligned = design.subset(positions)

    added = combined.drop(["__row", psu])
    data = aligned.data.drop([c for c in added.columns if c in aligned.data.columns])
    data = data.hstack(added)
    cluster = design.cluster if design.cluster is not None else psu
    logger.debug(
        "Aligned %d PSU x group rows onto %d design PSUs", combined.height, design.n
    )
    return replace(aligned, data=data, cluster=cluster), Diagnostics(tuple(items))
