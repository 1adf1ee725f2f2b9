"""
Tests for estimand construction and per-unit preparation.
"""

import numpy as np
import polars as pl
import pytest

from pycreel import DataQualityWarning, Estimand, EstimandError, EstimandKind, SamplingDesign
from pycreel.core import diagnostics as diag
from pycreel.estimation.estimand import prepare_units


def _design(**columns):
    data = {"w": [1.0, 2.0, 1.0, 2.0]}
    data.update(columns)
    return SamplingDesign(pl.DataFrame(data), weight="w")


class TestEstimand:
    def test_constructors(self):
        assert Estimand.total("catch").kind == EstimandKind.TOTAL
        assert Estimand.mean("catch").kind == EstimandKind.MEAN
        ratio = Estimand.ratio("catch", "hours", mode="mean_of_ratios", group_by="section")
        assert ratio.kind == EstimandKind.MEAN_OF_RATIOS
        assert ratio.group_by == ("section",)
        assert ratio.label == "catch/hours"

    def test_kind_accepts_strings(self):
        assert Estimand("ratio_of_means", "c", "h").kind is EstimandKind.RATIO_OF_MEANS

    def test_unknown_kind(self):
        with pytest.raises(ValueError, match="Unknown estimand kind"):
            Estimand("median", "catch")

    def test_ratio_requires_denominator(self):
        with pytest.raises(ValueError, match="denominator"):
            Estimand(EstimandKind.RATIO_OF_MEANS, "catch")

    def test_total_rejects_denominator(self):
        with pytest.raises(ValueError, match="does not take"):
            Estimand(EstimandKind.TOTAL, "catch", "hours")

    def test_ratio_mode_must_be_a_ratio(self):
        with pytest.raises(ValueError, match="Ratio mode"):
            Estimand.ratio("catch", "hours", mode="total")

    def test_with_group_by(self):
        est = Estimand.total("catch", name="Catch").with_group_by(["a", "b"])
        assert est.group_by == ("a", "b")
        assert est.label == "Catch"
        assert est.columns == ["catch", "a", "b"]

    def test_missing_column(self):
        design = _design(catch=[1.0, 2.0, 3.0, 4.0])
        with pytest.raises(EstimandError) as exc:
            prepare_units(design, Estimand.total("kept"))
        assert exc.value.field == "kept"

    def test_non_numeric_response(self):
        design = _design(catch=["a", "b", "c", "d"])
        with pytest.raises(EstimandError, match="numeric"):
            prepare_units(design, Estimand.total("catch"))


class TestPrepareUnits:
    def test_total_keeps_all_units(self):
        prepared = prepare_units(_design(catch=[1.0, 2.0, 3.0, 4.0]), Estimand.total("catch"))
        assert prepared.n_excluded == 0
        assert prepared.b is None
        np.testing.assert_array_equal(prepared.a, [1.0, 2.0, 3.0, 4.0])
        assert not prepared.diagnostics

    def test_missing_response_excluded_with_count(self):
        design = _design(catch=[1.0, None, float("nan"), 4.0])
        with pytest.warns(DataQualityWarning, match="2 unit"):
            prepared = prepare_units(design, Estimand.total("catch"))
        assert prepared.n_excluded == 2
        assert prepared.design.n == 2
        assert prepared.diagnostics.count(diag.EXCLUDED_UNITS) == 2
        np.testing.assert_array_equal(prepared.a, [1.0, 4.0])

    def test_missing_weight_excluded(self):
        design = SamplingDesign(
            pl.DataFrame({"w": [1.0, None, 1.0], "catch": [1.0, 2.0, 3.0]}), weight="w"
        )
        with pytest.warns(DataQualityWarning, match="no weight"):
            prepared = prepare_units(design, Estimand.total("catch"))
        assert prepared.n_excluded == 1
        assert prepared.diagnostics.get(diag.EXCLUDED_UNITS).field == "w"

    def test_mean_uses_unit_denominator(self):
        prepared = prepare_units(_design(catch=[1.0, 2.0, 3.0, 4.0]), Estimand.mean("catch"))
        np.testing.assert_array_equal(prepared.b, np.ones(4))

    def test_ratio_of_means_excludes_non_positive_denominator(self):
        design = _design(catch=[1.0, 2.0, 3.0, 4.0], hours=[0.0, -2.0, 1.0, 2.0])
        with pytest.warns(DataQualityWarning, match="non-positive 'hours'"):
            prepared = prepare_units(design, Estimand.ratio("catch", "hours"))
        assert prepared.n_excluded == 2
        assert prepared.diagnostics.count(diag.EXCLUDED_UNITS) == 2
        assert prepared.diagnostics.get(diag.EXCLUDED_UNITS).field == "hours"
        np.testing.assert_array_equal(prepared.a, [3.0, 4.0])
        np.testing.assert_array_equal(prepared.b, [1.0, 2.0])

    def test_ratio_of_means_excludes_missing_denominator(self):
        design = _design(catch=[1.0, 2.0, 3.0, 4.0], hours=[2.0, None, 1.0, 2.0])
        with pytest.warns(DataQualityWarning):
            prepared = prepare_units(design, Estimand.ratio("catch", "hours"))
        assert prepared.n_excluded == 1
        assert prepared.diagnostics.has(diag.EXCLUDED_UNITS)

    def test_mean_of_ratios_excludes_non_positive_denominator(self):
        design = _design(catch=[1.0, 2.0, 3.0, 4.0], hours=[2.0, 0.0, -1.0, 4.0])
        with pytest.warns(DataQualityWarning, match="non-positive"):
            prepared = prepare_units(
                design, Estimand.ratio("catch", "hours", mode="mean_of_ratios")
            )
        assert prepared.diagnostics.count(diag.NONFINITE_RATIOS) == 2
        np.testing.assert_array_equal(prepared.a, [0.5, 1.0])
        np.testing.assert_array_equal(prepared.b, [1.0, 1.0])
