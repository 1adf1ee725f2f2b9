"""
Tests for the delta-method harvest product.

For E = 100 (SE 10) and C = 0.5 (SE 0.05):
    Var(H) = E^2 Var(C) + C^2 Var(E) = 10000 * 0.0025 + 0.25 * 100 = 50
"""

import math
from dataclasses import replace

import pytest

from pycreel import (
    DataQualityWarning,
    UnsupportedFeature,
    VarianceResult,
    combine,
)
from pycreel.core import diagnostics as diag


def _result(estimate, se, group=None, deff=1.0, n=20, estimator="total"):
    return VarianceResult(
        estimate=estimate,
        se=se,
        variance=se**2,
        ci_low=estimate - 1.96 * se,
        ci_high=estimate + 1.96 * se,
        deff=deff,
        method="linearization",
        requested_method="linearization",
        n_used=n,
        estimator=estimator,
        group=group or {},
    )


@pytest.fixture
def effort():
    return _result(100.0, 10.0, n=12)


@pytest.fixture
def cpue():
    return _result(0.5, 0.05, n=40, estimator="ratio_of_means")


class TestUngrouped:
    def test_independent_product(self, effort, cpue):
        harvest = combine(effort, cpue)
        assert harvest.estimate == pytest.approx(50.0)
        assert harvest.variance == pytest.approx(50.0)
        assert harvest.se == pytest.approx(math.sqrt(50.0))
        assert harvest.method == "product:independent"
        assert harvest.n_used == 12

    def test_none_and_zero_correlation_agree(self, effort, cpue):
        a = combine(effort, cpue, correlation=None)
        b = combine(effort, cpue, correlation=0.0)
        assert a.estimate == b.estimate
        assert a.se == b.se
        assert a.method == b.method == "product:independent"

    def test_correlated_product(self, effort, cpue):
        harvest = combine(effort, cpue, correlation=0.5)
        # covariance = 0.5 * 10 * 0.05 = 0.25; extra term 2 * 100 * 0.5 * 0.25 = 25
        assert harvest.variance == pytest.approx(75.0)
        assert harvest.method == "product:correlated"
        assert harvest.details["covariance"] == pytest.approx(0.25)
        assert harvest.details["correlation_used"] == 0.5

    def test_negative_correlation_reduces_variance(self, effort, cpue):
        assert combine(effort, cpue, correlation=-0.5).variance == pytest.approx(25.0)

    def test_details(self, effort, cpue):
        details = combine(effort, cpue).details
        assert details["effort_estimate"] == 100.0
        assert details["cpue_estimate"] == 0.5
        assert details["var_effort"] == pytest.approx(100.0)
        assert details["var_cpue"] == pytest.approx(0.0025)

    def test_deff_geometric_mean(self):
        harvest = combine(_result(100.0, 10.0, deff=4.0), _result(0.5, 0.05, deff=1.0))
        assert harvest.deff == pytest.approx(2.0)
        assert harvest.diagnostics.get(diag.DEFF_HEURISTIC) is not None

    def test_deff_nan_when_input_undefined(self):
        harvest = combine(_result(100.0, 10.0, deff=float("nan")), _result(0.5, 0.05))
        assert math.isnan(harvest.deff)
        assert not harvest.diagnostics.has(diag.DEFF_HEURISTIC)

    def test_conf_level_override(self, effort, cpue):
        harvest = combine(effort, cpue, conf_level=0.99)
        assert harvest.conf_level == 0.99
        assert harvest.ci_high - harvest.estimate == pytest.approx(
            2.5758293035489004 * math.sqrt(50.0)
        )

    def test_several_results_need_by(self, effort, cpue):
        with pytest.raises(ValueError, match="exactly one"):
            combine([effort, effort], cpue)


class TestCorrelationValidation:
    def test_auto_unsupported(self, effort, cpue):
        with pytest.raises(UnsupportedFeature, match="auto"):
            combine(effort, cpue, correlation="auto")

    def test_auto_is_not_implemented(self, effort, cpue):
        with pytest.raises(NotImplementedError):
            combine(effort, cpue, correlation="auto")

    @pytest.mark.parametrize("bad", [1.5, -1.01])
    def test_out_of_range(self, effort, cpue, bad):
        with pytest.raises(ValueError, match="between -1 and 1"):
            combine(effort, cpue, correlation=bad)

    @pytest.mark.parametrize("bad", ["high", True, [0.1]])
    def test_invalid_type(self, effort, cpue, bad):
        with pytest.raises(ValueError):
            combine(effort, cpue, correlation=bad)


class TestGrouped:
    def test_matched_groups_only(self):
        efforts = [_result(100.0, 10.0, {"section": "A"}), _result(200.0, 20.0, {"section": "B"})]
        cpues = [_result(0.5, 0.05, {"section": "B"}), _result(0.2, 0.02, {"section": "C"})]
        with pytest.warns(DataQualityWarning, match="Not all groups matched"):
            harvest = combine(efforts, cpues, by=["section"])
        assert len(harvest) == 1
        assert harvest[0].group == {"section": "B"}
        assert harvest[0].estimate == pytest.approx(100.0)
        unmatched = harvest[0].diagnostics.get(diag.UNMATCHED_GROUPS)
        assert unmatched.count == 2

    def test_no_matching_groups(self):
        efforts = [_result(100.0, 10.0, {"section": "A"})]
        cpues = [_result(0.5, 0.05, {"section": "B"})]
        with pytest.raises(ValueError, match="No matching groups"):
            combine(efforts, cpues, by="section")

    def test_extra_cpue_keys_kept(self):
        efforts = [_result(100.0, 10.0, {"section": "A"})]
        cpues = [
            _result(0.5, 0.05, {"section": "A", "species": "walleye"}),
            _result(0.1, 0.01, {"section": "A", "species": "perch"}),
        ]
        harvest = combine(efforts, cpues, by=["section"])
        assert [h.group for h in harvest] == [
            {"section": "A", "species": "walleye"},
            {"section": "A", "species": "perch"},
        ]
        assert [h.estimate for h in harvest] == pytest.approx([50.0, 10.0])
        assert not harvest[0].diagnostics.has(diag.UNMATCHED_GROUPS)

    def test_missing_key_on_result(self):
        with pytest.raises(ValueError, match="missing grouping key"):
            combine([_result(1.0, 0.1)], [_result(1.0, 0.1, {"section": "A"})], by=["section"])

    def test_duplicate_effort_groups(self):
        efforts = [_result(1.0, 0.1, {"section": "A"}), _result(2.0, 0.1, {"section": "A"})]
        with pytest.raises(ValueError, match="more than one row"):
            combine(efforts, [_result(1.0, 0.1, {"section": "A"})], by=["section"])

    def test_unstable_inputs_propagate(self):
        effort = _result(100.0, 10.0, {"section": "A"})
        cpue = replace(_result(0.5, 0.05, {"section": "A"}), unstable=True)
        assert combine([effort], [cpue], by=["section"])[0].unstable
