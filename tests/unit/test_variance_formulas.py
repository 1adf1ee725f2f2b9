"""
Tests for the stratified cluster linearization variance and its helpers.

The tests verify:
1. Exact variance of a total and a mean for hand-calculated data
2. Multi-stratum aggregation and the finite population correction
3. The lonely-PSU policies (adjust, average, certainty, fail)
4. Confidence intervals, z-scores and CV edge cases
"""

import numpy as np
import polars as pl
import pytest

from pycreel import DesignError
from pycreel.estimation.constants import Z_SCORE_90, Z_SCORE_95, Z_SCORE_99
from pycreel.estimation.variance import (
    calculate_confidence_interval,
    calculate_cv,
    calculate_design_effect,
    calculate_srs_variance,
    calculate_stratified_variance,
    linearized_scores,
    ratio_estimate,
    z_score,
)


def _score_frame(strata, psus, scores, fpc=None):
    return pl.DataFrame(
        {
            "__stratum": [str(s) for s in strata],
            "__psu": [f"{s}-{p}" for s, p in zip(strata, psus)],
            "__score": [float(v) for v in scores],
            "__fpc": fpc if fpc is not None else [None] * len(scores),
        },
        schema_overrides={"__fpc": pl.Float64},
    )


@pytest.fixture
def lonely_frame():
    """
    Stratum A: two PSUs with totals 1 and 3; stratum B: one PSU with total 10.

    - v_A = 2/1 * ((1-2)^2 + (3-2)^2) = 4
    - grand mean of PSU totals = 14/3, adjust adds (10 - 14/3)^2 = 256/9
    """
    return _score_frame(["A", "A", "B"], [1, 2, 1], [1.0, 3.0, 10.0])


class TestSingleStratumVariance:
    def test_exact_values_hand_calculation(self):
        # V = n/(n-1) * sum (t - tbar)^2 = 4/3 * 20
        frame = _score_frame([1] * 4, range(4), [2.0, 4.0, 6.0, 8.0])
        result = calculate_stratified_variance(frame)
        assert result["variance"] == pytest.approx(80.0 / 3.0)
        assert result["n_strata"] == 1
        assert result["n_psu"] == 4
        assert result["n_lonely"] == 0
        assert result["lonely_psu"] is None

    def test_homogeneous_values_zero_variance(self):
        frame = _score_frame([1] * 5, range(5), [3.0] * 5)
        assert calculate_stratified_variance(frame)["variance"] == 0.0

    def test_units_collapse_to_psu_totals(self):
        # Two PSUs with totals 3 and 7 built from several units each
        frame = _score_frame([1] * 5, [1, 1, 2, 2, 2], [1.0, 2.0, 3.0, 3.0, 1.0])
        result = calculate_stratified_variance(frame)
        assert result["n_psu"] == 2
        assert result["variance"] == pytest.approx(2.0 * (4.0 + 4.0))


class TestMultiStratumVariance:
    def test_two_strata_sum_correctly(self):
        frame = _score_frame(
            ["A"] * 3 + ["B"] * 2, [1, 2, 3, 1, 2], [1.0, 2.0, 3.0, 10.0, 14.0]
        )
        # v_A = 3/2 * 2 = 3, v_B = 2 * 8 = 16
        assert calculate_stratified_variance(frame)["variance"] == pytest.approx(19.0)

    def test_finite_population_correction(self):
        frame = _score_frame([1] * 4, range(4), [2.0, 4.0, 6.0, 8.0], fpc=[8.0] * 4)
        # (1 - 4/8) * 80/3
        assert calculate_stratified_variance(frame)["variance"] == pytest.approx(40.0 / 3.0)

    def test_census_stratum_has_zero_variance(self):
        frame = _score_frame([1] * 3, range(3), [1.0, 5.0, 9.0], fpc=[3.0] * 3)
        assert calculate_stratified_variance(frame)["variance"] == 0.0


class TestLonelyPSU:
    def test_certainty(self, lonely_frame):
        result = calculate_stratified_variance(lonely_frame, lonely_psu="certainty")
        assert result["variance"] == pytest.approx(4.0)
        assert result["n_lonely"] == 1
        assert result["lonely_psu"] == "certainty"

    def test_adjust(self, lonely_frame):
        result = calculate_stratified_variance(lonely_frame, lonely_psu="adjust")
        assert result["variance"] == pytest.approx(4.0 + 256.0 / 9.0)

    def test_average(self, lonely_frame):
        result = calculate_stratified_variance(lonely_frame, lonely_psu="average")
        assert result["variance"] == pytest.approx(8.0)

    def test_fail(self, lonely_frame):
        with pytest.raises(DesignError, match="single PSU"):
            calculate_stratified_variance(lonely_frame, lonely_psu="fail")

    def test_unknown_policy(self, lonely_frame):
        with pytest.raises(ValueError, match="lonely_psu"):
            calculate_stratified_variance(lonely_frame, lonely_psu="drop")


class TestAllStrataLonely:
    """
    Strata A and B each hold one PSU, totals 3 and 7.

    Grand mean of PSU totals = 5, so adjust gives (3-5)^2 + (7-5)^2 = 8.
    There is no multi-PSU stratum to average, so average applies adjust.
    """

    @pytest.fixture
    def singletons(self):
        return _score_frame(["A", "B"], [1, 1], [3.0, 7.0])

    @pytest.mark.parametrize(
        "policy, applied, expected",
        [
            ("adjust", "adjust", 8.0),
            ("average", "adjust", 8.0),
            ("certainty", "certainty", 0.0),
        ],
    )
    def test_policies(self, singletons, policy, applied, expected):
        result = calculate_stratified_variance(singletons, lonely_psu=policy)
        assert result["variance"] == pytest.approx(expected)
        assert result["lonely_psu"] == applied
        assert result["n_lonely"] == 2

    def test_fail(self, singletons):
        with pytest.raises(DesignError, match="single PSU"):
            calculate_stratified_variance(singletons, lonely_psu="fail")


class TestVarianceNonNegativity:
    @pytest.mark.parametrize("seed", range(10))
    def test_variance_non_negative_random_data(self, seed):
        rng = np.random.default_rng(seed)
        n = int(rng.integers(2, 20))
        strata = rng.integers(0, 3, n)
        frame = _score_frame(strata, range(n), rng.normal(0, 5, n))
        for policy in ("adjust", "average", "certainty"):
            assert calculate_stratified_variance(frame, lonely_psu=policy)["variance"] >= 0


class TestScores:
    def test_total_scores_are_the_response(self):
        a = np.array([1.0, 2.0])
        np.testing.assert_array_equal(linearized_scores(np.ones(2), a, None, 3.0), a)

    def test_ratio_scores_sum_to_zero(self):
        w = np.array([1.0, 2.0, 3.0])
        a = np.array([2.0, 5.0, 1.0])
        b = np.array([1.0, 2.0, 4.0])
        theta = ratio_estimate(w, a, b)
        assert theta == pytest.approx(15.0 / 17.0)
        u = linearized_scores(w, a, b, theta)
        assert np.dot(w, u) == pytest.approx(0.0, abs=1e-12)

    def test_zero_denominator_is_nan(self):
        assert np.isnan(ratio_estimate(np.ones(2), np.ones(2), np.zeros(2)))


class TestDesignEffect:
    def test_srs_variance_of_equal_weight_total(self):
        y = np.arange(1.0, 11.0)
        v = calculate_srs_variance(np.ones(10), y, np.ones(10, dtype=bool))
        assert v == pytest.approx(np.var(y, ddof=1) * 100 / 10)

    def test_srs_variance_undefined_for_one_unit(self):
        assert np.isnan(calculate_srs_variance(np.ones(3), np.ones(3), [True, False, False]))

    def test_design_effect_nan_when_undefined(self):
        assert np.isnan(calculate_design_effect(1.0, 0.0))
        assert np.isnan(calculate_design_effect(1.0, float("nan")))
        assert calculate_design_effect(2.0, 4.0) == 0.5


class TestConfidenceAndCV:
    @pytest.mark.parametrize(
        "level, expected", [(0.90, Z_SCORE_90), (0.95, Z_SCORE_95), (0.99, Z_SCORE_99)]
    )
    def test_common_levels_use_constants(self, level, expected):
        assert z_score(level) == expected

    def test_other_levels_use_normal_quantile(self):
        assert z_score(0.80) == pytest.approx(1.2815515655446004)

    @pytest.mark.parametrize("level", [0.0, 1.0, 1.5, -0.2])
    def test_invalid_level(self, level):
        with pytest.raises(ValueError, match="conf_level"):
            z_score(level)

    def test_confidence_interval(self):
        low, high = calculate_confidence_interval(100.0, 10.0, 0.95)
        assert low == pytest.approx(100.0 - 19.59963984540054)
        assert high == pytest.approx(100.0 + 19.59963984540054)

    def test_cv(self):
        assert calculate_cv(200.0, 10.0) == pytest.approx(5.0)
        assert calculate_cv(-200.0, 10.0) == pytest.approx(5.0)
        assert np.isnan(calculate_cv(0.0, 1.0))
