"""
Tests for the structural design audit.
"""

import numpy as np
import polars as pl
import pytest

from pycreel import SamplingDesign, bootstrap_weights, diagnose
from pycreel.core.diagnostics import Severity
from pycreel.estimation import design_diagnostics as dd


def _design(n=40, weights=None, strata=None, cluster=None, **extra):
    data = {"w": weights if weights is not None else [1.0] * n}
    if strata is not None:
        data["stratum"] = strata
    if cluster is not None:
        data["psu"] = cluster
    data.update(extra)
    return SamplingDesign(
        pl.DataFrame(data),
        weight="w",
        strata="stratum" if strata is not None else None,
        cluster="psu" if cluster is not None else None,
        fpc="N" if "N" in extra else None,
    )


class TestFindings:
    def test_two_singleton_strata(self):
        design = _design(
            n=6,
            strata=["a", "a", "b", "b", "c", "d"],
            cluster=[1, 2, 3, 4, 5, 6],
        )
        report = diagnose(design)
        finding = report.get(dd.SINGLETON_STRATA)
        assert finding.count == 2
        assert finding.severity == Severity.WARNING
        assert any("lonely_psu" in r for r in report.recommendations)
        assert not report.ok

    def test_singleton_clusters(self):
        report = diagnose(_design(n=4, cluster=[1, 1, 2, 3]))
        assert report.get(dd.SINGLETON_CLUSTERS).count == 2

    def test_extreme_weights(self):
        weights = [1.0] * 39 + [100.0]
        report = diagnose(_design(weights=weights))
        assert report.has(dd.WEIGHT_RATIO)
        assert report.get(dd.EXTREME_WEIGHTS).count == 1
        assert report.has(dd.WEIGHT_CV)

    def test_uniform_weights_clean(self):
        report = diagnose(_design(n=40))
        for code in (dd.WEIGHT_CV, dd.WEIGHT_RATIO, dd.EXTREME_WEIGHTS, dd.SMALL_SAMPLE):
            assert not report.has(code)

    def test_small_sample_and_strata(self):
        report = diagnose(_design(n=6, strata=["a"] * 3 + ["b"] * 3))
        assert report.get(dd.SMALL_SAMPLE).count == 6
        assert report.get(dd.SMALL_STRATA).count == 2

    def test_small_clusters(self):
        report = diagnose(_design(n=40, cluster=[i // 2 for i in range(40)]))
        assert report.get(dd.SMALL_CLUSTERS).count == 20

    def test_missing_fpc_is_informational(self):
        report = diagnose(_design(n=40))
        assert report.get(dd.MISSING_FPC).severity == Severity.INFO
        assert report.ok

    def test_fpc_present(self):
        report = diagnose(_design(n=40, N=[100] * 40))
        assert not report.has(dd.MISSING_FPC)

    def test_strata_imbalance(self):
        report = diagnose(_design(n=40, strata=["a"] * 30 + ["b"] * 10))
        assert report.has(dd.STRATA_IMBALANCE)

    def test_balanced_strata(self):
        report = diagnose(_design(n=40, strata=["a"] * 20 + ["b"] * 20))
        assert not report.has(dd.STRATA_IMBALANCE)

    def test_recommendations_unique(self):
        report = diagnose(_design(n=6, strata=["a", "a", "b", "b", "c", "d"]))
        assert len(report.recommendations) == len(set(report.recommendations))


class TestRobustness:
    def test_failed_check_is_reported(self, monkeypatch):
        def broken(design, items, recs):
            raise RuntimeError("boom")

        monkeypatch.setattr(dd, "_check_weights", broken)
        report = diagnose(_design(n=40))
        failed = report.get(dd.CHECK_FAILED)
        assert "boom" in failed.message
        assert report.has(dd.MISSING_FPC)

    def test_null_weights_tolerated(self):
        report = diagnose(_design(n=4, weights=[1.0, None, 2.0, 1.0]))
        assert report.summary["n_missing_weights"] == 1


class TestSummary:
    def test_summary_fields(self, interview_design):
        summary = diagnose(interview_design).summary
        assert summary["n"] == 18
        assert summary["n_strata"] == 2
        assert summary["n_psu"] == 6
        assert summary["n_clusters"] == 6
        assert summary["cluster_size"] == {"min": 3, "max": 3, "mean": 3.0}
        assert summary["stratum_size"]["max"] == 9
        assert summary["has_fpc"] is False
        assert summary["weights"]["sum"] == pytest.approx(9 * 200 / 3 + 9 * 80 / 3)

    def test_replicate_info(self, ten_unit_design):
        design = ten_unit_design.with_replicate_weights(
            bootstrap_weights(ten_unit_design, n_replicates=10, seed=1)
        )
        info = diagnose(design).summary["replicates"]
        assert info == {"type": "bootstrap", "n_replicates": 10, "scale": pytest.approx(1 / 9)}

    def test_to_dict(self, ten_unit_design):
        d = diagnose(ten_unit_design).to_dict()
        assert set(d) == {"warnings", "recommendations", "summary"}
        assert all(isinstance(w, dict) for w in d["warnings"])
        assert np.isfinite(d["summary"]["weights"]["cv"])
