"""
Design-based estimation for creel surveys.

Effort, CPUE and harvest estimators, the variance engine they share, and
the decomposition and design-quality diagnostics built on it.
"""

from .aggregation import aggregate_categories, aggregate_columns
from .constants import (
    BOOTSTRAP,
    JACKKNIFE,
    LINEARIZATION,
    REPLICATE,
    VARIANCE_METHODS,
)
from .decomposition import VarianceComponent, VarianceComponents, VarianceDecomposer
from .design_diagnostics import DesignReport, diagnose
from .effort import EffortMethod, effort_records, estimate_effort
from .cpue import estimate_cpue
from .engine import VarianceEngine, VarianceResult, results_to_frame
from .estimand import Estimand, EstimandKind, prepare_units
from .harvest import combine
from .horvitz_thompson import align_to_psu_design, collapse_to_psu, ht_contributions
from .replication import bootstrap_weights, jackknife_weights

__all__ = [
    # Variance methods
    "BOOTSTRAP",
    "JACKKNIFE",
    "LINEARIZATION",
    "REPLICATE",
    "VARIANCE_METHODS",
    # Estimands and the engine
    "Estimand",
    "EstimandKind",
    "VarianceEngine",
    "VarianceResult",
    "prepare_units",
    "results_to_frame",
    # Estimators
    "EffortMethod",
    "effort_records",
    "estimate_effort",
    "estimate_cpue",
    "combine",
    "ht_contributions",
    "collapse_to_psu",
    "align_to_psu_design",
    "aggregate_categories",
    "aggregate_columns",
    # Replication
    "bootstrap_weights",
    "jackknife_weights",
    # Diagnostics
    "VarianceComponent",
    "VarianceComponents",
    "VarianceDecomposer",
    "DesignReport",
    "diagnose",
]
