"""
pycreel: design-based estimation of fishing effort, catch rates and harvest
from creel surveys, with variance propagated through every derived quantity.
"""

import logging

from .core import (
    CreelError,
    DataQualityWarning,
    DesignError,
    Diagnostic,
    Diagnostics,
    EstimandError,
    MethodUnavailable,
    ReplicateWeights,
    SamplingDesign,
    Severity,
    UnsupportedFeature,
)
from .display import display_components, display_diagnostics, display_results
from .estimation import (
    DesignReport,
    EffortMethod,
    Estimand,
    EstimandKind,
    VarianceComponents,
    VarianceDecomposer,
    VarianceEngine,
    VarianceResult,
    aggregate_categories,
    aggregate_columns,
    bootstrap_weights,
    combine,
    diagnose,
    estimate_cpue,
    estimate_effort,
    jackknife_weights,
    results_to_frame,
)

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "__version__",
    # Design
    "SamplingDesign",
    "ReplicateWeights",
    "bootstrap_weights",
    "jackknife_weights",
    # Estimation
    "Estimand",
    "EstimandKind",
    "VarianceEngine",
    "VarianceResult",
    "results_to_frame",
    "EffortMethod",
    "estimate_effort",
    "estimate_cpue",
    "aggregate_categories",
    "aggregate_columns",
    "combine",
    # Diagnostics
    "VarianceDecomposer",
    "VarianceComponents",
    "DesignReport",
    "diagnose",
    "Diagnostic",
    "Diagnostics",
    "Severity",
    # Display
    "display_results",
    "display_components",
    "display_diagnostics",
    # Errors
    "CreelError",
    "DesignError",
    "EstimandError",
    "MethodUnavailable",
    "UnsupportedFeature",
    "DataQualityWarning",
]
