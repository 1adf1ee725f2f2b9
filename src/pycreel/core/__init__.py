"""
Core types: sampling designs, diagnostics and the error taxonomy.
"""

from .design import ReplicateWeights, SamplingDesign
from .diagnostics import Diagnostic, Diagnostics, Severity
from .exceptions import (
    CreelError,
    DataQualityWarning,
    DesignError,
    EstimandError,
    MethodUnavailable,
    UnsupportedFeature,
)

__all__ = [
    "CreelError",
    "DataQualityWarning",
    "DesignError",
    "Diagnostic",
    "Diagnostics",
    "EstimandError",
    "MethodUnavailable",
    "ReplicateWeights",
    "SamplingDesign",
    "Severity",
    "UnsupportedFeature",
]
