"""
Exception and warning types for pycreel.

Fatal errors derive from ``CreelError`` and carry the offending field, the
expected constraint, the actual value and, where it applies, the number of
rows affected. Non-fatal data problems are reported as ``DataQualityWarning``
and always also recorded in the diagnostics payload of the result they
affect.
"""

from __future__ import annotations

from typing import Any, Optional


class CreelError(Exception):
    """Base class for all fatal pycreel errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        expected: Optional[str] = None,
        actual: Any = None,
        n_rows: Optional[int] = None,
    ):
        self.field = field
        self.expected = expected
        self.actual = actual
        self.n_rows = n_rows
        super().__init__(self._format(message))

    def _format(self, message: str) -> str:
        details = []
        if self.field is not None:
            details.append(f"field={self.field!r}")
        if self.expected is not None:
            details.append(f"expected {self.expected}")
        if self.actual is not None:
            details.append(f"got {self.actual!r}")
        if self.n_rows is not None:
            details.append(f"rows affected={self.n_rows}")
        if not details:
            return message
        return f"{message} ({', '.join(details)})"


class DesignError(CreelError, ValueError):
    """Structural invariant violation in a SamplingDesign.

    Raised for non-positive or non-finite weights, a replicate matrix whose
    row count does not match the design, or a cluster label that appears
    under more than one stratum.
    """


class EstimandError(CreelError, ValueError):
    """Required response or grouping column missing or entirely non-finite."""


class MethodUnavailable(CreelError):
    """A variance strategy cannot run on the given design.

    The variance engine catches this and falls back to linearization,
    recording the fallback in the result's ``method`` and diagnostics.
    """

    def __init__(self, method: str, reason: str, **kwargs):
        self.method = method
        self.reason = reason
        super().__init__(f"Variance method {method!r} unavailable: {reason}", **kwargs)


class UnsupportedFeature(CreelError, NotImplementedError):
    """A requested option is declared but not implemented."""


class DataQualityWarning(UserWarning):
    """Non-fatal data issue: clamped probabilities, excluded units, unmatched groups."""
