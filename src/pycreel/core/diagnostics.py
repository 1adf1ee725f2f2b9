"""
Diagnostics payload attached to every estimation result.

Anything that changes the statistical meaning of a result (units excluded,
probabilities clamped, a fallback variance method, a lonely-PSU adjustment)
is recorded here as a ``Diagnostic``. Warnings accumulate; fatal entries
mark a group whose estimate could not be produced.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional

from .exceptions import DataQualityWarning

logger = logging.getLogger(__name__)

# Diagnostic codes
EXCLUDED_UNITS = "excluded_units"
CLAMPED_PROBABILITIES = "clamped_probabilities"
NONFINITE_RATIOS = "nonfinite_ratios"
METHOD_FALLBACK = "method_fallback"
LONELY_PSU = "lonely_psu"
UNSTABLE_GROUP = "unstable_group"
UNMATCHED_GROUPS = "unmatched_groups"
MISSING_CATEGORIES = "missing_categories"
CLAMPED_COMPONENT = "clamped_component"
DEFF_HEURISTIC = "deff_heuristic"
DEFF_UNAVAILABLE = "deff_unavailable"
ESTIMAND_ERROR = "estimand_error"
FPC_IGNORED = "fpc_ignored"
ZERO_FILLED_PSUS = "zero_filled_psus"
KEYLESS_UNITS = "keyless_units"
PERIOD_APPROXIMATED = "period_approximated"
TRUNCATED_TRIPS = "truncated_trips"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    FATAL = "fatal"


@dataclass(frozen=True)
class Diagnostic:
    """A single finding attached to a result row."""

    severity: Severity
    code: str
    message: str
    count: Optional[int] = None
    field: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "severity": self.severity.value,
            "code": self.code,
            "message": self.message,
            "count": self.count,
            "field": self.field,
        }


@dataclass(frozen=True)
class Diagnostics:
    """Immutable, ordered collection of ``Diagnostic`` entries."""

    items: tuple[Diagnostic, ...] = ()

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __bool__(self) -> bool:
        return bool(self.items)

    @property
    def codes(self) -> list[str]:
        return [d.code for d in self.items]

    @property
    def warnings(self) -> list[Diagnostic]:
        return [d for d in self.items if d.severity == Severity.WARNING]

    @property
    def is_fatal(self) -> bool:
        return any(d.severity == Severity.FATAL for d in self.items)

    def has(self, code: str) -> bool:
        return any(d.code == code for d in self.items)

    def get(self, code: str) -> Optional[Diagnostic]:
        for d in self.items:
            if d.code == code:
                return d
        return None

    def count(self, code: str) -> int:
        """Total affected-unit count recorded under ``code``."""
        return sum(d.count or 0 for d in self.items if d.code == code)

    def merge(self, *others: "Diagnostics") -> "Diagnostics":
        items = list(self.items)
        for other in others:
            for d in other.items:
                if d not in items:
                    items.append(d)
        return Diagnostics(tuple(items))

    def to_dicts(self) -> list[dict]:
        return [d.to_dict() for d in self.items]


def record(
    items: list[Diagnostic],
    severity: Severity,
    code: str,
    message: str,
    count: Optional[int] = None,
    field: Optional[str] = None,
) -> Diagnostic:
    """Append a diagnostic to ``items`` and log it at a matching level."""
    diag = Diagnostic(severity, code, message, count, field)
    items.append(diag)
    if severity == Severity.INFO:
        logger.debug("%s: %s", code, message)
    else:
        logger.warning("%s: %s", code, message)
    return diag


def report_data_quality(
    items: list[Diagnostic],
    code: str,
    message: str,
    count: Optional[int] = None,
    field: Optional[str] = None,
    stacklevel: int = 3,
) -> Diagnostic:
    """Record a warning diagnostic and emit a ``DataQualityWarning``."""
    warnings.warn(message, DataQualityWarning, stacklevel=stacklevel)
    return record(items, Severity.WARNING, code, message, count, field)
