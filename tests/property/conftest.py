"""
Configuration for property-based tests.

Property tests use Hypothesis to generate designs and responses and check
invariants of the estimators: non-negative variance, invariance to row
order, and additivity of domain and category totals.
"""

from pathlib import Path

import pytest
from hypothesis import HealthCheck, settings

settings.register_profile(
    "pycreel",
    max_examples=40,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)
settings.load_profile("pycreel")


def pytest_collection_modifyitems(items):
    """Mark tests in this directory as property tests."""
    property_dir = Path(__file__).parent
    for item in items:
        if property_dir in item.path.parents:
            item.add_marker(pytest.mark.property)
