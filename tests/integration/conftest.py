"""
Configuration for integration tests.

Integration tests run complete survey workflows across modules: counts to
effort, interviews to CPUE, and the two combined into harvest.
"""

from pathlib import Path

import pytest


def pytest_collection_modifyitems(items):
    """Mark tests in this directory as integration tests."""
    integration_dir = Path(__file__).parent
    for item in items:
        if integration_dir in item.path.parents:
            item.add_marker(pytest.mark.integration)
