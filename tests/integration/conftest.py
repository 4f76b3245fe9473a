"""
Configuration for integration tests.

Integration tests run the full pipeline against real external samplers
and worker processes. They are slower than unit tests and skip when an
optional sampler backend is not installed.
"""

from pathlib import Path

import pytest


def pytest_collection_modifyitems(items):
    """Mark tests in this directory as integration tests."""
    integration_dir = Path(__file__).parent
    for item in items:
        if integration_dir in item.path.parents:
            item.add_marker(pytest.mark.integration)
            item.add_marker(pytest.mark.slow)
