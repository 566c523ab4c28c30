"""
Pytest configuration and fixtures for vuload.

This module provides shared fixtures and the Hypothesis profiles used by
every test module.
"""

import httpx
import pytest
from hypothesis import settings, Verbosity

from vuload.framework.metrics import MetricSink
from vuload.framework.models import BUILTIN_METRICS

# Configure Hypothesis profiles
settings.register_profile(
    "default",
    max_examples=100,
    verbosity=Verbosity.normal,
    deadline=None,
)

settings.register_profile(
    "ci",
    max_examples=200,
    verbosity=Verbosity.verbose,
    deadline=None,
)

settings.register_profile(
    "dev",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)


def pytest_configure(config):
    """Configure pytest with custom settings."""
    # Load the default hypothesis profile
    settings.load_profile("default")


@pytest.fixture
def sink():
    """A frozen sink with the built-in metrics declared."""
    sink = MetricSink()
    sink.declare_all(BUILTIN_METRICS)
    sink.freeze()
    return sink


@pytest.fixture
def ok_transport():
    """Transport answering every request with a JSON array."""
    return httpx.MockTransport(lambda request: httpx.Response(200, json=["a", "b"]))

