"""
Pytest Configuration

Shared pytest behaviour for the suite: a deterministic Hypothesis profile,
environment isolation for ``ARCHIVESYNC_*`` overrides, and the test strata
markers used to select subsets (``pytest -m property``).
"""

from __future__ import annotations

import os
import random

import pytest
from hypothesis import HealthCheck, settings


def _configure_determinism() -> None:
    os.environ.setdefault("PYTHONHASHSEED", "42")
    random.seed(42)
    settings.register_profile(
        "test",
        max_examples=100,
        deadline=None,
        derandomize=True,
        suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
    )
    settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "test"))


_configure_determinism()


@pytest.fixture(autouse=True)
def _isolate_archivesync_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("ARCHIVESYNC_"):
            monkeypatch.delenv(name, raising=False)


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "unit: mark test as pure unit test (no I/O beyond tmp_path, no remote client).",
    )
    config.addinivalue_line(
        "markers",
        "component: mark test as component-level (orchestrator against the fake node, DuckDB, CLI).",
    )
    config.addinivalue_line(
        "markers",
        "property: mark test as property-based (Hypothesis).",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    for item in items:
        function = getattr(item, "function", None)
        if getattr(function, "is_hypothesis_test", False):
            item.add_marker(pytest.mark.property)
