"""
Shared pytest fixtures for the dbcloner tests.

This module provides:
- Environment fixtures (make_environment, source_env, target_env)
- Backend fixtures (source_backend, target_backend, backend_factory)
- Settings and orchestrator fixtures with background work disabled
- SQLite fixtures (sqlite_url)
- OpenTelemetry metrics fixtures (metric_reader)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from dbcloner.backends.in_memory import InMemoryBackend
from dbcloner.backends.interface import DatabaseBackend
from dbcloner.config import ClonerSettings
from dbcloner.credentials import DatabaseCredentials, Environment, EnvironmentRole
from dbcloner.orchestrator import ClonerOrchestrator

# ============================================================================
# Optional dependency checks
# ============================================================================

OTEL_METRICS_AVAILABLE = False
try:
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import InMemoryMetricReader

    OTEL_METRICS_AVAILABLE = True
except ImportError:
    MeterProvider = None  # type: ignore[assignment, misc]
    InMemoryMetricReader = None  # type: ignore[assignment, misc]


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line("markers", "sqlite: marks tests that require SQLite (aiosqlite)")


# ============================================================================
# Environments
# ============================================================================


@pytest.fixture
def make_environment() -> Callable[..., Environment]:
    """
    Factory for environments with placeholder credentials.

    Example:
        def test_something(make_environment):
            env = make_environment("staging", role=EnvironmentRole.TARGET)
    """

    def _make(
        name: str,
        *,
        role: EnvironmentRole = EnvironmentRole.SOURCE,
        database_url: str = "sqlite+aiosqlite:///:memory:",
    ) -> Environment:
        return Environment(
            name=name,
            role=role,
            credentials=DatabaseCredentials(database_url=database_url),
        )

    return _make


@pytest.fixture
def source_env(make_environment: Callable[..., Environment]) -> Environment:
    return make_environment("development")


@pytest.fixture
def target_env(make_environment: Callable[..., Environment]) -> Environment:
    return make_environment("staging", role=EnvironmentRole.TARGET)


# ============================================================================
# Backends
# ============================================================================


@pytest.fixture
def source_backend() -> InMemoryBackend:
    """Source with two tables where B references A."""
    return InMemoryBackend(
        {
            "A": [{"id": i, "name": f"a{i}"} for i in range(1, 6)],
            "B": [{"id": i, "a_id": (i % 5) + 1} for i in range(1, 4)],
        },
        name="source",
        foreign_keys={"B": {"A"}},
    )


@pytest.fixture
def target_backend() -> InMemoryBackend:
    """Empty target with the same tables."""
    return InMemoryBackend({"A": [], "B": []}, name="target", primary_keys={"A": "id", "B": "id"})


@pytest.fixture
def backend_factory(
    source_backend: InMemoryBackend,
    target_backend: InMemoryBackend,
) -> Callable[[Environment], DatabaseBackend]:
    """Routes environments to the source or target backend by role."""

    def _factory(environment: Environment) -> DatabaseBackend:
        if environment.role == EnvironmentRole.TARGET:
            return target_backend
        return source_backend

    return _factory


# ============================================================================
# Orchestrator
# ============================================================================


@pytest.fixture
def settings() -> ClonerSettings:
    """Settings with the watchdog, retention and telemetry turned off."""
    return ClonerSettings(
        _env_file=None,
        stall_timeout_seconds=0,
        operation_retention_seconds=0,
        enable_tracing=False,
        enable_metrics=False,
    )


@pytest_asyncio.fixture
async def orchestrator(
    backend_factory: Callable[[Environment], DatabaseBackend],
    settings: ClonerSettings,
) -> AsyncGenerator[ClonerOrchestrator, None]:
    """Orchestrator over the in-memory backends, shut down after the test."""
    orch = ClonerOrchestrator(backend_factory, settings=settings)
    yield orch
    await orch.shutdown()


# ============================================================================
# SQLite
# ============================================================================


@pytest.fixture
def sqlite_url(tmp_path: Path) -> str:
    """URL of a fresh SQLite database file."""
    return f"sqlite+aiosqlite:///{tmp_path / 'clone.db'}"


# ============================================================================
# Metrics
# ============================================================================


@pytest.fixture
def metric_reader() -> Any:
    """
    Provide an InMemoryMetricReader and a meter bound to it.

    Yields:
        Tuple of (reader, meter).
    """
    if not OTEL_METRICS_AVAILABLE:
        pytest.skip("opentelemetry-sdk not installed")

    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    yield reader, provider.get_meter("dbcloner.test")
    provider.shutdown()
