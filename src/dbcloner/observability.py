"""
Tracing support for dbcloner components.

Components receive a ``Tracer`` through their constructor instead of
reaching for a global tracer, which keeps them easy to test:

    >>> class Copier:
    ...     def __init__(self, tracer: Tracer | None = None, enable_tracing: bool = True):
    ...         self._tracer = tracer or create_tracer(__name__, enable_tracing)
    ...
    ...     async def copy(self, table: str) -> None:
    ...         with self._tracer.span("dbcloner.copier.copy", {ATTR_TABLE_NAME: table}):
    ...             ...

OpenTelemetry is optional. Without it every tracer is a ``NullTracer``.
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from opentelemetry.trace import Span

try:
    from opentelemetry import trace

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False
    trace = None  # type: ignore[assignment]


# =============================================================================
# Span attributes
# =============================================================================

ATTR_OPERATION_ID = "dbcloner.operation.id"
"""Clone operation identifier (string)."""

ATTR_OPERATION_STATUS = "dbcloner.operation.status"
"""Clone operation status value (string)."""

ATTR_SOURCE_ENV = "dbcloner.source.name"
"""Name of the source environment (string, never credentials)."""

ATTR_TARGET_ENV = "dbcloner.target.name"
"""Name of the target environment (string, never credentials)."""

ATTR_ENV_ROLE = "dbcloner.environment.role"
"""Role of an environment in an operation: source or target."""

ATTR_TABLE_NAME = "dbcloner.table.name"
"""Table being copied (string)."""

ATTR_TABLE_COUNT = "dbcloner.table.count"
"""Number of tables in a plan (integer)."""

ATTR_BATCH_SIZE = "dbcloner.batch.size"
"""Rows per batch (integer)."""

ATTR_ROW_COUNT = "dbcloner.row.count"
"""Rows affected by an operation (integer)."""

ATTR_TRUNCATE_FIRST = "dbcloner.truncate_first"
"""Whether target tables are truncated before writing (boolean)."""

ATTR_DB_SYSTEM = "db.system"
"""OpenTelemetry semantic attribute for the database system."""

ATTR_DB_OPERATION = "db.operation"
"""OpenTelemetry semantic attribute for the database operation."""


# =============================================================================
# Tracers
# =============================================================================


@runtime_checkable
class Tracer(Protocol):
    """
    Protocol for objects that can open tracing spans.

    Implementations:
    - NullTracer: does nothing
    - OpenTelemetryTracer: real OpenTelemetry spans
    - MockTracer: records spans for assertions in tests
    """

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        """
        Open a span around a block of work.

        Args:
            name: Span name (e.g. "dbcloner.orchestrator.start_clone")
            attributes: Span attributes (optional)

        Returns:
            Context manager yielding the span, or None when tracing is off
        """
        ...

    @property
    def enabled(self) -> bool:
        """True when spans are actually recorded."""
        ...


class NullTracer:
    """Tracer that records nothing. Default when tracing is disabled."""

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        yield None

    @property
    def enabled(self) -> bool:
        return False


class OpenTelemetryTracer:
    """
    Tracer backed by the OpenTelemetry API.

    Args:
        tracer_name: Instrumentation scope name (typically __name__)

    Raises:
        ImportError: If OpenTelemetry is not installed
    """

    def __init__(self, tracer_name: str) -> None:
        from opentelemetry import trace as otel_trace

        self._tracer = otel_trace.get_tracer(tracer_name)

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(name, attributes=attributes or {})

    @property
    def enabled(self) -> bool:
        return True


class MockTracer:
    """
    Tracer for tests that records every span opened through it.

    Example:
        >>> tracer = MockTracer()
        >>> with tracer.span("dbcloner.test", {"k": "v"}):
        ...     pass
        >>> tracer.span_names
        ['dbcloner.test']
    """

    def __init__(self) -> None:
        self.spans: list[tuple[str, dict[str, Any] | None]] = []

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        self.spans.append((name, attributes))
        yield None

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        """Names of recorded spans, in order."""
        return [name for name, _ in self.spans]

    def clear(self) -> None:
        self.spans.clear()


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """
    Build the tracer a component should use.

    Args:
        name: Tracer name (typically __name__)
        enable_tracing: Whether tracing is wanted by the component

    Returns:
        OpenTelemetryTracer when enabled and available, NullTracer otherwise
    """
    if enable_tracing and OTEL_AVAILABLE:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "OTEL_AVAILABLE",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    "ATTR_OPERATION_ID",
    "ATTR_OPERATION_STATUS",
    "ATTR_SOURCE_ENV",
    "ATTR_TARGET_ENV",
    "ATTR_ENV_ROLE",
    "ATTR_TABLE_NAME",
    "ATTR_TABLE_COUNT",
    "ATTR_BATCH_SIZE",
    "ATTR_ROW_COUNT",
    "ATTR_TRUNCATE_FIRST",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
]
