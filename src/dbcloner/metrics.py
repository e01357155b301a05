"""
OpenTelemetry metrics for clone operations.

The metrics gracefully degrade when OpenTelemetry is not installed -
all operations become no-ops without raising errors.

Example:
    >>> from dbcloner.metrics import CloneMetrics
    >>>
    >>> metrics = CloneMetrics()
    >>> metrics.record_rows_copied(1000, table="users", target="development")
    >>> metrics.record_table_duration(2.5, table="users", success=True)
    >>> metrics.record_operation_finished("completed")

Metrics Exposed:
    - clone.rows.copied (Counter): Rows written to target environments
    - clone.table.duration (Histogram): Time spent copying each table
    - clone.operations.finished (Counter): Operations reaching a terminal status
    - clone.operations.active (Gauge): Operations pending or running
    - clone.batch.retries (Counter): Batch writes retried after a transient error

Attributes never include credentials; environments are identified by name.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

# Optional OpenTelemetry import - single source of truth
try:
    from opentelemetry import metrics

    OTEL_METRICS_AVAILABLE = True
except ImportError:
    OTEL_METRICS_AVAILABLE = False
    metrics = None  # type: ignore[assignment]


# Module-level meter instance
_meter: Any = None


def _get_meter() -> Any:
    """
    Get or create the meter instance.

    Returns:
        OpenTelemetry Meter for the dbcloner namespace, or None if
        OpenTelemetry is not available.
    """
    global _meter
    if _meter is None and OTEL_METRICS_AVAILABLE and metrics is not None:
        _meter = metrics.get_meter("dbcloner", version="1.0.0")
    return _meter


def reset_meter() -> None:
    """
    Reset the global meter instance.

    Useful for testing to ensure fresh meter state between tests.
    """
    global _meter
    _meter = None


class NoOpCounter:
    """No-op counter when OpenTelemetry is not available."""

    def add(
        self,
        amount: int | float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


class NoOpHistogram:
    """No-op histogram when OpenTelemetry is not available."""

    def record(
        self,
        value: float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


@dataclass(frozen=True)
class CloneMetricSnapshot:
    """
    Accumulated metric values, for tests and debugging.

    Attributes:
        rows_copied: Total rows written.
        batch_retries: Total batch write retries.
        table_durations: Table name -> seconds spent copying it.
        operations_finished: Terminal status -> number of operations.
        active_operations: Operations currently pending or running.
    """

    rows_copied: int = 0
    batch_retries: int = 0
    table_durations: dict[str, float] = field(default_factory=dict)
    operations_finished: dict[str, int] = field(default_factory=dict)
    active_operations: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_copied": self.rows_copied,
            "batch_retries": self.batch_retries,
            "table_durations": dict(self.table_durations),
            "operations_finished": dict(self.operations_finished),
            "active_operations": self.active_operations,
        }


@dataclass
class CloneMetrics:
    """
    Container for clone metrics instruments.

    All methods are safe to call even when OpenTelemetry is not installed.

    Attributes:
        enable_metrics: Whether metrics are recorded to OpenTelemetry.
        meter: Meter to create instruments on; the global ``dbcloner`` meter
            is used when omitted.
        active_count: Callable returning the number of active operations,
            observed by the ``clone.operations.active`` gauge.
    """

    enable_metrics: bool = True
    meter: Any = None
    active_count: Callable[[], int] | None = None

    # Internal state
    _rows_copied_counter: Any = field(default=None, init=False, repr=False)
    _table_duration_histogram: Any = field(default=None, init=False, repr=False)
    _operations_finished_counter: Any = field(default=None, init=False, repr=False)
    _batch_retries_counter: Any = field(default=None, init=False, repr=False)

    # Internal counters for snapshot
    _rows_copied_count: int = field(default=0, init=False, repr=False)
    _batch_retries_count: int = field(default=0, init=False, repr=False)
    _table_durations: dict[str, float] = field(default_factory=dict, init=False, repr=False)
    _operations_finished: dict[str, int] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        """Initialize metric instruments."""
        if self.enable_metrics and OTEL_METRICS_AVAILABLE:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        meter = self.meter or _get_meter()
        if meter is None:
            self._setup_noop()
            return
        self.meter = meter

        self._rows_copied_counter = meter.create_counter(
            name="clone.rows.copied",
            unit="rows",
            description="Rows written to target environments",
        )
        self._table_duration_histogram = meter.create_histogram(
            name="clone.table.duration",
            unit="s",
            description="Time spent copying one table in seconds",
        )
        self._operations_finished_counter = meter.create_counter(
            name="clone.operations.finished",
            unit="operations",
            description="Clone operations that reached a terminal status",
        )
        self._batch_retries_counter = meter.create_counter(
            name="clone.batch.retries",
            unit="retries",
            description="Batch writes retried after a transient error",
        )
        meter.create_observable_gauge(
            name="clone.operations.active",
            callbacks=[self._observe_active_count],
            unit="operations",
            description="Clone operations currently pending or running",
        )

    def _setup_noop(self) -> None:
        self._rows_copied_counter = NoOpCounter()
        self._table_duration_histogram = NoOpHistogram()
        self._operations_finished_counter = NoOpCounter()
        self._batch_retries_counter = NoOpCounter()

    def _observe_active_count(self, options: Any) -> Any:
        """
        Callback for the observable active operations gauge.

        Args:
            options: OpenTelemetry callback options

        Yields:
            Observation with the active operation count
        """
        if OTEL_METRICS_AVAILABLE:
            from opentelemetry.metrics import Observation

            yield Observation(value=self.current_active_count)

    def record_rows_copied(self, count: int, *, table: str, target: str) -> None:
        """
        Record rows written to a target table.

        Args:
            count: Rows written in this batch.
            table: Target table.
            target: Target environment name.
        """
        if count <= 0:
            return
        self._rows_copied_counter.add(count, {"table": table, "target": target})
        self._rows_copied_count += count

    def record_table_duration(
        self,
        duration_seconds: float,
        *,
        table: str,
        success: bool = True,
    ) -> None:
        attrs = {"table": table, "success": str(success).lower()}
        self._table_duration_histogram.record(duration_seconds, attrs)
        self._table_durations[table] = self._table_durations.get(table, 0.0) + duration_seconds

    def record_operation_finished(self, status: str) -> None:
        """
        Record an operation reaching a terminal status.

        Args:
            status: "completed", "failed" or "cancelled".
        """
        self._operations_finished_counter.add(1, {"status": status})
        self._operations_finished[status] = self._operations_finished.get(status, 0) + 1

    def record_batch_retry(
        self,
        *,
        table: str | None = None,
        error_code: str | None = None,
    ) -> None:
        attrs: dict[str, str] = {}
        if table:
            attrs["table"] = table
        if error_code:
            attrs["error_code"] = error_code
        self._batch_retries_counter.add(1, attrs)
        self._batch_retries_count += 1

    def get_snapshot(self) -> CloneMetricSnapshot:
        """
        Get a snapshot of accumulated metric values.

        Returns:
            CloneMetricSnapshot with current values
        """
        return CloneMetricSnapshot(
            rows_copied=self._rows_copied_count,
            batch_retries=self._batch_retries_count,
            table_durations=dict(self._table_durations),
            operations_finished=dict(self._operations_finished),
            active_operations=self.current_active_count,
        )

    @property
    def current_active_count(self) -> int:
        return self.active_count() if self.active_count is not None else 0

    @property
    def metrics_enabled(self) -> bool:
        """True if metrics are enabled and OpenTelemetry is available."""
        return self.enable_metrics and OTEL_METRICS_AVAILABLE


__all__ = [
    "OTEL_METRICS_AVAILABLE",
    "CloneMetrics",
    "CloneMetricSnapshot",
    "NoOpCounter",
    "NoOpHistogram",
    "reset_meter",
]
