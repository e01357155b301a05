"""
Data models for clone operations.

Enums:
    - CloneStatus: Operation lifecycle states
    - LogLevel: Severity of operation log entries

Configuration:
    - CloneOptions: Per-operation copy options

Core Models:
    - CloneProgress: Live progress counters of an operation
    - CloneError: Failure details recorded on a failed operation
    - TableCopyResult: Outcome of copying one table
    - CloneLog: One operator-facing log line
    - CloneOperation: The mutable record owned by the orchestrator
    - OperationStatus: Immutable snapshot of a CloneOperation
    - ValidationResult: Outcome of a connection validation
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from dbcloner.credentials import Environment


class CloneStatus(Enum):
    """
    Clone operation lifecycle states.

    State machine transitions:
        PENDING -> RUNNING -> COMPLETED
                      |
        PENDING/RUNNING -> CANCELLED (operator cancel observed)
        PENDING/RUNNING -> FAILED (unrecoverable error)

    No transition leaves COMPLETED, FAILED or CANCELLED.
    """

    PENDING = "pending"
    """Operation registered, pipeline not started yet."""

    RUNNING = "running"
    """Pipeline is validating, planning or copying."""

    COMPLETED = "completed"
    """Every planned table was copied."""

    FAILED = "failed"
    """The pipeline stopped on an error; see the operation's error."""

    CANCELLED = "cancelled"
    """An operator cancelled the operation."""

    @property
    def is_terminal(self) -> bool:
        """
        Check if this is a final state.

        Returns:
            True for COMPLETED, FAILED and CANCELLED.
        """
        return self in (
            CloneStatus.COMPLETED,
            CloneStatus.FAILED,
            CloneStatus.CANCELLED,
        )

    @property
    def is_active(self) -> bool:
        """True while the operation still holds a pipeline slot."""
        return not self.is_terminal

    def can_transition_to(self, target: CloneStatus) -> bool:
        """
        Check if moving to ``target`` keeps the lifecycle monotonic.

        Args:
            target: Requested next status.

        Returns:
            True if the transition is allowed.
        """
        return target in VALID_TRANSITIONS.get(self, frozenset())


VALID_TRANSITIONS: dict[CloneStatus, frozenset[CloneStatus]] = {
    CloneStatus.PENDING: frozenset(
        {CloneStatus.RUNNING, CloneStatus.CANCELLED, CloneStatus.FAILED}
    ),
    CloneStatus.RUNNING: frozenset(
        {CloneStatus.COMPLETED, CloneStatus.FAILED, CloneStatus.CANCELLED}
    ),
    CloneStatus.COMPLETED: frozenset(),
    CloneStatus.FAILED: frozenset(),
    CloneStatus.CANCELLED: frozenset(),
}


class LogLevel(Enum):
    """Level of an operation log entry."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class ClonePhase:
    """Labels for the phase an operation is in."""

    INITIALIZING = "initializing"
    VALIDATING = "validating"
    PLANNING = "planning"
    COPYING = "copying"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Option keys accepted from camelCase API payloads
_OPTION_ALIASES = {
    "excludeTables": "exclude_tables",
    "excludeSchemas": "exclude_schemas",
    "includeStorage": "include_storage",
    "batchSize": "batch_size",
    "truncateFirst": "truncate_first",
    "dependencyOrder": "dependency_order",
    "maxBatchRetries": "max_batch_retries",
    "maxRowsPerSecond": "max_rows_per_second",
    "verifyRowCounts": "verify_row_counts",
}


@dataclass(frozen=True)
class CloneOptions:
    """
    Options controlling one clone operation.

    Attributes:
        tables: Allow-list of tables. When set, its order is the copy order.
        exclude_tables: Tables never copied.
        exclude_schemas: Schemas whose tables are never copied.
        include_storage: Copy the hosted ``storage`` schema too.
        batch_size: Rows read and written per batch.
        truncate_first: Empty each target table before writing to it.
        dependency_order: Order tables by foreign keys when no list is given.
        max_batch_retries: Extra attempts for a batch write that fails
            transiently (0 disables retry).
        max_rows_per_second: Copy throttle (0 disables throttling).
        verify_row_counts: Compare source and target counts after copying.

    Example:
        >>> options = CloneOptions(tables=("users", "orders"), truncate_first=True)
        >>> options.batch_size
        1000
    """

    tables: tuple[str, ...] | None = None
    exclude_tables: tuple[str, ...] = ()
    exclude_schemas: tuple[str, ...] = ()
    include_storage: bool = False
    batch_size: int = 1000
    truncate_first: bool = False
    dependency_order: bool = True
    max_batch_retries: int = 0
    max_rows_per_second: int = 0
    verify_row_counts: bool = True

    def __post_init__(self) -> None:
        """Validate and normalize option values."""
        if self.tables is not None:
            object.__setattr__(self, "tables", tuple(self.tables))
            if any(not isinstance(t, str) or not t.strip() for t in self.tables):
                raise ValueError("tables must be non-empty strings")
            if len(set(self.tables)) != len(self.tables):
                raise ValueError("tables must not contain duplicates")
        object.__setattr__(self, "exclude_tables", tuple(self.exclude_tables))
        object.__setattr__(self, "exclude_schemas", tuple(self.exclude_schemas))

        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_batch_retries < 0:
            raise ValueError(f"max_batch_retries must be >= 0, got {self.max_batch_retries}")
        if self.max_rows_per_second < 0:
            raise ValueError(f"max_rows_per_second must be >= 0, got {self.max_rows_per_second}")

    @property
    def effective_exclude_schemas(self) -> tuple[str, ...]:
        """Excluded schemas, including ``storage`` unless it was requested."""
        if self.include_storage or "storage" in self.exclude_schemas:
            return self.exclude_schemas
        return (*self.exclude_schemas, "storage")

    def to_dict(self) -> dict[str, Any]:
        return {
            "tables": list(self.tables) if self.tables is not None else None,
            "exclude_tables": list(self.exclude_tables),
            "exclude_schemas": list(self.exclude_schemas),
            "include_storage": self.include_storage,
            "batch_size": self.batch_size,
            "truncate_first": self.truncate_first,
            "dependency_order": self.dependency_order,
            "max_batch_retries": self.max_batch_retries,
            "max_rows_per_second": self.max_rows_per_second,
            "verify_row_counts": self.verify_row_counts,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CloneOptions:
        """
        Create options from a snake_case or camelCase dictionary.

        Args:
            data: Option values; unknown keys are rejected.

        Returns:
            CloneOptions instance.

        Raises:
            ValueError: On unknown keys or invalid values.
        """
        if not data:
            return cls()
        normalized = {_OPTION_ALIASES.get(key, key): value for key, value in data.items()}
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(normalized) - known)
        if unknown:
            raise ValueError(f"Unknown clone options: {', '.join(unknown)}")
        for key in ("tables", "exclude_tables", "exclude_schemas"):
            if normalized.get(key) is not None:
                normalized[key] = tuple(normalized[key])
        return cls(**normalized)


@dataclass
class CloneProgress:
    """
    Live progress of an operation.

    Only the pipeline task writes these fields, and only while the
    operation is RUNNING.
    """

    current_phase: str = ClonePhase.INITIALIZING
    current_table: str | None = None
    tables_completed: int = 0
    total_tables: int = 0
    rows_copied: int = 0
    rows_total: int = 0
    started_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def percent(self) -> float:
        """
        Progress as a percentage (0-100).

        Row counts are used when an estimate exists, table counts otherwise.
        """
        if self.rows_total > 0:
            return min(100.0, (self.rows_copied / self.rows_total) * 100)
        if self.total_tables > 0:
            return min(100.0, (self.tables_completed / self.total_tables) * 100)
        return 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_phase": self.current_phase,
            "current_table": self.current_table,
            "tables_completed": self.tables_completed,
            "total_tables": self.total_tables,
            "rows_copied": self.rows_copied,
            "rows_total": self.rows_total,
            "percent": round(self.percent, 2),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class CloneError:
    """
    Failure recorded on a FAILED operation.

    Attributes:
        message: Human-readable message, never a stack trace.
        table: Table being copied when the failure happened, if any.
        error_code: Stable error code.
    """

    message: str
    table: str | None = None
    error_code: str = "UNKNOWN_ERROR"

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "table": self.table, "error_code": self.error_code}


@dataclass(frozen=True)
class TableCopyResult:
    """Outcome of copying a single table."""

    table_name: str
    rows_copied: int
    duration_ms: float
    error: str | None = None
    truncated: bool = False

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "table_name": self.table_name,
            "rows_copied": self.rows_copied,
            "duration_ms": round(self.duration_ms, 3),
            "error": self.error,
            "truncated": self.truncated,
        }


@dataclass(frozen=True)
class CloneLog:
    """One operator-facing log line attached to an operation."""

    timestamp: datetime
    level: LogLevel
    phase: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "phase": self.phase,
            "message": self.message,
        }


@dataclass
class CloneOperation:
    """
    One invocation of the clone pipeline.

    Mutable because the orchestrator updates it throughout the lifecycle.
    Never handed out directly; callers receive OperationStatus snapshots.

    Attributes:
        id: Unique operation identifier.
        source: Environment copied from.
        target: Environment copied into.
        options: Copy options.
        status: Current lifecycle state.
        progress: Live counters.
        error: Failure details, set only when FAILED.
        table_results: Results of finished (or failed) tables, in copy order.
        logs: Operator log lines, oldest first.
        created_at: When start_clone registered the operation.
        completed_at: When a terminal state was reached.
    """

    id: str
    source: Environment
    target: Environment
    options: CloneOptions = field(default_factory=CloneOptions)
    status: CloneStatus = CloneStatus.PENDING
    progress: CloneProgress = field(default_factory=CloneProgress)
    error: CloneError | None = None
    table_results: list[TableCopyResult] = field(default_factory=list)
    logs: list[CloneLog] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_seconds(self) -> float:
        """Seconds from the pipeline start (or registration) to now or completion."""
        start = self.progress.started_at or self.created_at
        end = self.completed_at or datetime.now(UTC)
        return max(0.0, (end - start).total_seconds())

    def can_transition_to(self, target: CloneStatus) -> bool:
        return self.status.can_transition_to(target)


@dataclass(frozen=True)
class OperationStatus:
    """
    Read-only snapshot of a clone operation.

    Safe to return to API callers: environments are reduced to their
    public fields and no credential is ever included.
    """

    operation_id: str
    status: CloneStatus
    source: dict[str, Any]
    target: dict[str, Any]
    options: CloneOptions
    progress: CloneProgress
    error: CloneError | None
    table_results: tuple[TableCopyResult, ...]
    logs: tuple[CloneLog, ...]
    created_at: datetime
    completed_at: datetime | None
    duration_seconds: float

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to a JSON-serializable dictionary.

        Returns:
            Dictionary representation suitable for API responses.
        """
        return {
            "operation_id": self.operation_id,
            "status": self.status.value,
            "source": dict(self.source),
            "target": dict(self.target),
            "options": self.options.to_dict(),
            "progress": self.progress.to_dict(),
            "error": self.error.to_dict() if self.error else None,
            "table_results": [r.to_dict() for r in self.table_results],
            "logs": [entry.to_dict() for entry in self.logs],
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
        }

    @classmethod
    def from_operation(cls, operation: CloneOperation) -> OperationStatus:
        """
        Snapshot an operation.

        Args:
            operation: The live operation record.

        Returns:
            OperationStatus detached from later mutations of the record.
        """
        progress = operation.progress
        return cls(
            operation_id=operation.id,
            status=operation.status,
            source=operation.source.to_public_dict(),
            target=operation.target.to_public_dict(),
            options=operation.options,
            progress=CloneProgress(
                current_phase=progress.current_phase,
                current_table=progress.current_table,
                tables_completed=progress.tables_completed,
                total_tables=progress.total_tables,
                rows_copied=progress.rows_copied,
                rows_total=progress.rows_total,
                started_at=progress.started_at,
                updated_at=progress.updated_at,
            ),
            error=operation.error,
            table_results=tuple(operation.table_results),
            logs=tuple(operation.logs),
            created_at=operation.created_at,
            completed_at=operation.completed_at,
            duration_seconds=operation.duration_seconds,
        )


@dataclass(frozen=True)
class ValidationResult:
    """
    Outcome of validating one environment's connection.

    Attributes:
        success: Whether the environment is usable for its role.
        error: Message describing the failure.
        error_code: Stable code of the failure.
        tables_found: Number of tables visible with these credentials.
        permissions_ok: Whether the required permissions were confirmed.
        write_checked: Whether a write probe was performed.
    """

    success: bool
    error: str | None = None
    error_code: str | None = None
    tables_found: int | None = None
    permissions_ok: bool | None = None
    write_checked: bool = False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.error is not None:
            result["error"] = self.error
            result["error_code"] = self.error_code
        if self.tables_found is not None or self.permissions_ok is not None:
            result["metadata"] = {
                "tables_found": self.tables_found,
                "permissions_ok": self.permissions_ok,
                "write_checked": self.write_checked,
            }
        return result


__all__ = [
    "CloneStatus",
    "VALID_TRANSITIONS",
    "LogLevel",
    "ClonePhase",
    "CloneOptions",
    "CloneProgress",
    "CloneError",
    "TableCopyResult",
    "CloneLog",
    "CloneOperation",
    "OperationStatus",
    "ValidationResult",
]
