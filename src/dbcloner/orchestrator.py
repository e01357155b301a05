"""
ClonerOrchestrator - Drives clone operations from request to terminal state.

The orchestrator owns the in-memory registry of clone operations. Each
operation runs as a background asyncio task through these phases:

    1. validating: production protection, source and target connection checks
    2. planning: list, select and order tables, estimate row counts
    3. copying: copy table by table, publishing progress after every batch
    4. verifying: compare source and target row counts (warnings only)

Responsibilities:
    - Operation registration and id assignment
    - Status state machine enforcement (monotonic, terminal states frozen)
    - Cooperative cancellation between tables and between batches
    - Stall detection (operations without progress are failed)
    - Retention of finished operations and their garbage collection
    - Optional limit on concurrently active operations

Clones are not transactional across tables. A failed or cancelled clone
leaves every table copied before the failure in place and the in-flight
table partially copied; operators should inspect the target afterwards.

The registry lives in memory only: operations are lost on process restart.

Usage:
    >>> orchestrator = ClonerOrchestrator()
    >>> operation_id = await orchestrator.start_clone(production, development)
    >>> status = await orchestrator.get_operation_status(operation_id)
    >>> print(status.status.value, status.progress.percent)
"""

from __future__ import annotations

import asyncio
import functools
import logging
import secrets
import string
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from dbcloner.backends.interface import BackendFactory, DatabaseBackend
from dbcloner.backends.sqlalchemy import create_backend
from dbcloner.config import ClonerSettings
from dbcloner.credentials import Environment, EnvironmentRole
from dbcloner.exceptions import (
    BackendError,
    ClonerError,
    CloneLimitExceededError,
    CloneStalledError,
    ConnectionValidationError,
    ErrorHandler,
    InvalidStatusTransitionError,
    OperationNotFoundError,
    ProductionProtectionError,
    TableCopyError,
)
from dbcloner.metrics import CloneMetrics
from dbcloner.models import (
    CloneError,
    CloneLog,
    CloneOperation,
    CloneOptions,
    ClonePhase,
    CloneStatus,
    LogLevel,
    OperationStatus,
    TableCopyResult,
)
from dbcloner.observability import (
    ATTR_OPERATION_ID,
    ATTR_OPERATION_STATUS,
    ATTR_SOURCE_ENV,
    ATTR_TABLE_COUNT,
    ATTR_TARGET_ENV,
    ATTR_TRUNCATE_FIRST,
    Tracer,
    create_tracer,
)
from dbcloner.ordering import order_tables, select_tables
from dbcloner.table_copier import CancellationToken, RowTransformer, TableCopier
from dbcloner.validator import ConnectionValidator

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits
_BACKEND_CLOSE_TIMEOUT_SECONDS = 10.0

_LOG_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class _CancelRequested(Exception):
    """Raised inside the pipeline when the cancellation token is observed."""


@dataclass
class _OperationContext:
    """Runtime state the orchestrator keeps next to each operation record."""

    operation: CloneOperation
    token: CancellationToken = field(default_factory=CancellationToken)
    task: asyncio.Task[None] | None = None
    last_activity: float = field(default_factory=time.monotonic)
    stalled: bool = False


def generate_operation_id() -> str:
    """Operation id of the form ``clone_<epoch ms>_<9 random chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"clone_{int(time.time() * 1000)}_{suffix}"


class ClonerOrchestrator:
    """
    Coordinates clone operations between database environments.

    One orchestrator is shared by every request of a server process so that
    status polling sees the operations started by earlier requests.

    Example:
        >>> orchestrator = ClonerOrchestrator(
        ...     settings=ClonerSettings(max_concurrent_operations=1),
        ... )
        >>> operation_id = await orchestrator.start_clone(
        ...     source, target, CloneOptions(truncate_first=True)
        ... )
        >>> final = await orchestrator.wait_for_completion(operation_id, timeout=600)

    Attributes:
        _backend_factory: Builds a backend for an environment.
        _settings: Service configuration.
        _validator: Connection validator run before any data is touched.
        _transformers: Per-table row transformers.
        _contexts: Registry of operation id -> runtime context.
        _lock: Guards registry inserts, lookups and deletions.
    """

    def __init__(
        self,
        backend_factory: BackendFactory | None = None,
        *,
        settings: ClonerSettings | None = None,
        validator: ConnectionValidator | None = None,
        transformers: Mapping[str, RowTransformer] | None = None,
        metrics: CloneMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool | None = None,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            backend_factory: Builds backends; defaults to SQLAlchemy backends.
            settings: Service configuration; read from the environment if omitted.
            validator: Connection validator; one sharing the backend factory is
                created if omitted.
            transformers: Table name -> row transformer applied while copying.
            metrics: Metrics container; created from settings if omitted.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing. Defaults
                to the settings value.
        """
        self._settings = settings or ClonerSettings()
        if enable_tracing is None:
            enable_tracing = self._settings.enable_tracing
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self._backend_factory: BackendFactory = backend_factory or functools.partial(
            create_backend,
            schemas=self._settings.schemas,
            enable_tracing=self._enable_tracing,
        )
        self._validator = validator or ConnectionValidator(
            self._backend_factory,
            timeout_seconds=self._settings.validation_timeout_seconds,
            tracer=self._tracer,
        )
        self._transformers = dict(transformers or {})
        self._metrics = metrics or CloneMetrics(
            enable_metrics=self._settings.enable_metrics,
            active_count=self._active_count,
        )

        self._contexts: dict[str, _OperationContext] = {}
        self._lock = asyncio.Lock()
        self._watchdog_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def settings(self) -> ClonerSettings:
        return self._settings

    @property
    def validator(self) -> ConnectionValidator:
        return self._validator

    @property
    def metrics(self) -> CloneMetrics:
        return self._metrics

    # =========================================================================
    # Public API
    # =========================================================================

    async def start_clone(
        self,
        source: Environment,
        target: Environment,
        options: CloneOptions | None = None,
    ) -> str:
        """
        Register a clone operation and start it in the background.

        Returns before any connection is opened or table is copied; the
        returned id is immediately valid for status and cancel calls.

        Args:
            source: Environment to copy from.
            target: Environment to copy into.
            options: Copy options (defaults if None).

        Returns:
            The new operation id.

        Raises:
            CloneLimitExceededError: If max_concurrent_operations are active.
            RuntimeError: If the orchestrator has been shut down.
        """
        options = options or CloneOptions()
        with self._tracer.span(
            "dbcloner.orchestrator.start_clone",
            {
                ATTR_SOURCE_ENV: source.name,
                ATTR_TARGET_ENV: target.name,
                ATTR_TRUNCATE_FIRST: options.truncate_first,
            },
        ):
            async with self._lock:
                if self._closed:
                    raise RuntimeError("Orchestrator has been shut down")
                self._purge_expired()

                limit = self._settings.max_concurrent_operations
                if limit and self._active_count() >= limit:
                    raise CloneLimitExceededError(limit)

                operation_id = generate_operation_id()
                while operation_id in self._contexts:
                    operation_id = generate_operation_id()

                operation = CloneOperation(
                    id=operation_id,
                    source=source.with_role(EnvironmentRole.SOURCE),
                    target=target.with_role(EnvironmentRole.TARGET),
                    options=options,
                )
                ctx = _OperationContext(operation=operation)
                self._contexts[operation_id] = ctx
                self._log(ctx, LogLevel.INFO, f"Clone requested: {source.name} -> {target.name}")

                ctx.task = asyncio.create_task(
                    self._run_clone(ctx),
                    name=f"clone_{operation_id}",
                )
                self._ensure_watchdog()

            logger.info(
                "Started clone operation %s from %s to %s",
                operation_id,
                source.name,
                target.name,
            )
            return operation_id

    async def get_operation_status(self, operation_id: str) -> OperationStatus | None:
        """
        Snapshot of an operation.

        Args:
            operation_id: Id returned by start_clone.

        Returns:
            OperationStatus, or None if the id is unknown or was garbage
            collected. Never raises for unknown ids.
        """
        async with self._lock:
            self._purge_expired()
            ctx = self._contexts.get(operation_id)
            if ctx is None:
                return None
            return OperationStatus.from_operation(ctx.operation)

    async def cancel_operation(self, operation_id: str) -> bool:
        """
        Request cancellation of an operation.

        Pending operations are cancelled immediately. Running operations are
        signalled and become CANCELLED once the in-flight batch finishes.

        Args:
            operation_id: Id returned by start_clone.

        Returns:
            True if a pending or running operation was found and signalled,
            False if the id is unknown or the operation already finished.
        """
        with self._tracer.span(
            "dbcloner.orchestrator.cancel_operation",
            {ATTR_OPERATION_ID: operation_id},
        ):
            async with self._lock:
                ctx = self._contexts.get(operation_id)
                if ctx is None or ctx.operation.is_terminal:
                    return False

                ctx.token.cancel()
                if ctx.operation.status == CloneStatus.PENDING:
                    self._finish(ctx, CloneStatus.CANCELLED, message="Cancelled before start")
                else:
                    self._log(ctx, LogLevel.WARNING, "Cancellation requested")

            logger.info("Cancellation requested for clone operation %s", operation_id)
            return True

    async def list_operations(
        self,
        status: CloneStatus | None = None,
    ) -> list[OperationStatus]:
        """
        Snapshots of all retained operations, oldest first.

        Args:
            status: Only include operations in this status.
        """
        async with self._lock:
            self._purge_expired()
            operations = [ctx.operation for ctx in self._contexts.values()]
        operations.sort(key=lambda op: op.created_at)
        return [
            OperationStatus.from_operation(op)
            for op in operations
            if status is None or op.status == status
        ]

    async def wait_for_completion(
        self,
        operation_id: str,
        *,
        timeout: float | None = None,
        poll_interval: float = 0.05,
    ) -> OperationStatus:
        """
        Wait for an operation to reach a terminal status.

        Args:
            operation_id: Id returned by start_clone.
            timeout: Maximum seconds to wait (None = forever).
            poll_interval: Seconds between status checks.

        Returns:
            The terminal OperationStatus.

        Raises:
            OperationNotFoundError: If the operation is unknown.
            TimeoutError: If timeout is exceeded.
        """
        loop = asyncio.get_running_loop()
        start = loop.time()

        while True:
            status = await self.get_operation_status(operation_id)
            if status is None:
                raise OperationNotFoundError(operation_id)
            if status.is_terminal:
                return status

            if timeout is not None and loop.time() - start >= timeout:
                raise TimeoutError(f"Timeout waiting for clone operation {operation_id}")

            await asyncio.sleep(poll_interval)

    async def shutdown(self) -> None:
        """
        Cancel every active operation and stop background tasks.

        Active operations end CANCELLED. Finished operations stay queryable.
        """
        async with self._lock:
            self._closed = True
            tasks = []
            for ctx in self._contexts.values():
                if ctx.task is not None and not ctx.task.done():
                    ctx.token.cancel()
                    ctx.task.cancel()
                    tasks.append(ctx.task)
            watchdog = self._watchdog_task
            self._watchdog_task = None

        if watchdog is not None:
            watchdog.cancel()
            tasks.append(watchdog)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Orchestrator shut down, %d task(s) cancelled", len(tasks))

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def _run_clone(self, ctx: _OperationContext) -> None:
        """Background task running one operation to a terminal status."""
        operation = ctx.operation
        backends: list[DatabaseBackend] = []

        with self._tracer.span(
            "dbcloner.orchestrator.run_clone",
            {
                ATTR_OPERATION_ID: operation.id,
                ATTR_SOURCE_ENV: operation.source.name,
                ATTR_TARGET_ENV: operation.target.name,
            },
        ) as span:
            try:
                if not self._begin(ctx):
                    return

                await self._validate(ctx)

                source = self._backend_factory(operation.source)
                backends.append(source)
                target = self._backend_factory(operation.target)
                backends.append(target)

                tables, row_counts = await self._plan(ctx, source)
                copied = await self._copy(ctx, source, target, tables, row_counts)

                if operation.options.verify_row_counts and copied:
                    await self._verify(ctx, source, target, copied)

                self._check_cancelled(ctx)
                self._finish(
                    ctx,
                    CloneStatus.COMPLETED,
                    message=(
                        f"Clone completed: {len(copied)} tables, "
                        f"{operation.progress.rows_copied} rows"
                    ),
                )

            except _CancelRequested:
                self._finish(ctx, CloneStatus.CANCELLED, message="Clone cancelled by operator")

            except asyncio.CancelledError:
                if ctx.stalled:
                    stalled = CloneStalledError(
                        operation.id,
                        self._settings.stall_timeout_seconds,
                        table=operation.progress.current_table,
                    )
                    self._fail(ctx, stalled, table=stalled.table)
                    current = asyncio.current_task()
                    if current is not None:
                        current.uncancel()
                    return
                self._finish(ctx, CloneStatus.CANCELLED, message="Clone task cancelled")
                raise

            except TableCopyError as e:
                self._fail(ctx, e, table=e.table, error_code=e.cause_code or e.error_code)

            except ConnectionValidationError as e:
                self._fail(ctx, e, error_code=e.cause_code or e.error_code)

            except ClonerError as e:
                self._fail(ctx, e, table=e.table)

            except Exception as e:
                logger.exception("Unexpected error in clone operation %s", operation.id)
                self._fail(
                    ctx,
                    None,
                    message=f"Unexpected error: {type(e).__name__}",
                    table=operation.progress.current_table,
                )

            finally:
                for backend in backends:
                    await self._close_backend(backend)
                ctx.task = None
                if span is not None:
                    span.set_attribute(ATTR_OPERATION_STATUS, operation.status.value)

    def _begin(self, ctx: _OperationContext) -> bool:
        operation = ctx.operation
        if operation.is_terminal:
            logger.debug("Clone operation %s finished before it started", operation.id)
            return False
        self._transition(ctx, CloneStatus.RUNNING)
        now = datetime.now(UTC)
        operation.progress.started_at = now
        self._update_progress(ctx, current_phase=ClonePhase.VALIDATING)
        self._log(ctx, LogLevel.INFO, "Validating connections")
        return True

    async def _validate(self, ctx: _OperationContext) -> None:
        operation = ctx.operation
        if self._settings.is_protected(operation.target.name):
            raise ProductionProtectionError(operation.target.name)

        for environment in (operation.source, operation.target):
            result = await self._validator.validate_connection(environment)
            self._check_cancelled(ctx)
            if not result.success:
                raise ConnectionValidationError(
                    environment.name,
                    environment.role.value,
                    result.error,
                    cause_code=result.error_code,
                )
            self._touch(ctx)
            self._log(
                ctx,
                LogLevel.SUCCESS,
                f"{environment.role.value.capitalize()} '{environment.name}' reachable "
                f"({result.tables_found} tables)",
            )

    async def _plan(
        self,
        ctx: _OperationContext,
        source: DatabaseBackend,
    ) -> tuple[list[str], dict[str, int]]:
        operation = ctx.operation
        options = operation.options
        self._update_progress(ctx, current_phase=ClonePhase.PLANNING)

        available = await source.list_tables(options.effective_exclude_schemas)
        try:
            selected = select_tables(available, options)
        except ValueError as e:
            raise BackendError(str(e)) from e

        if options.tables is not None:
            tables = selected
        else:
            foreign_keys = (
                await source.get_foreign_keys(selected) if options.dependency_order else {}
            )
            tables = order_tables(
                selected,
                foreign_keys,
                configured_order=self._settings.table_order,
            )
        self._check_cancelled(ctx)

        row_counts: dict[str, int] = {}
        for table in tables:
            row_counts[table] = await source.count_rows(table)
            self._touch(ctx)
        self._check_cancelled(ctx)

        self._update_progress(
            ctx,
            total_tables=len(tables),
            rows_total=sum(row_counts.values()),
        )
        if tables:
            self._log(ctx, LogLevel.INFO, f"Copy order: {', '.join(tables)}")
        else:
            self._log(ctx, LogLevel.WARNING, "No tables selected for copy")
        return tables, row_counts

    async def _copy(
        self,
        ctx: _OperationContext,
        source: DatabaseBackend,
        target: DatabaseBackend,
        tables: list[str],
        row_counts: dict[str, int],
    ) -> list[str]:
        """Copy tables in order. Returns the tables copied completely."""
        operation = ctx.operation
        options = operation.options
        self._update_progress(ctx, current_phase=ClonePhase.COPYING)

        error_handler = ErrorHandler(metrics_callback=self._on_batch_error)
        copier = TableCopier(
            source,
            target,
            transformers=self._transformers,
            error_handler=error_handler,
            tracer=self._tracer,
        )

        with self._tracer.span(
            "dbcloner.orchestrator.copy_tables",
            {ATTR_OPERATION_ID: operation.id, ATTR_TABLE_COUNT: len(tables)},
        ):
            copied: list[str] = []
            for table in tables:
                self._check_cancelled(ctx)
                self._update_progress(ctx, current_table=table)

                started = time.monotonic()
                table_rows = 0
                truncated = False
                complete = False
                try:
                    async for progress in copier.copy_table(
                        table,
                        options,
                        token=ctx.token,
                        rows_total=row_counts.get(table, 0),
                    ):
                        delta = progress.rows_copied - table_rows
                        table_rows = progress.rows_copied
                        truncated = progress.truncated
                        complete = progress.is_complete
                        self._metrics.record_rows_copied(
                            delta, table=table, target=operation.target.name
                        )
                        self._update_progress(
                            ctx,
                            rows_copied=operation.progress.rows_copied + delta,
                        )
                except TableCopyError as e:
                    duration = time.monotonic() - started
                    self._record_table(
                        ctx,
                        TableCopyResult(
                            table_name=table,
                            rows_copied=e.rows_copied,
                            duration_ms=duration * 1000,
                            error=e.original_error,
                            truncated=e.truncated,
                        ),
                    )
                    self._metrics.record_table_duration(duration, table=table, success=False)
                    raise

                duration = time.monotonic() - started
                if not complete:
                    self._record_table(
                        ctx,
                        TableCopyResult(
                            table_name=table,
                            rows_copied=table_rows,
                            duration_ms=duration * 1000,
                            error="Cancelled",
                            truncated=truncated,
                        ),
                    )
                    raise _CancelRequested()

                self._record_table(
                    ctx,
                    TableCopyResult(
                        table_name=table,
                        rows_copied=table_rows,
                        duration_ms=duration * 1000,
                        truncated=truncated,
                    ),
                )
                self._metrics.record_table_duration(duration, table=table, success=True)
                copied.append(table)
                self._update_progress(
                    ctx,
                    tables_completed=operation.progress.tables_completed + 1,
                )
                self._log(ctx, LogLevel.SUCCESS, f"Copied {table}: {table_rows} rows")

            self._update_progress(ctx, current_table=None)
            self._check_cancelled(ctx)
            return copied

    async def _verify(
        self,
        ctx: _OperationContext,
        source: DatabaseBackend,
        target: DatabaseBackend,
        tables: list[str],
    ) -> None:
        """Compare row counts. Mismatches are logged, never fatal."""
        self._update_progress(ctx, current_phase=ClonePhase.VERIFYING)
        mismatches = 0
        for table in tables:
            self._check_cancelled(ctx)
            source_count = await source.count_rows(table)
            target_count = await target.count_rows(table)
            self._touch(ctx)
            if source_count != target_count:
                mismatches += 1
                self._log(
                    ctx,
                    LogLevel.WARNING,
                    f"Row count mismatch for {table}: source={source_count}, "
                    f"target={target_count}",
                )
        if not mismatches:
            self._log(ctx, LogLevel.SUCCESS, f"Row counts verified for {len(tables)} tables")

    # =========================================================================
    # State management
    # =========================================================================

    def _transition(self, ctx: _OperationContext, new_status: CloneStatus) -> None:
        operation = ctx.operation
        if not operation.can_transition_to(new_status):
            raise InvalidStatusTransitionError(
                operation.id, operation.status.value, new_status.value
            )
        operation.status = new_status
        if new_status.is_terminal:
            operation.completed_at = datetime.now(UTC)

    def _finish(
        self,
        ctx: _OperationContext,
        status: CloneStatus,
        *,
        message: str,
        error: CloneError | None = None,
    ) -> bool:
        """Move an operation to a terminal status. No-op if already terminal."""
        operation = ctx.operation
        if not operation.can_transition_to(status):
            return False

        if operation.status == CloneStatus.RUNNING:
            self._update_progress(ctx, current_phase=status.value)
        level = {
            CloneStatus.COMPLETED: LogLevel.SUCCESS,
            CloneStatus.FAILED: LogLevel.ERROR,
        }.get(status, LogLevel.WARNING)
        self._log(ctx, level, message)

        operation.error = error
        self._transition(ctx, status)
        self._metrics.record_operation_finished(status.value)
        logger.info(
            "Clone operation %s %s after %.1fs",
            operation.id,
            status.value,
            operation.duration_seconds,
        )
        return True

    def _fail(
        self,
        ctx: _OperationContext,
        error: ClonerError | None,
        *,
        message: str | None = None,
        table: str | None = None,
        error_code: str | None = None,
    ) -> None:
        text = message or (error.message if error else "Clone failed")
        code = error_code or (error.error_code if error else "UNKNOWN_ERROR")
        self._finish(
            ctx,
            CloneStatus.FAILED,
            message=text,
            error=CloneError(message=text, table=table, error_code=code),
        )

    def _update_progress(self, ctx: _OperationContext, **changes: object) -> None:
        """Apply progress changes. Ignored unless the operation is RUNNING."""
        operation = ctx.operation
        if operation.status != CloneStatus.RUNNING:
            return
        for name, value in changes.items():
            setattr(operation.progress, name, value)
        operation.progress.updated_at = datetime.now(UTC)
        self._touch(ctx)

    def _record_table(self, ctx: _OperationContext, result: TableCopyResult) -> None:
        if ctx.operation.status == CloneStatus.RUNNING:
            ctx.operation.table_results.append(result)

    def _log(self, ctx: _OperationContext, level: LogLevel, message: str) -> None:
        operation = ctx.operation
        if operation.is_terminal:
            return
        operation.logs.append(
            CloneLog(
                timestamp=datetime.now(UTC),
                level=level,
                phase=operation.progress.current_phase,
                message=message,
            )
        )
        overflow = len(operation.logs) - self._settings.max_log_entries
        if overflow > 0:
            del operation.logs[:overflow]
        logger.log(_LOG_LEVELS[level], "[%s] %s", operation.id, message)

    def _touch(self, ctx: _OperationContext) -> None:
        ctx.last_activity = time.monotonic()

    def _check_cancelled(self, ctx: _OperationContext) -> None:
        if ctx.token.is_cancelled:
            raise _CancelRequested()

    def _active_count(self) -> int:
        return sum(1 for ctx in self._contexts.values() if not ctx.operation.is_terminal)

    def _on_batch_error(self, error: ClonerError, will_retry: bool) -> None:
        if will_retry:
            self._metrics.record_batch_retry(table=error.table, error_code=error.error_code)

    def _purge_expired(self) -> None:
        """Drop finished operations older than the retention period. Caller holds the lock."""
        retention = self._settings.operation_retention_seconds
        if not retention:
            return
        cutoff = datetime.now(UTC) - timedelta(seconds=retention)
        expired = [
            operation_id
            for operation_id, ctx in self._contexts.items()
            if ctx.operation.completed_at is not None and ctx.operation.completed_at < cutoff
        ]
        for operation_id in expired:
            del self._contexts[operation_id]
        if expired:
            logger.debug("Garbage collected %d finished clone operation(s)", len(expired))

    async def _close_backend(self, backend: DatabaseBackend) -> None:
        try:
            await asyncio.wait_for(backend.close(), timeout=_BACKEND_CLOSE_TIMEOUT_SECONDS)
        except Exception:
            logger.warning("Failed to close backend %s", backend.name, exc_info=True)

    # =========================================================================
    # Stall watchdog
    # =========================================================================

    def _ensure_watchdog(self) -> None:
        if self._settings.stall_timeout_seconds <= 0:
            return
        if self._watchdog_task is None or self._watchdog_task.done():
            self._watchdog_task = asyncio.create_task(
                self._watchdog(),
                name="clone_stall_watchdog",
            )

    async def _watchdog(self) -> None:
        """Cancel running operations whose progress stopped for too long."""
        timeout = self._settings.stall_timeout_seconds
        interval = min(max(timeout / 4, 0.01), 5.0)

        while True:
            await asyncio.sleep(interval)
            now = time.monotonic()
            active = False
            for ctx in list(self._contexts.values()):
                if ctx.operation.is_terminal:
                    continue
                active = True
                task = ctx.task
                if ctx.stalled or task is None or task.done():
                    continue
                if now - ctx.last_activity > timeout:
                    ctx.stalled = True
                    logger.error(
                        "Clone operation %s made no progress for %.0fs, cancelling",
                        ctx.operation.id,
                        timeout,
                    )
                    task.cancel()
            if not active:
                return


__all__ = ["ClonerOrchestrator", "generate_operation_id"]
