"""
TableCopier - Streams one table's rows from source to target.

The TableCopier performs the copy phase of a clone for a single table:

    - Optionally truncates the target table first
    - Reads the source table in batches of ``batch_size`` rows
    - Passes each row through an optional per-table transformer
    - Writes each batch atomically, with bounded retry for transient errors
    - Throttles throughput when ``max_rows_per_second`` is set
    - Checks the cancellation token between batches

Progress is yielded after every batch so the orchestrator can publish
``rows_copied`` while a large table is still being copied.

Clones are not transactional across batches or tables: a failure aborts the
current table and leaves already written batches in place.

Usage:
    >>> copier = TableCopier(source_backend, target_backend)
    >>> async for progress in copier.copy_table("users", options, token=token):
    ...     print(f"{progress.table}: {progress.rows_copied} rows")
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import aclosing
from dataclasses import dataclass

from dbcloner.backends.interface import DatabaseBackend, Row
from dbcloner.exceptions import (
    BATCH_RETRY_CONFIG,
    ClonerError,
    ErrorHandler,
    TableCopyError,
    translate_backend_error,
)
from dbcloner.models import CloneOptions
from dbcloner.observability import (
    ATTR_BATCH_SIZE,
    ATTR_ROW_COUNT,
    ATTR_TABLE_NAME,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

RowTransformer = Callable[[Row], Row]
"""Rewrites one source row before it is written to the target."""


class CancellationToken:
    """
    Cooperative cancellation signal for one clone operation.

    The pipeline checks ``is_cancelled`` at safe points (between tables and
    between batches); nothing is interrupted mid-write.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        await self._event.wait()


@dataclass(frozen=True)
class TableCopyProgress:
    """
    Progress of one table copy, reported after each batch.

    Attributes:
        table: Table being copied.
        rows_copied: Rows of this table written so far.
        rows_total: Estimated rows of this table (0 if unknown).
        rows_per_second: Throughput since the table copy started.
        truncated: Whether the target table was truncated first.
        is_complete: True on the final report of a fully copied table.
    """

    table: str
    rows_copied: int
    rows_total: int
    rows_per_second: float
    truncated: bool = False
    is_complete: bool = False

    @property
    def progress_percent(self) -> float:
        if self.rows_total == 0:
            return 100.0 if self.is_complete else 0.0
        return min(100.0, (self.rows_copied / self.rows_total) * 100)


class RateLimiter:
    """
    Token bucket limiting rows written per second.

    A ``max_rate`` of 0 disables limiting.
    """

    def __init__(self, max_rate: int) -> None:
        self._max_rate = max_rate
        self._tokens = float(max_rate)
        self._last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def wait(self, count: int) -> None:
        """
        Wait for capacity to write ``count`` rows.

        Args:
            count: Rows about to be written.
        """
        if self._max_rate <= 0:
            return

        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_update
            self._last_update = now
            self._tokens = min(self._max_rate, self._tokens + elapsed * self._max_rate)

            if count > self._tokens:
                await asyncio.sleep((count - self._tokens) / self._max_rate)
                self._tokens = 0
            else:
                self._tokens -= count


class TableCopier:
    """
    Copies tables from a source backend into a target backend.

    Example:
        >>> copier = TableCopier(
        ...     source,
        ...     target,
        ...     transformers={"users": lambda row: {**row, "email": None}},
        ... )
        >>> async for progress in copier.copy_table("users", CloneOptions()):
        ...     pass

    Attributes:
        _source: Backend rows are read from.
        _target: Backend rows are written to.
        _transformers: Per-table row transformers.
        _error_handler: Retry executor for batch writes.
    """

    def __init__(
        self,
        source: DatabaseBackend,
        target: DatabaseBackend,
        *,
        transformers: Mapping[str, RowTransformer] | None = None,
        error_handler: ErrorHandler | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the copier.

        Args:
            source: Backend to read from.
            target: Backend to write to.
            transformers: Table name -> row transformer. Tables without one
                are copied unchanged.
            error_handler: Retry executor; a default one is created if omitted.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._source = source
        self._target = target
        self._transformers = dict(transformers or {})
        self._error_handler = error_handler or ErrorHandler()

    async def copy_table(
        self,
        table: str,
        options: CloneOptions,
        *,
        token: CancellationToken | None = None,
        rows_total: int = 0,
    ) -> AsyncIterator[TableCopyProgress]:
        """
        Copy one table.

        Stops early, without error, when ``token`` is cancelled between
        batches; the final progress then has ``is_complete=False``.

        Args:
            table: Table to copy.
            options: Clone options (batch size, truncation, retries, throttle).
            token: Cancellation token checked between batches.
            rows_total: Row estimate used for progress reporting.

        Yields:
            TableCopyProgress after each written batch, then a final report.

        Raises:
            TableCopyError: If truncation, a read or a batch write fails.
        """
        start_time = time.monotonic()
        rows_copied = 0
        truncated = False
        rate_limiter = RateLimiter(options.max_rows_per_second)
        retry_config = dataclasses.replace(
            BATCH_RETRY_CONFIG,
            max_attempts=options.max_batch_retries + 1,
        )
        transform = self._transformers.get(table)

        if options.truncate_first:
            try:
                with self._tracer.span("dbcloner.table_copier.truncate", {ATTR_TABLE_NAME: table}):
                    await self._target.truncate(table)
            except Exception as e:
                raise self._copy_error(table, e, rows_copied, truncated) from e
            truncated = True

        logger.info(
            "Copying table %s: ~%d rows, batch_size=%d, truncated=%s",
            table,
            rows_total,
            options.batch_size,
            truncated,
        )

        try:
            async with aclosing(self._source.read_rows(table, options.batch_size)) as batches:
                async for batch in batches:
                    if token is not None and token.is_cancelled:
                        logger.info("Copy of %s cancelled after %d rows", table, rows_copied)
                        break

                    rows = [transform(row) for row in batch] if transform else batch
                    with self._tracer.span(
                        "dbcloner.table_copier.write_batch",
                        {
                            ATTR_TABLE_NAME: table,
                            ATTR_BATCH_SIZE: options.batch_size,
                            ATTR_ROW_COUNT: len(rows),
                        },
                    ):
                        written = await self._error_handler.execute_with_retry(
                            lambda rows=rows: self._write_batch(table, rows),
                            f"write_batch[{table}]",
                            retry_config=retry_config,
                        )
                    rows_copied += written
                    await rate_limiter.wait(written)

                    yield self._progress(table, rows_copied, rows_total, start_time, truncated)
                else:
                    yield self._progress(
                        table, rows_copied, rows_total, start_time, truncated, is_complete=True
                    )
                    logger.debug("Copied table %s: %d rows", table, rows_copied)
                    return
        except TableCopyError:
            raise
        except Exception as e:
            raise self._copy_error(table, e, rows_copied, truncated) from e

        # Cancelled between batches
        yield self._progress(table, rows_copied, rows_total, start_time, truncated)

    async def _write_batch(self, table: str, rows: list[Row]) -> int:
        try:
            return await self._target.write_rows(table, rows)
        except ClonerError:
            raise
        except Exception as e:
            raise translate_backend_error(e, table=table) from e

    @staticmethod
    def _progress(
        table: str,
        rows_copied: int,
        rows_total: int,
        start_time: float,
        truncated: bool,
        *,
        is_complete: bool = False,
    ) -> TableCopyProgress:
        elapsed = time.monotonic() - start_time
        return TableCopyProgress(
            table=table,
            rows_copied=rows_copied,
            rows_total=max(rows_total, rows_copied),
            rows_per_second=rows_copied / elapsed if elapsed > 0 else 0.0,
            truncated=truncated,
            is_complete=is_complete,
        )

    @staticmethod
    def _copy_error(
        table: str, error: BaseException, rows_copied: int, truncated: bool
    ) -> TableCopyError:
        translated = translate_backend_error(error, table=table)
        return TableCopyError(
            table,
            translated.message,
            rows_copied=rows_copied,
            cause_code=translated.error_code,
            truncated=truncated,
        )


__all__ = [
    "CancellationToken",
    "RateLimiter",
    "RowTransformer",
    "TableCopier",
    "TableCopyProgress",
]
