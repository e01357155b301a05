"""
Unit tests for TableCopier.

Tests cover:
- Batch-by-batch copying and progress reporting
- Truncation before the first write
- Row transformers
- Cancellation between batches
- Error wrapping and bounded retry
- RateLimiter and CancellationToken
"""

from __future__ import annotations

import asyncio
import time
from unittest.mock import MagicMock

import pytest

from dbcloner.backends.in_memory import InMemoryBackend
from dbcloner.backends.interface import Row
from dbcloner.exceptions import DatabaseConnectionError, ErrorHandler, TableCopyError
from dbcloner.models import CloneOptions
from dbcloner.table_copier import (
    CancellationToken,
    RateLimiter,
    TableCopier,
    TableCopyProgress,
)


class FlakyTarget(InMemoryBackend):
    """Target whose first ``failures`` writes raise a transient error."""

    def __init__(self, *args: object, failures: int = 0, **kwargs: object) -> None:
        super().__init__(*args, **kwargs)  # type: ignore[arg-type]
        self.failures = failures
        self.attempts = 0

    async def write_rows(self, table: str, rows: list[Row]) -> int:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise DatabaseConnectionError("connection reset by peer", table=table)
        return await super().write_rows(table, rows)


@pytest.fixture
def source() -> InMemoryBackend:
    return InMemoryBackend({"users": [{"id": i, "email": f"u{i}@example.com"} for i in range(7)]})


async def _drain(
    copier: TableCopier, table: str, options: CloneOptions, **kwargs: object
) -> list[TableCopyProgress]:
    stream = copier.copy_table(table, options, **kwargs)  # type: ignore[arg-type]
    return [progress async for progress in stream]


class TestCopyTable:
    """Tests for the happy path."""

    @pytest.mark.asyncio
    async def test_copies_all_rows_in_batches(self, source: InMemoryBackend) -> None:
        """Progress is reported after each batch, then once more when complete."""
        target = InMemoryBackend({"users": []})
        copier = TableCopier(source, target, enable_tracing=False)

        reports = await _drain(copier, "users", CloneOptions(batch_size=3), rows_total=7)

        assert [r.rows_copied for r in reports] == [3, 6, 7, 7]
        assert [r.is_complete for r in reports] == [False, False, False, True]
        assert reports[-1].progress_percent == 100.0
        assert target.tables["users"] == source.tables["users"]
        assert target.journal == [("write", "users")] * 3

    @pytest.mark.asyncio
    async def test_empty_table_completes(self) -> None:
        source = InMemoryBackend({"empty": []})
        target = InMemoryBackend({"empty": []})
        copier = TableCopier(source, target, enable_tracing=False)

        reports = await _drain(copier, "empty", CloneOptions())

        assert len(reports) == 1
        assert reports[0].is_complete is True
        assert reports[0].rows_copied == 0
        assert reports[0].progress_percent == 100.0

    @pytest.mark.asyncio
    async def test_truncates_before_first_write(self, source: InMemoryBackend) -> None:
        target = InMemoryBackend({"users": [{"id": 99}]})
        copier = TableCopier(source, target, enable_tracing=False)

        reports = await _drain(copier, "users", CloneOptions(truncate_first=True))

        assert target.journal[0] == ("truncate", "users")
        assert len(target.tables["users"]) == 7
        assert all(r.truncated for r in reports)

    @pytest.mark.asyncio
    async def test_transformer_rewrites_rows(self, source: InMemoryBackend) -> None:
        target = InMemoryBackend({"users": []})
        copier = TableCopier(
            source,
            target,
            transformers={"users": lambda row: {**row, "email": None}},
            enable_tracing=False,
        )

        await _drain(copier, "users", CloneOptions())

        assert {row["email"] for row in target.tables["users"]} == {None}
        assert source.tables["users"][0]["email"] == "u0@example.com"


class TestCancellation:
    """Tests for cancellation between batches."""

    @pytest.mark.asyncio
    async def test_stops_between_batches(self, source: InMemoryBackend) -> None:
        """A cancelled token stops the copy after the in-flight batch."""
        target = InMemoryBackend({"users": []})
        copier = TableCopier(source, target, enable_tracing=False)
        token = CancellationToken()

        reports = []
        async for progress in copier.copy_table("users", CloneOptions(batch_size=2), token=token):
            reports.append(progress)
            token.cancel()

        assert [r.rows_copied for r in reports] == [2, 2]
        assert reports[-1].is_complete is False
        assert len(target.tables["users"]) == 2

    @pytest.mark.asyncio
    async def test_cancelled_before_start_writes_nothing(self, source: InMemoryBackend) -> None:
        target = InMemoryBackend({"users": []})
        copier = TableCopier(source, target, enable_tracing=False)
        token = CancellationToken()
        token.cancel()

        reports = await _drain(copier, "users", CloneOptions(), token=token)

        assert len(reports) == 1
        assert reports[0].is_complete is False
        assert target.journal == []


class TestErrors:
    """Tests for error wrapping and retry."""

    @pytest.mark.asyncio
    async def test_write_failure_raises_table_copy_error(self, source: InMemoryBackend) -> None:
        """Failures carry the table, rows already written and the cause code."""
        target = InMemoryBackend({"users": [{"id": 0}]}, primary_keys={"users": "id"})
        copier = TableCopier(source, target, enable_tracing=False)

        with pytest.raises(TableCopyError) as exc_info:
            await _drain(copier, "users", CloneOptions(batch_size=3))

        error = exc_info.value
        assert error.table == "users"
        assert error.rows_copied == 0
        assert error.cause_code == "BACKEND_ERROR"
        assert "duplicate key" in error.original_error

    @pytest.mark.asyncio
    async def test_missing_target_table(self, source: InMemoryBackend) -> None:
        copier = TableCopier(source, InMemoryBackend(), enable_tracing=False)

        with pytest.raises(TableCopyError) as exc_info:
            await _drain(copier, "users", CloneOptions(truncate_first=True))

        assert "does not exist" in exc_info.value.message
        assert exc_info.value.truncated is False

    @pytest.mark.asyncio
    async def test_write_failure_after_truncate_reports_truncated(
        self, source: InMemoryBackend
    ) -> None:
        target = FlakyTarget({"users": [{"id": 99}]}, failures=1)
        copier = TableCopier(source, target, enable_tracing=False)

        with pytest.raises(TableCopyError) as exc_info:
            await _drain(copier, "users", CloneOptions(truncate_first=True))

        assert exc_info.value.truncated is True
        assert exc_info.value.rows_copied == 0
        assert target.tables["users"] == []

    @pytest.mark.asyncio
    async def test_transient_failure_without_retry(self, source: InMemoryBackend) -> None:
        """Retries are off unless max_batch_retries is set."""
        target = FlakyTarget({"users": []}, failures=1)
        copier = TableCopier(source, target, enable_tracing=False)

        with pytest.raises(TableCopyError) as exc_info:
            await _drain(copier, "users", CloneOptions())

        assert exc_info.value.cause_code == "CONNECTION_FAILED"
        assert target.attempts == 1

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, source: InMemoryBackend) -> None:
        target = FlakyTarget({"users": []}, failures=1)
        callback = MagicMock()
        copier = TableCopier(
            source,
            target,
            error_handler=ErrorHandler(metrics_callback=callback),
            enable_tracing=False,
        )

        reports = await _drain(copier, "users", CloneOptions(max_batch_retries=1))

        assert reports[-1].is_complete is True
        assert len(target.tables["users"]) == 7
        assert target.attempts == 2
        error, will_retry = callback.call_args.args
        assert isinstance(error, DatabaseConnectionError)
        assert will_retry is True


class TestRateLimiter:
    """Tests for the token bucket."""

    @pytest.mark.asyncio
    async def test_zero_rate_never_waits(self) -> None:
        limiter = RateLimiter(0)
        start = time.monotonic()
        await limiter.wait(1_000_000)
        assert time.monotonic() - start < 0.05

    @pytest.mark.asyncio
    async def test_waits_when_bucket_is_empty(self) -> None:
        """Writing twice the rate takes about a second."""
        limiter = RateLimiter(100)
        start = time.monotonic()
        await limiter.wait(100)
        await limiter.wait(100)
        assert time.monotonic() - start >= 0.9


class TestCancellationToken:
    @pytest.mark.asyncio
    async def test_wait_returns_after_cancel(self) -> None:
        token = CancellationToken()
        assert token.is_cancelled is False

        waiter = asyncio.create_task(token.wait())
        await asyncio.sleep(0)
        token.cancel()
        await asyncio.wait_for(waiter, timeout=1)

        assert token.is_cancelled is True
