"""
In-memory database backend.

Useful for testing and development. Tables live in dictionaries and are
lost when the process terminates.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator, Mapping, Sequence

from dbcloner.backends.interface import DatabaseBackend, Row
from dbcloner.exceptions import BackendError, InsufficientPermissionsError
from dbcloner.observability import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ROW_COUNT,
    ATTR_TABLE_NAME,
    Tracer,
    create_tracer,
)


class InMemoryBackend(DatabaseBackend):
    """
    In-memory implementation of a clone source or target.

    Suitable for:
    - Unit testing the orchestrator and copy pipeline
    - Local development without a database

    Every mutating call is appended to ``journal`` as ``(operation, table)``
    so tests can assert the order of truncates and writes.

    Example:
        >>> backend = InMemoryBackend(
        ...     tables={"users": [{"id": 1}], "orders": [{"id": 1, "user_id": 1}]},
        ...     foreign_keys={"orders": {"users"}},
        ... )
        >>> await backend.count_rows("users")
        1

    Attributes:
        tables: Table name -> rows.
        foreign_keys: Table name -> referenced table names.
        primary_keys: Table name -> primary key column; writes reject duplicates.
        read_only: When True, every write is refused.
        latency: Seconds slept before each read and write batch.
        journal: Log of mutating calls.
    """

    def __init__(
        self,
        tables: Mapping[str, list[Row]] | None = None,
        *,
        name: str = "memory",
        foreign_keys: Mapping[str, set[str]] | None = None,
        primary_keys: Mapping[str, str] | None = None,
        read_only: bool = False,
        latency: float = 0.0,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

        self.name = name
        self.tables: dict[str, list[Row]] = {
            table: [dict(row) for row in rows] for table, rows in (tables or {}).items()
        }
        self.foreign_keys: dict[str, set[str]] = {
            table: set(parents) for table, parents in (foreign_keys or {}).items()
        }
        self.primary_keys: dict[str, str] = dict(primary_keys or {})
        self.read_only = read_only
        self.latency = latency
        self.journal: list[tuple[str, str]] = []
        self.closed = False
        self._lock = asyncio.Lock()

    async def list_tables(self, exclude_schemas: Sequence[str] = ()) -> list[str]:
        excluded = tuple(f"{schema}." for schema in exclude_schemas)
        return sorted(t for t in self.tables if not t.startswith(excluded))

    async def count_rows(self, table: str) -> int:
        async with self._lock:
            return len(self._rows(table))

    async def read_rows(self, table: str, batch_size: int) -> AsyncIterator[list[Row]]:
        offset = 0
        while True:
            if self.latency:
                await asyncio.sleep(self.latency)
            async with self._lock:
                batch = [dict(row) for row in self._rows(table)[offset : offset + batch_size]]
            if not batch:
                return
            yield batch
            offset += len(batch)

    async def write_rows(self, table: str, rows: list[Row]) -> int:
        with self._tracer.span(
            "dbcloner.backend.write_rows",
            {
                ATTR_DB_SYSTEM: "memory",
                ATTR_DB_OPERATION: "insert",
                ATTR_TABLE_NAME: table,
                ATTR_ROW_COUNT: len(rows),
            },
        ):
            if self.latency:
                await asyncio.sleep(self.latency)
            async with self._lock:
                self._check_writable(table)
                existing = self._rows(table)

                # Validate the whole batch before touching the table
                pk = self.primary_keys.get(table)
                if pk is not None:
                    seen = {row.get(pk) for row in existing}
                    for row in rows:
                        key = row.get(pk)
                        if key in seen:
                            raise BackendError(
                                f"duplicate key value violates unique constraint: {pk}={key!r}",
                                table=table,
                            )
                        seen.add(key)

                existing.extend(copy.deepcopy(rows))
                self.journal.append(("write", table))
                return len(rows)

    async def truncate(self, table: str) -> None:
        async with self._lock:
            self._check_writable(table)
            self._rows(table).clear()
            self.journal.append(("truncate", table))

    async def check_write_access(self) -> None:
        if self.read_only:
            raise InsufficientPermissionsError(f"Environment '{self.name}' is read-only")

    async def get_foreign_keys(self, tables: Sequence[str]) -> dict[str, set[str]]:
        wanted = set(tables)
        return {
            table: {parent for parent in self.foreign_keys.get(table, set()) if parent in wanted}
            for table in tables
        }

    async def close(self) -> None:
        self.closed = True

    def _rows(self, table: str) -> list[Row]:
        try:
            return self.tables[table]
        except KeyError:
            raise BackendError(f"relation '{table}' does not exist", table=table) from None

    def _check_writable(self, table: str) -> None:
        if self.read_only:
            raise InsufficientPermissionsError(
                f"permission denied for table {table}",
                table=table,
            )


__all__ = ["InMemoryBackend"]
