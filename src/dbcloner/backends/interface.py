"""
Database backend interface.

The cloner only needs a handful of primitives from a database: list the
tables, read a table in batches, write a batch, and empty a table. Any
backend exposing these primitives (a direct SQL connection, a REST data API,
an in-memory fake) can be cloned from and into.

Backends raise ClonerError subclasses (see ``dbcloner.exceptions``) rather
than driver exceptions, so callers can classify failures uniformly.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Sequence
from types import TracebackType
from typing import TYPE_CHECKING, Any, TypeAlias

if TYPE_CHECKING:
    from dbcloner.credentials import Environment

Row: TypeAlias = dict[str, Any]
"""One table row keyed by column name."""


class DatabaseBackend(ABC):
    """
    Abstract base class for clone sources and targets.

    Concrete implementations:
    - InMemoryBackend: For testing and development
    - SQLAlchemyBackend: PostgreSQL (asyncpg) or SQLite (aiosqlite)

    Backends are async context managers; leaving the context releases any
    pooled connections.

    Example:
        >>> async with backend_factory(environment) as backend:
        ...     for table in await backend.list_tables():
        ...         print(table, await backend.count_rows(table))
    """

    name: str = "database"

    @abstractmethod
    async def list_tables(self, exclude_schemas: Sequence[str] = ()) -> list[str]:
        """
        List the base tables visible to these credentials.

        Tables outside the default schema are returned as ``schema.table``.

        Args:
            exclude_schemas: Schemas whose tables are left out.

        Returns:
            Table names sorted alphabetically.
        """
        pass

    @abstractmethod
    async def count_rows(self, table: str) -> int:
        """
        Count the rows of a table.

        Raises:
            BackendError: If the table does not exist.
        """
        pass

    @abstractmethod
    def read_rows(self, table: str, batch_size: int) -> AsyncIterator[list[Row]]:
        """
        Stream a table's rows in batches of at most ``batch_size``.

        Rows are ordered by primary key where the backend knows one.

        Args:
            table: Table to read.
            batch_size: Maximum rows per yielded batch.

        Yields:
            Non-empty lists of rows.
        """
        pass

    @abstractmethod
    async def write_rows(self, table: str, rows: list[Row]) -> int:
        """
        Insert a batch of rows atomically.

        Either every row of the batch is written or none is.

        Returns:
            Number of rows written.
        """
        pass

    @abstractmethod
    async def truncate(self, table: str) -> None:
        """Remove every row from a table."""
        pass

    @abstractmethod
    async def check_write_access(self) -> None:
        """
        Confirm the credentials may write, without changing any data.

        Raises:
            InsufficientPermissionsError: If writes would be rejected.
        """
        pass

    async def get_foreign_keys(self, tables: Sequence[str]) -> dict[str, set[str]]:
        """
        Foreign-key dependencies between the given tables.

        Args:
            tables: Tables to inspect.

        Returns:
            Mapping of table -> tables it references. Backends without schema
            introspection return an empty mapping.
        """
        return {}

    async def close(self) -> None:
        """Release connections held by the backend."""
        return None

    async def __aenter__(self) -> DatabaseBackend:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()


BackendFactory: TypeAlias = Callable[["Environment"], DatabaseBackend]
"""Builds a backend for an environment. Must not perform I/O."""


__all__ = [
    "Row",
    "DatabaseBackend",
    "BackendFactory",
]
