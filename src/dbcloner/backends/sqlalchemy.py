"""
SQLAlchemy async backend.

Clones to and from any database SQLAlchemy's asyncio extension can reach.
PostgreSQL (asyncpg) is the production target; SQLite (aiosqlite) is used
for local development and tests.

Table metadata is reflected once per backend instance and cached. Each write
batch runs in its own transaction, so a failing batch leaves no partial rows.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import contextmanager

from sqlalchemy import MetaData, Table, delete, false, func, insert, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from dbcloner.backends.interface import DatabaseBackend, Row
from dbcloner.credentials import Environment
from dbcloner.exceptions import BackendError, InsufficientPermissionsError, translate_backend_error
from dbcloner.observability import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ROW_COUNT,
    ATTR_TABLE_NAME,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

# Schemas that never hold application data
SYSTEM_SCHEMAS = frozenset({"information_schema", "pg_catalog", "pg_toast"})

_POSTGRES_MISSING_INSERT_PRIVILEGE = text(
    """
    SELECT t.table_name
    FROM information_schema.tables t
    WHERE t.table_schema = current_schema()
      AND t.table_type = 'BASE TABLE'
      AND NOT has_table_privilege(
          quote_ident(t.table_schema) || '.' || quote_ident(t.table_name),
          'INSERT'
      )
    ORDER BY t.table_name
    LIMIT 5
    """
)


class SQLAlchemyBackend(DatabaseBackend):
    """
    Backend over an SQLAlchemy AsyncEngine.

    Tables of the default schema are addressed by bare name; tables of
    additional ``schemas`` are addressed as ``schema.table``.

    Example:
        >>> engine = create_async_engine("sqlite+aiosqlite:///dev.db")
        >>> async with SQLAlchemyBackend(engine, name="dev") as backend:
        ...     print(await backend.list_tables())

    Truncation uses ``TRUNCATE ... CASCADE`` on PostgreSQL, which also empties
    tables that reference the truncated one even when they are not part of
    the clone. Other dialects use ``DELETE FROM``.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        name: str = "database",
        schemas: Sequence[str] = (),
        owns_engine: bool = True,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the backend.

        Args:
            engine: Engine to run queries on.
            name: Environment name, used in log messages.
            schemas: Additional schemas to reflect besides the default one.
            owns_engine: Dispose the engine on close().
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._engine = engine
        self._schemas = tuple(s for s in schemas if s not in SYSTEM_SCHEMAS)
        self._owns_engine = owns_engine
        self._metadata: MetaData | None = None
        self._reflect_lock = asyncio.Lock()
        self.name = name

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    async def list_tables(self, exclude_schemas: Sequence[str] = ()) -> list[str]:
        metadata = await self._reflect()
        excluded = {*exclude_schemas, *SYSTEM_SCHEMAS}
        return sorted(
            key for key, table in metadata.tables.items() if table.schema not in excluded
        )

    async def count_rows(self, table: str) -> int:
        tbl = await self._table(table)
        with self._translate_errors(table):
            async with self._engine.connect() as conn:
                result = await conn.execute(select(func.count()).select_from(tbl))
                return int(result.scalar_one())

    async def read_rows(self, table: str, batch_size: int) -> AsyncIterator[list[Row]]:
        tbl = await self._table(table)
        # One streamed query: every batch comes from the same snapshot and
        # cursor, with or without a primary key to order by
        stmt = select(tbl).order_by(*tbl.primary_key.columns)
        with self._translate_errors(table):
            async with self._engine.connect() as conn:
                result = await conn.stream(stmt.execution_options(yield_per=batch_size))
                async for partition in result.partitions(batch_size):
                    yield [dict(row._mapping) for row in partition]

    async def write_rows(self, table: str, rows: list[Row]) -> int:
        if not rows:
            return 0
        tbl = await self._table(table)
        with self._tracer.span(
            "dbcloner.backend.write_rows",
            {
                ATTR_DB_SYSTEM: self.dialect,
                ATTR_DB_OPERATION: "INSERT",
                ATTR_TABLE_NAME: table,
                ATTR_ROW_COUNT: len(rows),
            },
        ):
            with self._translate_errors(table):
                async with self._engine.begin() as conn:
                    await conn.execute(insert(tbl), rows)
            return len(rows)

    async def truncate(self, table: str) -> None:
        tbl = await self._table(table)
        with self._tracer.span(
            "dbcloner.backend.truncate",
            {ATTR_DB_SYSTEM: self.dialect, ATTR_DB_OPERATION: "TRUNCATE", ATTR_TABLE_NAME: table},
        ):
            with self._translate_errors(table):
                async with self._engine.begin() as conn:
                    if self.dialect == "postgresql":
                        quoted = conn.dialect.identifier_preparer.format_table(tbl)
                        await conn.execute(text(f"TRUNCATE TABLE {quoted} CASCADE"))
                    else:
                        await conn.execute(delete(tbl))
        logger.debug("Truncated %s on %s", table, self.name)

    async def check_write_access(self) -> None:
        """
        Probe write permission without modifying data.

        Runs ``DELETE ... WHERE false`` against one table inside a transaction
        that is rolled back. On PostgreSQL the INSERT privilege of every table
        in the current schema is checked as well.
        """
        tables = await self.list_tables()
        probe = await self._table(tables[0]) if tables else None
        with self._tracer.span(
            "dbcloner.backend.check_write_access",
            {ATTR_DB_SYSTEM: self.dialect},
        ):
            with self._translate_errors(None):
                async with self._engine.connect() as conn:
                    trans = await conn.begin()
                    try:
                        if self.dialect == "postgresql":
                            result = await conn.execute(_POSTGRES_MISSING_INSERT_PRIVILEGE)
                            denied = [row[0] for row in result]
                            if denied:
                                raise InsufficientPermissionsError(
                                    f"INSERT denied on {', '.join(denied)}"
                                )
                        if probe is not None:
                            await conn.execute(delete(probe).where(false()))
                    finally:
                        await trans.rollback()

    async def get_foreign_keys(self, tables: Sequence[str]) -> dict[str, set[str]]:
        metadata = await self._reflect()
        wanted = set(tables)
        dependencies: dict[str, set[str]] = {}
        for name in tables:
            tbl = metadata.tables.get(name)
            if tbl is None:
                dependencies[name] = set()
                continue
            parents = {_table_key(fk.column.table) for fk in tbl.foreign_keys}
            dependencies[name] = {p for p in parents if p in wanted and p != name}
        return dependencies

    async def close(self) -> None:
        if self._owns_engine:
            await self._engine.dispose()

    async def _reflect(self) -> MetaData:
        """Reflect table metadata once and cache it."""
        async with self._reflect_lock:
            if self._metadata is None:
                metadata = MetaData()
                with self._translate_errors(None):
                    async with self._engine.connect() as conn:
                        await conn.run_sync(lambda sync_conn: metadata.reflect(bind=sync_conn))
                        for schema in self._schemas:
                            await conn.run_sync(
                                lambda sync_conn, s=schema: metadata.reflect(
                                    bind=sync_conn, schema=s
                                )
                            )
                self._metadata = metadata
                logger.debug("Reflected %d tables on %s", len(metadata.tables), self.name)
            return self._metadata

    async def _table(self, table: str) -> Table:
        metadata = await self._reflect()
        try:
            return metadata.tables[table]
        except KeyError:
            raise BackendError(f"relation '{table}' does not exist", table=table) from None

    @contextmanager
    def _translate_errors(self, table: str | None) -> Iterator[None]:
        try:
            yield
        except (SQLAlchemyError, OSError) as e:
            raise translate_backend_error(e, table=table) from e


def _table_key(table: Table) -> str:
    return table.fullname


def create_backend(
    environment: Environment,
    *,
    schemas: Sequence[str] = (),
    tracer: Tracer | None = None,
    enable_tracing: bool = True,
) -> SQLAlchemyBackend:
    """
    Build a SQLAlchemy backend for an environment.

    Does not open a connection; connection errors surface on first use.

    Args:
        environment: Environment with credentials.
        schemas: Additional schemas to include.
        tracer: Optional custom Tracer instance.
        enable_tracing: Whether to enable OpenTelemetry tracing.

    Returns:
        A backend owning a new engine.

    Raises:
        InvalidCredentialsError: If the credentials are incomplete.
    """
    url = environment.credentials.to_sqlalchemy_url(environment.name)
    if url.get_backend_name() == "sqlite":
        engine = create_async_engine(url)
    else:
        engine = create_async_engine(url, pool_pre_ping=True, pool_size=5, max_overflow=5)
    return SQLAlchemyBackend(
        engine,
        name=environment.name,
        schemas=schemas,
        owns_engine=True,
        tracer=tracer,
        enable_tracing=enable_tracing,
    )


__all__ = ["SQLAlchemyBackend", "create_backend", "SYSTEM_SCHEMAS"]
