"""
Database backends the cloner reads from and writes to.

Backends:
    - DatabaseBackend: Abstract interface
    - SQLAlchemyBackend: PostgreSQL via asyncpg, SQLite via aiosqlite
    - InMemoryBackend: Dictionary-backed fake for tests and development

Usage:
    >>> from dbcloner.backends import create_backend
    >>> async with create_backend(environment) as backend:
    ...     tables = await backend.list_tables()
"""

from dbcloner.backends.in_memory import InMemoryBackend
from dbcloner.backends.interface import BackendFactory, DatabaseBackend, Row
from dbcloner.backends.sqlalchemy import SYSTEM_SCHEMAS, SQLAlchemyBackend, create_backend

__all__ = [
    "Row",
    "DatabaseBackend",
    "BackendFactory",
    "InMemoryBackend",
    "SQLAlchemyBackend",
    "SYSTEM_SCHEMAS",
    "create_backend",
]
