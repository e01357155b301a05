"""
dbcloner - Cancellable, observable cloning of relational database environments.

This library provides:
- ClonerOrchestrator running clone operations as background tasks
- Connection validation before any data is touched
- Table-by-table copying in foreign-key order with batch-level progress
- SQLAlchemy (PostgreSQL, SQLite) and in-memory backends
- A FastAPI surface restricted to superusers
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("dbcloner")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from dbcloner.backends import (
    BackendFactory,
    DatabaseBackend,
    InMemoryBackend,
    SQLAlchemyBackend,
    create_backend,
)
from dbcloner.config import ClonerSettings, configure_logging, get_settings
from dbcloner.credentials import DatabaseCredentials, Environment, EnvironmentRole
from dbcloner.exceptions import (
    AuthenticationError,
    BackendError,
    ClonerError,
    CloneLimitExceededError,
    CloneStalledError,
    ConnectionValidationError,
    DatabaseConnectionError,
    InsufficientPermissionsError,
    InvalidCredentialsError,
    InvalidStatusTransitionError,
    OperationNotFoundError,
    ProductionProtectionError,
    TableCopyError,
)
from dbcloner.models import (
    CloneError,
    CloneLog,
    CloneOperation,
    CloneOptions,
    CloneProgress,
    CloneStatus,
    OperationStatus,
    TableCopyResult,
    ValidationResult,
)
from dbcloner.orchestrator import ClonerOrchestrator
from dbcloner.table_copier import CancellationToken, TableCopier
from dbcloner.validator import ConnectionValidator

__all__ = [
    "__version__",
    # Orchestration
    "ClonerOrchestrator",
    "ConnectionValidator",
    "TableCopier",
    "CancellationToken",
    # Models
    "CloneStatus",
    "CloneOptions",
    "CloneProgress",
    "CloneError",
    "CloneLog",
    "CloneOperation",
    "OperationStatus",
    "TableCopyResult",
    "ValidationResult",
    "Environment",
    "EnvironmentRole",
    "DatabaseCredentials",
    # Backends
    "DatabaseBackend",
    "BackendFactory",
    "InMemoryBackend",
    "SQLAlchemyBackend",
    "create_backend",
    # Configuration
    "ClonerSettings",
    "get_settings",
    "configure_logging",
    # Exceptions
    "ClonerError",
    "InvalidCredentialsError",
    "DatabaseConnectionError",
    "AuthenticationError",
    "InsufficientPermissionsError",
    "BackendError",
    "ProductionProtectionError",
    "OperationNotFoundError",
    "InvalidStatusTransitionError",
    "CloneLimitExceededError",
    "TableCopyError",
    "ConnectionValidationError",
    "CloneStalledError",
]
