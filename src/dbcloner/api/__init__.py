"""
HTTP API of the database cloner.

Routes (under ``/api/database-cloner`` by default):
    - POST /start-clone
    - GET  /clone-status/{operation_id}
    - POST /cancel-clone/{operation_id}
    - POST /validate-connection
    - GET  /operations

Usage:
    >>> from dbcloner.api import create_app
    >>> app = create_app()
"""

from dbcloner.api.app import create_app
from dbcloner.api.auth import (
    SUPERUSER_ROLE,
    BearerTokenSessionProvider,
    Session,
    SessionProvider,
    SessionUser,
    require_superuser,
)
from dbcloner.api.dependencies import get_orchestrator

__all__ = [
    "create_app",
    "get_orchestrator",
    "require_superuser",
    "SUPERUSER_ROLE",
    "Session",
    "SessionUser",
    "SessionProvider",
    "BearerTokenSessionProvider",
]
