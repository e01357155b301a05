"""
Caller authorization for the cloner API.

Sessions come from a pluggable SessionProvider. Every cloner route requires
a session whose user has the ``superuser`` role; the check runs before any
orchestrator call so unauthorized callers learn nothing about operations.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from fastapi import HTTPException, Request, status
from pydantic import BaseModel, SecretStr

logger = logging.getLogger(__name__)

SUPERUSER_ROLE = "superuser"


class SessionUser(BaseModel):
    """Authenticated user of a session."""

    id: str
    role: str


class Session(BaseModel):
    """An authenticated session."""

    user: SessionUser


@runtime_checkable
class SessionProvider(Protocol):
    """Resolves the session of an incoming request."""

    async def get_session(self, request: Request) -> Session | None:
        """
        Return the caller's session.

        Returns:
            The session, or None when the request is unauthenticated.
        """
        ...


class BearerTokenSessionProvider:
    """
    Grants the superuser role to requests bearing a configured token.

    Example:
        >>> provider = BearerTokenSessionProvider([SecretStr("s3cret")])
        >>> # Authorization: Bearer s3cret  -> superuser session
    """

    def __init__(self, superuser_tokens: Sequence[SecretStr | str]) -> None:
        self._tokens = [
            token.get_secret_value() if isinstance(token, SecretStr) else token
            for token in superuser_tokens
            if token
        ]
        if not self._tokens:
            logger.warning("No superuser tokens configured; every cloner request will be rejected")

    async def get_session(self, request: Request) -> Session | None:
        header = request.headers.get("authorization", "")
        scheme, _, credential = header.partition(" ")
        if scheme.lower() != "bearer" or not credential:
            return None
        credential = credential.strip()
        for index, token in enumerate(self._tokens):
            if secrets.compare_digest(credential.encode(), token.encode()):
                return Session(user=SessionUser(id=f"token-{index}", role=SUPERUSER_ROLE))
        return None


async def require_superuser(request: Request) -> Session:
    """
    FastAPI dependency enforcing a superuser session.

    Raises:
        HTTPException: 401 without a session, 403 for any other role.
    """
    provider: SessionProvider = request.app.state.session_provider
    session = await provider.get_session(request)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if session.user.role != SUPERUSER_ROLE:
        logger.warning(
            "Rejected cloner request from user %s (role %s)",
            session.user.id,
            session.user.role,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Superuser role required",
        )
    return session


__all__ = [
    "SUPERUSER_ROLE",
    "SessionUser",
    "Session",
    "SessionProvider",
    "BearerTokenSessionProvider",
    "require_superuser",
]
