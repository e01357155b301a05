"""
Environment and credential models.

An Environment is a named, credentialed handle to one database. Credentials
are secrets: they are held as ``SecretStr`` so that ``repr()``, logging and
serialization never reveal them, and they are only unwrapped at the moment a
SQLAlchemy URL is built.

Three credential shapes are accepted:

    >>> DatabaseCredentials(database_url="postgresql+asyncpg://u:p@db.local/app")
    >>> DatabaseCredentials(url="https://abcd.supabase.co", password="secret")
    >>> DatabaseCredentials(host="db.local", database="app", user="u", password="p")
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

from dbcloner.exceptions import InvalidCredentialsError

DEFAULT_POSTGRES_PORT = 5432
DEFAULT_POSTGRES_DRIVER = "postgresql+asyncpg"

_SUPABASE_PROJECT_RE = re.compile(r"^https?://([^./]+)\.supabase\.co", re.IGNORECASE)


class EnvironmentRole(str, Enum):
    """Role an environment plays in a clone operation."""

    SOURCE = "source"
    TARGET = "target"


class DatabaseCredentials(BaseModel):
    """
    Connection secrets for one database.

    Attributes:
        database_url: Full SQLAlchemy URL (takes precedence over everything else).
        url: Hosted project URL such as ``https://<project>.supabase.co``.
        password: Database password.
        service_key: REST API key for the hosted project. Kept secret, not used for SQL.
        host: Explicit host, overrides the host derived from ``url``.
        port: Explicit port.
        database: Database name.
        user: Database user.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    database_url: SecretStr | None = None
    url: str | None = None
    password: SecretStr | None = None
    service_key: SecretStr | None = None
    host: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    database: str | None = None
    user: str | None = None

    @property
    def project_id(self) -> str | None:
        """Project reference parsed from a hosted project URL."""
        if not self.url:
            return None
        match = _SUPABASE_PROJECT_RE.match(self.url.strip())
        return match.group(1) if match else None

    def missing_fields(self) -> list[str]:
        """
        Names of fields that must be supplied before a connection is possible.

        Returns:
            Empty list when the credentials are complete.
        """
        if self.database_url is not None:
            return [] if self.database_url.get_secret_value().strip() else ["database_url"]

        missing: list[str] = []
        if self.host is None:
            if not self.url:
                missing.append("database_url or url")
            elif self.project_id is None:
                missing.append("url (expected https://<project>.supabase.co)")
        if self.password is None or not self.password.get_secret_value():
            missing.append("password")
        return missing

    def resolved_host(self) -> str | None:
        """Host that will be connected to, without any secret."""
        if self.database_url is not None:
            try:
                return make_url(self.database_url.get_secret_value()).host
            except ArgumentError:
                return None
        if self.host:
            return self.host
        project = self.project_id
        return f"db.{project}.supabase.co" if project else None

    def to_sqlalchemy_url(self, environment_name: str = "environment") -> URL:
        """
        Build the SQLAlchemy URL for these credentials.

        Args:
            environment_name: Used in error messages only.

        Returns:
            SQLAlchemy URL with the password embedded.

        Raises:
            InvalidCredentialsError: If required fields are missing or malformed.
        """
        missing = self.missing_fields()
        if missing:
            raise InvalidCredentialsError(environment_name, missing)

        if self.database_url is not None:
            try:
                return make_url(self.database_url.get_secret_value())
            except ArgumentError as e:
                raise InvalidCredentialsError(environment_name, ["database_url (malformed)"]) from e

        host = self.resolved_host()
        user = self.user
        if user is None:
            project = self.project_id
            if project and host and "pooler.supabase.com" in host:
                user = f"postgres.{project}"
            else:
                user = "postgres"

        assert self.password is not None
        return URL.create(
            DEFAULT_POSTGRES_DRIVER,
            username=user,
            password=self.password.get_secret_value(),
            host=host,
            port=self.port or DEFAULT_POSTGRES_PORT,
            database=self.database or "postgres",
        )


class Environment(BaseModel):
    """
    A named database target.

    Immutable once handed to an operation. ``repr()`` and ``to_public_dict()``
    never include secrets.

    Attributes:
        name: Display name, e.g. "development".
        credentials: Connection secrets.
        role: Whether this is the source or the target of a clone.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., min_length=1, max_length=200)
    credentials: DatabaseCredentials
    role: EnvironmentRole = EnvironmentRole.SOURCE

    def with_role(self, role: EnvironmentRole) -> Environment:
        """Copy of this environment with a different role."""
        if self.role == role:
            return self
        return self.model_copy(update={"role": role})

    def to_public_dict(self) -> dict[str, Any]:
        """Fields safe to show in status responses and logs."""
        return {
            "name": self.name,
            "role": self.role.value,
            "host": self.credentials.resolved_host(),
        }


__all__ = [
    "EnvironmentRole",
    "DatabaseCredentials",
    "Environment",
]
