"""Request bodies of the cloner API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from dbcloner.credentials import Environment


class StartCloneRequest(BaseModel):
    """
    Body of ``POST /start-clone``.

    ``source`` and ``target`` are optional at the schema level so that a
    missing environment is reported as a plain 400 by the route.
    ``options`` keys may be snake_case or camelCase.
    """

    model_config = ConfigDict(extra="forbid")

    source: Environment | None = None
    target: Environment | None = None
    options: dict[str, Any] | None = None


class ValidateConnectionRequest(BaseModel):
    """Body of ``POST /validate-connection``."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    environment: Environment | None = None
    require_write: bool | None = Field(default=None, alias="requireWrite")


__all__ = ["StartCloneRequest", "ValidateConnectionRequest"]
