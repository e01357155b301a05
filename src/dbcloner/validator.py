"""
Connection validation for clone environments.

Before any table is touched, both environments of a clone are checked:

- the credentials are complete,
- the database is reachable and readable (list tables, count one table),
- for targets, writes would be accepted (probe inside a rolled-back
  transaction).

Validation never mutates data and never logs credentials.
"""

from __future__ import annotations

import asyncio
import logging

from dbcloner.backends.interface import BackendFactory, DatabaseBackend
from dbcloner.backends.sqlalchemy import create_backend
from dbcloner.credentials import Environment, EnvironmentRole
from dbcloner.exceptions import (
    ClonerError,
    DatabaseConnectionError,
    InvalidCredentialsError,
    translate_backend_error,
)
from dbcloner.models import ValidationResult
from dbcloner.observability import (
    ATTR_ENV_ROLE,
    ATTR_TABLE_COUNT,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

DEFAULT_VALIDATION_TIMEOUT_SECONDS = 15.0


class ConnectionValidator:
    """
    Verifies that an environment can serve its role in a clone.

    Example:
        >>> validator = ConnectionValidator()
        >>> result = await validator.validate_connection(environment)
        >>> if not result.success:
        ...     print(result.error_code, result.error)
    """

    def __init__(
        self,
        backend_factory: BackendFactory = create_backend,
        *,
        timeout_seconds: float = DEFAULT_VALIDATION_TIMEOUT_SECONDS,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the validator.

        Args:
            backend_factory: Builds a backend for an environment.
            timeout_seconds: Upper bound for the whole validation.
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        if timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {timeout_seconds}")
        self._backend_factory = backend_factory
        self._timeout_seconds = timeout_seconds
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    async def validate_connection(
        self,
        environment: Environment,
        *,
        require_write: bool | None = None,
    ) -> ValidationResult:
        """
        Validate one environment.

        Args:
            environment: Environment to check.
            require_write: Probe write access. Defaults to True for targets.

        Returns:
            ValidationResult; connection, authentication and permission
            failures are reported with ``success=False``.

        Raises:
            InvalidCredentialsError: If required secret fields are missing.
        """
        missing = environment.credentials.missing_fields()
        if missing:
            raise InvalidCredentialsError(environment.name, missing)

        if require_write is None:
            require_write = environment.role == EnvironmentRole.TARGET

        with self._tracer.span(
            "dbcloner.validator.validate_connection",
            {ATTR_ENV_ROLE: environment.role.value},
        ):
            try:
                backend = self._backend_factory(environment)
            except InvalidCredentialsError:
                raise
            except ClonerError as e:
                return self._failure(environment, e)
            except Exception as e:
                return self._failure(environment, translate_backend_error(e))

            try:
                tables_found = await asyncio.wait_for(
                    self._probe(backend, require_write),
                    timeout=self._timeout_seconds,
                )
            except TimeoutError:
                return self._failure(
                    environment,
                    DatabaseConnectionError(
                        f"Validation timed out after {self._timeout_seconds:g}s"
                    ),
                )
            except ClonerError as e:
                return self._failure(environment, e)
            except Exception as e:
                return self._failure(environment, translate_backend_error(e))
            finally:
                await self._close(backend)

        logger.info(
            "Environment '%s' validated as %s: %d tables, write_checked=%s",
            environment.name,
            environment.role.value,
            tables_found,
            require_write,
        )
        return ValidationResult(
            success=True,
            tables_found=tables_found,
            permissions_ok=True,
            write_checked=require_write,
        )

    async def _probe(self, backend: DatabaseBackend, require_write: bool) -> int:
        with self._tracer.span("dbcloner.validator.probe") as span:
            tables = await backend.list_tables()
            if span is not None:
                span.set_attribute(ATTR_TABLE_COUNT, len(tables))
            if tables:
                await backend.count_rows(tables[0])
            if require_write:
                await backend.check_write_access()
            return len(tables)

    async def _close(self, backend: DatabaseBackend) -> None:
        try:
            await backend.close()
        except Exception:
            logger.warning(
                "Failed to close backend %s after validation", backend.name, exc_info=True
            )

    def _failure(self, environment: Environment, error: ClonerError) -> ValidationResult:
        logger.warning(
            "Validation of environment '%s' failed [%s]: %s",
            environment.name,
            error.error_code,
            error.message,
        )
        return ValidationResult(
            success=False,
            error=error.message,
            error_code=error.error_code,
            permissions_ok=False if error.error_code == "INSUFFICIENT_PERMISSIONS" else None,
        )


__all__ = ["ConnectionValidator", "DEFAULT_VALIDATION_TIMEOUT_SECONDS"]
