"""
Unit tests for ConnectionValidator.

Tests cover:
- Successful validation of sources and targets
- Incomplete credentials
- Permission, connection and authentication failures
- Timeouts
- Backend cleanup
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from unittest.mock import AsyncMock, MagicMock

import pytest

from dbcloner.backends.in_memory import InMemoryBackend
from dbcloner.backends.interface import DatabaseBackend
from dbcloner.credentials import DatabaseCredentials, Environment, EnvironmentRole
from dbcloner.exceptions import DatabaseConnectionError, InvalidCredentialsError
from dbcloner.validator import ConnectionValidator


def _validator(backend: DatabaseBackend, **kwargs: object) -> ConnectionValidator:
    return ConnectionValidator(
        lambda env: backend, enable_tracing=False, **kwargs  # type: ignore[arg-type]
    )


class TestConstruction:
    def test_timeout_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            ConnectionValidator(timeout_seconds=0)


class TestSuccessfulValidation:
    """Tests for environments that pass validation."""

    @pytest.mark.asyncio
    async def test_source_is_not_write_probed(
        self,
        source_env: Environment,
    ) -> None:
        """Sources are only read; a read-only source validates."""
        backend = InMemoryBackend({"A": [{"id": 1}], "B": []}, read_only=True)

        result = await _validator(backend).validate_connection(source_env)

        assert result.success is True
        assert result.tables_found == 2
        assert result.permissions_ok is True
        assert result.write_checked is False

    @pytest.mark.asyncio
    async def test_target_is_write_probed(
        self,
        target_env: Environment,
        target_backend: InMemoryBackend,
    ) -> None:
        result = await _validator(target_backend).validate_connection(target_env)

        assert result.success is True
        assert result.write_checked is True
        assert target_backend.journal == []

    @pytest.mark.asyncio
    async def test_empty_database_validates(self, target_env: Environment) -> None:
        """A database without tables is reachable, with zero tables found."""
        result = await _validator(InMemoryBackend()).validate_connection(target_env)

        assert result.success is True
        assert result.tables_found == 0

    @pytest.mark.asyncio
    async def test_backend_is_closed(self, source_env: Environment) -> None:
        backend = InMemoryBackend({"A": []})

        await _validator(backend).validate_connection(source_env)

        assert backend.closed is True


class TestFailedValidation:
    """Tests for environments that fail validation."""

    @pytest.mark.asyncio
    async def test_incomplete_credentials_raise(self) -> None:
        """Missing secrets are raised before any connection attempt."""
        factory = MagicMock()
        validator = ConnectionValidator(factory, enable_tracing=False)
        environment = Environment(
            name="staging",
            credentials=DatabaseCredentials(url="https://abcd.supabase.co"),
        )

        with pytest.raises(InvalidCredentialsError) as exc_info:
            await validator.validate_connection(environment)

        assert exc_info.value.missing == ["password"]
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_read_only_target(self, target_env: Environment) -> None:
        backend = InMemoryBackend({"A": []}, read_only=True)

        result = await _validator(backend).validate_connection(target_env)

        assert result.success is False
        assert result.error_code == "INSUFFICIENT_PERMISSIONS"
        assert result.permissions_ok is False
        assert backend.closed is True

    @pytest.mark.asyncio
    async def test_connection_error(self, source_env: Environment) -> None:
        backend = MagicMock(spec=DatabaseBackend)
        backend.list_tables = AsyncMock(side_effect=DatabaseConnectionError("connection refused"))
        backend.close = AsyncMock()

        result = await _validator(backend).validate_connection(source_env)

        assert result.success is False
        assert result.error_code == "CONNECTION_FAILED"
        assert result.permissions_ok is None
        backend.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_failure_does_not_escape(self, source_env: Environment) -> None:
        """An error while disposing the engine leaves the result intact."""
        backend = MagicMock(spec=DatabaseBackend)
        backend.list_tables = AsyncMock(return_value=[])
        backend.close = AsyncMock(side_effect=RuntimeError("dispose failed"))

        result = await _validator(backend).validate_connection(source_env)

        assert result.success is True
        assert result.tables_found == 0
        backend.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_failure_after_probe_failure(self, source_env: Environment) -> None:
        backend = MagicMock(spec=DatabaseBackend)
        backend.list_tables = AsyncMock(side_effect=DatabaseConnectionError("connection refused"))
        backend.close = AsyncMock(side_effect=OSError("socket closed"))

        result = await _validator(backend).validate_connection(source_env)

        assert result.success is False
        assert result.error_code == "CONNECTION_FAILED"

    @pytest.mark.asyncio
    async def test_driver_error_is_translated(self, source_env: Environment) -> None:
        """Raw driver errors are mapped onto the error taxonomy."""
        backend = MagicMock(spec=DatabaseBackend)
        backend.list_tables = AsyncMock(
            side_effect=RuntimeError('password authentication failed for user "app"')
        )
        backend.close = AsyncMock()

        result = await _validator(backend).validate_connection(source_env)

        assert result.success is False
        assert result.error_code == "AUTHENTICATION_FAILED"

    @pytest.mark.asyncio
    async def test_factory_error(self, source_env: Environment) -> None:
        def factory(environment: Environment) -> DatabaseBackend:
            raise OSError("Name or service not known")

        validator = ConnectionValidator(factory, enable_tracing=False)

        result = await validator.validate_connection(source_env)

        assert result.success is False
        assert result.error_code == "CONNECTION_FAILED"

    @pytest.mark.asyncio
    async def test_timeout(self, source_env: Environment) -> None:
        """A hanging database fails validation after the timeout."""

        class HangingBackend(InMemoryBackend):
            async def list_tables(self, exclude_schemas: Sequence[str] = ()) -> list[str]:
                await asyncio.sleep(10)
                return []

        backend = HangingBackend()

        result = await _validator(backend, timeout_seconds=0.05).validate_connection(source_env)

        assert result.success is False
        assert result.error_code == "CONNECTION_FAILED"
        assert result.error == "Validation timed out after 0.05s"
        assert backend.closed is True

    @pytest.mark.asyncio
    async def test_require_write_overrides_role(
        self,
        make_environment: Callable[..., Environment],
    ) -> None:
        """require_write=True probes even a source environment."""
        backend = InMemoryBackend({"A": []}, read_only=True)
        source = make_environment("development", role=EnvironmentRole.SOURCE)

        result = await _validator(backend).validate_connection(source, require_write=True)

        assert result.success is False
        assert result.error_code == "INSUFFICIENT_PERMISSIONS"
