"""
Exceptions raised by the database cloner.

Exception Hierarchy:
    ClonerError (base)
    +-- InvalidCredentialsError
    +-- DatabaseConnectionError
    +-- AuthenticationError
    +-- InsufficientPermissionsError
    +-- BackendError
    +-- ProductionProtectionError
    +-- OperationNotFoundError
    +-- InvalidStatusTransitionError
    +-- CloneLimitExceededError
    +-- TableCopyError
    +-- ConnectionValidationError
    +-- CloneStalledError

Every error carries an ErrorClassification (severity, recoverability,
error code, operator guidance) so that the orchestrator can decide whether a
batch write is worth retrying and the API can report a stable error code
instead of a stack trace.

Driver exceptions (SQLAlchemy, asyncpg, aiosqlite, OS-level socket errors)
are mapped into this hierarchy by ``translate_backend_error``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy import exc as sa_exc

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(Enum):
    """
    Severity level of cloner errors.

    Attributes:
        CRITICAL: Data may be inconsistent; an operator must look now.
        ERROR: The operation failed and needs operator attention.
        WARNING: Expected failure mode (bad input, unreachable host).
        INFO: Not a failure (lookups that found nothing).
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def log_level(self) -> int:
        """The logging level errors of this severity are logged at."""
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    How an error can be recovered from.

    Attributes:
        TRANSIENT: May succeed if retried (network blips, timeouts).
        RECOVERABLE: Needs an operator to fix input or configuration.
        FATAL: Retrying cannot help.
    """

    TRANSIENT = "transient"
    RECOVERABLE = "recoverable"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """Only transient errors are retried automatically."""
        return self == ErrorRecoverability.TRANSIENT


@dataclass(frozen=True)
class RetryConfig:
    """
    Exponential backoff with jitter.

    Attributes:
        max_attempts: Attempts including the first one.
        base_delay_ms: Delay before the first retry.
        max_delay_ms: Upper bound for any single delay.
        exponential_base: Growth factor per attempt.
        jitter_factor: Random extra delay as a fraction of the delay (0.0-1.0).

    Example:
        >>> RetryConfig(max_attempts=3, base_delay_ms=100, jitter_factor=0).get_delay_ms(2)
        400.0
    """

    max_attempts: int = 3
    base_delay_ms: float = 100.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """
        Delay before retry number ``attempt`` (0-indexed).

        Args:
            attempt: Retry attempt number, starting at 0.

        Returns:
            Delay in milliseconds, capped at max_delay_ms.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)
        if self.jitter_factor > 0:
            delay += delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter
        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }


BATCH_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay_ms=200.0,
    max_delay_ms=10000.0,
    exponential_base=2.0,
    jitter_factor=0.1,
)


@dataclass(frozen=True)
class ErrorClassification:
    """
    Metadata describing an error type.

    Attributes:
        severity: How bad the error is.
        recoverability: Whether retrying or operator action can help.
        error_code: Stable code for API clients and metrics.
        category: Grouping for related errors.
        suggested_action: Guidance shown to operators.
        retry_config: Backoff to use when the error is transient.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    retry_config: RetryConfig | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        return result


class ClonerError(Exception):
    """
    Base exception for all cloner errors.

    Attributes:
        message: Human-readable description. Never contains credentials.
        operation_id: Operation the error belongs to, if any.
        table: Table the error occurred at, if any.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="CLONER_ERROR",
        category="general",
        suggested_action="Review the operation logs",
    )

    def __init__(
        self,
        message: str,
        *,
        operation_id: str | None = None,
        table: str | None = None,
    ) -> None:
        self.message = message
        self.operation_id = operation_id
        self.table = table
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.operation_id:
            parts.append(f"operation_id={self.operation_id}")
        if self.table:
            parts.append(f"table={self.table}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """Serializable form for API responses and logs."""
        return {
            "message": self.message,
            "operation_id": self.operation_id,
            "table": self.table,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class InvalidCredentialsError(ClonerError):
    """
    Raised when an environment is missing the secret fields needed to connect.

    Attributes:
        environment: Name of the offending environment.
        missing: Names of the missing fields.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="INVALID_CREDENTIALS",
        category="input",
        suggested_action="Provide a database URL, or a project URL and password",
    )

    def __init__(self, environment: str, missing: list[str] | None = None) -> None:
        self.environment = environment
        self.missing = list(missing or [])
        detail = f": missing {', '.join(self.missing)}" if self.missing else ""
        super().__init__(f"Incomplete credentials for environment '{environment}'{detail}")


class DatabaseConnectionError(ClonerError):
    """Raised when a database cannot be reached (network, DNS, timeout)."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="CONNECTION_FAILED",
        category="connectivity",
        suggested_action="Check that the host is reachable and the database is running",
        retry_config=BATCH_RETRY_CONFIG,
    )


class AuthenticationError(ClonerError):
    """Raised when the database rejects the supplied credentials."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="AUTHENTICATION_FAILED",
        category="connectivity",
        suggested_action="Verify the user name and password for this environment",
    )


class InsufficientPermissionsError(ClonerError):
    """Raised when the credentials cannot read (source) or write (target)."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="INSUFFICIENT_PERMISSIONS",
        category="connectivity",
        suggested_action=(
            "Grant the database user read access on the source and write access on the target"
        ),
    )


class BackendError(ClonerError):
    """Raised for database errors that fit no more specific category."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="BACKEND_ERROR",
        category="database",
        suggested_action="Inspect the database error in the operation logs",
    )


class ProductionProtectionError(ClonerError):
    """Raised when a clone would overwrite a protected (production) environment."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="PRODUCTION_PROTECTED",
        category="safety",
        suggested_action=(
            "Choose a non-production target, or disable production protection deliberately"
        ),
    )

    def __init__(self, environment: str) -> None:
        self.environment = environment
        super().__init__(f"Cannot clone into protected environment '{environment}'")


class OperationNotFoundError(ClonerError):
    """Raised by helpers that require an operation to exist."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.INFO,
        recoverability=ErrorRecoverability.FATAL,
        error_code="OPERATION_NOT_FOUND",
        category="lookup",
        suggested_action=(
            "Check the operation id; finished operations are discarded after retention"
        ),
    )

    def __init__(self, operation_id: str) -> None:
        super().__init__(f"Clone operation not found: {operation_id}", operation_id=operation_id)


class InvalidStatusTransitionError(ClonerError):
    """Raised when an operation would move backwards or out of a terminal state."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_STATUS_TRANSITION",
        category="state",
        suggested_action="This indicates a bug in the orchestrator; report it",
    )

    def __init__(self, operation_id: str, current: str, requested: str) -> None:
        self.current = current
        self.requested = requested
        super().__init__(
            f"Invalid status transition {current} -> {requested}",
            operation_id=operation_id,
        )


class CloneLimitExceededError(ClonerError):
    """Raised when the configured number of concurrent clones is already running."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CLONE_LIMIT_EXCEEDED",
        category="capacity",
        suggested_action="Wait for a running clone to finish, then retry",
    )

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"A maximum of {limit} clone operation(s) may run at once")


class TableCopyError(ClonerError):
    """
    Raised when copying one table fails.

    The table copy is aborted; earlier tables stay copied.

    Attributes:
        rows_copied: Rows of this table already written before the failure.
        cause_code: Error code of the underlying error.
        truncated: Whether the target table was emptied before the failure.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="TABLE_COPY_FAILED",
        category="copy",
        suggested_action=(
            "Clones are not transactional across tables. Inspect the target "
            "state, then rerun with truncate_first"
        ),
    )

    def __init__(
        self,
        table: str,
        error: str,
        *,
        rows_copied: int = 0,
        cause_code: str | None = None,
        truncated: bool = False,
        operation_id: str | None = None,
    ) -> None:
        self.rows_copied = rows_copied
        self.truncated = truncated
        self.original_error = error
        self.cause_code = cause_code
        super().__init__(
            f"Copy of table '{table}' failed after {rows_copied} rows: {error}",
            operation_id=operation_id,
            table=table,
        )


class ConnectionValidationError(ClonerError):
    """
    Raised by the pipeline when an environment fails connection validation.

    Attributes:
        environment: Name of the environment that failed.
        cause_code: Error code reported by the validator.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="VALIDATION_FAILED",
        category="connectivity",
        suggested_action="Fix the environment credentials or permissions, then rerun",
    )

    def __init__(
        self,
        environment: str,
        role: str,
        error: str | None,
        *,
        cause_code: str | None = None,
    ) -> None:
        self.environment = environment
        self.cause_code = cause_code
        super().__init__(
            f"{role.capitalize()} environment '{environment}' failed validation: "
            f"{error or 'unknown error'}"
        )


class CloneStalledError(ClonerError):
    """Raised when an operation makes no progress within the stall timeout."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CLONE_STALLED",
        category="timeout",
        suggested_action="Check both databases for locks or hung connections, then rerun",
    )

    def __init__(self, operation_id: str, timeout_seconds: float, table: str | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"No progress for {timeout_seconds:.0f}s, operation marked as stalled",
            operation_id=operation_id,
            table=table,
        )


# =============================================================================
# Driver error translation
# =============================================================================

_AUTH_MARKERS = (
    "password authentication failed",
    "authentication failed",
    "invalid password",
    "access denied",
    "no pg_hba.conf entry",
)
_PERMISSION_MARKERS = (
    "permission denied",
    "insufficient privilege",
    "must be owner",
    "readonly database",
    "read-only",
)
_CONNECTIVITY_MARKERS = (
    "could not connect",
    "connection refused",
    "connection reset",
    "timeout",
    "timed out",
    "name or service not known",
    "unable to open database",
    "server closed the connection",
)


def translate_backend_error(
    exc: BaseException,
    *,
    table: str | None = None,
) -> ClonerError:
    """
    Map a driver or network exception onto the cloner error taxonomy.

    Args:
        exc: Exception raised by a backend call.
        table: Table involved, recorded on the returned error.

    Returns:
        A ClonerError subclass instance. ClonerErrors are returned unchanged.
    """
    if isinstance(exc, ClonerError):
        return exc

    text = str(getattr(exc, "orig", None) or exc)
    lowered = text.lower()

    if any(marker in lowered for marker in _AUTH_MARKERS):
        return AuthenticationError(_first_line(text), table=table)
    if any(marker in lowered for marker in _PERMISSION_MARKERS):
        return InsufficientPermissionsError(_first_line(text), table=table)

    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, OSError)):
        return DatabaseConnectionError(
            _first_line(text) or "Connection timed out", table=table
        )
    if isinstance(exc, (sa_exc.InterfaceError, sa_exc.DisconnectionError)):
        return DatabaseConnectionError(_first_line(text), table=table)
    if isinstance(exc, sa_exc.OperationalError) and any(
        marker in lowered for marker in _CONNECTIVITY_MARKERS
    ):
        return DatabaseConnectionError(_first_line(text), table=table)

    return BackendError(_first_line(text) or type(exc).__name__, table=table)


def _first_line(text: str) -> str:
    """Driver messages often carry SQL and parameters after the first line."""
    return text.strip().splitlines()[0] if text.strip() else ""


def classify_exception(exc: BaseException) -> ErrorClassification:
    """
    Classification for any exception.

    Args:
        exc: The exception to classify.

    Returns:
        The error's own classification, or a generic fatal one.
    """
    if isinstance(exc, ClonerError):
        return exc.classification
    return ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_ERROR",
        category="unknown",
        suggested_action="An unexpected error occurred. Review the server logs.",
    )


# =============================================================================
# Retry
# =============================================================================


class ErrorHandler:
    """
    Runs coroutines with bounded retry for transient cloner errors.

    Only ClonerErrors classified as TRANSIENT are retried. Everything else
    propagates on the first failure.

    Example:
        >>> handler = ErrorHandler()
        >>> await handler.execute_with_retry(
        ...     lambda: backend.write_rows("users", rows),
        ...     operation_name="write_batch",
        ...     retry_config=RetryConfig(max_attempts=3),
        ... )
    """

    def __init__(
        self,
        metrics_callback: Callable[[ClonerError, bool], None] | None = None,
    ) -> None:
        """
        Args:
            metrics_callback: Called with (error, will_retry) for every failure.
        """
        self.metrics_callback = metrics_callback

    async def execute_with_retry(
        self,
        operation: Callable[[], Coroutine[Any, Any, T]],
        operation_name: str,
        *,
        retry_config: RetryConfig | None = None,
        on_retry: Callable[[int, ClonerError, float], None] | None = None,
    ) -> T:
        """
        Execute ``operation``, retrying transient ClonerErrors.

        Args:
            operation: Zero-argument async callable.
            operation_name: Name used in log messages.
            retry_config: Backoff settings; defaults to the error's own config.
            on_retry: Called with (attempt, error, delay_ms) before each retry.

        Returns:
            The operation's result.

        Raises:
            ClonerError: When the error is not transient or retries are exhausted.
        """
        attempt = 0
        while True:
            try:
                result = await operation()
                if attempt > 0:
                    logger.info(
                        "Operation '%s' succeeded after %d retries",
                        operation_name,
                        attempt,
                    )
                return result
            except ClonerError as e:
                config = retry_config or e.retry_config or BATCH_RETRY_CONFIG
                will_retry = e.recoverability.should_retry and attempt + 1 < config.max_attempts
                self._handle_error(e, operation_name, will_retry)

                if not will_retry:
                    raise

                delay_ms = config.get_delay_ms(attempt)
                logger.warning(
                    "Retryable error in '%s' (attempt %d/%d): %s. Retrying in %.2fs",
                    operation_name,
                    attempt + 1,
                    config.max_attempts,
                    e.message,
                    delay_ms / 1000.0,
                )
                if on_retry:
                    on_retry(attempt, e, delay_ms)
                await asyncio.sleep(delay_ms / 1000.0)
                attempt += 1

    def _handle_error(self, error: ClonerError, operation_name: str, will_retry: bool) -> None:
        classification = error.classification
        logger.log(
            classification.severity.log_level,
            "Error in '%s': %s [code=%s, recoverability=%s]",
            operation_name,
            error.message,
            classification.error_code,
            classification.recoverability.value,
        )
        if self.metrics_callback:
            try:
                self.metrics_callback(error, will_retry)
            except Exception:
                logger.exception("Metrics callback failed")


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "BATCH_RETRY_CONFIG",
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
    "translate_backend_error",
    "classify_exception",
    "ErrorHandler",
]
