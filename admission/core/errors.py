"""Application-level exception types.

Denied admissions are values (``RateLimitResult.allowed is False``), so the
only domain errors here are configuration and access failures.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    code: str
    message: str
    hint: str
    field: str
    operation: str
    actual_value: Any
    http_status: int
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class ConfigError(ValidationAppError):
    """Raised when a quota policy is rejected at registration time."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "invalid_rate_limit_config",
        details: ErrorDetails | None = None,
    ) -> None:
        super().__init__(code=code, message=message, details=details)


class PolicyNotFoundError(AppError):
    """Raised by the admin API when an operation has no registered policy."""


class AuthenticationAppError(AppError):
    """Raised when authentication/authorization fails."""
