"""Admission control wiring for FastAPI routes.

This module owns the process-wide engine and turns it into a route
dependency:

- ``get_admission_engine()`` builds the engine once from settings and loads
  the configured policies.
- ``require_admission(operation)`` returns a dependency that consumes one
  request from the caller's quota and answers HTTP 429 on denial.

Subject resolution: the id returned by the host's own auth dependency, else
``X-Subject-ID`` when ``ADMISSION_TRUST_SUBJECT_HEADER`` is set (a trusted
proxy writes it), else the ``X-API-Key`` header, else the client IP.
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Annotated, Awaitable, Callable

from fastapi import Depends, Header, HTTPException, Request, status

from admission.adapters.rate_limit.base import RateLimitConfig, RateLimitResult
from admission.adapters.rate_limit.in_memory import InMemoryFixedWindowAdmissionEngine
from admission.adapters.rate_limit.registry import ConfigRegistry
from admission.core.config import AdmissionSettings, settings
from admission.core.logging import hash_identifier

logger = logging.getLogger(__name__)

_engine: InMemoryFixedWindowAdmissionEngine | None = None
_engine_lock = threading.Lock()


def build_admission_engine(
    admission_settings: AdmissionSettings | None = None,
) -> InMemoryFixedWindowAdmissionEngine:
    """Create an engine with the policies from configuration registered.

    Raises:
        ConfigError: If a configured policy is invalid.
    """

    cfg = admission_settings or settings.admission
    registry = ConfigRegistry()
    registry.load_policies(
        {
            operation: RateLimitConfig(max_requests=spec.max_requests, window_ms=spec.window_ms)
            for operation, spec in cfg.policies.items()
        }
    )
    return InMemoryFixedWindowAdmissionEngine(
        registry,
        fail_open=cfg.fail_open,
        retention_grace_ms=cfg.retention_grace_ms,
        sweep_interval_ms=cfg.sweep_interval_ms,
    )


def get_admission_engine() -> InMemoryFixedWindowAdmissionEngine:
    """Return the process-wide engine, building it on first use."""

    global _engine

    if _engine is None:
        with _engine_lock:
            if _engine is None:
                _engine = build_admission_engine()
    return _engine


def reset_admission_engine() -> None:
    """Discard the process-wide engine so the next call rebuilds it."""

    global _engine

    with _engine_lock:
        _engine = None


def _no_host_subject() -> None:
    return None


def resolve_subject(
    request: Request,
    *,
    host_subject: str | None = None,
    x_subject_id: str | None = None,
    x_api_key: str | None = None,
    trust_subject_header: bool = False,
) -> tuple[str, str]:
    """Pick the subject a request is counted against.

    Precedence: the subject supplied by the host's auth dependency, then
    ``X-Subject-ID`` when the header is trusted, then the API key, then the
    client IP.

    Returns:
        Tuple of (subject_id, subject_type).
    """

    if host_subject:
        return host_subject, "subject"
    if trust_subject_header and x_subject_id:
        return x_subject_id, "subject_header"
    if x_api_key:
        return f"api_key:{x_api_key}", "api_key"

    client_host = request.client.host if request.client else "unknown"
    return f"ip:{client_host}", "ip"


def build_rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    headers = {
        "Retry-After": str(result.retry_after_seconds or 0),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_time // 1000)),
    }
    if result.limit is not None:
        headers["X-RateLimit-Limit"] = str(result.limit)
    return headers


def require_admission(
    operation: str,
    subject: Callable[..., str | None] | None = None,
) -> Callable[..., Awaitable[RateLimitResult | None]]:
    """Build a FastAPI dependency guarding a route with ``operation``'s quota.

    Args:
        operation: Operation name the policy is registered under.
        subject: Optional FastAPI dependency returning the authenticated
            subject id (e.g. the current user's id). When it returns None the
            request falls back to the API key or client IP.

    Usage:
        @router.post(
            "/events",
            dependencies=[Depends(require_admission("events:create", subject=current_user_id))],
        )
        async def create_event(): ...

    Raises (from the dependency):
        HTTPException: 429 Too Many Requests when the quota is exhausted.
    """

    async def enforce_admission(
        request: Request,
        x_subject_id: Annotated[str | None, Header(alias="X-Subject-ID")] = None,
        x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
        host_subject: str | None = Depends(subject or _no_host_subject),
    ) -> RateLimitResult | None:
        if not settings.admission.enabled:
            return None

        engine = get_admission_engine()
        subject_id, subject_type = resolve_subject(
            request,
            host_subject=host_subject,
            x_subject_id=x_subject_id,
            x_api_key=x_api_key,
            trust_subject_header=settings.admission.trust_subject_header,
        )
        result = engine.is_allowed(operation, subject_id)

        log_extra = {
            "operation": operation,
            "subject_type": subject_type,
            "subject_hash": hash_identifier(subject_id),
            "limit": result.limit,
            # JSON has no Infinity; unconfigured operations log null.
            "remaining": None if math.isinf(result.remaining) else result.remaining,
        }

        if result.allowed:
            logger.info("admission.request_allowed", extra=log_extra)
            return result

        logger.warning(
            "admission.request_denied",
            extra={**log_extra, "retry_after_ms": result.retry_after_ms},
        )

        headers = build_rate_limit_headers(result) if settings.admission.include_headers else None
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded. Try again later.",
            headers=headers,
        )

    enforce_admission.__name__ = f"enforce_admission_{operation}"
    return enforce_admission
