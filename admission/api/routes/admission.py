from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status

from admission.adapters.rate_limit.base import RateLimitConfig
from admission.core.admission import get_admission_engine
from admission.core.auth import verify_api_key
from admission.core.errors import PolicyNotFoundError
from admission.schemas.admission import (
    PolicyListResponse,
    PolicyRequest,
    PolicyResponse,
    StatsResponse,
    SweepResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admission",
    tags=["Admission"],
    dependencies=[Depends(verify_api_key)],
)


def _to_response(operation: str, config: RateLimitConfig) -> PolicyResponse:
    return PolicyResponse(
        operation=operation,
        max_requests=config.max_requests,
        window_ms=config.window_ms,
        custom_key=config.key_generator is not None,
    )


@router.get("/stats", response_model=StatsResponse)
def get_stats() -> StatsResponse:
    """Entry count and registered operations of the in-process engine."""

    return StatsResponse(**get_admission_engine().stats())


@router.get("/policies", response_model=PolicyListResponse)
def list_policies() -> PolicyListResponse:
    snapshot = get_admission_engine().registry.snapshot()
    return PolicyListResponse(
        policies=[_to_response(op, snapshot[op]) for op in sorted(snapshot)]
    )


@router.get("/policies/{operation}", response_model=PolicyResponse)
def get_policy(operation: str) -> PolicyResponse:
    """Return one policy.

    Raises:
        PolicyNotFoundError: If ``operation`` is not configured (HTTP 404).
    """

    config = get_admission_engine().get_config(operation)
    if config is None:
        raise PolicyNotFoundError(
            code="policy_not_found",
            message=f"No admission policy registered for '{operation}'",
            details={"operation": operation},
        )
    return _to_response(operation, config)


@router.put("/policies/{operation}", response_model=PolicyResponse)
def put_policy(operation: str, body: PolicyRequest) -> PolicyResponse:
    """Register or replace a policy.

    Counters already in a window keep their previous policy until rollover.
    A key generator registered in code is kept, so subjects stay grouped in
    the same buckets. An invalid policy is answered with HTTP 400 and
    changes nothing.
    """

    engine = get_admission_engine()
    existing = engine.get_config(operation)
    config = RateLimitConfig(
        max_requests=body.max_requests,
        window_ms=body.window_ms,
        key_generator=existing.key_generator if existing else None,
    )
    engine.add_config(operation, config)
    return _to_response(operation, config)


@router.delete("/policies/{operation}", status_code=status.HTTP_204_NO_CONTENT)
def delete_policy(operation: str) -> None:
    """Unregister a policy; the operation then follows the unconfigured policy."""

    get_admission_engine().registry.remove_config(operation)


@router.delete(
    "/subjects/{operation}/{subject_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def reset_subject(operation: str, subject_id: str) -> None:
    """Administrative override: forget one subject's counter for an operation."""

    get_admission_engine().reset(operation, subject_id)


@router.post("/sweep", response_model=SweepResponse)
def sweep() -> SweepResponse:
    return SweepResponse(evicted=get_admission_engine().sweep())
