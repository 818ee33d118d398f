from __future__ import annotations

from pydantic import BaseModel, Field


class PolicyRequest(BaseModel):
    """Body of ``PUT /v1/admission/policies/{operation}``.

    Limits are validated by the config registry, which answers invalid values
    with a ``ConfigError`` (HTTP 400).
    """

    max_requests: int = Field(..., description="Quota ceiling per window")
    window_ms: int = Field(..., description="Window length in milliseconds")


class PolicyResponse(BaseModel):
    operation: str
    max_requests: int
    window_ms: int
    custom_key: bool = Field(
        False,
        description="Whether the policy groups subjects with a key generator",
    )


class PolicyListResponse(BaseModel):
    policies: list[PolicyResponse]


class SweepResponse(BaseModel):
    evicted: int = Field(..., description="Number of expired entries removed")


class StatsResponse(BaseModel):
    total_entries: int
    operations: list[str]
    fail_open: bool
    retention_grace_ms: int
    sweep_interval_ms: int | None
