"""Admission control types and interfaces.

Host code should depend on ``AbstractAdmissionEngine`` rather than a concrete
engine, and treat ``RateLimitResult`` as a plain value: a denial is a normal
outcome, not an exception.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, NamedTuple

# Reported as ``remaining`` for operations without a registered policy.
UNLIMITED = math.inf

KeyGenerator = Callable[[str], str]


@dataclass(frozen=True)
class RateLimitConfig:
    """Quota policy for one protected operation.

    Attributes:
        max_requests: Quota ceiling per window.
        window_ms: Window length in milliseconds.
        key_generator: Optional pure function mapping a subject id to the
            string used as counting key (group by user, IP, tenant, ...).
    """

    max_requests: int
    window_ms: int
    key_generator: KeyGenerator | None = None

    def subject_key(self, subject_id: str) -> str:
        if self.key_generator is None:
            return subject_id
        return str(self.key_generator(subject_id))


class CompositeKey(NamedTuple):
    """Identifies one counting bucket: an operation paired with a subject key."""

    operation: str
    subject: str

    def __str__(self) -> str:
        return f"{self.operation}:{self.subject}"


@dataclass(frozen=True)
class RateLimitResult:
    """Verdict of a single admission decision.

    Attributes:
        allowed: Whether the caller may proceed.
        remaining: Quota left in the current window after this decision
            (``UNLIMITED`` for unconfigured fail-open operations).
        reset_time: Epoch milliseconds when the current window rolls over.
        retry_after_ms: Milliseconds until ``reset_time``; only set on denial.
        limit: The ``max_requests`` applied, or None when unconfigured.
    """

    allowed: bool
    remaining: int | float
    reset_time: float
    retry_after_ms: int | None = None
    limit: int | None = None

    @property
    def retry_after_seconds(self) -> int | None:
        """Retry delay rounded up to whole seconds, for HTTP headers."""
        if self.retry_after_ms is None:
            return None
        return int(math.ceil(self.retry_after_ms / 1000))


class AbstractAdmissionEngine(ABC):
    """Interface for admission engines."""

    @abstractmethod
    def is_allowed(
        self,
        operation: str,
        subject_id: str | int,
        config: RateLimitConfig | None = None,
    ) -> RateLimitResult:
        """Decide whether ``subject_id`` may perform ``operation`` now.

        Args:
            operation: Registered operation name (e.g. ``"events:create"``).
            subject_id: Stable caller identity, usually a user id.
            config: Optional policy overriding the registered one.

        Returns:
            RateLimitResult describing the decision.
        """
        raise NotImplementedError

    @abstractmethod
    def reset(self, operation: str, subject_id: str | int) -> None:
        """Forget the counter for one (operation, subject) pair."""
        raise NotImplementedError

    @abstractmethod
    def sweep(self) -> int:
        """Evict long-expired entries and return how many were removed."""
        raise NotImplementedError

    @abstractmethod
    def stats(self) -> dict[str, Any]:
        """Return lightweight engine metrics."""
        raise NotImplementedError
