"""In-memory fixed-window admission engine.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: every entry has its own lock, so callers of different
  (operation, subject) pairs never wait on each other. A short map lock only
  guards insertion and removal of entries.
- Windows roll over lazily inside ``is_allowed``. ``sweep`` only reclaims
  memory and is never needed for a correct decision.
- Fixed windows admit up to ``2 * max_requests`` across a window boundary.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from admission.adapters.rate_limit.base import (
    UNLIMITED,
    AbstractAdmissionEngine,
    CompositeKey,
    RateLimitConfig,
    RateLimitResult,
)
from admission.adapters.rate_limit.registry import ConfigRegistry, validate_config
from admission.core.logging import hash_identifier

logger = logging.getLogger(__name__)

# Entries examined per map-lock hold during a sweep.
_SWEEP_BATCH_SIZE = 256


def epoch_ms() -> float:
    """Current UNIX time in milliseconds."""
    return time.time() * 1000.0


@dataclass(eq=False)
class RateLimitEntry:
    """Counter state for one composite key.

    ``max_requests`` and ``window_ms`` are the policy in force when the
    current window opened; a re-registered policy is picked up at rollover.
    """

    count: int
    window_start: float
    max_requests: int
    window_ms: int
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    retired: bool = False

    @property
    def reset_time(self) -> float:
        return self.window_start + self.window_ms

    def roll_over(self, now: float, config: RateLimitConfig) -> None:
        self.window_start = now
        self.count = 0
        self.max_requests = config.max_requests
        self.window_ms = config.window_ms


class InMemoryFixedWindowAdmissionEngine(AbstractAdmissionEngine):
    """Admission engine counting requests per key in fixed windows.

    Operations without a registered policy are admitted (fail-open) unless
    the engine is built with ``fail_open=False``.

    Important:
        This engine is per-process only. If the host runs multiple workers
        (e.g., multiple Uvicorn/Gunicorn workers), each worker enforces its
        own independent quotas.
    """

    def __init__(
        self,
        registry: ConfigRegistry | None = None,
        *,
        fail_open: bool = True,
        retention_grace_ms: int = 60_000,
        sweep_interval_ms: int | None = 60_000,
        clock: Callable[[], float] = epoch_ms,
    ) -> None:
        """Initialize the engine.

        Args:
            registry: Policy registry; a fresh empty one when omitted.
            fail_open: Admit operations that have no registered policy.
            retention_grace_ms: How long an expired entry is kept before
                ``sweep`` may evict it.
            sweep_interval_ms: Minimum gap between opportunistic sweeps run
                from ``is_allowed``; None disables them.
            clock: Time source returning UNIX time in milliseconds.

        Raises:
            ValueError: If retention_grace_ms or sweep_interval_ms are negative.
        """
        if retention_grace_ms < 0:
            raise ValueError("retention_grace_ms must be >= 0")
        if sweep_interval_ms is not None and sweep_interval_ms < 0:
            raise ValueError("sweep_interval_ms must be >= 0")

        self._registry = registry if registry is not None else ConfigRegistry()
        self._fail_open = fail_open
        self._retention_grace_ms = retention_grace_ms
        self._sweep_interval_ms = sweep_interval_ms
        self._clock = clock

        self._entries: dict[CompositeKey, RateLimitEntry] = {}
        self._entries_lock = threading.Lock()
        self._sweep_lock = threading.Lock()
        self._last_sweep = clock()

    @property
    def registry(self) -> ConfigRegistry:
        return self._registry

    @property
    def fail_open(self) -> bool:
        return self._fail_open

    def add_config(self, operation: str, config: RateLimitConfig) -> None:
        """Register a policy; see ``ConfigRegistry.add_config``."""
        self._registry.add_config(operation, config)

    def get_config(self, operation: str) -> RateLimitConfig | None:
        return self._registry.get_config(operation)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def is_allowed(
        self,
        operation: str,
        subject_id: str | int,
        config: RateLimitConfig | None = None,
    ) -> RateLimitResult:
        """Consume one request from the subject's quota if any is left.

        Args:
            operation: Operation name the policy is registered under.
            subject_id: Caller identity; ints are converted to str.
            config: Optional policy used instead of the registered one.

        Returns:
            RateLimitResult; a denial is a normal return value.

        Raises:
            ConfigError: Only if an invalid ``config`` override is passed.
        """
        if config is not None:
            validate_config(operation, config)
            policy: RateLimitConfig | None = config
        else:
            policy = self._registry.get_config(operation)

        if policy is None:
            return self._unconfigured_result(operation)

        self._maybe_sweep()
        key = self._build_key(operation, subject_id, policy)

        while True:
            entry = self._get_or_create_entry(key, policy)
            with entry.lock:
                if entry.retired:
                    # Evicted or reset between lookup and lock; look it up again.
                    continue
                return self._decide(key, entry, policy, self._clock())

    def _decide(
        self,
        key: CompositeKey,
        entry: RateLimitEntry,
        policy: RateLimitConfig,
        now: float,
    ) -> RateLimitResult:
        """Advance the window and evaluate one request. Caller holds entry.lock."""
        if now >= entry.reset_time:
            entry.roll_over(now, policy)

        reset_time = entry.reset_time

        if entry.count < entry.max_requests:
            entry.count += 1
            remaining = entry.max_requests - entry.count
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "admission.allowed",
                    extra={
                        "operation": key.operation,
                        "subject_hash": hash_identifier(key.subject),
                        "count": entry.count,
                        "limit": entry.max_requests,
                        "remaining": remaining,
                    },
                )
            return RateLimitResult(
                allowed=True,
                remaining=remaining,
                reset_time=reset_time,
                retry_after_ms=None,
                limit=entry.max_requests,
            )

        retry_after_ms = max(0, int(math.ceil(reset_time - now)))
        if logger.isEnabledFor(logging.WARNING):
            logger.warning(
                "admission.denied",
                extra={
                    "operation": key.operation,
                    "subject_hash": hash_identifier(key.subject),
                    "count": entry.count,
                    "limit": entry.max_requests,
                    "retry_after_ms": retry_after_ms,
                },
            )
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_time=reset_time,
            retry_after_ms=retry_after_ms,
            limit=entry.max_requests,
        )

    def _unconfigured_result(self, operation: str) -> RateLimitResult:
        now = self._clock()
        logger.debug(
            "admission.unconfigured",
            extra={"operation": operation, "fail_open": self._fail_open},
        )
        if self._fail_open:
            return RateLimitResult(allowed=True, remaining=UNLIMITED, reset_time=now)
        return RateLimitResult(allowed=False, remaining=0, reset_time=now, retry_after_ms=0)

    def _build_key(
        self, operation: str, subject_id: str | int, policy: RateLimitConfig
    ) -> CompositeKey:
        return CompositeKey(operation, policy.subject_key(str(subject_id)))

    def _get_or_create_entry(self, key: CompositeKey, policy: RateLimitConfig) -> RateLimitEntry:
        with self._entries_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = RateLimitEntry(
                    count=0,
                    window_start=self._clock(),
                    max_requests=policy.max_requests,
                    window_ms=policy.window_ms,
                )
                self._entries[key] = entry
            return entry

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def reset(
        self,
        operation: str,
        subject_id: str | int,
        config: RateLimitConfig | None = None,
    ) -> None:
        """Forget the counter for one key; a no-op when there is none.

        The key is derived exactly as ``is_allowed`` derives it, so the
        registered (or given) key generator is applied.
        """
        policy = config or self._registry.get_config(operation)
        if policy is not None:
            key = self._build_key(operation, subject_id, policy)
        else:
            key = CompositeKey(operation, str(subject_id))

        with self._entries_lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return
            with entry.lock:
                entry.retired = True

        logger.info(
            "admission.reset",
            extra={"operation": operation, "subject_hash": hash_identifier(key.subject)},
        )

    def clear(self) -> None:
        """Drop every entry. Policies are kept."""
        with self._entries_lock:
            for entry in self._entries.values():
                with entry.lock:
                    entry.retired = True
            self._entries.clear()

    def sweep(self) -> int:
        """Evict entries whose window ended more than the grace period ago.

        Entries locked by an in-flight decision are skipped and picked up by
        a later sweep.

        Returns:
            Number of entries evicted.
        """
        with self._sweep_lock:
            return self._sweep_locked()

    def _maybe_sweep(self) -> None:
        """Run a sweep when the interval elapsed and nobody else is sweeping."""
        if self._sweep_interval_ms is None:
            return
        if self._clock() - self._last_sweep < self._sweep_interval_ms:
            return
        if not self._sweep_lock.acquire(blocking=False):
            return
        try:
            if self._clock() - self._last_sweep >= self._sweep_interval_ms:
                self._sweep_locked()
        finally:
            self._sweep_lock.release()

    def _sweep_locked(self) -> int:
        now = self._clock()
        self._last_sweep = now
        grace = self._retention_grace_ms

        with self._entries_lock:
            snapshot = list(self._entries.items())

        # Unlocked pre-filter; each candidate is re-checked under both locks.
        candidates = [(key, entry) for key, entry in snapshot if now >= entry.reset_time + grace]

        evicted = 0
        for start in range(0, len(candidates), _SWEEP_BATCH_SIZE):
            with self._entries_lock:
                for key, entry in candidates[start:start + _SWEEP_BATCH_SIZE]:
                    if self._entries.get(key) is not entry:
                        continue
                    if not entry.lock.acquire(blocking=False):
                        continue
                    try:
                        if now >= entry.reset_time + grace:
                            entry.retired = True
                            del self._entries[key]
                            evicted += 1
                    finally:
                        entry.lock.release()

        if evicted:
            logger.debug(
                "admission.sweep",
                extra={"evicted": evicted, "entries": len(self)},
            )
        return evicted

    def stats(self) -> dict[str, Any]:
        """Return entry count and registered operations without exposing keys."""
        with self._entries_lock:
            total_entries = len(self._entries)
        return {
            "total_entries": total_entries,
            "operations": self._registry.operations(),
            "fail_open": self._fail_open,
            "retention_grace_ms": self._retention_grace_ms,
            "sweep_interval_ms": self._sweep_interval_ms,
        }

    def __len__(self) -> int:
        with self._entries_lock:
            return len(self._entries)
