"""Unit tests for the in-memory fixed-window admission engine."""

import math
import time
from unittest.mock import Mock

import pytest

from admission.adapters.rate_limit import in_memory
from admission.adapters.rate_limit.base import UNLIMITED, CompositeKey, RateLimitConfig
from admission.adapters.rate_limit.in_memory import InMemoryFixedWindowAdmissionEngine
from admission.adapters.rate_limit.registry import ConfigRegistry
from admission.core.errors import ConfigError

OP = "events:create"


class TestFixedWindow:
    """Quota accounting within and across windows."""

    def test_remaining_counts_down_to_zero(
        self, engine: InMemoryFixedWindowAdmissionEngine
    ) -> None:
        engine.add_config(OP, RateLimitConfig(max_requests=3, window_ms=60_000))

        results = [engine.is_allowed(OP, "u1") for _ in range(3)]

        assert [r.allowed for r in results] == [True, True, True]
        assert [r.remaining for r in results] == [2, 1, 0]
        assert all(r.retry_after_ms is None for r in results)
        assert all(r.limit == 3 for r in results)

    def test_blocks_after_quota_is_used(
        self, engine: InMemoryFixedWindowAdmissionEngine
    ) -> None:
        engine.add_config(OP, RateLimitConfig(max_requests=3, window_ms=60_000))
        for _ in range(3):
            engine.is_allowed(OP, "u1")

        blocked = engine.is_allowed(OP, "u1")

        assert blocked.allowed is False
        assert blocked.remaining == 0
        assert blocked.retry_after_ms is not None
        assert blocked.retry_after_ms > 0

    def test_reset_time_and_retry_after(
        self, engine: InMemoryFixedWindowAdmissionEngine, clock: Mock
    ) -> None:
        engine.add_config(OP, RateLimitConfig(max_requests=1, window_ms=60_000))

        first = engine.is_allowed(OP, "u1")
        assert first.reset_time == 1_060_000.0

        clock.return_value = 1_015_000.0
        blocked = engine.is_allowed(OP, "u1")

        assert blocked.reset_time == 1_060_000.0
        assert blocked.retry_after_ms == 45_000
        assert blocked.retry_after_seconds == 45

    def test_denied_calls_do_not_extend_the_count(
        self, engine: InMemoryFixedWindowAdmissionEngine, clock: Mock
    ) -> None:
        engine.add_config(OP, RateLimitConfig(max_requests=1, window_ms=1000))
        engine.is_allowed(OP, "u1")
        for _ in range(5):
            assert engine.is_allowed(OP, "u1").allowed is False

        clock.return_value = 1_001_000.0
        result = engine.is_allowed(OP, "u1")

        assert result.allowed is True
        assert result.remaining == 0

    def test_window_rolls_over_at_reset_time(
        self, engine: InMemoryFixedWindowAdmissionEngine, clock: Mock
    ) -> None:
        engine.add_config(OP, RateLimitConfig(max_requests=1, window_ms=100))

        assert engine.is_allowed(OP, "u1").allowed is True
        assert engine.is_allowed(OP, "u1").allowed is False

        clock.return_value = 1_000_099.0
        assert engine.is_allowed(OP, "u1").allowed is False

        clock.return_value = 1_000_100.0
        renewed = engine.is_allowed(OP, "u1")
        assert renewed.allowed is True
        assert renewed.reset_time == 1_000_200.0

    def test_expired_window_behaves_like_fresh_key(
        self, engine: InMemoryFixedWindowAdmissionEngine, clock: Mock
    ) -> None:
        engine.add_config(OP, RateLimitConfig(max_requests=2, window_ms=1000))
        for _ in range(4):
            engine.is_allowed(OP, "u1")

        clock.return_value = 1_005_000.0
        results = [engine.is_allowed(OP, "u1") for _ in range(2)]

        assert [r.remaining for r in results] == [1, 0]

    def test_short_window_in_real_time(self) -> None:
        engine = InMemoryFixedWindowAdmissionEngine(sweep_interval_ms=None)
        engine.add_config(OP, RateLimitConfig(max_requests=1, window_ms=100))

        assert engine.is_allowed(OP, "u1").allowed is True
        assert engine.is_allowed(OP, "u1").allowed is False

        time.sleep(0.15)
        assert engine.is_allowed(OP, "u1").allowed is True


class TestKeys:
    """Bucket isolation and key derivation."""

    def test_subjects_are_independent(
        self, engine: InMemoryFixedWindowAdmissionEngine
    ) -> None:
        engine.add_config(OP, RateLimitConfig(max_requests=1, window_ms=60_000))

        assert engine.is_allowed(OP, "user1").allowed is True
        assert engine.is_allowed(OP, "user2").allowed is True
        assert engine.is_allowed(OP, "user1").allowed is False
        assert engine.is_allowed(OP, "user2").allowed is False

    def test_exhausting_one_subject_keeps_other_quota(
        self, engine: InMemoryFixedWindowAdmissionEngine
    ) -> None:
        engine.add_config(OP, RateLimitConfig(max_requests=3, window_ms=60_000))
        for _ in range(5):
            engine.is_allowed(OP, "user1")

        assert engine.is_allowed(OP, "user2").remaining == 2

    def test_operations_never_share_a_bucket(
        self, engine: InMemoryFixedWindowAdmissionEngine
    ) -> None:
        engine.add_config("a", RateLimitConfig(max_requests=1, window_ms=60_000))
        engine.add_config("b", RateLimitConfig(max_requests=1, window_ms=60_000))

        assert engine.is_allowed("a", "u1").allowed is True
        assert engine.is_allowed("b", "u1").allowed is True
        assert engine.is_allowed("a", "u1").allowed is False

    def test_int_and_str_subject_ids_share_a_bucket(
        self, engine: InMemoryFixedWindowAdmissionEngine
    ) -> None:
        engine.add_config(OP, RateLimitConfig(max_requests=1, window_ms=60_000))

        assert engine.is_allowed(OP, 42).allowed is True
        assert engine.is_allowed(OP, "42").allowed is False

    def test_key_generator_groups_subjects(
        self, engine: InMemoryFixedWindowAdmissionEngine
    ) -> None:
        engine.add_config(
            OP,
            RateLimitConfig(
                max_requests=2,
                window_ms=60_000,
                key_generator=lambda subject: subject.split("@")[-1],
            ),
        )

        assert engine.is_allowed(OP, "alice@example.com").allowed is True
        assert engine.is_allowed(OP, "bob@example.com").allowed is True
        assert engine.is_allowed(OP, "carol@example.com").allowed is False
        assert engine.is_allowed(OP, "dave@other.org").allowed is True

    def test_composite_key_string_form(self) -> None:
        key = CompositeKey("auth:signin", "u1")

        assert str(key) == "auth:signin:u1"
        assert key != CompositeKey("auth:signup", "u1")


class TestUnconfiguredOperations:
    """Policy for operations without a registered config."""

    def test_fail_open_by_default(
        self, engine: InMemoryFixedWindowAdmissionEngine, clock: Mock
    ) -> None:
        for _ in range(100):
            result = engine.is_allowed("unknown", "u1")
            assert result.allowed is True

        assert result.remaining == UNLIMITED
        assert math.isinf(result.remaining)
        assert result.reset_time == clock.return_value
        assert result.retry_after_ms is None
        assert result.limit is None
        assert len(engine) == 0

    def test_fail_closed_denies(self, clock: Mock) -> None:
        engine = InMemoryFixedWindowAdmissionEngine(
            fail_open=False, clock=clock, sweep_interval_ms=None
        )

        result = engine.is_allowed("unknown", "u1")

        assert engine.fail_open is False
        assert result.allowed is False
        assert result.remaining == 0
        assert result.retry_after_ms == 0

    def test_fail_closed_still_admits_configured_operations(self, clock: Mock) -> None:
        engine = InMemoryFixedWindowAdmissionEngine(
            fail_open=False, clock=clock, sweep_interval_ms=None
        )
        engine.add_config(OP, RateLimitConfig(max_requests=1, window_ms=1000))

        assert engine.is_allowed(OP, "u1").allowed is True

    def test_removed_policy_falls_back_to_unconfigured(
        self, engine: InMemoryFixedWindowAdmissionEngine
    ) -> None:
        engine.add_config(OP, RateLimitConfig(max_requests=1, window_ms=60_000))
        engine.is_allowed(OP, "u1")
        engine.registry.remove_config(OP)

        assert engine.is_allowed(OP, "u1").allowed is True


class TestPolicyChanges:
    """Re-registration and per-call overrides."""

    def test_re_registration_waits_for_rollover(
        self, engine: InMemoryFixedWindowAdmissionEngine, clock: Mock
    ) -> None:
        engine.add_config(OP, RateLimitConfig(max_requests=2, window_ms=1000))
        engine.is_allowed(OP, "u1")

        engine.add_config(OP, RateLimitConfig(max_requests=5, window_ms=10_000))

        second = engine.is_allowed(OP, "u1")
        assert second.remaining == 0
        assert second.reset_time == 1_001_000.0
        assert engine.is_allowed(OP, "u1").allowed is False

        clock.return_value = 1_001_000.0
        renewed = engine.is_allowed(OP, "u1")
        assert renewed.limit == 5
        assert renewed.remaining == 4
        assert renewed.reset_time == 1_011_000.0

    def test_per_call_config_override(
        self, engine: InMemoryFixedWindowAdmissionEngine
    ) -> None:
        engine.add_config(OP, RateLimitConfig(max_requests=100, window_ms=60_000))
        strict = RateLimitConfig(max_requests=1, window_ms=60_000)

        assert engine.is_allowed("adhoc", "u1", strict).allowed is True
        assert engine.is_allowed("adhoc", "u1", strict).allowed is False

    def test_invalid_override_raises(
        self, engine: InMemoryFixedWindowAdmissionEngine
    ) -> None:
        with pytest.raises(ConfigError):
            engine.is_allowed(OP, "u1", RateLimitConfig(max_requests=0, window_ms=1000))


class TestMaintenance:
    """reset, clear, sweep and stats."""

    def test_reset_makes_key_fresh(
        self, engine: InMemoryFixedWindowAdmissionEngine
    ) -> None:
        engine.add_config(OP, RateLimitConfig(max_requests=2, window_ms=60_000))
        engine.is_allowed(OP, "u1")
        engine.is_allowed(OP, "u1")

        engine.reset(OP, "u1")
        result = engine.is_allowed(OP, "u1")

        assert result.allowed is True
        assert result.remaining == 1

    def test_reset_only_touches_one_key(
        self, engine: InMemoryFixedWindowAdmissionEngine
    ) -> None:
        engine.add_config(OP, RateLimitConfig(max_requests=1, window_ms=60_000))
        engine.is_allowed(OP, "u1")
        engine.is_allowed(OP, "u2")

        engine.reset(OP, "u1")

        assert engine.is_allowed(OP, "u1").allowed is True
        assert engine.is_allowed(OP, "u2").allowed is False

    def test_reset_unknown_key_is_noop(
        self, engine: InMemoryFixedWindowAdmissionEngine
    ) -> None:
        engine.reset(OP, "nobody")
        engine.reset("unconfigured", "nobody")

        assert len(engine) == 0

    def test_reset_applies_key_generator(
        self, engine: InMemoryFixedWindowAdmissionEngine
    ) -> None:
        engine.add_config(
            OP,
            RateLimitConfig(max_requests=1, window_ms=60_000, key_generator=str.lower),
        )
        engine.is_allowed(OP, "Alice")

        engine.reset(OP, "ALICE")

        assert engine.is_allowed(OP, "alice").allowed is True

    def test_clear_drops_entries_but_keeps_policies(
        self, engine: InMemoryFixedWindowAdmissionEngine
    ) -> None:
        engine.add_config(OP, RateLimitConfig(max_requests=1, window_ms=60_000))
        engine.is_allowed(OP, "u1")

        engine.clear()

        assert len(engine) == 0
        assert engine.get_config(OP) is not None
        assert engine.is_allowed(OP, "u1").allowed is True

    def test_sweep_respects_grace_period(self, clock: Mock) -> None:
        engine = InMemoryFixedWindowAdmissionEngine(
            clock=clock, retention_grace_ms=500, sweep_interval_ms=None
        )
        engine.add_config(OP, RateLimitConfig(max_requests=1, window_ms=1000))
        engine.is_allowed(OP, "u1")

        clock.return_value = 1_001_000.0
        assert engine.sweep() == 0

        clock.return_value = 1_001_499.0
        assert engine.sweep() == 0
        assert len(engine) == 1

        clock.return_value = 1_001_500.0
        assert engine.sweep() == 1
        assert len(engine) == 0

    def test_sweep_keeps_live_windows(self, clock: Mock) -> None:
        engine = InMemoryFixedWindowAdmissionEngine(
            clock=clock, retention_grace_ms=0, sweep_interval_ms=None
        )
        engine.add_config("short", RateLimitConfig(max_requests=1, window_ms=1000))
        engine.add_config("long", RateLimitConfig(max_requests=1, window_ms=60_000))
        engine.is_allowed("short", "u1")
        engine.is_allowed("long", "u1")

        clock.return_value = 1_002_000.0

        assert engine.sweep() == 1
        assert engine.is_allowed("long", "u1").allowed is False

    def test_sweep_releases_map_lock_between_batches(
        self, clock: Mock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(in_memory, "_SWEEP_BATCH_SIZE", 2)
        engine = InMemoryFixedWindowAdmissionEngine(
            clock=clock, retention_grace_ms=0, sweep_interval_ms=None
        )
        engine.add_config("short", RateLimitConfig(max_requests=1, window_ms=1000))
        engine.add_config("long", RateLimitConfig(max_requests=1, window_ms=60_000))
        for i in range(5):
            engine.is_allowed("short", f"u{i}")
        engine.is_allowed("long", "u0")

        acquisitions = 0
        real_lock = engine._entries_lock

        class CountingLock:
            def __enter__(self):
                nonlocal acquisitions
                acquisitions += 1
                return real_lock.__enter__()

            def __exit__(self, *exc):
                return real_lock.__exit__(*exc)

        monkeypatch.setattr(engine, "_entries_lock", CountingLock())
        clock.return_value = 1_002_000.0

        evicted = engine.sweep()
        sweep_acquisitions = acquisitions

        assert evicted == 5
        # one snapshot, three batches of at most two, one final count
        assert sweep_acquisitions == 5
        assert len(engine) == 1

    def test_sweep_is_not_needed_for_rollover(
        self, engine: InMemoryFixedWindowAdmissionEngine, clock: Mock
    ) -> None:
        engine.add_config(OP, RateLimitConfig(max_requests=1, window_ms=1000))
        engine.is_allowed(OP, "u1")

        clock.return_value = 10_000_000.0

        assert engine.is_allowed(OP, "u1").allowed is True
        assert len(engine) == 1

    def test_opportunistic_sweep_runs_after_interval(self, clock: Mock) -> None:
        engine = InMemoryFixedWindowAdmissionEngine(
            clock=clock, retention_grace_ms=0, sweep_interval_ms=5_000
        )
        engine.add_config(OP, RateLimitConfig(max_requests=1, window_ms=1000))
        engine.is_allowed(OP, "u1")

        clock.return_value = 1_002_000.0
        engine.is_allowed(OP, "u2")
        assert len(engine) == 2

        clock.return_value = 1_006_000.0
        engine.is_allowed(OP, "u3")
        # u1 and u2 were swept before u3 was counted
        assert len(engine) == 1

    def test_stats(self, engine: InMemoryFixedWindowAdmissionEngine) -> None:
        engine.add_config("b", RateLimitConfig(max_requests=1, window_ms=1000))
        engine.add_config("a", RateLimitConfig(max_requests=1, window_ms=1000))
        engine.is_allowed("a", "u1")
        engine.is_allowed("a", "u2")

        stats = engine.stats()

        assert stats["total_entries"] == 2
        assert stats["operations"] == ["a", "b"]
        assert stats["fail_open"] is True


class TestConstruction:
    def test_uses_given_registry(self) -> None:
        registry = ConfigRegistry({OP: RateLimitConfig(max_requests=1, window_ms=1000)})
        engine = InMemoryFixedWindowAdmissionEngine(registry)

        assert engine.registry is registry
        assert engine.get_config(OP) is not None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"retention_grace_ms": -1},
            {"sweep_interval_ms": -1},
        ],
    )
    def test_invalid_constructor_args(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            InMemoryFixedWindowAdmissionEngine(**kwargs)
