"""Unit tests for backoff delays and the polling recovery policy."""

import random

import pytest

from session_relay.backoff import (
    BackoffConfig,
    PollingGaveUpError,
    PollingRecovery,
    backoff_delay,
)


NO_JITTER = BackoffConfig(initial_delay=2.0, max_delay=30.0, factor=1.8, jitter_ratio=0.0)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# ============================================================================
# backoff_delay
# ============================================================================


def test_first_attempt_without_jitter_is_initial_delay():
    assert backoff_delay(0, NO_JITTER) == 2.0


def test_delay_grows_by_factor():
    assert backoff_delay(1, NO_JITTER) == pytest.approx(3.6)
    assert backoff_delay(2, NO_JITTER) == pytest.approx(6.48)


def test_delay_is_non_decreasing_and_capped():
    delays = [backoff_delay(n, NO_JITTER) for n in range(20)]
    assert delays == sorted(delays)
    assert max(delays) == 30.0
    # 2 * 1.8**5 > 30, so from attempt 5 on the cap applies
    assert all(d == 30.0 for d in delays[5:])


def test_huge_attempt_does_not_overflow():
    assert backoff_delay(10_000, NO_JITTER) == 30.0


def test_jitter_stays_within_ratio():
    config = BackoffConfig(jitter_ratio=0.25)
    rng = random.Random(7)
    for _ in range(200):
        delay = backoff_delay(0, config, rng)
        assert 1.5 <= delay <= 2.5


def test_jitter_is_deterministic_with_seeded_rng():
    config = BackoffConfig()
    first = [backoff_delay(n, config, random.Random(42)) for n in range(5)]
    second = [backoff_delay(n, config, random.Random(42)) for n in range(5)]
    assert first == second


def test_delay_never_negative():
    config = BackoffConfig(initial_delay=1.0, jitter_ratio=5.0)
    rng = random.Random(3)
    assert all(backoff_delay(0, config, rng) >= 0.0 for _ in range(200))


def test_config_from_polling_section():
    config = BackoffConfig.from_config({"polling": {"initial_delay_seconds": 1, "max_delay_seconds": 8}})
    assert config.initial_delay == 1
    assert config.max_delay == 8
    assert config.factor == 1.8


# ============================================================================
# PollingRecovery
# ============================================================================


def test_failure_returns_backoff_delay():
    recovery = PollingRecovery(config=NO_JITTER, clock=FakeClock())
    assert recovery.record_failure(RuntimeError("boom")) == 2.0
    assert recovery.record_failure(RuntimeError("boom")) == pytest.approx(3.6)
    assert recovery.failing


def test_gives_up_after_consecutive_ceiling():
    recovery = PollingRecovery(config=NO_JITTER, max_consecutive_failures=3, clock=FakeClock())
    for _ in range(3):
        recovery.record_failure()
    with pytest.raises(PollingGaveUpError):
        recovery.record_failure()


def test_gives_up_after_wall_clock_ceiling():
    clock = FakeClock()
    recovery = PollingRecovery(config=NO_JITTER, max_consecutive_failures=100, max_total_seconds=300, clock=clock)
    recovery.record_failure()
    clock.now += 200
    recovery.record_failure()
    clock.now += 101
    with pytest.raises(PollingGaveUpError):
        recovery.record_failure()


def test_success_resets_both_ceilings():
    clock = FakeClock()
    recovery = PollingRecovery(config=NO_JITTER, max_consecutive_failures=2, max_total_seconds=300, clock=clock)
    recovery.record_failure()
    recovery.record_failure()
    clock.now += 299

    recovery.record_success()
    assert not recovery.failing
    assert recovery.consecutive_failures == 0

    clock.now += 1000
    # New streak starts from attempt 0 and a fresh clock
    assert recovery.record_failure() == 2.0


def test_gave_up_error_is_runtime_error():
    assert issubclass(PollingGaveUpError, RuntimeError)


def test_recovery_from_config():
    recovery = PollingRecovery.from_config({"polling": {"max_consecutive_failures": 4, "max_total_seconds": 60}})
    assert recovery.max_consecutive_failures == 4
    assert recovery.max_total_seconds == 60
