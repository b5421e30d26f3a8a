"""Tests for backoff, outcome classification and retry eligibility."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from collab_webhooks.services.retry_policy import (
    AttemptState,
    DeliveryOutcome,
    RetryOptions,
    base_delay,
    classify_outcome,
    is_retryable,
    next_attempt_delay,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class FixedRandom:
    def __init__(self, value):
        self.value = value

    def random(self):
        return self.value


# ── Backoff ──────────────────────────────────────────────
class TestBackoff:
    def test_base_delay_doubles(self):
        assert base_delay(0) == 1000
        assert base_delay(1) == 2000
        assert base_delay(3) == 8000

    def test_base_delay_capped(self):
        assert base_delay(30) == 3_600_000
        assert base_delay(10_000) == 3_600_000

    def test_negative_attempts_treated_as_zero(self):
        assert base_delay(-3) == 1000

    def test_base_delay_monotonic_and_bounded(self):
        delays = [base_delay(a, 500, 100_000) for a in range(80)]
        assert delays == sorted(delays)
        assert max(delays) == 100_000

    def test_jitter_bounds(self):
        assert next_attempt_delay(2, rng=FixedRandom(0.0)) == 3000
        assert next_attempt_delay(2, rng=FixedRandom(0.5)) == 4000
        assert next_attempt_delay(2, rng=FixedRandom(0.999999)) <= 5000

    def test_jittered_delay_never_exceeds_max(self):
        rng = random.Random(42)
        for attempts in range(40):
            for _ in range(20):
                d = next_attempt_delay(attempts, 1000, 60_000, rng=rng)
                assert 0 <= d <= 60_000

    def test_jittered_delay_within_25_percent(self):
        rng = random.Random(7)
        for _ in range(200):
            d = next_attempt_delay(4, rng=rng)
            assert 12_000 <= d <= 20_000

    def test_zero_initial_delay(self):
        assert next_attempt_delay(5, initial_delay_ms=0) == 0


# ── Classification ───────────────────────────────────────
@pytest.mark.parametrize("status", [200, 201, 202, 204, 299])
def test_classify_success(status):
    assert classify_outcome(status) is DeliveryOutcome.SUCCESS


@pytest.mark.parametrize("status", [400, 401, 403, 404, 405, 410, 413, 422, 499])
def test_classify_permanent(status):
    assert classify_outcome(status) is DeliveryOutcome.PERMANENT_FAILURE


@pytest.mark.parametrize("status", [None, 100, 301, 302, 408, 429, 500, 502, 503, 504])
def test_classify_retryable(status):
    assert classify_outcome(status) is DeliveryOutcome.RETRYABLE_FAILURE


# ── Eligibility ──────────────────────────────────────────
class TestIsRetryable:
    def test_fresh_record(self):
        assert is_retryable(AttemptState(attempts=1), 10, NOW)

    def test_delivered(self):
        assert not is_retryable(AttemptState(attempts=1, delivered_at=NOW), 10, NOW)

    def test_failed(self):
        assert not is_retryable(AttemptState(attempts=1, failed_at=NOW), 10, NOW)

    def test_attempts_exhausted(self):
        assert not is_retryable(AttemptState(attempts=10), 10, NOW)
        assert is_retryable(AttemptState(attempts=9), 10, NOW)

    def test_next_attempt_in_future(self):
        state = AttemptState(attempts=1, next_attempt_at=NOW + timedelta(seconds=1))
        assert not is_retryable(state, 10, NOW)

    def test_next_attempt_due(self):
        assert is_retryable(AttemptState(attempts=1, next_attempt_at=NOW), 10, NOW)
        assert is_retryable(AttemptState(attempts=1, next_attempt_at=NOW - timedelta(seconds=1)), 10, NOW)

    def test_naive_datetimes_treated_as_utc(self):
        naive = (NOW + timedelta(minutes=5)).replace(tzinfo=None)
        assert not is_retryable(AttemptState(attempts=1, next_attempt_at=naive), 10, NOW)


def test_retry_options_defaults():
    opts = RetryOptions()
    assert opts.max_attempts == 10
    assert opts.initial_delay_ms == 1000
    assert opts.max_delay_ms == 3_600_000
    assert opts.timeout_ms == 10_000


def test_retry_options_from_settings():
    from collab_webhooks.config import get_settings

    opts = RetryOptions.from_settings(get_settings())
    assert opts.max_attempts == get_settings().webhook_max_attempts
