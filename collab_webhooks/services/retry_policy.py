"""Retry policy — backoff, outcome classification and retry eligibility.

Everything here is pure: callers pass "now" and, where randomness is
involved, the random source.
"""

import random
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from collab_webhooks.models import ensure_utc, utcnow

DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_INITIAL_DELAY_MS = 1_000
DEFAULT_MAX_DELAY_MS = 3_600_000
DEFAULT_TIMEOUT_MS = 10_000
JITTER_RATIO = 0.25

# 408 Request Timeout and 429 Too Many Requests are worth retrying
_RETRYABLE_CLIENT_ERRORS = frozenset({408, 429})


class DeliveryOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    RETRYABLE_FAILURE = "RETRYABLE_FAILURE"
    PERMANENT_FAILURE = "PERMANENT_FAILURE"


@dataclass(frozen=True)
class RetryOptions:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS
    timeout_ms: int = DEFAULT_TIMEOUT_MS

    @classmethod
    def from_settings(cls, settings) -> "RetryOptions":
        return cls(
            max_attempts=settings.webhook_max_attempts,
            initial_delay_ms=settings.webhook_initial_delay_ms,
            max_delay_ms=settings.webhook_max_delay_ms,
            timeout_ms=settings.webhook_timeout_ms,
        )


@dataclass(frozen=True)
class AttemptState:
    """The slice of a ledger row that retry eligibility depends on."""

    attempts: int
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None


def base_delay(
    attempts: int,
    initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS,
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
) -> int:
    """Un-jittered exponential delay: ``min(initial * 2**attempts, max)``."""
    if attempts < 0:
        attempts = 0
    # Past 62 doublings every realistic initial delay is above the cap
    if attempts > 62:
        return max_delay_ms
    return min(initial_delay_ms * (2 ** attempts), max_delay_ms)


def next_attempt_delay(
    attempts: int,
    initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS,
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
    rng: Optional[random.Random] = None,
) -> int:
    """Exponential backoff with uniform ±25% jitter, clamped to ``[0, max]``."""
    delay = base_delay(attempts, initial_delay_ms, max_delay_ms)
    r = (rng or random).random()
    jittered = delay + delay * JITTER_RATIO * (2 * r - 1)
    return int(min(max(jittered, 0), max_delay_ms))


def is_retryable(record, max_attempts: int = DEFAULT_MAX_ATTEMPTS, now: Optional[datetime] = None) -> bool:
    """Whether ``record`` (ledger row or :class:`AttemptState`) may be attempted again."""
    if record.delivered_at is not None or record.failed_at is not None:
        return False
    if (record.attempts or 0) >= max_attempts:
        return False
    next_at = ensure_utc(record.next_attempt_at)
    now = ensure_utc(now) if now is not None else utcnow()
    if next_at is not None and next_at > now:
        return False
    return True


def classify_outcome(http_status: Optional[int]) -> DeliveryOutcome:
    """Map an HTTP status (None for transport errors/timeouts) to an outcome."""
    if http_status is None:
        return DeliveryOutcome.RETRYABLE_FAILURE
    if 200 <= http_status < 300:
        return DeliveryOutcome.SUCCESS
    if 400 <= http_status < 500 and http_status not in _RETRYABLE_CLIENT_ERRORS:
        return DeliveryOutcome.PERMANENT_FAILURE
    return DeliveryOutcome.RETRYABLE_FAILURE
