"""Tests for the delivery ledger: idempotent recording, scheduling and races."""

import asyncio
import random
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from collab_webhooks.models import ensure_utc
from collab_webhooks.models.webhook import AppWebhookDelivery, DeliveryStatus
from collab_webhooks.services.delivery_ledger import DeliveryLedger, plan_transition
from collab_webhooks.services.retry_policy import RetryOptions
from collab_webhooks.services.webhook_delivery import DeliveryResult

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
PAYLOAD = b'{"id":"evt_1","type":"issue.created"}'


class FixedRandom:
    def random(self):
        return 0.5


def ok(webhook_id="wh", status=200, body="ok"):
    return DeliveryResult(webhook_id=webhook_id, success=True, status=status, response=body)


def retryable(webhook_id="wh", status=500, body="boom"):
    return DeliveryResult(webhook_id=webhook_id, success=False, status=status, response=body, should_retry=True)


def permanent(webhook_id="wh", status=404, body="missing"):
    return DeliveryResult(webhook_id=webhook_id, success=False, status=status, response=body, should_retry=False)


async def count_rows(session_factory, **filters):
    async with session_factory() as db:
        stmt = select(func.count()).select_from(AppWebhookDelivery)
        for key, value in filters.items():
            stmt = stmt.where(getattr(AppWebhookDelivery, key) == value)
        return await db.scalar(stmt)


@pytest.fixture
def ledger(session_factory):
    return DeliveryLedger(session_factory, rng=FixedRandom())


async def record(ledger, result, event_id="evt_1", webhook_id="wh", now=NOW, options=None, payload=PAYLOAD):
    return await ledger.record(webhook_id, event_id, "issue.created", payload, result, "sha256=abc", options, now=now)


# ── plan_transition ──────────────────────────────────────
class TestPlanTransition:
    def test_success(self):
        values = plan_transition(0, ok(), RetryOptions(), NOW)
        assert values["attempts"] == 1
        assert values["delivered_at"] == NOW
        assert values["next_attempt_at"] is None
        assert "failed_at" not in values

    def test_retryable_schedules(self):
        values = plan_transition(2, retryable(), RetryOptions(), NOW, rng=FixedRandom())
        assert values["attempts"] == 3
        assert values["next_attempt_at"] == NOW + timedelta(milliseconds=8000)
        assert "failed_at" not in values

    def test_permanent_fails(self):
        values = plan_transition(0, permanent(), RetryOptions(), NOW)
        assert values["failed_at"] == NOW
        assert values["next_attempt_at"] is None

    def test_last_allowed_attempt_fails(self):
        values = plan_transition(2, retryable(), RetryOptions(max_attempts=3), NOW)
        assert values["attempts"] == 3
        assert values["failed_at"] == NOW

    def test_error_text_stored_when_no_response(self):
        result = DeliveryResult(webhook_id="wh", success=False, error="Request timeout", should_retry=True)
        values = plan_transition(0, result, RetryOptions(), NOW)
        assert values["response_body"] == "Request timeout"
        assert values["http_status"] is None


# ── record ───────────────────────────────────────────────
@pytest.mark.asyncio
async def test_first_success(ledger):
    row = await record(ledger, ok())
    assert row.attempts == 1
    assert row.status is DeliveryStatus.DELIVERED
    assert row.next_attempt_at is None

    stored = await ledger.get("wh", "evt_1")
    assert ensure_utc(stored.delivered_at) == NOW
    assert ensure_utc(stored.last_attempt_at) == NOW
    assert stored.http_status == 200
    assert stored.payload == PAYLOAD.decode()
    assert stored.signature == "sha256=abc"
    assert stored.failed_at is None


@pytest.mark.asyncio
async def test_first_retryable_failure_scheduled_within_jitter_window(session_factory):
    ledger = DeliveryLedger(session_factory, rng=random.Random(3))
    for i in range(20):
        await record(ledger, retryable(), event_id=f"evt_{i}")
        stored = await ledger.get("wh", f"evt_{i}")
        assert stored.attempts == 1
        delay = ensure_utc(stored.next_attempt_at) - NOW
        assert timedelta(milliseconds=1500) <= delay <= timedelta(milliseconds=2500)
        assert stored.delivered_at is None and stored.failed_at is None


@pytest.mark.asyncio
async def test_permanent_failure(ledger):
    row = await record(ledger, permanent())
    assert row.status is DeliveryStatus.FAILED
    stored = await ledger.get("wh", "evt_1")
    assert ensure_utc(stored.failed_at) == NOW
    assert stored.next_attempt_at is None
    assert stored.http_status == 404


@pytest.mark.asyncio
async def test_attempts_accumulate_on_one_row(ledger, session_factory):
    await record(ledger, retryable())
    await record(ledger, retryable(), now=NOW + timedelta(seconds=3))
    row = await record(ledger, retryable(), now=NOW + timedelta(seconds=10))
    assert row.attempts == 3
    assert await count_rows(session_factory) == 1
    stored = await ledger.get("wh", "evt_1")
    assert ensure_utc(stored.next_attempt_at) == NOW + timedelta(seconds=10) + timedelta(milliseconds=8000)


@pytest.mark.asyncio
async def test_exhaustion_marks_failed(ledger):
    opts = RetryOptions(max_attempts=3)
    for i in range(3):
        row = await record(ledger, retryable(), options=opts, now=NOW + timedelta(minutes=i))
    assert row.attempts == 3
    assert row.status is DeliveryStatus.FAILED
    assert row.next_attempt_at is None


@pytest.mark.asyncio
async def test_delivered_row_not_resurrected(ledger):
    await record(ledger, ok())
    row = await record(ledger, retryable(), now=NOW + timedelta(minutes=1))
    assert row.attempts == 1
    assert row.status is DeliveryStatus.DELIVERED
    stored = await ledger.get("wh", "evt_1")
    assert stored.attempts == 1
    assert stored.http_status == 200
    assert stored.next_attempt_at is None


@pytest.mark.asyncio
async def test_failed_row_not_resurrected(ledger):
    await record(ledger, permanent())
    row = await record(ledger, ok(), now=NOW + timedelta(minutes=1))
    assert row.status is DeliveryStatus.FAILED
    stored = await ledger.get("wh", "evt_1")
    assert stored.delivered_at is None
    assert stored.attempts == 1


@pytest.mark.asyncio
async def test_recording_same_success_twice_is_idempotent(ledger, session_factory):
    await record(ledger, ok())
    await record(ledger, ok())
    assert await count_rows(session_factory) == 1
    assert (await ledger.get("wh", "evt_1")).attempts == 1


@pytest.mark.asyncio
async def test_separate_keys_are_independent(ledger, session_factory):
    await record(ledger, ok(), webhook_id="wh-a")
    await record(ledger, permanent(), webhook_id="wh-b")
    await record(ledger, retryable(), event_id="evt_2", webhook_id="wh-a")
    assert await count_rows(session_factory) == 3
    assert (await ledger.get("wh-a", "evt_1")).status is DeliveryStatus.DELIVERED
    assert (await ledger.get("wh-b", "evt_1")).status is DeliveryStatus.FAILED
    assert (await ledger.get("wh-a", "evt_2")).status is DeliveryStatus.PENDING


@pytest.mark.asyncio
async def test_response_body_truncated(ledger):
    await record(ledger, retryable(body="x" * 5000))
    stored = await ledger.get("wh", "evt_1")
    assert len(stored.response_body) == 1000


@pytest.mark.asyncio
async def test_str_payload_accepted(ledger):
    await record(ledger, ok(), payload=PAYLOAD.decode())
    assert (await ledger.get("wh", "evt_1")).payload == PAYLOAD.decode()


# ── Concurrency ──────────────────────────────────────────
@pytest.mark.asyncio
async def test_concurrent_records_same_key_same_ledger(ledger, session_factory):
    await asyncio.gather(*(record(ledger, retryable()) for _ in range(5)))
    assert await count_rows(session_factory) == 1
    assert (await ledger.get("wh", "evt_1")).attempts == 5


@pytest.mark.asyncio
async def test_concurrent_records_same_key_two_ledgers(session_factory):
    live = DeliveryLedger(session_factory, rng=FixedRandom())
    sweeper = DeliveryLedger(session_factory, rng=FixedRandom())
    await asyncio.gather(
        record(live, retryable()),
        record(sweeper, retryable()),
        record(live, retryable()),
        record(sweeper, retryable()),
    )
    assert await count_rows(session_factory) == 1
    assert (await live.get("wh", "evt_1")).attempts == 4


@pytest.mark.asyncio
async def test_concurrent_success_and_failure_never_both_terminal(session_factory):
    a = DeliveryLedger(session_factory)
    b = DeliveryLedger(session_factory)
    await asyncio.gather(record(a, ok()), record(b, permanent()))
    stored = await a.get("wh", "evt_1")
    assert stored.attempts == 1
    assert (stored.delivered_at is None) != (stored.failed_at is None)


# ── Queries ──────────────────────────────────────────────
@pytest.mark.asyncio
async def test_list_due_filters_and_orders(ledger, seed):
    inst = await seed.installation()
    wh = (await seed.webhook(inst, "https://hooks.example.com/a")).id
    await record(ledger, retryable(), event_id="evt_late", webhook_id=wh, now=NOW)
    await record(ledger, retryable(), event_id="evt_early", webhook_id=wh, now=NOW - timedelta(minutes=5))
    await record(ledger, retryable(), event_id="evt_future", webhook_id=wh, now=NOW + timedelta(hours=1))
    await record(ledger, ok(), event_id="evt_done", webhook_id=wh)
    await record(ledger, permanent(), event_id="evt_dead", webhook_id=wh)

    due = await ledger.list_due(now=NOW + timedelta(seconds=5))
    assert [r.event_id for r in due] == ["evt_early", "evt_late"]

    assert [r.event_id for r in await ledger.list_due(now=NOW + timedelta(seconds=5), limit=1)] == ["evt_early"]
    assert await ledger.list_due(now=NOW - timedelta(hours=1)) == []


@pytest.mark.asyncio
async def test_list_due_excludes_inactive_webhooks_and_installations(ledger, seed):
    live_inst = await seed.installation()
    suspended = await seed.installation(status="SUSPENDED")
    live = await seed.webhook(live_inst, "https://hooks.example.com/live")
    paused = await seed.webhook(live_inst, "https://hooks.example.com/paused")
    orphaned = await seed.webhook(suspended, "https://hooks.example.com/suspended")

    # Inactive rows are due earlier than the live one and outnumber the limit
    for i in range(3):
        await record(ledger, retryable(), event_id=f"evt_p{i}", webhook_id=paused.id, now=NOW - timedelta(hours=2))
        await record(ledger, retryable(), event_id=f"evt_s{i}", webhook_id=orphaned.id, now=NOW - timedelta(hours=2))
    await record(ledger, retryable(), event_id="evt_live", webhook_id=live.id, now=NOW - timedelta(hours=1))
    await seed.set_active(paused, False)

    due = await ledger.list_due(now=NOW, limit=2)
    assert [r.event_id for r in due] == ["evt_live"]

    # Kept for audit, and due again once reactivated
    assert (await ledger.get(paused.id, "evt_p0")).status is DeliveryStatus.PENDING
    await seed.set_active(paused, True)
    assert len(await ledger.list_due(now=NOW, limit=10)) == 4


# ── abandon ──────────────────────────────────────────────
@pytest.mark.asyncio
async def test_abandon_marks_failed_without_attempt(ledger):
    await record(ledger, retryable())
    assert await ledger.abandon("wh", "evt_1", "Retry attempts exhausted", now=NOW + timedelta(minutes=1))

    stored = await ledger.get("wh", "evt_1")
    assert stored.status is DeliveryStatus.FAILED
    assert stored.attempts == 1
    assert stored.next_attempt_at is None
    assert stored.response_body == "Retry attempts exhausted"
    assert ensure_utc(stored.failed_at) == NOW + timedelta(minutes=1)


@pytest.mark.asyncio
async def test_abandon_leaves_terminal_rows(ledger):
    await record(ledger, ok())
    assert not await ledger.abandon("wh", "evt_1", "too late")
    assert not await ledger.abandon("wh", "evt_missing", "nothing here")
    assert (await ledger.get("wh", "evt_1")).status is DeliveryStatus.DELIVERED


@pytest.mark.asyncio
async def test_response_body_limit_follows_settings(session_factory, monkeypatch):
    from collab_webhooks.config import get_settings

    monkeypatch.setattr(get_settings(), "webhook_response_body_limit", 10)
    ledger = DeliveryLedger(session_factory)
    await record(ledger, retryable(body="z" * 50))
    assert (await ledger.get("wh", "evt_1")).response_body == "z" * 10
    assert plan_transition(0, retryable(body="z" * 50), RetryOptions(), NOW)["response_body"] == "z" * 10



@pytest.mark.asyncio
async def test_list_for_webhook(ledger):
    await record(ledger, ok(), event_id="evt_1", webhook_id="wh-a")
    await record(ledger, ok(), event_id="evt_2", webhook_id="wh-a")
    await record(ledger, ok(), event_id="evt_3", webhook_id="wh-b")
    rows = await ledger.list_for_webhook("wh-a")
    assert sorted(r.event_id for r in rows) == ["evt_1", "evt_2"]
    assert len(await ledger.list_for_webhook("wh-a", limit=1)) == 1
