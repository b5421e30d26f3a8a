"""Delivery ledger — upsert-by-(webhook, event) bookkeeping that drives retries.

The live delivery path and the retry sweeper may record outcomes for the
same key at the same time. Updates are applied as a conditional
``UPDATE ... WHERE attempts = :expected AND delivered_at IS NULL AND
failed_at IS NULL`` so a racing writer can neither double-count an attempt
nor bring a terminal row back to life; a lost race re-reads and tries again.
Inside one process a per-key lock keeps the common case free of conflicts.
"""

import asyncio
import logging
import random
import weakref
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from collab_webhooks.config import get_settings
from collab_webhooks.models import AppInstallation, InstallationStatus, utcnow
from collab_webhooks.models.webhook import AppWebhook, AppWebhookDelivery
from collab_webhooks.services.retry_policy import (
    AttemptState,
    RetryOptions,
    is_retryable,
    next_attempt_delay,
)

if TYPE_CHECKING:
    from collab_webhooks.services.webhook_delivery import DeliveryResult

logger = logging.getLogger(__name__)

MAX_CONFLICT_RETRIES = 5


class LedgerConflictError(RuntimeError):
    """A conditional ledger update kept losing to concurrent writers."""


def _truncate(value: Optional[str], limit: int) -> Optional[str]:
    if value is None:
        return None
    return value[:limit]


def plan_transition(
    previous_attempts: int,
    result: "DeliveryResult",
    options: RetryOptions,
    now: datetime,
    rng: Optional[random.Random] = None,
    body_limit: Optional[int] = None,
) -> dict:
    """Column values for the next state of a row after one more attempt."""
    if body_limit is None:
        body_limit = get_settings().webhook_response_body_limit
    attempts = previous_attempts + 1
    values = {
        "attempts": attempts,
        "last_attempt_at": now,
        "http_status": result.status,
        "response_body": _truncate(result.response if result.response is not None else result.error, body_limit),
    }

    if result.success:
        values["delivered_at"] = now
        values["next_attempt_at"] = None
    elif result.should_retry and is_retryable(AttemptState(attempts=attempts), options.max_attempts, now):
        delay_ms = next_attempt_delay(attempts, options.initial_delay_ms, options.max_delay_ms, rng=rng)
        values["next_attempt_at"] = now + timedelta(milliseconds=delay_ms)
    else:
        values["failed_at"] = now
        values["next_attempt_at"] = None
    return values


class DeliveryLedger:
    """Persistent record of delivery attempts keyed by ``(webhook_id, event_id)``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_options: Optional[RetryOptions] = None,
        rng: Optional[random.Random] = None,
    ):
        self._session_factory = session_factory
        self._default_options = default_options or RetryOptions()
        self._rng = rng
        self._body_limit = get_settings().webhook_response_body_limit
        self._locks: "weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, webhook_id: str, event_id: str) -> asyncio.Lock:
        key = (webhook_id, event_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def get(self, webhook_id: str, event_id: str) -> Optional[AppWebhookDelivery]:
        async with self._session_factory() as db:
            return await self._fetch(db, webhook_id, event_id)

    @staticmethod
    async def _fetch(db: AsyncSession, webhook_id: str, event_id: str) -> Optional[AppWebhookDelivery]:
        result = await db.execute(
            select(AppWebhookDelivery).where(
                AppWebhookDelivery.webhook_id == webhook_id,
                AppWebhookDelivery.event_id == event_id,
            )
        )
        return result.scalar_one_or_none()

    async def record(
        self,
        webhook_id: str,
        event_id: str,
        event_type: str,
        payload: bytes | str,
        result: "DeliveryResult",
        signature: str,
        options: Optional[RetryOptions] = None,
        now: Optional[datetime] = None,
    ) -> AppWebhookDelivery:
        """Record one attempt's outcome and schedule the next one if due.

        Returns the row as stored. A row that is already DELIVERED or FAILED
        is returned untouched.
        """
        options = options or self._default_options
        now = now or utcnow()
        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload

        lock = self._lock_for(webhook_id, event_id)
        async with lock:
            for _ in range(MAX_CONFLICT_RETRIES):
                async with self._session_factory() as db:
                    row = await self._fetch(db, webhook_id, event_id)

                    if row is None:
                        values = plan_transition(0, result, options, now, rng=self._rng, body_limit=self._body_limit)
                        row = AppWebhookDelivery(
                            webhook_id=webhook_id,
                            event_id=event_id,
                            event_type=event_type,
                            payload=body,
                            signature=signature,
                            **values,
                        )
                        db.add(row)
                        try:
                            await db.commit()
                        except IntegrityError:
                            # Another writer created the row first; apply as an update
                            await db.rollback()
                            continue
                        self._log_recorded(row)
                        return row

                    if row.is_terminal:
                        logger.info(
                            f"Delivery {event_id} -> {webhook_id} already {row.status.value}; "
                            f"attempt not recorded"
                        )
                        return row

                    expected = row.attempts or 0
                    values = plan_transition(expected, result, options, now, rng=self._rng, body_limit=self._body_limit)
                    stmt = (
                        update(AppWebhookDelivery)
                        .where(
                            AppWebhookDelivery.id == row.id,
                            AppWebhookDelivery.attempts == expected,
                            AppWebhookDelivery.delivered_at.is_(None),
                            AppWebhookDelivery.failed_at.is_(None),
                        )
                        .values(signature=signature, updated_at=now, **values)
                        .execution_options(synchronize_session=False)
                    )
                    outcome = await db.execute(stmt)
                    await db.commit()
                    if outcome.rowcount != 1:
                        logger.debug(f"Delivery {event_id} -> {webhook_id} changed concurrently; re-reading")
                        continue

                    for key, val in values.items():
                        setattr(row, key, val)
                    row.signature = signature
                    self._log_recorded(row)
                    return row

        raise LedgerConflictError(
            f"Could not record delivery of {event_id} to {webhook_id} after {MAX_CONFLICT_RETRIES} tries"
        )

    @staticmethod
    def _log_recorded(row: AppWebhookDelivery) -> None:
        logger.info(
            f"Recorded delivery attempt {row.attempts} for event={row.event_id} "
            f"webhook={row.webhook_id} status={row.status.value} next_attempt_at={row.next_attempt_at}"
        )

    async def list_due(self, now: Optional[datetime] = None, limit: int = 100) -> list[AppWebhookDelivery]:
        """Pending rows whose next attempt is due, oldest-due first.

        Rows of inactive webhooks or installations stay pending for audit but
        are not returned, so they cannot crowd live rows out of a batch.
        """
        now = now or utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                select(AppWebhookDelivery)
                .join(AppWebhook, AppWebhookDelivery.webhook_id == AppWebhook.id)
                .join(AppInstallation, AppWebhook.installation_id == AppInstallation.id)
                .where(
                    AppWebhookDelivery.delivered_at.is_(None),
                    AppWebhookDelivery.failed_at.is_(None),
                    AppWebhookDelivery.next_attempt_at.is_not(None),
                    AppWebhookDelivery.next_attempt_at <= now,
                    AppWebhook.is_active.is_(True),
                    AppInstallation.status == InstallationStatus.ACTIVE.value,
                )
                .order_by(AppWebhookDelivery.next_attempt_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def abandon(
        self, webhook_id: str, event_id: str, reason: str, now: Optional[datetime] = None
    ) -> bool:
        """Mark a pending row FAILED without counting an attempt.

        Returns False when the row is missing or already terminal.
        """
        now = now or utcnow()
        async with self._lock_for(webhook_id, event_id):
            async with self._session_factory() as db:
                outcome = await db.execute(
                    update(AppWebhookDelivery)
                    .where(
                        AppWebhookDelivery.webhook_id == webhook_id,
                        AppWebhookDelivery.event_id == event_id,
                        AppWebhookDelivery.delivered_at.is_(None),
                        AppWebhookDelivery.failed_at.is_(None),
                    )
                    .values(
                        failed_at=now,
                        next_attempt_at=None,
                        response_body=_truncate(reason, self._body_limit),
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        if outcome.rowcount != 1:
            return False
        logger.info(f"Abandoned delivery of event={event_id} to webhook={webhook_id}: {reason}")
        return True

    async def list_for_webhook(self, webhook_id: str, skip: int = 0, limit: int = 50) -> list[AppWebhookDelivery]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AppWebhookDelivery)
                .where(AppWebhookDelivery.webhook_id == webhook_id)
                .order_by(AppWebhookDelivery.created_at.desc())
                .offset(skip)
                .limit(limit)
            )
            return list(result.scalars().all())
