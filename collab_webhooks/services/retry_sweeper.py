"""Retry sweeper — resubmits ledger rows whose next attempt is due."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from collab_webhooks.models import AppInstallation, utcnow
from collab_webhooks.models.webhook import AppWebhook, AppWebhookDelivery
from collab_webhooks.services.events import Event, UnknownEventTypeError
from collab_webhooks.services.retry_policy import RetryOptions, is_retryable
from collab_webhooks.services.webhook_delivery import DeliveryEngine

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


@dataclass
class SweepStats:
    scanned: int = 0
    retried: int = 0
    skipped: int = 0
    delivered: int = 0
    failed: int = 0


class RetrySweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        engine: DeliveryEngine,
        batch_size: int = DEFAULT_BATCH_SIZE,
        options: Optional[RetryOptions] = None,
    ):
        self._session_factory = session_factory
        self._engine = engine
        self._ledger = engine.ledger
        self._batch_size = batch_size
        self._options = options or engine.default_options

    async def _load_webhooks(self, webhook_ids: set[str]) -> dict[str, tuple[AppWebhook, AppInstallation]]:
        if not webhook_ids:
            return {}
        async with self._session_factory() as db:
            result = await db.execute(
                select(AppWebhook, AppInstallation)
                .join(AppInstallation, AppWebhook.installation_id == AppInstallation.id)
                .where(AppWebhook.id.in_(webhook_ids))
            )
            return {wh.id: (wh, inst) for wh, inst in result.all()}

    async def _retry(self, row: AppWebhookDelivery, webhook: AppWebhook, now: datetime) -> Optional[AppWebhookDelivery]:
        event = Event.from_payload(row.payload)
        result = await self._engine.deliver_one(
            webhook,
            event,
            timeout_ms=self._options.timeout_ms,
            payload=row.payload.encode("utf-8"),
        )
        if result.skipped:
            return None
        return await self._ledger.record(
            row.webhook_id,
            row.event_id,
            row.event_type,
            row.payload,
            result,
            result.signature,
            self._options,
            now=now,
        )

    async def sweep(self, now: Optional[datetime] = None) -> SweepStats:
        """Run one pass over up to ``batch_size`` due rows, oldest-due first.

        Rows that can never succeed (attempt limit reached, type no longer
        subscribed, unreadable payload) are marked FAILED so they leave the
        due set.
        """
        now = now or utcnow()
        stats = SweepStats()
        rows = await self._ledger.list_due(now=now, limit=self._batch_size)
        stats.scanned = len(rows)
        if not rows:
            return stats

        logger.info(f"Retrying {len(rows)} webhook deliveries")
        webhooks = await self._load_webhooks({r.webhook_id for r in rows})

        pending = []
        for row in rows:
            found = webhooks.get(row.webhook_id)
            if found is None or not found[0].is_active or not found[1].is_active:
                # Deactivated since listing; left in place for audit
                logger.info(f"Skipping retry of event={row.event_id}: webhook {row.webhook_id} inactive")
                stats.skipped += 1
                continue
            webhook = found[0]
            if (row.attempts or 0) >= self._options.max_attempts:
                if await self._ledger.abandon(row.webhook_id, row.event_id, "Retry attempts exhausted", now=now):
                    stats.failed += 1
                continue
            if not webhook.subscribes_to(row.event_type):
                if await self._ledger.abandon(
                    row.webhook_id, row.event_id, "Webhook no longer subscribed to event type", now=now,
                ):
                    stats.failed += 1
                continue
            if not is_retryable(row, self._options.max_attempts, now):
                stats.skipped += 1
                continue
            pending.append((row, webhook))

        outcomes = await asyncio.gather(
            *(self._retry(row, wh, now) for row, wh in pending),
            return_exceptions=True,
        )
        for (row, _), outcome in zip(pending, outcomes):
            if isinstance(outcome, UnknownEventTypeError):
                logger.error(f"Stored payload for event={row.event_id} has an unknown type: {outcome}")
                if await self._ledger.abandon(row.webhook_id, row.event_id, str(outcome), now=now):
                    stats.failed += 1
                else:
                    stats.skipped += 1
            elif isinstance(outcome, Exception):
                # Row stays pending and is picked up again by a later sweep
                logger.error(f"Retry of event={row.event_id} webhook={row.webhook_id} failed: {outcome!r}")
                stats.skipped += 1
            elif isinstance(outcome, BaseException):
                raise outcome
            elif outcome is None:
                stats.skipped += 1
            else:
                stats.retried += 1
                if outcome.delivered_at is not None:
                    stats.delivered += 1
                elif outcome.failed_at is not None:
                    stats.failed += 1

        logger.info(
            f"Sweep done: scanned={stats.scanned} retried={stats.retried} skipped={stats.skipped} "
            f"delivered={stats.delivered} failed={stats.failed}"
        )
        return stats
