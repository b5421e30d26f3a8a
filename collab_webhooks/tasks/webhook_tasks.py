"""Webhook retry sweeper task."""

import asyncio
import logging
from dataclasses import asdict

from collab_webhooks.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="collab_webhooks.tasks.webhook_tasks.retry_webhook_deliveries")
def retry_webhook_deliveries():
    """Resubmit ledger rows whose next attempt is due."""
    return asdict(asyncio.run(_sweep()))


async def _sweep(session_factory=None, http_client=None):
    from collab_webhooks.config import get_settings
    from collab_webhooks.database import async_session, engine
    from collab_webhooks.services.event_bus import build_event_bus
    from collab_webhooks.services.retry_sweeper import RetrySweeper

    settings = get_settings()
    bus = build_event_bus(session_factory or async_session, http_client=http_client)
    sweeper = RetrySweeper(
        session_factory or async_session,
        bus.engine,
        batch_size=settings.webhook_sweep_batch_size,
    )
    try:
        stats = await sweeper.sweep()
    finally:
        await bus.aclose()
        if session_factory is None:
            # Pooled connections belong to this run's event loop
            await engine.dispose()
    logger.info(f"Webhook sweep: retried={stats.retried} delivered={stats.delivered} failed={stats.failed}")
    return stats
