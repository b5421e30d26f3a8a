"""Event bus — announces domain events to internal listeners and webhooks.

One bus is built per process by :func:`build_event_bus` (the FastAPI
lifespan holds it on ``app.state.event_bus``). Listeners are additive and
live as long as the bus.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from collab_webhooks.config import get_settings
from collab_webhooks.services.delivery_ledger import DeliveryLedger
from collab_webhooks.services.events import (
    Event,
    EventContext,
    WebhookEventType,
    parse_event_type,
)
from collab_webhooks.services.retry_policy import RetryOptions
from collab_webhooks.services.secret_store import SecretStore
from collab_webhooks.services.webhook_delivery import DeliveryEngine

logger = logging.getLogger(__name__)

Listener = Callable[[Event], Awaitable[None]]


@dataclass(frozen=True)
class BatchEvent:
    event_type: WebhookEventType | str
    data: dict[str, Any]
    context: EventContext


class EventBus:
    def __init__(self, engine: DeliveryEngine):
        self._engine = engine
        self._listeners: dict[WebhookEventType, list[Listener]] = {}
        self._background: set[asyncio.Task] = set()

    @property
    def engine(self) -> DeliveryEngine:
        return self._engine

    # ── Listeners ────────────────────────────────────────

    def on(self, event_type: WebhookEventType | str, listener: Listener) -> None:
        self._listeners.setdefault(parse_event_type(event_type), []).append(listener)

    def off(self, event_type: WebhookEventType | str, listener: Listener) -> None:
        listeners = self._listeners.get(parse_event_type(event_type), [])
        if listener in listeners:
            listeners.remove(listener)

    async def _notify_listeners(self, event: Event) -> None:
        listeners = list(self._listeners.get(event.type, []))
        if not listeners:
            return
        logger.debug(f"Notifying {len(listeners)} internal listeners for {event.type.value}")
        for listener in listeners:
            try:
                await listener(event)
            except Exception:
                logger.exception(f"Internal listener failed for {event.type.value} (event={event.id})")

    # ── Emission ─────────────────────────────────────────

    def _detach(self, coro: Awaitable[Any], description: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if t.cancelled():
                logger.warning(f"Detached {description} was cancelled")
            elif t.exception() is not None:
                logger.error(f"Detached {description} failed", exc_info=t.exception())

        task.add_done_callback(_done)
        return task

    async def emit(
        self,
        event_type: WebhookEventType | str,
        data: dict[str, Any],
        context: EventContext,
        *,
        detach: bool = False,
        retry_options: Optional[RetryOptions] = None,
    ) -> Event:
        """Announce an event and deliver it to matching webhooks.

        With ``detach=True`` webhook processing runs in the background and
        its failures are only logged; await :meth:`drain` to wait for it.
        Unknown event types raise :class:`UnknownEventTypeError` up front.

        ``retry_options`` govern this first attempt only: the timeout, whether
        a failure is scheduled for retry, and its first delay. Later attempts
        are made by the retry sweeper with its own options, so a smaller
        ``max_attempts`` here is not carried over to them.
        """
        event = Event.create(parse_event_type(event_type), data, context)
        logger.info(
            f"Emitting event {event.type.value} (event={event.id} workspace={context.workspace_id} "
            f"source={context.source} detach={detach})"
        )

        await self._notify_listeners(event)

        if detach:
            self._detach(
                self._engine.process_event(event, retry_options),
                f"webhook processing for {event.type.value} (event={event.id})",
            )
            return event

        try:
            await self._engine.process_event(event, retry_options)
        except Exception:
            logger.exception(f"Failed to emit event {event.type.value} (event={event.id})")
            raise
        return event

    async def emit_batch(
        self,
        events: Iterable[BatchEvent],
        *,
        detach: bool = False,
        retry_options: Optional[RetryOptions] = None,
    ) -> None:
        """Emit every event; one failing event never cancels the rest."""
        events = list(events)
        logger.info(f"Emitting batch of {len(events)} events (detach={detach})")

        async def _run() -> None:
            outcomes = await asyncio.gather(
                *(self.emit(e.event_type, e.data, e.context, retry_options=retry_options) for e in events),
                return_exceptions=True,
            )
            for e, outcome in zip(events, outcomes):
                if isinstance(outcome, Exception):
                    logger.error(f"Batch emission of {e.event_type} failed: {outcome!r}")

        if detach:
            self._detach(_run(), f"batch of {len(events)} events")
        else:
            await _run()

    async def drain(self) -> None:
        """Wait for all detached emissions started so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        await self._engine.aclose()


def build_event_bus(
    session_factory: async_sessionmaker[AsyncSession],
    http_client: Optional[httpx.AsyncClient] = None,
    secret_store: Optional[SecretStore] = None,
) -> EventBus:
    """Wire secret store, ledger, engine and bus together."""
    settings = get_settings()
    options = RetryOptions.from_settings(settings)
    ledger = DeliveryLedger(session_factory, default_options=options)
    engine = DeliveryEngine(
        session_factory,
        ledger,
        secret_store or SecretStore(),
        http_client=http_client,
        max_concurrency=settings.webhook_max_concurrency,
        default_options=options,
    )
    return EventBus(engine)


# ── Convenience emitters ────────────────────────────────

async def emit_issue_created(bus: EventBus, issue: Any, context: EventContext, **options) -> Event:
    return await bus.emit(WebhookEventType.ISSUE_CREATED, {"issue": issue}, context, **options)


async def emit_issue_updated(bus: EventBus, issue: Any, changes: Any, context: EventContext, **options) -> Event:
    return await bus.emit(WebhookEventType.ISSUE_UPDATED, {"issue": issue, "changes": changes}, context, **options)


async def emit_issue_deleted(bus: EventBus, issue: Any, context: EventContext, **options) -> Event:
    return await bus.emit(WebhookEventType.ISSUE_DELETED, {"issue": issue}, context, **options)


async def emit_post_created(bus: EventBus, post: Any, context: EventContext, **options) -> Event:
    return await bus.emit(WebhookEventType.POST_CREATED, {"post": post}, context, **options)


async def emit_post_updated(bus: EventBus, post: Any, changes: Any, context: EventContext, **options) -> Event:
    return await bus.emit(WebhookEventType.POST_UPDATED, {"post": post, "changes": changes}, context, **options)


async def emit_workspace_member_added(bus: EventBus, member: Any, context: EventContext, **options) -> Event:
    return await bus.emit(WebhookEventType.WORKSPACE_MEMBER_ADDED, {"member": member}, context, **options)


async def emit_workspace_member_removed(bus: EventBus, member: Any, context: EventContext, **options) -> Event:
    return await bus.emit(WebhookEventType.WORKSPACE_MEMBER_REMOVED, {"member": member}, context, **options)


async def emit_app_installed(bus: EventBus, installation: Any, context: EventContext, **options) -> Event:
    return await bus.emit(WebhookEventType.APP_INSTALLED, {"installation": installation}, context, **options)


async def emit_app_uninstalled(bus: EventBus, installation: Any, context: EventContext, **options) -> Event:
    return await bus.emit(WebhookEventType.APP_UNINSTALLED, {"installation": installation}, context, **options)
