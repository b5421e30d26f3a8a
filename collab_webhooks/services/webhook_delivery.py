"""Webhook delivery engine — matches subscriptions, sends signed POSTs, records outcomes."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Iterable, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from collab_webhooks.config import get_settings
from collab_webhooks.models import AppInstallation, InstallationStatus
from collab_webhooks.models.webhook import AppWebhook
from collab_webhooks.services.delivery_ledger import DeliveryLedger
from collab_webhooks.services.events import Event, create_webhook_payload
from collab_webhooks.services.retry_policy import DeliveryOutcome, RetryOptions, classify_outcome
from collab_webhooks.services.secret_store import SecretStore, SecretUnavailableError
from collab_webhooks.services.signing import format_signature_header, sign

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    webhook_id: str
    success: bool
    status: Optional[int] = None
    response: Optional[str] = None
    error: Optional[str] = None
    should_retry: bool = False
    signature: str = ""
    timestamp: Optional[int] = None
    payload: bytes = b""
    duration_ms: int = 0
    # True when the subscription no longer qualifies; nothing was sent
    skipped: bool = False

    @property
    def outcome(self) -> DeliveryOutcome:
        if self.success:
            return DeliveryOutcome.SUCCESS
        if self.should_retry:
            return DeliveryOutcome.RETRYABLE_FAILURE
        return DeliveryOutcome.PERMANENT_FAILURE


class DeliveryEngine:
    """Delivers events to matching webhook subscriptions.

    Outbound calls share one ``httpx.AsyncClient`` and are bounded by a
    semaphore so a workspace with many subscriptions cannot open an
    unbounded number of connections.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: DeliveryLedger,
        secret_store: SecretStore,
        http_client: Optional[httpx.AsyncClient] = None,
        max_concurrency: Optional[int] = None,
        default_options: Optional[RetryOptions] = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory
        self._ledger = ledger
        self._secrets = secret_store
        self._owns_client = http_client is None
        # The per-call bound is enforced by wait_for in deliver_one, not by httpx
        self._client = http_client or httpx.AsyncClient(timeout=None)
        self._semaphore = asyncio.Semaphore(max_concurrency or settings.webhook_max_concurrency)
        self._default_options = default_options or RetryOptions.from_settings(settings)
        self._user_agent = settings.webhook_user_agent
        self._header_prefix = settings.webhook_header_prefix
        self._body_limit = settings.webhook_response_body_limit

    @property
    def ledger(self) -> DeliveryLedger:
        return self._ledger

    @property
    def http_client(self) -> httpx.AsyncClient:
        return self._client

    @property
    def secret_store(self) -> SecretStore:
        return self._secrets

    @property
    def default_options(self) -> RetryOptions:
        return self._default_options

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ── Matching ─────────────────────────────────────────

    async def match_subscriptions(self, event: Event) -> list[AppWebhook]:
        """Active webhooks of active installations in the event's workspace that subscribe to its type."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(AppWebhook)
                .join(AppInstallation, AppWebhook.installation_id == AppInstallation.id)
                .where(
                    AppWebhook.is_active.is_(True),
                    AppInstallation.workspace_id == event.workspace.id,
                    AppInstallation.status == InstallationStatus.ACTIVE.value,
                )
                .order_by(AppWebhook.created_at.asc())
            )
            webhooks = result.scalars().all()

        # Event types live in a JSON text column, so membership is checked here
        matched: dict[str, AppWebhook] = {}
        for wh in webhooks:
            if wh.subscribes_to(event.type.value) and wh.id not in matched:
                matched[wh.id] = wh
        return list(matched.values())

    async def _load_current(self, webhook_id: str) -> tuple[Optional[AppWebhook], Optional[AppInstallation]]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AppWebhook, AppInstallation)
                .join(AppInstallation, AppWebhook.installation_id == AppInstallation.id)
                .where(AppWebhook.id == webhook_id)
            )
            row = result.first()
        if row is None:
            return None, None
        return row[0], row[1]

    # ── Single delivery ─────────────────────────────────

    async def deliver_one(
        self,
        subscription: AppWebhook,
        event: Event,
        timeout_ms: Optional[int] = None,
        payload: Optional[bytes] = None,
    ) -> DeliveryResult:
        """POST ``event`` to ``subscription`` once.

        ``payload`` overrides the serialized event so retries resend the exact
        bytes of the first attempt. Transport failures and HTTP errors come
        back as a failed :class:`DeliveryResult`; they are never raised.
        """
        timeout_ms = timeout_ms or self._default_options.timeout_ms

        webhook, installation = await self._load_current(subscription.id)
        if webhook is None or not webhook.is_active or installation is None or not installation.is_active:
            logger.info(f"Webhook {subscription.id} not found or inactive; skipping event={event.id}")
            return DeliveryResult(
                webhook_id=subscription.id, success=False, skipped=True,
                error="Webhook not found or inactive",
            )
        if not webhook.subscribes_to(event.type.value):
            logger.info(f"Webhook {webhook.id} no longer subscribes to {event.type.value}; skipping event={event.id}")
            return DeliveryResult(
                webhook_id=webhook.id, success=False, skipped=True,
                error="Webhook not subscribed to event type",
            )

        body = payload if payload is not None else create_webhook_payload(event)

        try:
            secret = self._secrets.decrypt(webhook.secret_enc)
        except SecretUnavailableError as exc:
            logger.error(f"Webhook {webhook.id}: secret unavailable, delivery of event={event.id} not attempted: {exc}")
            return DeliveryResult(
                webhook_id=webhook.id, success=False, should_retry=False,
                error="Webhook secret unavailable", payload=body,
            )

        timestamp = int(time.time() * 1000)
        signature = sign(body, secret, timestamp)
        prefix = self._header_prefix
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            f"{prefix}-Signature": format_signature_header(signature, timestamp),
            f"{prefix}-Event-Type": event.type.value,
            f"{prefix}-Event-ID": event.id,
            f"{prefix}-Timestamp": str(timestamp),
            f"{prefix}-App-ID": webhook.app_id,
            f"{prefix}-Installation-ID": webhook.installation_id,
        }

        logger.info(f"Delivering {event.type.value} to {webhook.url} (event={event.id} webhook={webhook.id})")

        result = DeliveryResult(
            webhook_id=webhook.id, success=False, signature=signature,
            timestamp=timestamp, payload=body,
        )
        start = time.monotonic()
        try:
            async with self._semaphore:
                status, text = await asyncio.wait_for(
                    self._post(webhook.url, body, headers), timeout=timeout_ms / 1000
                )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            result.error = "Request timeout"
            result.should_retry = True
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            # Misconfigured endpoint; retrying cannot help
            result.error = f"Invalid webhook URL: {exc}"[: self._body_limit]
            result.should_retry = False
        except httpx.HTTPError as exc:
            result.error = (str(exc) or type(exc).__name__)[: self._body_limit]
            result.should_retry = True
        else:
            outcome = classify_outcome(status)
            result.status = status
            result.response = text
            result.success = outcome is DeliveryOutcome.SUCCESS
            result.should_retry = outcome is DeliveryOutcome.RETRYABLE_FAILURE
        result.duration_ms = int((time.monotonic() - start) * 1000)

        if result.success:
            logger.info(f"Webhook {webhook.id} accepted event={event.id} status={result.status}")
        else:
            logger.warning(
                f"Webhook {webhook.id} failed event={event.id} status={result.status} "
                f"error={result.error} should_retry={result.should_retry}"
            )
        return result

    async def _post(self, url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
        # Stream so that no more than the storable prefix of the body is read
        async with self._client.stream("POST", url, content=body, headers=headers) as resp:
            buf = bytearray()
            async for chunk in resp.aiter_bytes():
                buf.extend(chunk)
                if len(buf) >= self._body_limit:
                    break
            return resp.status_code, bytes(buf[: self._body_limit]).decode("utf-8", errors="replace")

    # ── Fan-out ─────────────────────────────────────────

    async def _deliver_and_record(
        self, webhook: AppWebhook, event: Event, options: RetryOptions
    ) -> DeliveryResult:
        result = await self.deliver_one(webhook, event, timeout_ms=options.timeout_ms)
        if result.skipped:
            return result
        payload = result.payload or create_webhook_payload(event)
        await self._ledger.record(
            webhook.id,
            event.id,
            event.type.value,
            payload,
            result,
            result.signature,
            options,
        )
        return result

    async def process_event(
        self,
        event: Event,
        options: Optional[RetryOptions] = None,
        subscriptions: Optional[Iterable[AppWebhook]] = None,
    ) -> list[DeliveryResult]:
        """Deliver ``event`` to every matching subscription concurrently.

        A failure for one subscription (including a ledger write error) is
        logged and never affects the others. ``subscriptions`` restricts the
        fan-out to an explicit set instead of matching.
        """
        options = options or self._default_options
        logger.info(f"Processing event {event.type.value} (event={event.id} workspace={event.workspace.id})")

        if subscriptions is None:
            webhooks = await self.match_subscriptions(event)
        else:
            webhooks = list({wh.id: wh for wh in subscriptions}.values())

        if not webhooks:
            logger.info(f"No active webhooks for event {event.type.value} (event={event.id})")
            return []

        logger.info(f"Found {len(webhooks)} webhooks for event={event.id}: {[wh.id for wh in webhooks]}")
        outcomes = await asyncio.gather(
            *(self._deliver_and_record(wh, event, options) for wh in webhooks),
            return_exceptions=True,
        )

        results: list[DeliveryResult] = []
        for wh, outcome in zip(webhooks, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error(
                    f"Failed to process webhook {wh.id} for event={event.id}: {outcome!r}",
                    exc_info=outcome,
                )
                continue
            results.append(outcome)

        logger.info(f"Completed processing event {event.type.value} (event={event.id} webhooks={len(webhooks)})")
        return results

