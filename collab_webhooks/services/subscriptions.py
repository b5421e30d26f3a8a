"""Webhook subscription management."""

import json
import logging
import secrets
from typing import Optional
from urllib.parse import urlparse

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from collab_webhooks.config import get_settings
from collab_webhooks.models import AppInstallation
from collab_webhooks.models.webhook import AppWebhook, AppWebhookDelivery
from collab_webhooks.services.events import UnknownEventTypeError, VALID_EVENTS
from collab_webhooks.services.secret_store import SecretStore

logger = logging.getLogger(__name__)


class SubscriptionError(ValueError):
    pass


class InvalidWebhookUrlError(SubscriptionError):
    pass


class DuplicateWebhookUrlError(SubscriptionError):
    pass


def is_valid_webhook_url(url: str, allow_insecure: Optional[bool] = None) -> bool:
    """http(s) URL with a host; plain http only when insecure URLs are allowed."""
    if allow_insecure is None:
        settings = get_settings()
        allow_insecure = settings.webhook_allow_insecure_urls and not settings.is_production
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if not parsed.hostname:
        return False
    if parsed.scheme == "https":
        return True
    return parsed.scheme == "http" and allow_insecure


def generate_webhook_secret() -> str:
    return f"whsec_{secrets.token_urlsafe(32)}"


def _check_event_types(event_types: list[str]) -> None:
    if not event_types:
        raise SubscriptionError("At least one event type is required")
    for evt in event_types:
        if evt not in VALID_EVENTS:
            raise UnknownEventTypeError(evt)


async def _url_taken(db: AsyncSession, installation_id: str, url: str, exclude_id: Optional[str] = None) -> bool:
    stmt = select(AppWebhook.id).where(AppWebhook.installation_id == installation_id, AppWebhook.url == url)
    if exclude_id:
        stmt = stmt.where(AppWebhook.id != exclude_id)
    return (await db.execute(stmt)).first() is not None


async def create_subscription(
    db: AsyncSession,
    installation: AppInstallation,
    url: str,
    event_types: list[str],
    secret_store: SecretStore,
    secret: Optional[str] = None,
    commit: bool = True,
) -> tuple[AppWebhook, str]:
    """Create a webhook; returns it with the plaintext secret (shown once)."""
    if not is_valid_webhook_url(url):
        raise InvalidWebhookUrlError("Invalid webhook URL. Must be HTTPS in production.")
    _check_event_types(event_types)
    if await _url_taken(db, installation.id, url):
        raise DuplicateWebhookUrlError("A webhook with this URL already exists for this installation")

    secret = secret or generate_webhook_secret()
    webhook = AppWebhook(
        app_id=installation.app_id,
        installation_id=installation.id,
        url=url,
        secret_enc=secret_store.encrypt(secret),
        event_types=json.dumps(sorted(set(event_types))),
    )
    db.add(webhook)
    if commit:
        await db.commit()
        await db.refresh(webhook)
    logger.info(f"Created webhook for installation {installation.id} -> {url}")
    return webhook, secret


async def update_subscription(
    db: AsyncSession,
    webhook: AppWebhook,
    url: Optional[str] = None,
    event_types: Optional[list[str]] = None,
    is_active: Optional[bool] = None,
) -> AppWebhook:
    if url is not None and url != webhook.url:
        if not is_valid_webhook_url(url):
            raise InvalidWebhookUrlError("Invalid webhook URL. Must be HTTPS in production.")
        if await _url_taken(db, webhook.installation_id, url, exclude_id=webhook.id):
            raise DuplicateWebhookUrlError("A webhook with this URL already exists for this installation")
        webhook.url = url
    if event_types is not None:
        _check_event_types(event_types)
        webhook.event_types = json.dumps(sorted(set(event_types)))
    if is_active is not None:
        webhook.is_active = is_active
    await db.commit()
    await db.refresh(webhook)
    return webhook


async def remove_subscription(db: AsyncSession, webhook: AppWebhook) -> bool:
    """Delete a webhook with no delivery history, otherwise deactivate it.

    Returns True when the row was deleted.
    """
    count = await db.scalar(
        select(func.count()).select_from(AppWebhookDelivery).where(AppWebhookDelivery.webhook_id == webhook.id)
    )
    if count:
        webhook.is_active = False
        await db.commit()
        logger.info(f"Deactivated webhook {webhook.id} ({count} deliveries on record)")
        return False
    await db.delete(webhook)
    await db.commit()
    logger.info(f"Deleted webhook {webhook.id}")
    return True


async def deactivate_installation_webhooks(db: AsyncSession, installation_id: str) -> int:
    result = await db.execute(
        select(AppWebhook).where(AppWebhook.installation_id == installation_id, AppWebhook.is_active.is_(True))
    )
    webhooks = result.scalars().all()
    for wh in webhooks:
        wh.is_active = False
    return len(webhooks)
