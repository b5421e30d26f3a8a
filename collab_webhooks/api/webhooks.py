"""Webhook management, delivery history and test delivery API."""

from dataclasses import replace
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from collab_webhooks.api.deps import get_event_bus
from collab_webhooks.config import get_settings
from collab_webhooks.database import get_db
from collab_webhooks.models import App, AppInstallation, InstallationStatus
from collab_webhooks.models.webhook import AppWebhook, AppWebhookDelivery
from collab_webhooks.schemas import (
    DeliveryOut,
    TestDeliveryOut,
    TestWebhookRequest,
    TestWebhookResponse,
    TestWebhookSummary,
    WebhookCreate,
    WebhookCreated,
    WebhookDetail,
    WebhookOut,
    WebhookUpdate,
)
from collab_webhooks.services.event_bus import EventBus
from collab_webhooks.services.events import (
    VALID_EVENTS,
    AppRef,
    Event,
    EventContext,
    UnknownEventTypeError,
    create_test_event_data,
    parse_event_type,
)
from collab_webhooks.services.subscriptions import (
    DuplicateWebhookUrlError,
    SubscriptionError,
    create_subscription,
    remove_subscription,
    update_subscription,
)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

settings = get_settings()


async def _get_webhook(db: AsyncSession, webhook_id: str) -> AppWebhook:
    result = await db.execute(select(AppWebhook).where(AppWebhook.id == webhook_id))
    wh = result.scalar_one_or_none()
    if not wh:
        raise HTTPException(404, "Webhook not found")
    return wh


def _subscription_error(exc: Exception) -> HTTPException:
    if isinstance(exc, DuplicateWebhookUrlError):
        return HTTPException(409, str(exc))
    return HTTPException(400, str(exc))


# ── Endpoints ────────────────────────────────────────────
@router.get("/events", response_model=list[str])
async def list_event_types():
    """List all available webhook event types."""
    return VALID_EVENTS


@router.post("/", response_model=WebhookCreated, status_code=201)
async def create_webhook(
    data: WebhookCreate,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    result = await db.execute(select(AppInstallation).where(AppInstallation.id == data.installation_id))
    installation = result.scalar_one_or_none()
    if not installation:
        raise HTTPException(404, "Installation not found")

    try:
        wh, secret = await create_subscription(
            db, installation, data.url, data.event_types, bus.engine.secret_store, secret=data.secret,
        )
    except (SubscriptionError, UnknownEventTypeError) as exc:
        raise _subscription_error(exc)
    return WebhookCreated(**WebhookOut.from_model(wh).model_dump(), secret=secret)


@router.get("/", response_model=list[WebhookOut])
async def list_webhooks(
    installation_id: Optional[str] = None,
    workspace_id: Optional[str] = None,
    active: Optional[bool] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(AppWebhook)
    if installation_id is not None:
        stmt = stmt.where(AppWebhook.installation_id == installation_id)
    if workspace_id is not None:
        stmt = stmt.join(AppInstallation, AppWebhook.installation_id == AppInstallation.id).where(
            AppInstallation.workspace_id == workspace_id
        )
    if active is not None:
        stmt = stmt.where(AppWebhook.is_active == active)
    stmt = stmt.order_by(AppWebhook.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return [WebhookOut.from_model(wh) for wh in result.scalars().all()]


@router.get("/{webhook_id}", response_model=WebhookDetail)
async def get_webhook(webhook_id: str, db: AsyncSession = Depends(get_db)):
    wh = await _get_webhook(db, webhook_id)
    result = await db.execute(
        select(AppWebhookDelivery)
        .where(AppWebhookDelivery.webhook_id == webhook_id)
        .order_by(AppWebhookDelivery.created_at.desc())
        .limit(10)
    )
    recent = [DeliveryOut.from_model(d) for d in result.scalars().all()]
    return WebhookDetail(**WebhookOut.from_model(wh).model_dump(), recent_deliveries=recent)


@router.patch("/{webhook_id}", response_model=WebhookOut)
async def update_webhook(webhook_id: str, data: WebhookUpdate, db: AsyncSession = Depends(get_db)):
    wh = await _get_webhook(db, webhook_id)
    try:
        wh = await update_subscription(
            db, wh, url=data.url, event_types=data.event_types, is_active=data.is_active,
        )
    except (SubscriptionError, UnknownEventTypeError) as exc:
        raise _subscription_error(exc)
    return WebhookOut.from_model(wh)


@router.delete("/{webhook_id}", status_code=204)
async def delete_webhook(webhook_id: str, db: AsyncSession = Depends(get_db)):
    """Delete a webhook; one with delivery history is only deactivated."""
    wh = await _get_webhook(db, webhook_id)
    await remove_subscription(db, wh)


@router.get("/{webhook_id}/deliveries", response_model=list[DeliveryOut])
async def list_deliveries(
    webhook_id: str,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """List delivery history for a webhook."""
    await _get_webhook(db, webhook_id)
    stmt = (
        select(AppWebhookDelivery)
        .where(AppWebhookDelivery.webhook_id == webhook_id)
        .order_by(AppWebhookDelivery.created_at.desc())
        .offset(skip)
        .limit(limit)
    )
    result = await db.execute(stmt)
    return [DeliveryOut.from_model(d) for d in result.scalars().all()]


@router.post("/test", response_model=TestWebhookResponse)
async def test_webhook(
    data: TestWebhookRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    """Send a test event to an installation's webhooks for one event type, without retries."""
    try:
        event_type = parse_event_type(data.event_type)
    except UnknownEventTypeError as exc:
        raise HTTPException(400, str(exc))

    result = await db.execute(
        select(AppInstallation, App)
        .join(App, AppInstallation.app_id == App.id)
        .where(
            AppInstallation.id == data.installation_id,
            AppInstallation.status == InstallationStatus.ACTIVE.value,
        )
    )
    row = result.first()
    if row is None:
        raise HTTPException(404, "App not installed in this workspace")
    installation, app = row

    result = await db.execute(
        select(AppWebhook).where(
            AppWebhook.installation_id == installation.id,
            AppWebhook.is_active.is_(True),
        )
    )
    webhooks = [wh for wh in result.scalars().all() if wh.subscribes_to(event_type.value)]
    if not webhooks:
        raise HTTPException(404, f"No active webhooks found for event type: {event_type.value}")

    context = EventContext(
        workspace_id=installation.workspace_id,
        workspace_name=installation.workspace_name or "",
        workspace_slug=installation.workspace_slug or "",
        source="webhook-test",
    )
    event = Event.create(
        event_type,
        data.test_data or create_test_event_data(event_type),
        context,
        app=AppRef(id=app.id, slug=app.slug, name=app.name),
        id_prefix="test",
    )
    options = replace(bus.engine.default_options, max_attempts=1, timeout_ms=settings.webhook_test_timeout_ms)
    await bus.engine.process_event(event, options, subscriptions=webhooks)

    result = await db.execute(
        select(AppWebhookDelivery, AppWebhook.url)
        .join(AppWebhook, AppWebhookDelivery.webhook_id == AppWebhook.id)
        .where(AppWebhookDelivery.event_id == event.id)
    )
    deliveries = [
        TestDeliveryOut(
            webhook_id=d.webhook_id,
            webhook_url=url,
            http_status=d.http_status,
            success=d.delivered_at is not None,
            error=None if d.delivered_at is not None else d.response_body,
            attempts=d.attempts or 0,
            delivered_at=d.delivered_at,
            failed_at=d.failed_at,
        )
        for d, url in result.all()
    ]
    successful = sum(1 for d in deliveries if d.success)
    return TestWebhookResponse(
        event_id=event.id,
        event_type=event.type.value,
        timestamp=event.timestamp,
        deliveries=deliveries,
        summary=TestWebhookSummary(
            total_webhooks=len(webhooks),
            successful=successful,
            failed=len(deliveries) - successful,
        ),
    )
