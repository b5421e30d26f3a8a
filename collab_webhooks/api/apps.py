"""App registration and installation API."""

import json

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from collab_webhooks.api.deps import get_event_bus
from collab_webhooks.database import get_db
from collab_webhooks.models import App, AppInstallation, InstallationStatus
from collab_webhooks.schemas import AppCreate, AppOut, InstallationOut, InstallRequest
from collab_webhooks.services.event_bus import EventBus
from collab_webhooks.services.events import EventContext
from collab_webhooks.services.installations import install_app, uninstall_app

router = APIRouter(prefix="/apps", tags=["apps"])


async def _get_app(db: AsyncSession, slug: str) -> App:
    result = await db.execute(select(App).where(App.slug == slug))
    app = result.scalar_one_or_none()
    if not app:
        raise HTTPException(404, "App not found")
    return app


@router.post("/", response_model=AppOut, status_code=201)
async def create_app(data: AppCreate, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(App).where(App.slug == data.slug))
    if result.scalar_one_or_none():
        raise HTTPException(409, f"App slug already taken: {data.slug}")
    app = App(
        slug=data.slug,
        name=data.name,
        manifest=json.dumps({"webhooks": [w.model_dump() for w in data.webhooks]}),
    )
    db.add(app)
    await db.commit()
    await db.refresh(app)
    return app


@router.post("/{slug}/installations", response_model=InstallationOut, status_code=201)
async def install(
    slug: str,
    data: InstallRequest,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    app = await _get_app(db, slug)
    context = EventContext(
        workspace_id=data.workspace_id,
        workspace_name=data.workspace_name,
        workspace_slug=data.workspace_slug,
        user_id=data.user_id,
        source="api",
    )
    return await install_app(db, bus, app, context, provision_webhooks=data.provision_webhooks)


@router.delete("/{slug}/installations/{installation_id}", response_model=InstallationOut)
async def uninstall(
    slug: str,
    installation_id: str,
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    app = await _get_app(db, slug)
    result = await db.execute(
        select(AppInstallation).where(
            AppInstallation.id == installation_id,
            AppInstallation.app_id == app.id,
        )
    )
    installation = result.scalar_one_or_none()
    if not installation:
        raise HTTPException(404, "Installation not found")
    if installation.status == InstallationStatus.UNINSTALLED.value:
        return installation
    return await uninstall_app(db, bus, installation, app)
