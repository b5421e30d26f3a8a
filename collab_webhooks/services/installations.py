"""App installation lifecycle — provisions and retires webhooks."""

import json
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from collab_webhooks.models import App, AppInstallation, InstallationStatus
from collab_webhooks.models.webhook import AppWebhook
from collab_webhooks.services.event_bus import EventBus, emit_app_installed, emit_app_uninstalled
from collab_webhooks.services.events import EventContext, UnknownEventTypeError
from collab_webhooks.services.subscriptions import (
    SubscriptionError,
    create_subscription,
    deactivate_installation_webhooks,
)

logger = logging.getLogger(__name__)


def manifest_webhooks(app: App) -> list[dict]:
    """Webhook endpoints declared in the app manifest; malformed entries are dropped."""
    try:
        manifest = json.loads(app.manifest or "{}")
    except (json.JSONDecodeError, TypeError):
        logger.warning(f"App {app.slug} has an unreadable manifest")
        return []
    declared = manifest.get("webhooks") if isinstance(manifest, dict) else None
    if not isinstance(declared, list):
        return []
    return [
        entry for entry in declared
        if isinstance(entry, dict) and isinstance(entry.get("url"), str) and isinstance(entry.get("events"), list)
    ]


def installation_snapshot(installation: AppInstallation, app: App) -> dict:
    return {
        "id": installation.id,
        "appId": app.id,
        "appSlug": app.slug,
        "workspaceId": installation.workspace_id,
        "installedById": installation.installed_by,
        "status": installation.status,
    }


async def install_app(
    db: AsyncSession,
    bus: EventBus,
    app: App,
    context: EventContext,
    provision_webhooks: bool = True,
) -> AppInstallation:
    """Install ``app`` into the context's workspace and emit ``app.installed``."""
    result = await db.execute(
        select(AppInstallation).where(
            AppInstallation.app_id == app.id,
            AppInstallation.workspace_id == context.workspace_id,
        )
    )
    installation = result.scalar_one_or_none()
    if installation is None:
        installation = AppInstallation(
            app_id=app.id,
            workspace_id=context.workspace_id,
            workspace_slug=context.workspace_slug,
            workspace_name=context.workspace_name,
            installed_by=context.user_id,
        )
        db.add(installation)
        await db.flush()
    else:
        installation.status = InstallationStatus.ACTIVE.value
        installation.installed_by = context.user_id

    if provision_webhooks:
        secret_store = bus.engine.secret_store
        for entry in manifest_webhooks(app):
            existing = await db.execute(
                select(AppWebhook).where(
                    AppWebhook.installation_id == installation.id,
                    AppWebhook.url == entry["url"],
                )
            )
            webhook = existing.scalar_one_or_none()
            if webhook is not None:
                webhook.is_active = True
                continue
            try:
                await create_subscription(
                    db, installation, entry["url"], entry["events"], secret_store, commit=False,
                )
            except (SubscriptionError, UnknownEventTypeError) as exc:
                logger.warning(f"Skipping manifest webhook {entry['url']} for app {app.slug}: {exc}")

    await db.commit()
    await db.refresh(installation)
    logger.info(f"Installed app {app.slug} into workspace {context.workspace_id}")

    await emit_app_installed(bus, installation_snapshot(installation, app), context, detach=True)
    return installation


async def uninstall_app(
    db: AsyncSession,
    bus: EventBus,
    installation: AppInstallation,
    app: App,
    context: Optional[EventContext] = None,
) -> AppInstallation:
    """Emit ``app.uninstalled`` (while the app can still receive it), then retire the installation."""
    context = context or EventContext(
        workspace_id=installation.workspace_id,
        workspace_name=installation.workspace_name or "",
        workspace_slug=installation.workspace_slug or "",
    )
    snapshot = installation_snapshot(installation, app)
    snapshot["status"] = InstallationStatus.UNINSTALLED.value
    await emit_app_uninstalled(bus, snapshot, context)

    installation.status = InstallationStatus.UNINSTALLED.value
    deactivated = await deactivate_installation_webhooks(db, installation.id)
    await db.commit()
    await db.refresh(installation)
    logger.info(f"Uninstalled app {app.slug} from workspace {installation.workspace_id}; {deactivated} webhooks deactivated")
    return installation
