"""SQLAlchemy models — portable across SQLite and PostgreSQL."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, String, Text, UniqueConstraint

from collab_webhooks.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class InstallationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    UNINSTALLED = "UNINSTALLED"


# ── App ─────────────────────────────────────────────────
class App(Base):
    """Third-party app that can be installed into workspaces."""

    __tablename__ = "apps"

    id = Column(String(36), primary_key=True, default=new_uuid)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    manifest = Column(Text, default="{}")  # JSON: {"webhooks": [{"url", "events"}]}
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ── App Installation ────────────────────────────────────
class AppInstallation(Base):
    """An app installed into exactly one workspace."""

    __tablename__ = "app_installations"
    __table_args__ = (UniqueConstraint("app_id", "workspace_id", name="uq_installation_app_workspace"),)

    id = Column(String(36), primary_key=True, default=new_uuid)
    app_id = Column(String(36), ForeignKey("apps.id"), nullable=False, index=True)
    workspace_id = Column(String(36), nullable=False, index=True)
    workspace_slug = Column(String(100), default="")
    workspace_name = Column(String(200), default="")
    status = Column(String(20), default=InstallationStatus.ACTIVE.value)  # ACTIVE|SUSPENDED|UNINSTALLED
    installed_by = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == InstallationStatus.ACTIVE.value


from collab_webhooks.models.webhook import AppWebhook, AppWebhookDelivery  # noqa: E402,F401
