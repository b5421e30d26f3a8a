"""Webhook subscription and delivery ledger models."""

import json
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from collab_webhooks.database import Base
from collab_webhooks.models import new_uuid, utcnow


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class AppWebhook(Base):
    """Tenant-configured endpoint receiving a subset of event types."""

    __tablename__ = "app_webhooks"
    __table_args__ = (UniqueConstraint("installation_id", "url", name="uq_webhook_installation_url"),)

    id = Column(String(36), primary_key=True, default=new_uuid)
    app_id = Column(String(36), ForeignKey("apps.id"), nullable=False, index=True)
    installation_id = Column(String(36), ForeignKey("app_installations.id"), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    secret_enc = Column(Text, nullable=False)  # JWE-encrypted signing secret
    event_types = Column(Text, default="[]")  # JSON list of subscribed event types
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def event_type_list(self) -> list[str]:
        events = self.event_types
        if isinstance(events, str):
            try:
                events = json.loads(events)
            except (json.JSONDecodeError, TypeError):
                events = []
        return list(events or [])

    def subscribes_to(self, event_type: str) -> bool:
        return event_type in self.event_type_list


class AppWebhookDelivery(Base):
    """Ledger row tracking one (webhook, event) delivery across attempts."""

    __tablename__ = "app_webhook_deliveries"
    __table_args__ = (
        UniqueConstraint("webhook_id", "event_id", name="uq_delivery_webhook_event"),
        Index("ix_delivery_due", "next_attempt_at"),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    webhook_id = Column(String(36), ForeignKey("app_webhooks.id"), nullable=False, index=True)
    event_id = Column(String(64), nullable=False)
    event_type = Column(String(100), nullable=False)
    payload = Column(Text, nullable=False)  # exact JSON body sent
    signature = Column(String(200), default="")
    attempts = Column(Integer, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    http_status = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)  # truncated
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def status(self) -> DeliveryStatus:
        if self.delivered_at is not None:
            return DeliveryStatus.DELIVERED
        if self.failed_at is not None:
            return DeliveryStatus.FAILED
        return DeliveryStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status is not DeliveryStatus.PENDING
