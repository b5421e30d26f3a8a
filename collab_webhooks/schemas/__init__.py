"""Pydantic schemas for API request/response."""

import json
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


# ── App ──────────────────────────────────────────────────
class ManifestWebhook(BaseModel):
    url: str
    events: list[str]


class AppCreate(BaseModel):
    slug: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=200)
    webhooks: list[ManifestWebhook] = Field(default_factory=list)


class AppOut(BaseModel):
    id: str
    slug: str
    name: str
    created_at: datetime

    model_config = {"from_attributes": True}


class InstallRequest(BaseModel):
    workspace_id: str
    workspace_name: str
    workspace_slug: str
    user_id: Optional[str] = None
    provision_webhooks: bool = True


class InstallationOut(BaseModel):
    id: str
    app_id: str
    workspace_id: str
    status: str
    installed_by: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


# ── Webhook ──────────────────────────────────────────────
class WebhookCreate(BaseModel):
    installation_id: str
    url: str
    event_types: list[str] = Field(..., min_length=1)
    secret: Optional[str] = None


class WebhookUpdate(BaseModel):
    url: Optional[str] = None
    event_types: Optional[list[str]] = Field(None, min_length=1)
    is_active: Optional[bool] = None


class DeliveryOut(BaseModel):
    id: str
    webhook_id: str
    event_id: str
    event_type: str
    status: str
    attempts: int
    http_status: Optional[int] = None
    response_body: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_model(cls, d):
        return cls(
            id=d.id,
            webhook_id=d.webhook_id,
            event_id=d.event_id,
            event_type=d.event_type,
            status=d.status.value,
            attempts=d.attempts or 0,
            http_status=d.http_status,
            response_body=d.response_body,
            last_attempt_at=d.last_attempt_at,
            delivered_at=d.delivered_at,
            failed_at=d.failed_at,
            next_attempt_at=d.next_attempt_at,
            created_at=d.created_at,
        )


class WebhookOut(BaseModel):
    id: str
    app_id: str
    installation_id: str
    url: str
    event_types: list[str]
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, wh):
        events = wh.event_types
        if isinstance(events, str):
            try:
                events = json.loads(events)
            except (json.JSONDecodeError, TypeError):
                events = []
        return cls(
            id=wh.id,
            app_id=wh.app_id,
            installation_id=wh.installation_id,
            url=wh.url,
            event_types=events,
            is_active=bool(wh.is_active),
            created_at=wh.created_at,
            updated_at=wh.updated_at,
        )


class WebhookCreated(WebhookOut):
    # Plaintext signing secret, only returned once
    secret: str


class WebhookDetail(WebhookOut):
    recent_deliveries: list[DeliveryOut] = Field(default_factory=list)


class TestWebhookRequest(BaseModel):
    installation_id: str
    event_type: str
    test_data: Optional[dict] = None


class TestDeliveryOut(BaseModel):
    webhook_id: str
    webhook_url: str
    http_status: Optional[int] = None
    success: bool
    error: Optional[str] = None
    attempts: int
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


class TestWebhookSummary(BaseModel):
    total_webhooks: int
    successful: int
    failed: int


class TestWebhookResponse(BaseModel):
    event_id: str
    event_type: str
    timestamp: int
    deliveries: list[TestDeliveryOut]
    summary: TestWebhookSummary
