"""Webhook event vocabulary, event envelope and canonical payload."""

import json
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional


class WebhookEventType(str, Enum):
    ISSUE_CREATED = "issue.created"
    ISSUE_UPDATED = "issue.updated"
    ISSUE_DELETED = "issue.deleted"
    POST_CREATED = "post.created"
    POST_UPDATED = "post.updated"
    WORKSPACE_MEMBER_ADDED = "workspace.member_added"
    WORKSPACE_MEMBER_REMOVED = "workspace.member_removed"
    APP_INSTALLED = "app.installed"
    APP_UNINSTALLED = "app.uninstalled"


VALID_EVENTS = [e.value for e in WebhookEventType]


class UnknownEventTypeError(ValueError):
    """Raised for event types outside the webhook vocabulary."""

    def __init__(self, event_type: Any):
        super().__init__(f"Invalid event type: {event_type}")
        self.event_type = event_type


def parse_event_type(value: Any) -> WebhookEventType:
    try:
        return WebhookEventType(value)
    except ValueError:
        raise UnknownEventTypeError(value) from None


def validate_event_types(event_types: Iterable[str]) -> bool:
    event_types = list(event_types)
    return bool(event_types) and all(e in VALID_EVENTS for e in event_types)


_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_event_id(prefix: str = "evt") -> str:
    """``<prefix>_<epoch-ms>_<12 random base36 chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(12))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


@dataclass(frozen=True)
class WorkspaceRef:
    id: str
    slug: str = ""
    name: str = ""


@dataclass(frozen=True)
class AppRef:
    id: str
    slug: str
    name: str


SYSTEM_APP = AppRef(id="system", slug="system", name="Collab System")


@dataclass(frozen=True)
class EventContext:
    """Who/where an emission comes from; supplied by the calling domain action."""

    workspace_id: str
    workspace_name: str
    workspace_slug: str
    user_id: Optional[str] = None
    source: Optional[str] = None  # api | ui | background-job


@dataclass(frozen=True)
class Event:
    """Immutable event envelope delivered to webhooks."""

    id: str
    type: WebhookEventType
    timestamp: int  # epoch ms
    data: dict[str, Any]
    workspace: WorkspaceRef
    app: AppRef = SYSTEM_APP

    @classmethod
    def create(
        cls,
        event_type: WebhookEventType,
        data: dict[str, Any],
        context: EventContext,
        app: AppRef = SYSTEM_APP,
        id_prefix: str = "evt",
    ) -> "Event":
        return cls(
            id=generate_event_id(id_prefix),
            type=parse_event_type(event_type),
            timestamp=int(time.time() * 1000),
            data=dict(data or {}),
            workspace=WorkspaceRef(
                id=context.workspace_id,
                slug=context.workspace_slug,
                name=context.workspace_name,
            ),
            app=app,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "data": self.data,
            "workspace": {"id": self.workspace.id, "slug": self.workspace.slug, "name": self.workspace.name},
            "app": {"id": self.app.id, "slug": self.app.slug, "name": self.app.name},
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Event":
        workspace = raw.get("workspace") or {}
        app = raw.get("app") or {}
        return cls(
            id=raw["id"],
            type=parse_event_type(raw["type"]),
            timestamp=int(raw["timestamp"]),
            data=raw.get("data") or {},
            workspace=WorkspaceRef(
                id=workspace["id"],
                slug=workspace.get("slug", ""),
                name=workspace.get("name", ""),
            ),
            app=AppRef(
                id=app.get("id", SYSTEM_APP.id),
                slug=app.get("slug", SYSTEM_APP.slug),
                name=app.get("name", SYSTEM_APP.name),
            ),
        )

    @classmethod
    def from_payload(cls, payload: str | bytes) -> "Event":
        return cls.from_dict(json.loads(payload))


def create_webhook_payload(event: Event) -> bytes:
    """Serialize ``event`` to the exact JSON bytes that get signed and sent."""
    return json.dumps(event.to_dict(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def create_test_event_data(event_type: WebhookEventType) -> dict[str, Any]:
    """Sample payloads for test deliveries."""
    now = datetime.now(timezone.utc).isoformat()
    base = {
        "id": f"test_{secrets.token_hex(4)}",
        "createdAt": now,
        "updatedAt": now,
    }
    event_type = parse_event_type(event_type)

    if event_type in (WebhookEventType.ISSUE_CREATED, WebhookEventType.ISSUE_UPDATED, WebhookEventType.ISSUE_DELETED):
        return {
            "issue": {
                **base,
                "title": "Test Issue for Webhook",
                "description": "This is a test issue created for webhook testing purposes.",
                "status": "OPEN",
                "priority": "MEDIUM",
                "type": "TASK",
                "assigneeId": None,
                "reporterId": "test_user_id",
                "projectId": "test_project_id",
                "labels": ["test", "webhook"],
            }
        }
    if event_type in (WebhookEventType.POST_CREATED, WebhookEventType.POST_UPDATED):
        return {
            "post": {
                **base,
                "content": "This is a test post created for webhook testing purposes.",
                "authorId": "test_user_id",
                "workspaceId": "test_workspace_id",
                "tags": ["test", "webhook"],
            }
        }
    if event_type is WebhookEventType.WORKSPACE_MEMBER_ADDED:
        return {
            "member": {
                "userId": "test_user_id",
                "workspaceId": "test_workspace_id",
                "role": "MEMBER",
                "invitedById": "test_admin_id",
                "joinedAt": now,
            }
        }
    if event_type is WebhookEventType.WORKSPACE_MEMBER_REMOVED:
        return {
            "member": {
                "userId": "test_user_id",
                "workspaceId": "test_workspace_id",
                "role": "MEMBER",
                "removedById": "test_admin_id",
                "removedAt": now,
            }
        }
    # app.installed / app.uninstalled
    return {
        "installation": {
            **base,
            "appId": "test_app_id",
            "workspaceId": "test_workspace_id",
            "installedById": "test_admin_id",
            "status": "ACTIVE" if event_type is WebhookEventType.APP_INSTALLED else "UNINSTALLED",
            "scopes": ["workspace:read", "issues:read"],
        }
    }
