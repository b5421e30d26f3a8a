"""Shared FastAPI dependencies."""

from fastapi import Request

from collab_webhooks.services.event_bus import EventBus


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.event_bus
