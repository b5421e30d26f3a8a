"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from collab_webhooks.api import apps, webhooks
from collab_webhooks.config import get_settings

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    from collab_webhooks.database import Base, async_session, engine
    from collab_webhooks.services.event_bus import build_event_bus

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # One bus per process; routers reach it through app.state
    app.state.event_bus = build_event_bus(async_session)
    try:
        yield
    finally:
        await app.state.event_bus.aclose()


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description="Signed, retried webhook delivery for workspace events",
    lifespan=lifespan,
)

# Register routers
app.include_router(apps.router, prefix="/api/v1")
app.include_router(webhooks.router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok", "app": settings.app_name}
