import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from safework.api.routes import notifications
from safework.config import settings
from safework.core.metrics import MetricsMiddleware, get_metrics
from safework.db.database import async_session_factory, init_db
from safework.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    await init_db()
    if settings.push_configured:
        # Malformed keys raise here and abort startup
        app.state.notification_service = NotificationService.build(settings, async_session_factory)
    else:
        logger.warning("VAPID keys not configured; push notifications disabled")
        app.state.notification_service = None
    yield


app = FastAPI(
    title="SafeWork Push",
    description="Push notification delivery for safety events",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.is_development else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if settings.metrics_enabled:
    app.add_middleware(MetricsMiddleware)

# REST API routes
app.include_router(notifications.router, prefix="/api/notifications", tags=["notifications"])


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/metrics")
async def metrics() -> Response:
    body, content_type = await get_metrics()
    return Response(content=body, media_type=content_type)


@app.get("/")
async def root() -> dict[str, Any]:
    return {
        "name": "SafeWork Push",
        "version": "0.1.0",
        "docs": "/docs",
        "push_enabled": app.state.notification_service is not None
        if hasattr(app.state, "notification_service")
        else False,
    }
