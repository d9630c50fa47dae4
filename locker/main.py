"""
FastAPI application for the calendar sync core

Dashboard API, provider push notifications and health checks
"""
import logging
from collections import defaultdict
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.routing import APIRoute

from locker.api.v1.router import api_v1_router
from locker.config.settings import get_settings
from locker.core.middleware import correlation_id_middleware, request_logging_middleware
from locker.core.monitoring import health_router
from locker.services.calendar.sync_service import CalendarSyncService
from locker.services.webhook.webhook_service import CalendarWebhookService
from locker.utils.my_logging import setup_logging
from locker.webhooks.router import webhook_router

settings = get_settings()
logger = logging.getLogger(__name__)


def _log_routes(app: FastAPI) -> None:
    routes_by_tag = defaultdict(list)
    for route in app.routes:
        if isinstance(route, APIRoute):
            tag = route.tags[0] if route.tags else "other"
            for method in route.methods:
                routes_by_tag[tag].append((method, route.path, route.name))

    for tag, routes in sorted(routes_by_tag.items()):
        logger.info(f"[{tag.upper()}]")
        for method, path, name in sorted(routes, key=lambda r: (r[1], r[0])):
            logger.info(f"  {method:8} {path:50} ({name})")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    setup_logging()
    logger.info("🚀 Calendar sync API starting up...")

    if not hasattr(app.state, "calendar_webhook_service"):
        sync_service = CalendarSyncService()
        app.state.calendar_webhook_service = CalendarWebhookService(sync_user=sync_service.sync_user)
    if settings.DEBUG:
        _log_routes(app)

    yield

    app.state.calendar_webhook_service.shutdown()
    logger.info("🛑 Calendar sync API shutting down...")


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""

    app = FastAPI(
        title=settings.APP_NAME,
        description="Calendar synchronization for team schedules",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    app.middleware("http")(correlation_id_middleware)
    app.middleware("http")(request_logging_middleware)

    app.include_router(webhook_router, prefix="/webhooks", tags=["webhooks"])
    app.include_router(health_router, prefix="/health", tags=["monitoring"])
    app.include_router(api_v1_router, prefix="/api/v1", tags=["api"])

    @app.get("/")
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": "0.1.0",
            "status": "running",
            "endpoints": {
                "webhooks": "/webhooks/",
                "health": "/health",
                "docs": "/docs" if settings.DEBUG else "disabled"
            }
        }

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "locker.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
