"""Clinic Workflow Engine - FastAPI Application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings
from api.v1.router import api_v1_router
from api.routes import health
from db.database import close_db, init_db
from triggers.event_bus import EventBusListener
from triggers.router import get_trigger_router
from workflow.dispatcher import get_dispatcher
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    # Startup
    settings = get_settings()
    setup_logging()

    await init_db()
    logger.info("Database ready")

    # In-process dispatcher loop (single-process deployments; Celery beat otherwise)
    dispatcher = None
    if settings.SCHEDULER_ENABLED:
        dispatcher = get_dispatcher()
        dispatcher.start(settings.SCHEDULER_INTERVAL_SECONDS)
        logger.info(
            "Dispatcher loop started (%ss interval)", settings.SCHEDULER_INTERVAL_SECONDS
        )

    # Redis event bus subscriber
    listener = None
    if settings.EVENT_BUS_ENABLED:
        listener = EventBusListener(
            get_trigger_router(), settings.REDIS_URL, settings.EVENT_BUS_CHANNEL
        )
        listener.start()

    logger.info(
        "%s v%s started (%s)", settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT
    )
    yield
    # Shutdown
    if listener is not None:
        await listener.stop()
    if dispatcher is not None:
        await dispatcher.stop()
    await close_db()
    logger.info("Application shut down")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Workflow automation engine for aesthetic clinics: "
                    "trigger routing, timed enrollments and execution history.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-Organization-ID"],
    )

    # Global exception handlers
    setup_exception_handlers(app)

    # Root health check (unversioned, for load balancers / k8s liveness checks)
    app.include_router(health.router, prefix="/api", tags=["Health"])

    # Versioned API: all business endpoints under /api/v1
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
