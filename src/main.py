from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.shared.config import get_settings
from src.shared.database import dispose_engine, get_engine, get_session, init_models
from src.shared.events import get_event_bus
from src.shared.exceptions import register_exception_handlers  # central mapping
from src.shared.health import router as health_router
from src.shared.logging import get_logger, setup_logging
from src.shared.middleware import CorrelationIdMiddleware
from src.shared.redis import close_redis

from src.conversation.api.routes import router as conversation_router
from src.messaging.api.dependencies import MessagingServices, build_services
from src.messaging.api.routes import router as messaging_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings)
    owns_services = getattr(app.state, "services", None) is None
    if owns_services:
        await init_models(get_engine())
        app.state.services = build_services(get_session(), get_event_bus())
        # Adapters that publish on the in-process bus reach the same pipeline as HTTP callers.
        app.state.services.listener.register(app.state.services.event_bus)
    logger.info("app_started", **settings.safe_dict())
    try:
        yield
    finally:
        if owns_services:
            await close_redis()
            await dispose_engine()
        logger.info("app_stopped")


def create_app(services: Optional[MessagingServices] = None) -> FastAPI:
    app = FastAPI(
        title="Omnichannel Messaging Pipeline API",
        version="1.0.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )
    app.add_middleware(CorrelationIdMiddleware)

    # Routers
    app.include_router(health_router)
    app.include_router(messaging_router)
    app.include_router(conversation_router)

    # Centralized error handling → {code, message, details?, correlation_id?}
    register_exception_handlers(app)

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint."""
        return {
            "message": "Omnichannel Messaging Pipeline API",
            "docs": "/docs",
            "health": "/_health/db",
        }

    return app


app = create_app()
