"""
Main FastAPI application for the conversation bot.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .routes import conversations, webhooks
from .middleware.metrics import MetricsMiddleware, metrics_endpoint
from config.settings import get_settings
from runtime.context import BotContext, build_context

logger = logging.getLogger(__name__)


def create_app(context: Optional[BotContext] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    When a context is passed in (tests), the app uses it as-is and leaves
    closing it to the caller.
    """
    settings = context.settings if context is not None else get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"{settings.api_title} starting up...")
        owned = context is None
        app.state.context = context if context is not None else await build_context(settings)
        logger.info(f"{settings.api_title} ready")
        yield
        logger.info(f"{settings.api_title} shutting down...")
        if owned:
            await app.state.context.aclose()

    app = FastAPI(
        title=settings.api_title,
        description="Multi-transport conversation bot with pluggable state storage.",
        version=settings.api_version,
        debug=settings.debug,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Prometheus metrics middleware
    app.add_middleware(MetricsMiddleware)

    app.include_router(webhooks.router, prefix="/api/v1", tags=["Webhooks"])
    app.include_router(conversations.router, prefix="/api/v1", tags=["Conversations"])

    app.get("/metrics", tags=["Monitoring"])(metrics_endpoint)

    @app.get("/")
    async def root():
        return {
            "service": settings.api_title,
            "version": settings.api_version,
            "status": "operational",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health():
        bot: BotContext = app.state.context
        return {"status": "healthy", "services": bot.health()}

    return app


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port)
