"""FastAPI Application - Main entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.config.settings import get_settings
from src.core.dependencies import build_dependencies
from src.handlers.webhook import router as webhook_router
from src.services.observability import instrument_fastapi, setup_tracing, shutdown_tracing
from src.utils.logger import get_logger, setup_logging

# Initialize settings early
settings = get_settings()

# Setup logging
setup_logging(settings.log_level)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler.

    Wires the engine on startup; on shutdown stops accepting updates,
    lets in-flight ones finish, then releases connections.
    """
    logger.info(
        "application_starting",
        environment=settings.app_env,
        port=settings.api_port,
    )

    provider = setup_tracing(settings)

    deps = await build_dependencies(settings)
    app.state.deps = deps
    app.state.engine = deps.engine

    yield

    logger.info("application_shutting_down")

    drained = await deps.engine.shutdown(settings.shutdown_timeout)
    await deps.aclose()
    shutdown_tracing(provider)
    logger.info("application_stopped", drained=drained)


def create_app() -> FastAPI:
    """Create the FastAPI app."""
    app = FastAPI(
        title="Telegram Subscription Bot",
        description="Resilient delivery and conversation state engine for Telegram",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Instrument with OpenTelemetry
    instrument_fastapi(app, settings)

    app.include_router(webhook_router)

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint.

        Returns:
            Health status with environment info.
        """
        engine = getattr(app.state, "engine", None)
        return {
            "status": "healthy",
            "environment": settings.app_env,
            "version": "1.0.0",
            "accepting_updates": engine.accepting if engine else False,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
    )
