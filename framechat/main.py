"""
FastAPI application entry point.

This module creates and configures the FastAPI application.
Using an application factory pattern (create_app function) because:
- Easier to test with different configurations
- Explicit about initialization order
- Can create multiple app instances if needed (e.g., for testing)

For local development:
    uvicorn framechat.main:app --reload

For production:
    gunicorn framechat.main:app -w 4 -k uvicorn.workers.UvicornWorker
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.dependencies import get_database, reset_shared_clients
from .api.routes import chat, frames, health, messages, videos
from .config.settings import get_settings
from .infrastructure.snowflake.client import SnowflakeConnectionError

# Configure logging
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=get_settings().log_level.upper(),
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup validates configuration and, against a real database, makes
    sure the tables exist. Shutdown closes the shared clients.
    """
    # Startup
    settings = get_settings()

    logger.info(
        "FrameChat API starting",
        extra={
            "version": settings.api_version,
            "mock_mode": {
                "snowflake": settings.snowflake_mock_mode,
                "r2": settings.r2_mock_mode,
                "video_processor": settings.video_processor_mock_mode,
            },
            "chat_strategy": settings.chat_strategy,
        }
    )

    # Validate configuration
    missing_fields = settings.validate_required_fields()
    if missing_fields:
        logger.error(
            "Missing required configuration",
            extra={"missing_fields": missing_fields}
        )
        # Keep serving; /health/ready reports the problem

    if not settings.snowflake_mock_mode and not missing_fields:
        try:
            await get_database(settings).ensure_schema()
        except SnowflakeConnectionError as e:
            logger.error("Could not prepare database schema", extra={"error": str(e)})

    yield

    # Shutdown
    logger.info("FrameChat API shutting down")
    reset_shared_clients()


def create_app() -> FastAPI:
    """
    Application factory.

    Creates and configures the FastAPI application.
    This function is called once at startup (in production) or
    multiple times (in tests with different configurations).
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="""
        Ask questions about your videos.

        ## Authentication

        Every endpoint except /health needs an API key in the `X-API-Key`
        header and the caller's identity in `X-User-Id`.

        ## Workflow

        1. **Upload**: `POST /api/video/upload`
           - Frames are extracted, stored and described in the background
           - Poll `GET /api/video?id=` until `isProcessed` is true

        2. **Ask**: `POST /api/chat`
           - The answer streams back as Server-Sent Events

        3. **Review**: `GET /api/messages?videoId=`
           - The full conversation, oldest first
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Configure allowed origins via CORS_ORIGINS environment variable
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(
        health.router,
        prefix="/health",
        tags=["Health"],
    )

    app.include_router(
        videos.router,
        prefix="/api/video",
        tags=["Videos"],
    )

    app.include_router(
        frames.router,
        prefix="/api/frames",
        tags=["Frames"],
    )

    app.include_router(
        chat.router,
        prefix="/api/chat",
        tags=["Chat"],
    )

    app.include_router(
        messages.router,
        prefix="/api/messages",
        tags=["Messages"],
    )

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "message": "FrameChat API",
            "version": settings.api_version,
            "docs": "/docs",
            "health": "/health",
        }

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """
        Catch-all exception handler.

        Prevents stack traces from leaking to clients. We log the full
        error server-side but return a generic message.
        """
        logger.error(
            "Unhandled exception",
            extra={
                "path": request.url.path,
                "method": request.method,
                "error": str(exc),
            },
            exc_info=exc,
        )

        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error. Please contact support if this persists."
            }
        )

    logger.info(
        "FastAPI application created",
        extra={
            "title": settings.api_title,
            "version": settings.api_version,
        }
    )

    return app


# This is what uvicorn/gunicorn will import
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "framechat.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.log_level.lower(),
    )
