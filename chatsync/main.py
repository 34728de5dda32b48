"""
FastAPI application factory and configuration.
"""
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from chatsync.core.config import Settings, get_settings
from chatsync.core.errors import ChatError
from chatsync.core.logging import setup_logging, get_logger
from chatsync.core.metrics import set_startup_time
from chatsync.api import auth, conversations, health, metrics, users
from chatsync.api.metrics import MetricsMiddleware
from chatsync.services.container import ChatServices
from chatsync.services.notifications import ServiceAccount


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Map domain errors to their HTTP status."""
    get_logger(__name__).info(
        "Request rejected",
        extra={"extra_data": {"code": exc.code, "detail": exc.message, "path": request.url.path}},
    )
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.message, "code": exc.code})


def create_app(
    settings: Optional[Settings] = None,
    http: Optional[httpx.AsyncClient] = None,
    account: Optional[ServiceAccount] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    # Setup logging
    setup_logging(settings)
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the shared service handles once per process."""
        logger.info("Starting application...")
        app.state.services = ChatServices.build(settings, http=http, account=account)
        set_startup_time()

        yield

        logger.info("Shutting down application...")
        await app.state.services.close()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Message sync service: ordered conversation log, offline cache, delivery states and push relay",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(MetricsMiddleware)
    app.add_exception_handler(ChatError, chat_error_handler)

    app.include_router(auth.router)
    app.include_router(users.router)
    app.include_router(conversations.router)
    app.include_router(health.router)
    app.include_router(metrics.router)

    # Public URLs of uploaded images
    app.mount("/files", StaticFiles(directory=settings.storage_dir, check_dir=False), name="files")

    logger.info(
        "Application created",
        extra={
            "extra_data": {
                "app_name": settings.app_name,
                "version": settings.app_version,
                "debug": settings.debug,
            }
        }
    )

    return app


# Create the application instance
app = create_app()
