from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
import logging
import time
import uuid

from organmatch.core.config import Settings, get_settings
from organmatch.core.exceptions import (
    MatchingError,
    matching_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    general_exception_handler
)
from organmatch.core.logging import setup_logging
from organmatch.api.v1.api import api_router
from organmatch.services.engine import MatchingEngine

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, engine: Optional[MatchingEngine] = None) -> FastAPI:
    """Build the API; without an injected engine one is assembled from settings at startup."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
        logger.info(f"Environment: {settings.ENVIRONMENT}")
        app.state.engine = engine or MatchingEngine.from_settings(settings)
        try:
            await app.state.engine.start()
        except Exception as e:
            logger.error(f"Engine startup failed: {e}")
            raise
        yield
        logger.info("Application shutting down")
        await app.state.engine.stop()

    app = FastAPI(
        title=settings.APP_NAME,
        description="Organ donor/recipient matching engine API",
        version=settings.APP_VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        openapi_url="/openapi.json" if settings.DEBUG else None,
        lifespan=lifespan,
    )

    # Add exception handlers
    app.add_exception_handler(MatchingError, matching_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        logger.info(
            f"Request: {request.method} {request.url}",
            extra={"request_id": request_id}
        )

        response = await call_next(request)

        process_time = time.time() - start_time
        logger.info(
            f"Response: {response.status_code} - {process_time:.3f}s",
            extra={"request_id": request_id}
        )

        response.headers["X-Request-ID"] = request_id
        return response

    app.include_router(api_router, prefix="/api/v1")

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "message": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running",
            "environment": settings.ENVIRONMENT,
            "docs": "/docs" if settings.DEBUG else "disabled"
        }

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint for monitoring."""
        engine_state = getattr(request.app.state, "engine", None)
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "worker_running": bool(engine_state and engine_state.worker.running),
        }

    return app


def get_application() -> FastAPI:
    settings = get_settings()
    setup_logging(settings)
    return create_app(settings)
