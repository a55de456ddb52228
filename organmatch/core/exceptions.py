"""
Error taxonomy for the matching engine and the FastAPI handlers that render it.
"""
import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class MatchingError(Exception):
    """Base exception for matching engine errors."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ValidationError(MatchingError):
    """Malformed donor/recipient/request data."""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class ConflictError(MatchingError):
    """A donor organ or recipient need is already bound to a live match."""
    status_code = status.HTTP_409_CONFLICT


class NotFoundError(MatchingError):
    status_code = status.HTTP_404_NOT_FOUND


class InvalidStateError(MatchingError):
    """Illegal match state transition."""
    status_code = status.HTTP_409_CONFLICT


class UnauthorizedError(MatchingError):
    """Attestation did not resolve to an authorized hospital."""
    status_code = status.HTTP_403_FORBIDDEN


class TransientDeliveryError(MatchingError):
    """A send or remote call failed in a way worth retrying."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "N/A")


async def matching_exception_handler(request: Request, exc: MatchingError):
    logger.warning(
        f"{type(exc).__name__} on {request.method} {request.url.path}: {exc}",
        extra={"request_id": _request_id(request)}
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": "HTTPException"},
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": exc.errors(), "error": "RequestValidationError"},
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled error on {request.method} {request.url.path}: {exc}",
        exc_info=True,
        extra={"request_id": _request_id(request)}
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "error": "InternalError"},
    )
