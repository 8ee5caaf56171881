"""
Error handler middleware.

Every error leaves the API in one shape::

    {"error": <message>, "code": <machine code>, "correlation_id": ..., "details": {...}}

Booking errors use their own code (``invalid_transition``,
``version_conflict``...); everything else gets a code derived from the
HTTP status.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.lib.exceptions import (
    AppException,
    NotFoundException,
    UnauthorizedException,
    ForbiddenException,
    BadRequestException,
    ConflictException,
    ValidationException,
)
from src.lib.logging import get_logger

logger = get_logger(__name__)

__all__ = [
    "AppException",
    "NotFoundException",
    "UnauthorizedException",
    "ForbiddenException",
    "BadRequestException",
    "ConflictException",
    "ValidationException",
    "error_code_for_status",
    "build_error_response",
    "app_exception_handler",
    "validation_exception_handler",
    "http_exception_handler",
    "unhandled_exception_handler",
]

_STATUS_CODES = {
    status.HTTP_400_BAD_REQUEST: "bad_request",
    status.HTTP_401_UNAUTHORIZED: "unauthenticated",
    status.HTTP_403_FORBIDDEN: "forbidden",
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_405_METHOD_NOT_ALLOWED: "method_not_allowed",
    status.HTTP_409_CONFLICT: "conflict",
    status.HTTP_422_UNPROCESSABLE_ENTITY: "validation_error",
}


def error_code_for_status(status_code: int) -> str:
    if status_code >= 500:
        return "internal_error"
    return _STATUS_CODES.get(status_code, "http_error")


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", "unknown")


def _log(request: Request, level: int, message: str, exc_info: bool = False, **fields: Any) -> None:
    logger.log(
        level,
        message,
        extra={
            "extra_fields": {
                "correlation_id": _correlation_id(request),
                "path": request.url.path,
                "method": request.method,
                **fields,
            }
        },
        exc_info=exc_info,
    )


def _error_response(
    request: Request,
    status_code: int,
    message: str,
    code: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    content: Dict[str, Any] = {
        "error": message,
        "code": code,
        "correlation_id": _correlation_id(request),
    }
    if details:
        content["details"] = jsonable_encoder(details)
    return JSONResponse(status_code=status_code, content=content)


def build_error_response(request: Request, exc: AppException) -> JSONResponse:
    """
    Log an application exception and build its JSON error response.

    Routes that must attach background work to an error response call
    this directly instead of raising.
    """
    code = getattr(exc, "code", None) or error_code_for_status(exc.status_code)
    _log(
        request,
        logging.WARNING if exc.status_code < 500 else logging.ERROR,
        f"Application error: {exc.message}",
        status_code=exc.status_code,
        code=code,
        details=exc.details,
    )
    return _error_response(request, exc.status_code, exc.message, code, exc.details)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    return build_error_response(request, exc)


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """
    Handler for request body/query validation errors.
    """
    errors = [
        {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
        for error in exc.errors()
    ]
    _log(request, logging.WARNING, "Validation error", errors=errors)
    return _error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation error",
        "validation_error",
        {"errors": errors},
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    _log(request, logging.WARNING, f"HTTP exception: {exc.detail}", status_code=exc.status_code)
    return _error_response(
        request,
        exc.status_code,
        str(exc.detail),
        error_code_for_status(exc.status_code),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handler for unhandled exceptions.

    Logs full stack trace and returns generic error message.
    """
    _log(request, logging.ERROR, f"Unhandled exception: {exc}", exc_info=True)
    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        "internal_error",
    )
