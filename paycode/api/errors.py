"""
Exception handlers producing the structured error envelope.

Every failure leaves the API as:
    {"success": false, "error": {"code", "message", "context"}, "request_id"}
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from paycode.errors import (
    Conflict,
    InsufficientFunds,
    NotFound,
    OrderNotPending,
    PaycodeError,
    PaymentExpired,
    PersistenceError,
    ValidationError,
)

logger = structlog.get_logger(__name__)

STATUS_CODES = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    NotFound: status.HTTP_404_NOT_FOUND,
    OrderNotPending: status.HTTP_409_CONFLICT,
    PaymentExpired: status.HTTP_409_CONFLICT,
    InsufficientFunds: status.HTTP_402_PAYMENT_REQUIRED,
    Conflict: status.HTTP_409_CONFLICT,
    PersistenceError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_code_for(exc: PaycodeError) -> int:
    """HTTP status for the most specific mapped class of ``exc``."""
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(
    request: Request,
    code: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "success": False,
        "error": {"code": code, "message": message, "context": context or {}},
        "request_id": getattr(request.state, "request_id", None),
    }


async def paycode_error_handler(request: Request, exc: PaycodeError) -> JSONResponse:
    """Map domain errors to their HTTP status."""
    status_code = status_code_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "api_request_rejected",
        error_code=exc.code,
        error=exc.message,
        status_code=status_code,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status_code,
        content=error_body(request, exc.code, exc.message, exc.context),
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report body and path validation failures in the common envelope."""
    fields = [
        {
            "field": ".".join(str(part) for part in error["loc"] if part != "body"),
            "message": error["msg"],
        }
        for error in exc.errors()
    ]
    logger.warning("api_validation_failed", path=request.url.path, fields=fields)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body(
            request, ValidationError.code, "Request validation failed", {"fields": fields}
        ),
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(
            request,
            "INTERNAL_ERROR",
            "An unexpected error occurred. Please try again later.",
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PaycodeError, paycode_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, global_exception_handler)
