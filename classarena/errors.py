"""
classarena/errors.py
Centralized HTTP error handling.

RESPONSE ENVELOPE:
    success: {"success": true, "data": ..., "message": "..."}
    failure: {"success": false, "error": "ErrorType", "message": "...", "code": "CODE", "details": {...}}

HTTP STATUS CODE DISCIPLINE:
- 400: invalid input (taxonomy errors such as TypeMismatch)
- 401: authentication missing or expired
- 403: capability or participant check failed
- 404: resource does not exist
- 409: state conflicts (InvalidState, StaleQuestion, DuplicateAnswer, TournamentClosed, Conflict)
- 422: request validation (pydantic)
- 429: rate limit exceeded
- 500: never caused by user input
"""
import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from classarena.exceptions import TournamentError

logger = logging.getLogger(__name__)


class ErrorCode:
    """Codes for failures that do not come from the tournament taxonomy."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"

    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_EXPIRED = "AUTH_EXPIRED"
    AUTH_INVALID = "AUTH_INVALID"
    FORBIDDEN = "FORBIDDEN"

    RATE_LIMITED = "RATE_LIMITED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


def success_response(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    """Build the uniform success envelope."""
    body: Dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return body


def error_body(error: str, message: str, code: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body = {
        "success": False,
        "error": error,
        "message": message,
        "code": code,
    }
    if details:
        body["details"] = details
    return body


async def tournament_error_handler(request: Request, exc: TournamentError):
    logger.warning(f"Tournament error on {request.url.path}: {exc.code} - {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")

    error_details = [
        {"loc": error.get("loc"), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_body(
            "ValidationError",
            "Request validation failed",
            ErrorCode.VALIDATION_ERROR,
            {"errors": error_details},
        )
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP exception on {request.url.path}: {exc.detail}")

    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=exc.headers)

    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(
            "Error",
            str(exc.detail),
            ErrorCode.INTERNAL_ERROR if exc.status_code >= 500 else ErrorCode.INVALID_INPUT,
        ),
        headers=exc.headers,
    )


async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"Rate limit exceeded on {request.url.path}: {exc.detail}")
    response = JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=error_body(
            "RateLimited",
            f"Rate limit exceeded: {exc.detail}. Please try again later.",
            ErrorCode.RATE_LIMITED,
        ),
    )
    limiter = getattr(request.app.state, "limiter", None)
    view_rate_limit = getattr(request.state, "view_rate_limit", None)
    if limiter is not None and view_rate_limit is not None:
        response = limiter._inject_headers(response, view_rate_limit)
    return response


async def global_exception_handler(request: Request, exc: Exception):
    log_id = str(uuid.uuid4())[:8]
    logger.error(
        f"[{log_id}] Unhandled exception on {request.url.path}: {type(exc).__name__}: {str(exc)}",
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(
            "InternalError",
            "An unexpected error occurred. Please try again later.",
            ErrorCode.INTERNAL_ERROR,
            {"log_id": log_id},
        )
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TournamentError, tournament_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
