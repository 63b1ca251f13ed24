from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from tasktrack.logging import get_logger
from tasktrack.service.errors import ErrorKind, ServiceError
from tasktrack.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_KIND_TO_STATUS = {
    ErrorKind.VALIDATION_FAILED: 400,
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.NOT_VERIFIED: 403,
    ErrorKind.LOCKED: 423,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.INVALID_TOKEN: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.EMAIL_DELIVERY_FAILED: 500,
    ErrorKind.AUTHENTICATION_REQUIRED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.GENERIC: 500,
}

_missing = set(ErrorKind) - set(_KIND_TO_STATUS)
if _missing:
    raise RuntimeError(f"no HTTP status mapped for error kinds: {sorted(k.name for k in _missing)}")

# Messages that replace whatever the service said, so internals never leak.
_KIND_TO_PUBLIC_MESSAGE = {
    ErrorKind.EMAIL_DELIVERY_FAILED: "Failed to send email. Please try again later.",
    ErrorKind.GENERIC: "An unexpected error occurred",
}


def status_for(kind: ErrorKind) -> int:
    return _KIND_TO_STATUS[kind]


def _error_response(
    status_code: int,
    message: str,
    details: Optional[dict[str, Any]] = None,
) -> JSONResponse:
    """Uniform error envelope: message, status, timestamp and optional details."""
    body: dict[str, Any] = {
        "message": message,
        "status": status_code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


def _field_errors(exc: RequestValidationError) -> dict[str, str]:
    details: dict[str, str] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        field = ".".join(loc) or "body"
        message = str(error.get("msg", "invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        details.setdefault(field, message)
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handlers that turn every failure into the error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        status_code = status_for(exc.kind)
        message = _KIND_TO_PUBLIC_MESSAGE.get(exc.kind, exc.message)
        log_fn = logger.error if status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=status_code,
            error_kind=exc.kind.value,
            message=exc.message,
        )
        details = None if status_code >= 500 else exc.details
        return _error_response(status_code, message, details)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            field=exc.field,
        )
        return _error_response(
            status_for(ErrorKind.ALREADY_EXISTS), exc.message, exc.detail
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _field_errors(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=sorted(details),
        )
        return _error_response(
            status_for(ErrorKind.VALIDATION_FAILED), "Validation failed", details
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        # Routing-level errors (unknown path, wrong method) from the framework.
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        response = _error_response(exc.status_code, message)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(
            status_for(ErrorKind.GENERIC), _KIND_TO_PUBLIC_MESSAGE[ErrorKind.GENERIC]
        )
