from __future__ import annotations

from typing import Any, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from usersvc.api.schemas import Envelope, ErrorBody
from usersvc.logging import get_correlation_id, get_logger, sanitize_error_message
from usersvc.service.errors import ServiceError
from usersvc.storage.errors import BackendUnavailable, ConstraintViolation, RecordNotFound

logger = get_logger(__name__)

# Stable error codes mapped from HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    # no handler for this method on the path
    405: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    return "validation_error" if 400 <= status_code < 500 else "server_error"


def error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    """Build the error envelope; the request id is the current correlation id."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(mode="json", exclude={"data"}),
        headers=dict(headers) if headers else None,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-shaped handlers for domain, storage and framework errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(RecordNotFound)
    async def handle_record_not_found(request: Request, exc: RecordNotFound):
        logger.warning("record_not_found", path=request.url.path, method=request.method)
        return error_response(404, exc.message, exc.detail, code="not_found")

    @app.exception_handler(BackendUnavailable)
    async def handle_backend_unavailable(request: Request, exc: BackendUnavailable):
        # Never echo backend errors to clients
        logger.error(
            "backend_unavailable",
            path=request.url.path,
            method=request.method,
            backend=exc.backend,
            operation=exc.operation,
            error_type=type(exc.cause).__name__ if exc.cause else None,
            error=str(exc.cause) if exc.cause else None,
        )
        return error_response(500, "internal server error", code="server_error")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        # 5xx messages are scrubbed before they reach the client
        message = exc.message if exc.status_code < 500 else sanitize_error_message(exc.message)
        return error_response(
            exc.status_code,
            message,
            exc.detail or None,
            code=exc.error_code,
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")) or "body",
                "message": err.get("msg", "invalid"),
            }
            for err in exc.errors()
        ]
        logger.warning("request_validation_error", path=request.url.path, errors=len(details))
        return error_response(400, "validation failed", details, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return error_response(
            exc.status_code, message.lower(), headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_response(500, "internal server error", code="server_error")


__all__ = ["error_response", "register_exception_handlers"]
