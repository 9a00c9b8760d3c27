from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from flowkernel.api.schemas import Envelope, ErrorBody
from flowkernel.logging import get_correlation_id, get_logger, sanitize_error_message
from flowkernel.service.errors import ServiceError
from flowkernel.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_CODE_FOR_STATUS = {
    400: "validation_error",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    504: "timeout",
}


def envelope_response(
    status_code: int,
    message: str,
    *,
    code: str | None = None,
    details: dict | list | None = None,
) -> JSONResponse:
    """Error envelope tagged with the request's correlation id."""
    body = ErrorBody(
        code=code or _CODE_FOR_STATUS.get(status_code, "server_error"),
        message=sanitize_error_message(message),
        details=details,
    )
    envelope = Envelope(status="error", error=body)
    correlation_id = get_correlation_id()
    if correlation_id:
        envelope.request_id = correlation_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _log_failure(request: Request, event: str, status_code: int, **fields) -> None:
    # a 504 is a run that outlived the caller's wait, not a server fault
    log = logger.error if status_code >= 500 and status_code != 504 else logger.warning
    log(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def on_service_error(request: Request, exc: ServiceError):
        _log_failure(
            request,
            "service_error",
            exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return envelope_response(exc.status_code, exc.message, code=exc.error_code, details=exc.detail)

    @app.exception_handler(ConstraintViolation)
    async def on_state_conflict(request: Request, exc: ConstraintViolation):
        _log_failure(request, "execution_state_conflict", 409, message=exc.message, detail=exc.detail)
        return envelope_response(409, exc.message, code="conflict", details=exc.detail)

    @app.exception_handler(RequestValidationError)
    async def on_invalid_request(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        _log_failure(request, "request_validation_error", 400, errors=errors)
        return envelope_response(400, "invalid request", details=errors)

    # Raised by the router for unknown paths and methods
    @app.exception_handler(StarletteHTTPException)
    async def on_routing_error(request: Request, exc: StarletteHTTPException):
        _log_failure(request, "http_error", exc.status_code, message=str(exc.detail))
        return envelope_response(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return envelope_response(500, "internal server error", code="server_error")
