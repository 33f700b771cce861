from __future__ import annotations

import traceback
from typing import Any, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskboard.api.schemas import ErrorBody, FieldError
from taskboard.config import get_settings
from taskboard.logging import get_logger, sanitize_error_message
from taskboard.service.errors import ServiceError
from taskboard.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    429: "rate_limited",
    500: "server_error",
}

_LOCATION_PREFIXES = {"body", "query", "path", "header"}


def _error_code_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    return "validation_error" if status_code < 500 else "server_error"


def _stack_for(exc: BaseException) -> Optional[str]:
    if not get_settings().is_development:
        return None
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def _error_response(
    status_code: int,
    message: str,
    *,
    code: str | None = None,
    errors: List[FieldError] | None = None,
    exc: BaseException | None = None,
) -> JSONResponse:
    body = ErrorBody(
        error=message,
        code=code or _error_code_for_status(status_code),
        errors=errors,
        stack=_stack_for(exc) if exc is not None else None,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def _field_errors(raw_errors: List[dict[str, Any]]) -> List[FieldError]:
    """Flatten FastAPI validation errors into ``[{field, message}]``."""
    field_errors = []
    for err in raw_errors:
        loc = [str(part) for part in err.get("loc", ())]
        if loc and loc[0] in _LOCATION_PREFIXES:
            loc = loc[1:]
        message = str(err.get("msg", "Invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        field_errors.append(FieldError(field=".".join(loc) or "body", message=message))
    return field_errors


def register_exception_handlers(app: FastAPI) -> None:
    """Render every error as ``{success: false, error, code, errors?, stack?}``."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = _field_errors(list(exc.errors()))
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[e.field for e in errors],
        )
        message = errors[0].message if len(errors) == 1 else "Validation failed"
        return _error_response(400, message, code="validation_error", errors=errors)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        errors = [FieldError(field=exc.field, message=exc.message)] if exc.field else None
        return _error_response(
            400, exc.message, code="validation_error", errors=errors, exc=exc
        )

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        message = exc.message
        if exc.status_code >= 500:
            message = sanitize_error_message(message)
            logger.error(
                "service_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=error_code,
                message=message,
                exc_info=exc,
            )
        else:
            logger.warning(
                "service_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=error_code,
                message=message,
                detail=exc.detail,
            )
        errors = None
        if exc.field and exc.status_code == 400:
            errors = [FieldError(field=exc.field, message=message)]
        return _error_response(
            exc.status_code, message, code=error_code, errors=errors, exc=exc
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "http_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            message=message,
        )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "Internal server error", code="server_error", exc=exc)
