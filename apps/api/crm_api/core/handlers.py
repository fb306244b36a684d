from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from crm_api.core.config import get_settings
from crm_api.core.envelope import error_response
from crm_api.core.errors import AppError


logger = logging.getLogger("crm_api.errors")

_STATUS_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    429: "RATE_LIMIT_EXCEEDED",
    503: "SERVICE_UNAVAILABLE",
}


def _format_validation_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    errors: list[dict[str, Any]] = []
    for item in exc.errors():
        location = [str(part) for part in item.get("loc", ()) if part not in {"body", "query", "path"}]
        errors.append({"field": ".".join(location), "message": item.get("msg", "invalid value")})
    return errors


async def handle_app_error(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("app.error", exc_info=exc, extra={"error_code": exc.code, "path": request.url.path})
    return error_response(status_code=exc.status_code, code=exc.code, message=exc.message, details=exc.details)


async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        status_code=400,
        code="VALIDATION_ERROR",
        message="Validation failed",
        details={"errors": _format_validation_errors(exc)},
    )


async def handle_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404 and exc.detail == HTTPStatus.NOT_FOUND.phrase:
        message = f"Route {request.method} {request.url.path} not found"
    else:
        message = str(exc.detail)
    code = _STATUS_CODES.get(exc.status_code, "INTERNAL_ERROR" if exc.status_code >= 500 else "HTTP_ERROR")
    return error_response(
        status_code=exc.status_code,
        code=code,
        message=message,
        headers=getattr(exc, "headers", None),
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "unhandled.exception",
        exc_info=exc,
        extra={"method": request.method, "path": request.url.path, "error": str(exc)},
    )
    settings = get_settings()
    message = str(exc) if settings.is_development else "An unexpected error occurred"
    return error_response(status_code=500, code="INTERNAL_ERROR", message=message)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, handle_app_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, handle_unexpected_error)
