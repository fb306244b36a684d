from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base error carrying the envelope code and HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    status_code = 400


class UnauthorizedError(AppError):
    code = "UNAUTHORIZED"
    status_code = 401

    def __init__(self, message: str = "Unauthorized", details: Any = None) -> None:
        super().__init__(message, details)


class ForbiddenError(AppError):
    code = "FORBIDDEN"
    status_code = 403

    def __init__(self, message: str = "Forbidden", details: Any = None) -> None:
        super().__init__(message, details)


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, identifier: Any = None, message: str | None = None) -> None:
        details: dict[str, Any] = {"resource": resource}
        if identifier is not None:
            details["identifier"] = str(identifier)
        super().__init__(message or f"{resource} not found", details)
        self.resource = resource
        self.identifier = identifier


class ConflictError(AppError):
    code = "CONFLICT"
    status_code = 409


class InternalError(AppError):
    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str = "Internal server error", details: Any = None) -> None:
        super().__init__(message, details)


class ServiceUnavailableError(AppError):
    code = "SERVICE_UNAVAILABLE"
    status_code = 503
