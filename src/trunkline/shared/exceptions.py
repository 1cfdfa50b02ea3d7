"""
Shared exceptions.

Every operator-facing failure is an ``AppError`` carrying an HTTP-equivalent
status and a stable machine-readable code; ``main.create_app`` renders them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Optional


@dataclass
class AppError(Exception):
    message: str = "Application error"
    details: Optional[dict[str, Any]] = None
    code: Optional[str] = None

    status_code: ClassVar[int] = 500
    default_code: ClassVar[str] = "INTERNAL_ERROR"

    def __post_init__(self) -> None:
        if self.code is None:
            self.code = self.default_code

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class BadRequestError(AppError):
    status_code = 400
    default_code = "BAD_REQUEST"


class UnauthorizedError(AppError):
    status_code = 401
    default_code = "UNAUTHORIZED"


class ForbiddenError(AppError):
    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(AppError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(AppError):
    status_code = 409
    default_code = "CONFLICT"


class ValidationError(AppError):
    status_code = 422
    default_code = "VALIDATION_ERROR"


class RateLimitedError(AppError):
    status_code = 429
    default_code = "RATE_LIMITED"


class UpstreamError(AppError):
    status_code = 502
    default_code = "UPSTREAM_ERROR"


class ServiceUnavailableError(AppError):
    status_code = 503
    default_code = "SERVICE_UNAVAILABLE"
