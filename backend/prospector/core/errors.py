"""Application errors and their HTTP rendering.

Every error response body has the shape ``{"error": "<message>"}``.
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


class AppError(Exception):
    """Base error carrying the HTTP status it maps to at the API boundary."""

    status_code: int = 500
    default_message: str = "Internal error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class MissingParameter(AppError):
    status_code = 400
    default_message = "Missing required parameter"


class AuthenticationRequired(AppError):
    status_code = 401
    default_message = "Authentication required"


class AccessDenied(AppError):
    status_code = 403
    default_message = "Access denied"


class SessionNotFound(AppError):
    status_code = 404
    default_message = "Session not found"


class RequestNotFound(AppError):
    status_code = 404
    default_message = "Research request not found"


class UpstreamQuotaExhausted(AppError):
    status_code = 402
    default_message = "AI credits exhausted. Please add credits."


class UpstreamRateLimited(AppError):
    status_code = 429
    default_message = "Rate limit exceeded. Please try again later."


class UpstreamServiceError(AppError):
    status_code = 500
    default_message = "AI service error"


class InvalidStatusTransition(AppError):
    status_code = 409
    default_message = "Invalid status transition"


def build_error_payload(message: str) -> dict:
    return {"error": message}


async def app_error_handler(_: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=build_error_payload(exc.message))


async def http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=build_error_payload(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )
