"""
Security utilities for the FastAPI application.
Provides middlewares, validators, and helpers for hardening the server.
"""

import hmac
import re
import uuid
import logging
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from fastapi import HTTPException

from campfire.errors import ConfigurationError, SchedulerAuthError
from configs.config import get_config

logger = logging.getLogger(__name__)

cfg = get_config()

# --------------- Input Validation Patterns ---------------

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
)

CRON_SECRET_HEADERS = ("X-Cron-Secret", "cron-secret")


# --------------- Middlewares ---------------


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Inject standard security headers on every response."""

    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = (
            "camera=(), microphone=(), geolocation=()"
        )
        response.headers["Content-Security-Policy"] = "default-src 'none'"
        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = (
                "max-age=63072000; includeSubDomains; preload"
            )
        return response


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a unique X-Request-ID to every request / response."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response: Response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# --------------- Validators ---------------


def validate_record_id(record_id: str, label: str = "ID") -> str:
    """Validate and return a uuid-shaped document id, or raise 400."""
    if not UUID_PATTERN.match(record_id or ""):
        logger.warning("Rejected invalid %s: %r", label, record_id)
        raise HTTPException(status_code=400, detail=f"Invalid {label} format")
    return record_id


# --------------- Error Helpers ---------------


def safe_error_response(
    exc: Exception, context: str = "operation", status_code: int = 500
):
    """
    Log the real exception but return a sanitized message to the client.
    In development mode, the real error is included for debugging.
    """
    logger.error("Error in %s: %s", context, exc, exc_info=True)
    if cfg.ENVIRONMENT == "development":
        detail = f"[DEV] {context}: {exc}"
    else:
        detail = (
            f"An internal error occurred during {context}. "
            "Please try again later."
        )
    raise HTTPException(status_code=status_code, detail=detail)


# --------------- Scheduler Auth ---------------


def require_cron_secret(request: Request):
    """
    Dependency that checks the scheduler's shared-secret header.
    Raises ConfigurationError if the server has no secret configured and
    SchedulerAuthError if the header is missing or wrong.
    """
    if not cfg.CRON_SECRET:
        raise ConfigurationError("Missing CRON_SECRET")

    provided = ""
    for header in CRON_SECRET_HEADERS:
        provided = request.headers.get(header, "")
        if provided:
            break

    if not provided or not hmac.compare_digest(
        provided.encode(), cfg.CRON_SECRET.encode()
    ):
        logger.warning(
            "Unauthorized tick attempt from %s",
            request.client.host if request.client else "unknown",
        )
        raise SchedulerAuthError("Unauthorized.")
