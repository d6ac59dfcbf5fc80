"""
Error taxonomy and the FastAPI handlers that render it.

Every error response has the same envelope:

    {"error": {"code", "message", "request_id"[, "details"]}, "detail": message}

and echoes the request id in the x-request-id header.
"""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.requests import Request

from captionai.core.logging import LOGGER_NAME, get_request_id

logger = logging.getLogger(LOGGER_NAME)


class AppError(Exception):
    """Base for errors that map onto an HTTP status and a stable code."""

    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class QuotaExceededError(AppError):
    """Free quota used up and no active subscription."""
    code = "quota_exceeded"
    status_code = 402


class GenerationError(AppError):
    """Caption generation failed or timed out. Never charged."""
    code = "generation_failed"
    status_code = 500


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


class UpstreamError(AppError):
    code = "upstream_error"
    status_code = 502


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or uuid4().hex


def error_response(
    rid: str,
    status_code: int,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    error: Dict[str, Any] = {"code": code, "message": message, "request_id": rid}
    if details:
        error["details"] = details
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "detail": message},
        headers={"x-request-id": rid},
    )


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "status": exc.status_code, "path": request.url.path},
    )
    return error_response(rid, exc.status_code, exc.code, exc.message, exc.details)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Pydantic/FastAPI input errors become a 400 with one line per problem."""
    rid = _request_id(request)
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part not in ("body", "query"))
        msg = str(err.get("msg", "invalid"))
        problems.append(f"{loc}: {msg}" if loc else msg)
    logger.warning("request.invalid", extra={"request_id": rid, "error_code": "validation_error", "status": 400})
    return error_response(rid, 400, "validation_error", "; ".join(problems) or "Invalid request")


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id(request)
    code = {404: "not_found", 405: "method_not_allowed"}.get(exc.status_code, "http_error")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return error_response(rid, exc.status_code, code, str(exc.detail or "HTTP error"))


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id(request)
    logger.error(
        "unhandled.exception",
        exc_info=(type(exc), exc, exc.__traceback__),
        extra={"request_id": rid, "error_code": "internal_error", "path": request.url.path},
    )
    return error_response(rid, 500, "internal_error", "Unexpected error")
