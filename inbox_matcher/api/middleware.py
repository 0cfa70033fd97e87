"""
FastAPI middleware for the Inbox Matching API.

Every error leaves the service as ``{"error": {"code", "message", "timestamp"}}``.
Matching and reconciliation exceptions map to fixed codes in ``_DOMAIN_ERRORS``.
"""

import os
import time
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from inbox_matcher.config_manager import ConfigurationError
from inbox_matcher.database.repositories import EntityNotFoundError, RepositoryError
from inbox_matcher.reconciliation import (
    ConflictError,
    DocumentNotFoundError,
    InvalidStateError,
    ReconciliationError,
    SuggestionNotFoundError,
    TenantMismatchError,
)
from inbox_matcher.security_logger import get_security_logger
from inbox_matcher.text_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

# (exception type, HTTP status, error code); first match wins
_DOMAIN_ERRORS = [
    (TenantMismatchError, 403, "TENANT_MISMATCH"),
    (DocumentNotFoundError, 404, "DOCUMENT_NOT_FOUND"),
    (SuggestionNotFoundError, 404, "SUGGESTION_NOT_FOUND"),
    (EntityNotFoundError, 404, "NOT_FOUND"),
    (ConflictError, 409, "CONFLICT"),
    (InvalidStateError, 409, "INVALID_STATE"),
]


def setup_cors(app: FastAPI) -> None:
    """Allow the dashboard origins; ``CORS_ORIGINS`` (comma-separated) overrides them."""
    configured = os.getenv("CORS_ORIGINS", "")
    origins = [o.strip() for o in configured.split(",") if o.strip()] or DEFAULT_CORS_ORIGINS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Processing-Time-MS"],
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Request/response log lines, timing headers and security-log correlation."""

    async def dispatch(self, request: Request, call_next: Callable):
        started = time.perf_counter()
        request_id = sanitize_for_logging(request.headers.get("X-Request-ID", "")) or str(time.time_ns())
        request.state.request_id = request_id

        security = get_security_logger()
        security.set_request_context(
            request_id=request_id,
            source_ip=request.client.host if request.client else "",
        )
        path = sanitize_for_logging(request.url.path)
        tenant = sanitize_for_logging(request.headers.get("X-Tenant-ID", "-"))
        logger.info(f"Request: method={request.method} path={path} tenant={tenant} request_id={request_id}")

        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            logger.error(
                f"Request failed: error={sanitize_for_logging(str(exc))} "
                f"elapsed_ms={elapsed_ms} request_id={request_id}"
            )
            raise
        finally:
            security.clear_request_context()

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-MS"] = str(elapsed_ms)
        logger.info(f"Response: status={response.status_code} elapsed_ms={elapsed_ms} request_id={request_id}")
        return response


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: Optional[str] = None,
) -> JSONResponse:
    error = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if field:
        error["field"] = field
    return JSONResponse(status_code=status_code, content={"error": error})


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


async def domain_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    for exc_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, exc_type):
            logger.warning(
                f"Request rejected: code={code} message={sanitize_for_logging(str(exc))} "
                f"request_id={_request_id(request)}"
            )
            # Another tenant's data is not described to the caller
            message = "Access to this resource is not allowed" if status_code == 403 else str(exc)
            return create_error_response(code=code, message=message, status_code=status_code)

    return await global_exception_handler(request, exc)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    logger.warning(
        f"HTTP exception: status={exc.status_code} detail={sanitize_for_logging(detail)} "
        f"request_id={_request_id(request)}"
    )
    return create_error_response(code=f"HTTP_{exc.status_code}", message=detail, status_code=exc.status_code)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort: log the real error, return a message without internals."""
    logger.error(
        f"Unhandled exception: type={type(exc).__name__} message={sanitize_for_logging(str(exc))} "
        f"request_id={_request_id(request)}"
    )
    if isinstance(exc, ConfigurationError):
        return create_error_response(
            code="CONFIGURATION_ERROR",
            message="Service configuration is invalid. Please contact administrator.",
            status_code=503,
        )
    return create_error_response(
        code="INTERNAL_ERROR",
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ReconciliationError, domain_exception_handler)
    app.add_exception_handler(RepositoryError, domain_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
