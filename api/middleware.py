"""
Global middleware and error handlers.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from utils.exceptions import CredentialCoreError, StorageError, ValidationError

logger = logging.getLogger(__name__)


def error_body(code: str, message: str) -> dict:
    return {
        "ok": False,
        "error": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def register_middleware(app: FastAPI) -> None:
    """Attach app-level middleware and exception handlers."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        logger.debug("%s %s — %.3fs", request.method, request.url.path, elapsed)
        return response

    @app.exception_handler(CredentialCoreError)
    async def core_error_handler(request: Request, exc: CredentialCoreError):
        if isinstance(exc, StorageError):
            logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
            message = "Server error, please try again later"
        else:
            message = str(exc)
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, message))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        message = first.get("msg", "Invalid request body")
        return JSONResponse(
            status_code=ValidationError.status_code,
            content=error_body(ValidationError.code, message),
        )
