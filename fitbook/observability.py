from __future__ import annotations

"""
EMBED_SUMMARY: Access logging middleware, logging setup and the shared JSON error envelope.
EMBED_TAGS: logging, middleware, errors, observability
"""

import logging
import time
import uuid
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from .errors import DomainError


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

error_logger = logging.getLogger("fitbook.error")


def configure_logging(level: str = "INFO") -> None:
    """Install a root handler once; later calls only adjust the level."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format=LOG_FORMAT)
    root.setLevel(level.upper())


class AccessLogMiddleware(BaseHTTPMiddleware):
    """One log line per request with timing and caller.

    Echoes (or assigns) an X-Request-Id and reports the handler time in X-Process-Time-Ms.
    """

    def __init__(self, app: ASGIApp) -> None:
        super().__init__(app)
        self.logger = logging.getLogger("fitbook.access")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        response.headers["X-Request-Id"] = request_id
        response.headers["X-Process-Time-Ms"] = str(elapsed_ms)

        self.logger.info(
            "rid=%s %s %s -> %s in %sms ip=%s user=%s",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request.client.host if request.client else "?",
            request.headers.get("x-user-id", "-"),
        )
        return response


def error_body(
    status: int, message: str, path: str, code: Optional[str] = None, field: Optional[str] = None
) -> dict:
    return {
        "ok": False,
        "error": {"status": status, "code": code, "field": field, "message": message, "path": path},
    }


def add_exception_handlers(app: FastAPI) -> None:
    """Map domain errors, HTTP errors and crashes onto the same envelope."""

    @app.exception_handler(DomainError)
    async def on_domain_error(request: Request, exc: DomainError):
        error_logger.info("%s on %s: %s", exc.code, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.status_code, exc.message, request.url.path, code=exc.code, field=exc.field),
        )

    @app.exception_handler(HTTPException)
    async def on_http_error(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else ""
        return JSONResponse(status_code=exc.status_code, content=error_body(exc.status_code, message, request.url.path))

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        error_logger.exception("unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content=error_body(500, "Internal server error", request.url.path))
