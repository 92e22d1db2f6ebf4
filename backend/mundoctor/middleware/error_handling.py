"""
Mundoctor API Error Handling
Standardized JSON error responses and process-level fail-fast hooks
"""

import asyncio
import logging
import os
import sys
import traceback
import uuid
from datetime import datetime, timezone
from types import TracebackType
from typing import Any, Dict, Optional, Type

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..exceptions import AppError, RateLimitError

logger = logging.getLogger(__name__)


class APIErrorResponse(BaseModel):
    """Standardized API error response"""

    model_config = ConfigDict(extra="allow")

    success: bool = False
    error: str
    message: str
    error_id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    path: Optional[str] = None
    method: Optional[str] = None


def error_body(
    request: Request, error: str, message: str, metadata: Optional[Dict[str, Any]] = None
) -> APIErrorResponse:
    return APIErrorResponse(
        error=error,
        message=message,
        path=str(request.url.path),
        method=request.method,
        **(metadata or {}),
    )


def build_error_response(
    request: Request, status_code: int, error: str, message: str, metadata: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    body = error_body(request, error, message, metadata)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render an AppError with its status, code and metadata"""
    response = build_error_response(request, exc.status_code, exc.code, exc.message, exc.metadata)
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"HTTP {exc.status_code} {exc.code}: {exc.message}",
        extra={"path": request.url.path, "method": request.method, "error_code": exc.code},
    )
    if isinstance(exc, RateLimitError) and exc.retry_after:
        response.headers["Retry-After"] = str(exc.retry_after)
    return response


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {
            "field": ".".join(str(part) for part in err.get("loc", [])),
            "message": err.get("msg"),
            "type": err.get("type"),
        }
        for err in exc.errors()
    ]
    return build_error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "VALIDATION_ERROR",
        "Invalid request data provided",
        {"details": details},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all: log with an error id and return a generic 500"""
    body = error_body(request, "INTERNAL_ERROR", "Internal server error occurred")
    error_id = body.error_id
    logger.error(
        f"Unexpected error ({error_id}): {exc}",
        extra={
            "error_id": error_id,
            "exception_type": type(exc).__name__,
            "path": request.url.path,
            "method": request.method,
            "traceback": traceback.format_exc(),
        },
    )
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body.model_dump(mode="json"))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)


def _fatal(message: str, exc: Optional[BaseException]) -> None:
    logger.critical(message, exc_info=exc)
    logging.shutdown()
    sys.stdout.flush()
    sys.stderr.flush()
    # SystemExit raised from Task.__del__ or a loop callback is reported and ignored
    os._exit(1)


def _excepthook(exc_type: Type[BaseException], exc: BaseException, tb: Optional[TracebackType]) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc, tb)
        return
    _fatal("Uncaught exception, shutting down", exc)


def _loop_exception_handler(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
    exc = context.get("exception")
    _fatal(f"Unhandled exception in event loop: {context.get('message')}", exc)


def install_fail_fast_hooks(loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
    """Log uncaught exceptions at critical and exit the process with status 1"""
    sys.excepthook = _excepthook
    if loop is not None:
        loop.set_exception_handler(_loop_exception_handler)
