"""
Standard error responses: domain exceptions -> HTTP status + JSON body.

    {"success": false, "error": {"code", "message", "context"}, "timestamp"}
"""

from __future__ import annotations

import time
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from backend_payrail.core.exceptions import (
    ChainUnavailable,
    NotFound,
    PayrailError,
    PermissionDenied,
    StateConflict,
    ValidationError,
)
from backend_payrail.payrail_logging import get_logger

logger = get_logger(__name__)


class ErrorDetail(BaseModel):
    code: str
    message: str
    context: dict[str, Any] | None = None


class StandardErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
    timestamp: float


def status_for(exc: PayrailError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, PermissionDenied):
        return 403
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, StateConflict):
        return 409
    if isinstance(exc, ChainUnavailable):
        return 503
    return 500


def create_error_response(
    code: str,
    message: str,
    status_code: int,
    context: dict[str, Any] | None = None,
) -> JSONResponse:
    body = StandardErrorResponse(
        error=ErrorDetail(code=code, message=message, context=context or None),
        timestamp=time.time(),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def payrail_exception_handler(request: Request, exc: PayrailError) -> JSONResponse:
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(
        "api_request_error",
        path=request.url.path,
        method=request.method,
        code=exc.code,
        status_code=status_code,
        error=exc.message,
    )
    return create_error_response(exc.code, exc.message, status_code, exc.context)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return create_error_response("VALIDATION_ERROR", "request validation failed", 422, {"errors": errors})


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return create_error_response("HTTP_ERROR", str(exc.detail), exc.status_code)


def setup_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PayrailError, payrail_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
