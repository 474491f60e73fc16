"""Kernel error -> HTTP response mapping.

Every ``BranchKernelError`` becomes ``{"error": {"code", "message",
"details"}}``; ``details`` carries the error's structured attributes.
Unexpected exceptions become a bare 500 without a stack trace.
"""

from __future__ import annotations

from enum import Enum
from typing import Any
from uuid import UUID

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from branch_kernel.exceptions import (
    AuthorizationError,
    BranchKernelError,
    ConfigurationError,
    NoReviewersAssignedError,
    NotFoundError,
    ThresholdOutOfRangeError,
    UnknownRefError,
)
from branch_kernel.logging_config import get_logger

logger = get_logger("api.errors")

# First match wins; anything else is a 409 state or concurrency conflict.
_STATUS_BY_ERROR: tuple[tuple[type[BranchKernelError], int], ...] = (
    (NotFoundError, 404),
    (UnknownRefError, 404),
    (AuthorizationError, 403),
    (ThresholdOutOfRangeError, 422),
    (NoReviewersAssignedError, 422),
    (ConfigurationError, 500),
)


def status_for(exc: BranchKernelError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 409


def _json_safe(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def error_body(exc: BranchKernelError) -> dict[str, Any]:
    details = {
        key: _json_safe(value)
        for key, value in vars(exc).items()
        if not key.startswith("_")
    }
    return {"error": {"code": exc.code, "message": str(exc), "details": details}}


async def _kernel_error_handler(request: Request, exc: BranchKernelError) -> JSONResponse:
    status_code = status_for(exc)
    logger.info(
        "request_rejected",
        extra={
            "path": request.url.path,
            "method": request.method,
            "status_code": status_code,
            "error_code": exc.code,
        },
    )
    return JSONResponse(status_code=status_code, content=error_body(exc))


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": "HTTP_ERROR", "message": str(exc.detail), "details": {}}},
        headers=getattr(exc, "headers", None),
    )


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": "REQUEST_VALIDATION_ERROR",
                "message": "request body or parameters are invalid",
                "details": {"errors": _json_safe(exc.errors())},
            }
        },
    )


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "request_failed",
        extra={"path": request.url.path, "method": request.method},
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "INTERNAL_ERROR", "message": "internal error", "details": {}}},
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BranchKernelError, _kernel_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)
