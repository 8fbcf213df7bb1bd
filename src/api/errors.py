from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from src.engine.errors import (
    AlreadyRunning,
    AuthError,
    ContainerRuntimeUnavailable,
    CredentialExpired,
    CredentialNotFound,
    EngineNotReady,
    InvalidTransition,
    ModeImmutable,
    RunnerEngineError,
    RunnerNotFound,
    UnsupportedPlatform,
)


@dataclass
class APIError(Exception):
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None


def error_response(*, status_code: int, code: str, message: str, details: dict[str, Any] | None = None) -> JSONResponse:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=int(status_code), content=payload)


async def api_error_handler(_req: Request, exc: APIError) -> JSONResponse:
    return error_response(
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    # Normalize Pydantic validation errors into our contract envelope.
    return error_response(
        status_code=400,
        code="invalid_argument",
        message="Request validation failed.",
        details={"errors": exc.errors()},
    )


async def unhandled_error_handler(_req: Request, exc: Exception) -> JSONResponse:
    # Keep errors safe by default; details are still traceable via server logs / sqlite events.
    return error_response(
        status_code=500,
        code="internal",
        message="Internal server error.",
        details={"type": type(exc).__name__},
    )


# Most specific first; anything else from the engine is a backend failure.
_ENGINE_ERROR_STATUS: tuple[tuple[type[RunnerEngineError], int, str], ...] = (
    (RunnerNotFound, 404, "not_found"),
    (CredentialNotFound, 404, "not_found"),
    (AlreadyRunning, 409, "conflict"),
    (InvalidTransition, 409, "conflict"),
    (ModeImmutable, 409, "conflict"),
    (ContainerRuntimeUnavailable, 503, "unavailable"),
    (EngineNotReady, 503, "unavailable"),
    (CredentialExpired, 401, "unauthenticated"),
    (AuthError, 401, "unauthenticated"),
    (UnsupportedPlatform, 422, "unsupported_platform"),
)


def engine_error_status(exc: RunnerEngineError) -> tuple[int, str]:
    for cls, status_code, code in _ENGINE_ERROR_STATUS:
        if isinstance(exc, cls):
            return status_code, code
    return 502, "backend_error"


async def engine_error_handler(_req: Request, exc: RunnerEngineError) -> JSONResponse:
    status_code, code = engine_error_status(exc)
    return error_response(
        status_code=status_code,
        code=code,
        message=str(exc),
        details={"type": type(exc).__name__, **exc.details()},
    )
