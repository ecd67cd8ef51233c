"""HTTP envelope serialization and the top-level error adapter."""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatdesk.common.exceptions import ChatdeskError, RateLimitError

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "PERMISSION_DENIED",
    404: "NOT_FOUND",
    405: "NOT_FOUND",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMIT_EXCEEDED",
}


def ok(data: Any = None, status_code: int = 200) -> JSONResponse:
    """Success envelope."""
    body: dict[str, Any] = {"success": True}
    if data is not None:
        body["data"] = jsonable_encoder(data, by_alias=True)
    return JSONResponse(body, status_code=status_code)


def error_envelope(exc: ChatdeskError) -> tuple[int, dict[str, Any]]:
    """Serialize a typed error into ``(status, body)``."""
    body: dict[str, Any] = {
        "success": False,
        "error": exc.message,
        "code": exc.code,
        "message": exc.message,
    }
    body.update(exc.payload())
    return exc.status_code, body


def error_response(exc: ChatdeskError) -> JSONResponse:
    status, body = error_envelope(exc)
    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(body, status_code=status, headers=headers)


def install_error_handlers(app: FastAPI) -> None:
    """Register the single translation point from exceptions to envelopes."""

    @app.exception_handler(ChatdeskError)
    async def _chatdesk_error(request: Request, exc: ChatdeskError):
        level = logging.ERROR if exc.status_code >= 500 else logging.INFO
        logger.log(
            level, "%s %s -> %s", request.method, request.url.path, exc.code,
            extra={"code": exc.code, "path": request.url.path},
        )
        return error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        details = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            {
                "success": False,
                "error": "Invalid request",
                "code": "VALIDATION_ERROR",
                "message": "Invalid request",
                "details": details,
            },
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        code = _STATUS_CODES.get(exc.status_code, "SERVER_ERROR")
        message = exc.detail if isinstance(exc.detail, str) else code
        return JSONResponse(
            {"success": False, "error": message, "code": code, "message": message},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception(
            "Unhandled error on %s %s", request.method, request.url.path,
            extra={"path": request.url.path},
        )
        return JSONResponse(
            {
                "success": False,
                "error": "Internal server error",
                "code": "SERVER_ERROR",
                "message": "Internal server error",
            },
            status_code=500,
        )
