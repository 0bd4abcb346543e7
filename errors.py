"""
JSON error envelope shared by every route.

Errors leave the API as ``{"success": false, "message": ...}`` plus any
extra fields the raising code attached.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import config

logger = logging.getLogger(__name__)


class ApiError(HTTPException):
    def __init__(
        self,
        status_code: int,
        message: str,
        headers: Optional[Dict[str, str]] = None,
        **extra: Any,
    ):
        super().__init__(status_code=status_code, detail=message, headers=headers)
        self.extra = extra


def error_body(message: str, **extra: Any) -> Dict[str, Any]:
    body = {"success": False, "message": message}
    body.update({k: v for k, v in extra.items() if v is not None})
    return body


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        extra = getattr(exc, "extra", {})
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(str(exc.detail), **extra),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content=error_body("Invalid request", errors=jsonable_errors(exc)),
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception(
            "Unhandled error", extra={"http_method": request.method, "path": request.url.path}
        )
        debug = None if config.IS_PRODUCTION else str(exc)
        return JSONResponse(status_code=500, content=error_body("Something went wrong!", error=debug))


def jsonable_errors(exc: RequestValidationError):
    # ctx may hold exception instances that json cannot encode
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
