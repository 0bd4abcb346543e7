import logging
import os
import re
import secrets
import threading
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware
from starlette.responses import FileResponse, JSONResponse

import auth
import config
import database
import songs
from errors import ApiError, error_body, install_error_handlers
from logging_config import setup_logging
from mailer import EmailSystem
from storage import CloudinaryStorage

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not config.MONGODB_URI:
        logger.error("MONGODB_URI is not defined")
        raise SystemExit(1)

    threading.Thread(
        target=database.connect_with_retry,
        args=(config.MONGODB_URI, config.DATABASE_NAME),
        name="mongo-connect",
        daemon=True,
    ).start()

    await app.state.mailer.initialize()
    logger.info("Email system ready: %s mode", app.state.mailer.mode)
    logger.info(
        "%s backend v%s on port %s (%s), auth %s",
        config.APP_NAME,
        config.VERSION,
        config.PORT,
        config.ENVIRONMENT,
        "required" if app.state.require_auth else "disabled",
    )
    yield
    logger.info("Shutting down gracefully...")
    database.close()


def create_app(
    require_auth: Optional[bool] = None,
    storage: Optional[CloudinaryStorage] = None,
    mailer: Optional[EmailSystem] = None,
) -> FastAPI:
    app = FastAPI(title=config.APP_NAME, version=config.VERSION, lifespan=lifespan)

    app.state.require_auth = config.REQUIRE_AUTH if require_auth is None else require_auth
    app.state.storage = storage or CloudinaryStorage.from_env()
    app.state.mailer = mailer or EmailSystem()
    app.state.started_at = time.monotonic()

    app.add_middleware(
        SessionMiddleware,
        secret_key=config.SESSION_SECRET or secrets.token_hex(32),
        session_cookie=config.SESSION_COOKIE,
        max_age=config.SESSION_MAX_AGE,
        same_site="none" if config.IS_PRODUCTION else "lax",
        https_only=config.IS_PRODUCTION,
    )

    if config.IS_PRODUCTION:
        allowed = config.cors_origins()
        origins = {"allow_origins": allowed, "allow_origin_regex": config.CORS_ORIGIN_REGEX}
    else:
        origins = {"allow_origin_regex": r".*"}
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
        **origins,
    )

    if config.IS_PRODUCTION:
        @app.middleware("http")
        async def reject_foreign_origins(request: Request, call_next):
            origin = request.headers.get("origin")
            if origin and not origin_allowed(origin, allowed, request.headers.get("host")):
                logger.warning("Blocked request from origin %s", origin)
                return JSONResponse(status_code=403, content=error_body("CORS policy violation"))
            return await call_next(request)

    install_error_handlers(app)

    @app.get("/health")
    def health(request: Request):
        state = request.app.state
        return {
            "status": "ok",
            "service": config.APP_NAME,
            "version": config.VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "mongodb": database.is_connected(),
            "cloudinary": state.storage.configured,
            "email": state.mailer.get_status(),
            "environment": config.ENVIRONMENT,
            "uptime": round(time.monotonic() - state.started_at, 3),
            "auth_required": state.require_auth,
        }

    app.include_router(auth.router)
    app.include_router(songs.router)

    # Must stay last: anything unmatched falls through to the frontend.
    @app.get("/", include_in_schema=False)
    @app.get("/{full_path:path}", include_in_schema=False)
    def frontend(full_path: str = ""):
        return serve_public(full_path)

    return app


def origin_allowed(origin: str, allowed, host: Optional[str] = None) -> bool:
    if origin in allowed or re.fullmatch(config.CORS_ORIGIN_REGEX, origin):
        return True
    # same-origin requests from the served frontend
    return host is not None and origin.split("://", 1)[-1] == host


def serve_public(path: str, public_dir: str = config.PUBLIC_DIR) -> FileResponse:
    root = os.path.realpath(public_dir)
    try:
        candidate = os.path.realpath(os.path.join(root, path))
    except ValueError:
        # embedded NUL byte
        candidate = ""
    if path and candidate.startswith(root + os.sep) and os.path.isfile(candidate):
        target = candidate
    else:
        target = os.path.join(root, "index.html")
    if not os.path.isfile(target):
        raise ApiError(404, "Not found")

    if target.endswith(".html"):
        cache_control = "no-cache, no-store, must-revalidate"
    else:
        cache_control = f"public, max-age={3600 if config.IS_PRODUCTION else 0}"
    return FileResponse(target, headers={"Cache-Control": cache_control})


setup_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT, proxy_headers=True, forwarded_allow_ips="*")
