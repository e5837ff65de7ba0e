from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import router
from .config import get_settings, runtime_secret_issues
from .errors import RelayError

logger = logging.getLogger(__name__)


def _origin(url: str) -> str:
    normalized = url.strip().rstrip("/")
    if "://" in normalized:
        parts = normalized.split("/")
        return "/".join(parts[:3])
    return normalized


def create_app() -> FastAPI:
    settings = get_settings()
    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set SETTINGS_ENCRYPTION_KEY and SESSION_TOKEN_SECRET to real secrets "
                + "and configure the selected email provider."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[_origin(settings.cors_allowed_origin)],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RelayError)
    async def _relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("request failed path=%s code=%s error=%s", request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.code})

    app.include_router(router)
    return app


app = create_app()
