from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from .config import Settings, load_settings
from .middleware.observability import ObservabilityMiddleware
from .routers.auth import router as auth_router
from .services.auth import SSXServer
from .telemetry.logging import init_logging
from .telemetry.metrics import router as metrics_router


def create_app(settings: Settings | None = None, ssx: SSXServer | None = None) -> FastAPI:
    """Build the API around one Settings instance and one SSXServer."""
    settings = settings or load_settings()
    init_logging(settings.log_level)
    ssx = ssx or SSXServer(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        await ssx.aclose()

    app = FastAPI(title="SSX Server", lifespan=lifespan)
    app.state.settings = settings
    app.state.ssx = ssx

    app.add_middleware(ObservabilityMiddleware)

    # CORS: '*' cannot be combined with credentialed (cookie) requests
    allowed_origins = settings.cors_origins
    app.add_middleware(
        CORSMiddleware,  # type: ignore[arg-type]
        allow_origins=allowed_origins,
        allow_credentials=allowed_origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Outermost, so every layer below sees request.session
    app.add_middleware(
        SessionMiddleware,  # type: ignore[arg-type]
        secret_key=settings.signing_key,
        session_cookie=settings.session_cookie_name,
        https_only=settings.use_secure_cookies,
        same_site="lax",
    )

    # Body validation errors answer 400, without echoing the submitted input
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request, exc: RequestValidationError):  # type: ignore[no-redef]
        return JSONResponse(status_code=400, content={"detail": _error_entries(exc)})

    app.include_router(metrics_router)  # /metrics
    app.include_router(auth_router)
    return app


def _error_entries(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {
            "loc": [str(p) for p in err.get("loc", ())],
            "msg": str(err.get("msg", "")),
            "type": str(err.get("type", "validation_error")),
        }
        for err in exc.errors()
    ]
