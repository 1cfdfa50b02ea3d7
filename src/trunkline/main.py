"""
FastAPI application entry point.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from trunkline.config import get_settings
from trunkline.shared.correlation import CorrelationIdMiddleware
from trunkline.shared.database import get_database_manager
from trunkline.shared.exceptions import AppError
from trunkline.shared.logging import get_logger, setup_logging
from trunkline.telephony import models  # noqa: F401  (registers tables)
from trunkline.telephony.config import get_livekit_config, get_telephony_config
from trunkline.telephony.http.management import routers as management_routers
from trunkline.telephony.module import TelephonyModule, build_telephony_module
from trunkline.telephony.webhooks.router import diagnostics_router
from trunkline.telephony.webhooks.router import router as webhook_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    settings = get_settings()
    db = get_database_manager()

    logger.info("Application starting", extra={"env": settings.app_env})

    if settings.app_env == "dev":
        await db.create_all()

    # A module injected by the caller (tests) is left as is.
    owns_module = getattr(app.state, "telephony", None) is None
    if owns_module:
        app.state.telephony = build_telephony_module(
            get_telephony_config(), get_livekit_config(), db
        )

    yield

    logger.info("Shutting down application")

    module: TelephonyModule | None = getattr(app.state, "telephony", None)
    if module is not None and owns_module:
        await module.aclose()
        app.state.telephony = None

    await db.close()
    logger.info("Application shutdown complete")


def create_app(telephony: TelephonyModule | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Trunkline API",
        description="Telephony provider onboarding, call routing and webhook ingress",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    app.state.telephony = telephony

    # Map domain exceptions to HTTP responses
    @app.exception_handler(AppError)
    async def _app_error(_: Request, exc: AppError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})

    # Request validation (FastAPI/Pydantic) -> consistent 422 payload
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            errors.append(
                {
                    "field": field,
                    "message": error["msg"],
                    "type": error["type"],
                }
            )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": errors,
                }
            },
        )

    app.add_middleware(CorrelationIdMiddleware)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(webhook_router)
    for router in management_routers:
        app.include_router(router)
    if not settings.is_production:
        app.include_router(diagnostics_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
