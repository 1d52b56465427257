"""
Mailbox onboarding service — application entry point.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import timedelta
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncEngine

from api.dependencies import Services, build_services
from api.middleware import register_exception_handlers, register_middleware
from auth.routes import router as auth_router
from config.settings import Settings, config
from connectors.registry import ConnectorRegistry
from connectors.routes import router as oauth_router
from database.helpers import create_schema, seed_business_types
from database.session import build_engine, build_session_factory, session_scope
from onboarding.business_types import DEFAULT_BUSINESS_TYPES
from onboarding.routes import business_types_router, router as onboarding_router
from utils.clock import Clock, utcnow
from utils.errors import AppError

logging.basicConfig(
    level=getattr(logging, (config.log_level or ("DEBUG" if config.debug else "INFO")).upper(), logging.INFO),
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "aiosqlite", "asyncio"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


async def prepare_database(services: Services) -> None:
    """Create missing tables, seed the business-type catalog, drop stale states."""
    if services.engine is not None:
        await create_schema(services.engine)
    if services.settings.seed_business_types:
        async with session_scope(services.session_factory) as session:
            await seed_business_types(session, DEFAULT_BUSINESS_TYPES)
    await services.states.purge_expired()


async def refresh_sweep(services: Services) -> None:
    """Periodically refresh tokens that are about to expire."""
    interval = services.settings.token_sweep_interval_seconds
    window = timedelta(seconds=max(interval, services.settings.token_refresh_margin_seconds))
    while True:
        await asyncio.sleep(interval)
        try:
            refreshed = await services.tokens.refresh_expiring(window)
            if refreshed:
                logger.info("Refresh sweep renewed %d connections", refreshed)
        except AppError as exc:
            logger.warning("Refresh sweep failed: %s", exc.code)


def create_app(
    settings: Optional[Settings] = None,
    *,
    engine: Optional[AsyncEngine] = None,
    registry: Optional[ConnectorRegistry] = None,
    clock: Clock = utcnow,
) -> FastAPI:
    settings = settings or config
    engine = engine or build_engine(settings.database_url, echo=settings.database_echo)
    services = build_services(
        settings,
        build_session_factory(engine),
        engine=engine,
        registry=registry,
        clock=clock,
    )

    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        description="Mailbox OAuth connections and the onboarding wizard.",
    )
    app.state.services = services

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)
    register_exception_handlers(app)

    # Routes
    app.include_router(auth_router, prefix="/auth")
    app.include_router(oauth_router, prefix="/oauth")
    app.include_router(onboarding_router, prefix="/onboarding")
    app.include_router(business_types_router, prefix="/business-types")

    @app.get("/health", tags=["health"])
    async def health() -> dict:
        return {
            "status": "ok",
            "providers": services.registry.list_configured(),
        }

    @app.on_event("startup")
    async def on_startup():
        logger.info("Preparing database…")
        await prepare_database(services)

        if settings.token_sweep_interval_seconds > 0:
            app.state.sweep_task = asyncio.create_task(refresh_sweep(services))
            logger.info("Token refresh sweep every %ds", settings.token_sweep_interval_seconds)

        logger.info("Configured providers: %s", services.registry.list_configured() or "none")
        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        task = getattr(app.state, "sweep_task", None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await engine.dispose()

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
