"""FastAPI application factory for the webhook receiver.

Two entry points:
- ``create_app(service)`` serves an already-built service (tests, embedding).
- ``create_app_from_config(config)`` configures logging, tracing and metrics,
  then builds the service from config during startup.

Either way the lifespan starts the service (launching the sync poller when
enabled) on startup and shuts it down on exit.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI

from studycal import __version__
from studycal.api.webhooks import router as webhooks_router
from studycal.config import EngineConfig
from studycal.core.logging import configure_logging
from studycal.core.metrics import init_metrics
from studycal.core.telemetry import init_telemetry
from studycal.service import CalendarService

logger = logging.getLogger(__name__)

SERVICE_NAME = "studycal"


def _build_app(
    load_service: Callable[[], Awaitable[CalendarService]], *, manage_lifecycle: bool
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        service = await load_service()
        app.state.calendar_service = service
        if manage_lifecycle:
            service.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await service.shutdown()
                logger.info("Calendar service shut down")

    app = FastAPI(title=SERVICE_NAME, version=__version__, lifespan=lifespan)
    app.include_router(webhooks_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


def create_app(service: CalendarService, *, manage_lifecycle: bool = True) -> FastAPI:
    async def _existing() -> CalendarService:
        return service

    app = _build_app(_existing, manage_lifecycle=manage_lifecycle)
    app.state.calendar_service = service
    return app


def create_app_from_config(config: EngineConfig) -> FastAPI:
    configure_logging(config.logging.level, config.logging.format, config.logging.log_root)
    init_telemetry(SERVICE_NAME)
    init_metrics(SERVICE_NAME)

    async def _from_config() -> CalendarService:
        service = await CalendarService.from_config(config)
        logger.info(
            "Calendar service ready (provider=%s, policy=%s)",
            config.provider.name,
            config.sync.conflict_policy.value,
        )
        return service

    return _build_app(_from_config, manage_lifecycle=True)
