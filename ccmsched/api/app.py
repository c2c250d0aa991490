"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from ccmsched import __version__
from ccmsched.api.routes import router as scheduler_router
from ccmsched.core.config.loader import configure_logging, load_config
from ccmsched.core.scheduler.runner import create_runner


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: Config → logging → store/handlers/notifier → runner. Shutdown: drain."""
    config = load_config()
    configure_logging(config.logging)

    client = httpx.AsyncClient(timeout=httpx.Timeout(config.webhooks.timeout_s))
    runner = create_runner(config, client=client)

    app.state.config = config
    app.state.store = runner.store
    app.state.runner = runner

    if config.scheduler.autostart:
        await runner.start()
    logger.info(f"ccmsched API started — db: {config.db_path}")
    yield

    # Shutdown
    await runner.stop()
    await client.aclose()
    logger.info("ccmsched API shutting down")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="ccmsched API",
        description="Background scheduler for configuration-management tasks",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(scheduler_router)
    return app


app = create_app()
