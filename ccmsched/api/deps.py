"""FastAPI dependency injection — pull singletons from app.state."""

from __future__ import annotations

from fastapi import Request

from ccmsched.core.config.schema import Config
from ccmsched.core.scheduler.runner import SchedulerRunner
from ccmsched.storage.store import SchedulerStore


def get_config(request: Request) -> Config:
    """Get Config singleton from app state."""
    return request.app.state.config


def get_store(request: Request) -> SchedulerStore:
    """Get SchedulerStore singleton from app state."""
    return request.app.state.store


def get_runner(request: Request) -> SchedulerRunner:
    """Get SchedulerRunner singleton from app state."""
    return request.app.state.runner
