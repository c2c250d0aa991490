"""Scheduler runner, task handlers and metric source."""

from ccmsched.core.scheduler.handlers import TaskHandlerRegistry, load_analyzer, make_handlers
from ccmsched.core.scheduler.metrics import StoreMetricSource
from ccmsched.core.scheduler.runner import SchedulerRunner, create_runner

__all__ = [
    "SchedulerRunner",
    "StoreMetricSource",
    "TaskHandlerRegistry",
    "create_runner",
    "load_analyzer",
    "make_handlers",
]
