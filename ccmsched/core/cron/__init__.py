"""Cron expressions, trigger evaluation and scheduler domain types."""

from ccmsched.core.cron.expression import CronSchedule, describe, next_run, parse, validate
from ccmsched.core.cron.triggers import TriggerEvaluator, calculate_next_run, evaluate_threshold
from ccmsched.core.cron.types import ScheduledTask, TaskExecution, TaskResult, WebhookConfig

__all__ = [
    "CronSchedule",
    "ScheduledTask",
    "TaskExecution",
    "TaskResult",
    "TriggerEvaluator",
    "WebhookConfig",
    "calculate_next_run",
    "describe",
    "evaluate_threshold",
    "next_run",
    "parse",
    "validate",
]
