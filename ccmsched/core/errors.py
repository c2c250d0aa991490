"""Scheduler exception hierarchy."""

from __future__ import annotations


class SchedulerError(Exception):
    """Base class for all scheduler errors."""


class InvalidExpression(SchedulerError, ValueError):
    """Cron expression could not be parsed."""


class NoMatchFound(SchedulerError):
    """Cron expression has no matching instant within the search horizon."""


class AlreadyRunning(SchedulerError):
    """Task already has an in-flight execution."""

    def __init__(self, task_id: str):
        super().__init__(f"Task is already running: {task_id}")
        self.task_id = task_id


class TimedOut(SchedulerError):
    """Task handler exceeded its deadline."""

    def __init__(self, timeout_s: float):
        super().__init__(f"Task execution timed out after {timeout_s:g}s")
        self.timeout_s = timeout_s


class TaskNotFound(SchedulerError, LookupError):
    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskDisabled(SchedulerError):
    def __init__(self, task_id: str):
        super().__init__(f"Task is disabled: {task_id}")
        self.task_id = task_id


class UnknownTaskType(SchedulerError, LookupError):
    def __init__(self, task_type: str):
        super().__init__(f"No handler registered for task type: {task_type}")
        self.task_type = task_type


class WebhookNotFound(SchedulerError, LookupError):
    def __init__(self, webhook_id: str):
        super().__init__(f"Webhook not found: {webhook_id}")
        self.webhook_id = webhook_id


class InvalidSchedule(SchedulerError, ValueError):
    """Schedule type is missing the fields it needs."""
