"""Scheduler domain types — mirror the SQLite tables."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

ScheduleType = Literal["cron", "interval", "threshold", "manual"]
TriggerType = Literal["scheduled", "threshold", "manual", "api"]
ExecutionStatus = Literal["running", "completed", "failed"]
ThresholdOperator = Literal["lt", "gt", "eq", "lte", "gte"]
ThresholdMetric = Literal["optimization_score", "token_count", "issue_count", "file_size"]
WebhookProvider = Literal["slack", "discord", "n8n", "generic"]
WebhookEventType = Literal[
    "task_started",
    "task_completed",
    "task_failed",
    "threshold_triggered",
    "optimization_applied",
    "health_alert",
]

# Schedule types that carry a next_run_at and are picked up by the poll loop
POLLED_SCHEDULE_TYPES: tuple[str, ...] = ("cron", "interval")


class ScheduledTask(BaseModel):
    """Scheduled task definition — mirrors the scheduled_tasks table."""

    id: str
    owner_id: str | None = None
    name: str
    description: str | None = None
    task_type: str = "analyze"
    schedule_type: ScheduleType = "manual"

    cron_expression: str | None = None
    interval_minutes: int | None = None
    threshold_metric: str | None = None
    threshold_operator: ThresholdOperator | None = None
    threshold_value: float | None = None

    subject_filter: list[str] | None = None  # None → all subjects for owner
    task_config: dict[str, Any] = Field(default_factory=dict)
    notify_on_success: bool = False
    notify_on_failure: bool = True
    webhook_ids: list[str] | None = None  # None → owner-global webhooks
    enabled: bool = True

    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    created_at: datetime | None = None


class TaskExecution(BaseModel):
    """One recorded attempt to run a ScheduledTask."""

    id: str
    task_id: str
    owner_id: str | None = None
    status: ExecutionStatus = "running"
    trigger_type: TriggerType = "scheduled"
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    result: dict[str, Any] | None = None
    subjects_processed: int = 0
    issues_found: int = 0
    tokens_saved: int = 0
    error: str | None = None


class TaskResult(BaseModel):
    """Structured outcome returned by a task handler."""

    subjects_processed: int = 0
    issues_found: int = 0
    tokens_saved: int = 0
    details: dict[str, Any] | None = None


class WebhookConfig(BaseModel):
    """Outbound webhook target — mirrors the webhook_configs table."""

    id: str
    owner_id: str | None = None  # None → global
    name: str
    provider: WebhookProvider = "generic"
    url: str
    config: dict[str, Any] = Field(default_factory=dict)
    event_types: list[str] = Field(default_factory=list)  # empty → all events
    enabled: bool = True
    failure_count: int = 0
    last_used_at: datetime | None = None

    def accepts(self, event: str) -> bool:
        """True if this webhook subscribes to ``event``."""
        return not self.event_types or event in self.event_types
