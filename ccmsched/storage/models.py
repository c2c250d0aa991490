"""Pydantic API models — request bodies and response shapes."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator

from ccmsched.core.cron.triggers import validate_schedule
from ccmsched.core.cron.types import (
    ScheduledTask,
    ScheduleType,
    ThresholdMetric,
    ThresholdOperator,
    WebhookConfig,
    WebhookEventType,
    WebhookProvider,
)

# Columns an edit may reset to NULL
_NULLABLE_TASK_FIELDS = frozenset({
    "description", "owner_id", "cron_expression", "interval_minutes",
    "threshold_metric", "threshold_operator", "threshold_value",
    "subject_filter", "webhook_ids",
})


# ════════════════════════════════════════════════════════════
# TASKS
# ════════════════════════════════════════════════════════════


class TaskCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    owner_id: str | None = None
    task_type: str = "analyze"
    schedule_type: ScheduleType = "manual"
    cron_expression: str | None = None
    interval_minutes: int | None = Field(default=None, ge=1)
    threshold_metric: ThresholdMetric | None = None
    threshold_operator: ThresholdOperator | None = None
    threshold_value: float | None = None
    subject_filter: list[str] | None = None
    task_config: dict[str, Any] = Field(default_factory=dict)
    notify_on_success: bool = False
    notify_on_failure: bool = True
    webhook_ids: list[str] | None = None
    enabled: bool = True

    @model_validator(mode="after")
    def _check_schedule(self) -> TaskCreate:
        validate_schedule(self)
        return self

    def to_task(self) -> ScheduledTask:
        return ScheduledTask(id="", **self.model_dump())


class TaskUpdate(BaseModel):
    """Partial edit. Only fields present in the request body are applied."""

    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    owner_id: str | None = None
    task_type: str | None = None
    schedule_type: ScheduleType | None = None
    cron_expression: str | None = None
    interval_minutes: int | None = Field(default=None, ge=1)
    threshold_metric: ThresholdMetric | None = None
    threshold_operator: ThresholdOperator | None = None
    threshold_value: float | None = None
    subject_filter: list[str] | None = None
    task_config: dict[str, Any] | None = None
    notify_on_success: bool | None = None
    notify_on_failure: bool | None = None
    webhook_ids: list[str] | None = None
    enabled: bool | None = None

    def changes(self) -> dict[str, Any]:
        """Set fields, dropping explicit nulls on columns that cannot be null."""
        return {
            k: v for k, v in self.model_dump(exclude_unset=True).items()
            if v is not None or k in _NULLABLE_TASK_FIELDS
        }


class TaskRunResponse(BaseModel):
    task_id: str
    execution_id: str


class UpcomingTask(BaseModel):
    id: str
    name: str
    task_type: str
    schedule_type: str
    next_run_at: datetime | None = None
    schedule: str  # human-readable


# ════════════════════════════════════════════════════════════
# WEBHOOKS
# ════════════════════════════════════════════════════════════


class WebhookCreate(BaseModel):
    name: str = Field(min_length=1)
    url: str = Field(pattern=r"^https?://")
    provider: WebhookProvider = "generic"
    owner_id: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    event_types: list[WebhookEventType] = Field(default_factory=list)
    enabled: bool = True

    def to_webhook(self) -> WebhookConfig:
        return WebhookConfig(id="", **self.model_dump())


class WebhookUpdate(BaseModel):
    """Partial edit of a webhook target."""

    name: str | None = Field(default=None, min_length=1)
    url: str | None = Field(default=None, pattern=r"^https?://")
    provider: WebhookProvider | None = None
    owner_id: str | None = None
    config: dict[str, Any] | None = None
    event_types: list[WebhookEventType] | None = None
    enabled: bool | None = None

    def changes(self) -> dict[str, Any]:
        return {
            k: v for k, v in self.model_dump(exclude_unset=True).items()
            if v is not None or k == "owner_id"
        }


# ════════════════════════════════════════════════════════════
# MISC
# ════════════════════════════════════════════════════════════


class CronDescribeResponse(BaseModel):
    expression: str
    valid: bool
    error: str | None = None
    description: str
    next_runs: list[datetime] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    version: str = ""
    scheduler_running: bool = False
