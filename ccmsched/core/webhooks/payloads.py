"""Canonical webhook payload and the per-event payload factories."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ccmsched.core.cron.types import ScheduledTask, WebhookEventType

EVENT_TITLES: dict[str, str] = {
    "task_started": "Task Started",
    "task_completed": "Task Completed",
    "task_failed": "Task Failed",
    "threshold_triggered": "Threshold Alert",
    "optimization_applied": "Optimization Applied",
    "health_alert": "Health Alert",
}

OPERATOR_TEXT: dict[str, str] = {
    "lt": "below",
    "gt": "above",
    "lte": "at or below",
    "gte": "at or above",
    "eq": "at",
}


def event_title(event: str) -> str:
    return EVENT_TITLES.get(event, "Notification")


def _num(value: float | None) -> str:
    return "?" if value is None else f"{value:g}"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PayloadTask(_CamelModel):
    id: str
    name: str
    task_type: str


class PayloadExecution(_CamelModel):
    id: str
    status: str
    duration: int | None = None  # milliseconds


class PayloadMetrics(_CamelModel):
    subjects_processed: int | None = None
    issues_found: int | None = None
    tokens_saved: int | None = None
    optimization_score: float | None = None
    token_count: float | None = None
    issue_count: float | None = None
    file_size: float | None = None


class WebhookPayload(_CamelModel):
    """One scheduler event, provider-neutral. Never persisted."""

    event: WebhookEventType
    timestamp: str
    message: str = ""
    task: PayloadTask | None = None
    execution: PayloadExecution | None = None
    metrics: PayloadMetrics | None = None
    error: str | None = None
    details_url: str | None = None

    def to_json(self) -> dict[str, Any]:
        """Canonical JSON form (camelCase keys, unset fields dropped)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ════════════════════════════════════════════════════════════
# FACTORIES: return the partial payload passed to notify()
# ════════════════════════════════════════════════════════════


def task_ref(task: ScheduledTask) -> PayloadTask:
    return PayloadTask(id=task.id, name=task.name, task_type=task.task_type)


def task_started_payload(task: ScheduledTask) -> dict[str, Any]:
    return {
        "task": task_ref(task),
        "message": f"Started executing task: {task.name}",
    }


def task_completed_payload(
    task: ScheduledTask,
    execution_id: str,
    duration_ms: int,
    subjects_processed: int = 0,
    issues_found: int = 0,
    tokens_saved: int = 0,
) -> dict[str, Any]:
    parts = [f'Task "{task.name}" completed successfully']
    if subjects_processed:
        parts.append(f"{subjects_processed} subjects processed")
    if tokens_saved:
        parts.append(f"{tokens_saved:,} tokens saved")
    return {
        "task": task_ref(task),
        "execution": PayloadExecution(id=execution_id, status="completed", duration=duration_ms),
        "metrics": PayloadMetrics(
            subjects_processed=subjects_processed,
            issues_found=issues_found,
            tokens_saved=tokens_saved,
        ),
        "message": " • ".join(parts),
    }


def task_failed_payload(
    task: ScheduledTask,
    execution_id: str,
    error: str,
    duration_ms: int | None = None,
) -> dict[str, Any]:
    return {
        "task": task_ref(task),
        "execution": PayloadExecution(id=execution_id, status="failed", duration=duration_ms),
        "error": error,
        "message": f'Task "{task.name}" failed: {error}',
    }


def threshold_triggered_payload(
    task: ScheduledTask, metric: str, current_value: float
) -> dict[str, Any]:
    operator = task.threshold_operator or ""
    metrics = PayloadMetrics()
    if metric in PayloadMetrics.model_fields:
        metrics = PayloadMetrics(**{metric: current_value})
    return {
        "task": task_ref(task),
        "metrics": metrics,
        "message": (
            f"Threshold triggered: {metric} is {OPERATOR_TEXT.get(operator, operator)} "
            f"{_num(task.threshold_value)} (current: {_num(current_value)})"
        ),
    }


def optimization_applied_payload(
    task: ScheduledTask,
    execution_id: str,
    subjects_optimized: int,
    tokens_saved: int,
) -> dict[str, Any]:
    return {
        "task": task_ref(task),
        "execution": PayloadExecution(id=execution_id, status="completed"),
        "metrics": PayloadMetrics(subjects_processed=subjects_optimized, tokens_saved=tokens_saved),
        "message": (
            f"Optimization applied to {subjects_optimized} subject(s) • "
            f"{tokens_saved:,} tokens saved"
        ),
    }


def health_alert_payload(
    score: float, previous_score: float, active_issues: int
) -> dict[str, Any]:
    if score > previous_score:
        trend = "improved"
    elif score < previous_score:
        trend = "declined"
    else:
        trend = "unchanged"
    return {
        "metrics": PayloadMetrics(optimization_score=score, issues_found=active_issues),
        "message": (
            f"Health score {trend}: {previous_score:g} → {score:g} "
            f"({active_issues} active issues)"
        ),
    }
