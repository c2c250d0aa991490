"""Trigger evaluation — threshold comparison, watchers, next-run calculation."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Awaitable, Callable

from loguru import logger

from ccmsched.core.background.ticker import TickerFactory, TickHandle, start_ticker
from ccmsched.core.cron import expression
from ccmsched.core.cron.types import POLLED_SCHEDULE_TYPES, ScheduledTask
from ccmsched.core.errors import InvalidSchedule

MetricFetcher = Callable[[], Awaitable[float]]
TriggerCallback = Callable[[float], Awaitable[None]]


def evaluate_threshold(value: float, operator: str, threshold: float) -> bool:
    """Compare ``value`` against ``threshold``. Unknown operators → False."""
    if operator == "lt":
        return value < threshold
    if operator == "gt":
        return value > threshold
    if operator == "eq":
        return value == threshold
    if operator == "lte":
        return value <= threshold
    if operator == "gte":
        return value >= threshold
    return False


def next_interval_run(
    interval_minutes: int, last_run_at: datetime | None, now: datetime
) -> datetime:
    """Next run for an interval schedule.

    Never run, or overdue → ``now``. Otherwise ``last_run_at + interval``.
    """
    if last_run_at is None:
        return now
    nxt = last_run_at + timedelta(minutes=interval_minutes)
    return now if nxt <= now else nxt


def calculate_next_run(task: ScheduledTask, now: datetime) -> datetime | None:
    """Next run time for a task, or None for threshold/manual tasks."""
    if task.schedule_type == "cron":
        if not task.cron_expression:
            return None
        return expression.next_run(task.cron_expression, now)
    if task.schedule_type == "interval":
        if not task.interval_minutes:
            return None
        return next_interval_run(task.interval_minutes, task.last_run_at, now)
    return None


def validate_schedule(task) -> None:
    """Raise InvalidSchedule if ``task`` lacks the fields its schedule_type needs.

    Works on anything with ScheduledTask's schedule attributes.
    """
    if task.schedule_type == "cron" and not task.cron_expression:
        raise InvalidSchedule("cron_expression is required for cron tasks")
    if task.schedule_type == "interval" and not task.interval_minutes:
        raise InvalidSchedule("interval_minutes is required for interval tasks")
    if task.schedule_type == "threshold" and (
        task.threshold_metric is None
        or task.threshold_operator is None
        or task.threshold_value is None
    ):
        raise InvalidSchedule(
            "threshold_metric, threshold_operator and threshold_value are required "
            "for threshold tasks"
        )


def is_task_due(task: ScheduledTask, now: datetime) -> bool:
    if task.schedule_type not in POLLED_SCHEDULE_TYPES or task.next_run_at is None:
        return False
    return task.next_run_at <= now


def describe_schedule(task: ScheduledTask) -> str:
    """One-line human summary of when ``task`` runs."""
    if task.schedule_type == "cron" and task.cron_expression:
        return expression.describe(task.cron_expression)
    if task.schedule_type == "interval" and task.interval_minutes:
        return f"Every {task.interval_minutes} minutes"
    if task.schedule_type == "threshold":
        value = "?" if task.threshold_value is None else f"{task.threshold_value:g}"
        return f"When {task.threshold_metric} {task.threshold_operator} {value}"
    return "Manual"


class TriggerEvaluator:
    """Owns one polling watcher per threshold task.

    Watchers are not debounced: a condition that stays true fires on every
    tick. Duplicate runs are stopped by the runner's active set.
    """

    def __init__(
        self,
        check_interval_s: float = 60.0,
        ticker_factory: TickerFactory = start_ticker,
    ):
        self.check_interval_s = check_interval_s
        self._ticker_factory = ticker_factory
        self._watchers: dict[str, TickHandle] = {}

    @property
    def watched_task_ids(self) -> list[str]:
        return list(self._watchers)

    def evaluate_for_task(self, task: ScheduledTask, value: float) -> bool:
        if task.schedule_type != "threshold":
            return False
        if not task.threshold_metric or not task.threshold_operator:
            return False
        if task.threshold_value is None:
            return False
        return evaluate_threshold(value, task.threshold_operator, task.threshold_value)

    def register_watcher(
        self,
        task: ScheduledTask,
        fetch_metric: MetricFetcher,
        on_trigger: TriggerCallback,
    ) -> None:
        """Start polling ``fetch_metric`` for ``task``; replaces any existing watcher."""
        self.unregister_watcher(task.id)

        async def _check() -> None:
            try:
                value = await fetch_metric()
                if self.evaluate_for_task(task, value):
                    await on_trigger(value)
            except Exception as e:
                logger.error(f"Error checking threshold for task {task.id}: {e}")

        self._watchers[task.id] = self._ticker_factory(
            self.check_interval_s, _check, f"threshold:{task.id}"
        )
        logger.debug(
            f"Threshold watcher registered: {task.id} "
            f"({task.threshold_metric} {task.threshold_operator} {task.threshold_value})"
        )

    def unregister_watcher(self, task_id: str) -> None:
        handle = self._watchers.pop(task_id, None)
        if handle is not None:
            handle.cancel()

    def stop_all(self) -> None:
        for handle in self._watchers.values():
            handle.cancel()
        self._watchers.clear()
