"""SchedulerRunner — poll loop, threshold watchers, bounded task execution.

State per task: Idle → Due → Running → {Completed, Failed}.

All mutations of the active set happen on the event loop thread, so
membership checks and claims need no lock. A task id is claimed at dispatch
time, before the background execution starts, so two checks in the same
loop turn cannot dispatch it twice.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta
from typing import Any

import httpx
from loguru import logger

from ccmsched.core.background.ticker import (
    Clock,
    SystemClock,
    TickerFactory,
    TickHandle,
    start_ticker,
)
from ccmsched.core.config.schema import Config, SchedulerConfig
from ccmsched.core.cron import expression
from ccmsched.core.cron.triggers import (
    TriggerEvaluator,
    calculate_next_run,
    validate_schedule,
)
from ccmsched.core.cron.types import (
    POLLED_SCHEDULE_TYPES,
    ScheduledTask,
    TaskResult,
    WebhookConfig,
)
from ccmsched.core.errors import (
    AlreadyRunning,
    NoMatchFound,
    TaskDisabled,
    TaskNotFound,
    TimedOut,
    WebhookNotFound,
)
from ccmsched.core.scheduler.handlers import TaskHandlerRegistry, load_analyzer, make_handlers
from ccmsched.core.scheduler.metrics import StoreMetricSource
from ccmsched.core.webhooks.notifier import DeliveryResult, WebhookNotifier
from ccmsched.core.webhooks.payloads import (
    health_alert_payload,
    optimization_applied_payload,
    task_completed_payload,
    task_failed_payload,
    task_started_payload,
    threshold_triggered_payload,
)
from ccmsched.storage.store import SchedulerStore

SHUTDOWN_POLL_S = 0.1

# Edits to these fields move next_run_at
_RESCHEDULE_FIELDS = frozenset({"schedule_type", "cron_expression", "interval_minutes", "enabled"})


class SchedulerRunner:
    """Orchestrates due-task polling, threshold watchers and execution.

    Parameters
    ----------
    store : SchedulerStore
        Tasks, executions and webhook targets.
    handlers : TaskHandlerRegistry
        task_type → async handler.
    notifier : WebhookNotifier
        Outbound webhook delivery.
    metric_source : StoreMetricSource, optional
        Metric values for threshold watchers; defaults to one over ``store``.
    config : SchedulerConfig, optional
        Loop interval, concurrency cap, timeouts.
    clock : Clock, optional
        Source of "now"; defaults to the wall clock in ``config.timezone``.
    ticker_factory : TickerFactory
        Creates the poll ticker and the threshold watcher tickers.
    """

    def __init__(
        self,
        store: SchedulerStore,
        handlers: TaskHandlerRegistry,
        notifier: WebhookNotifier,
        metric_source: StoreMetricSource | None = None,
        config: SchedulerConfig | None = None,
        clock: Clock | None = None,
        ticker_factory: TickerFactory = start_ticker,
    ):
        cfg = config or SchedulerConfig()
        self.store = store
        self.handlers = handlers
        self.notifier = notifier
        self.metric_source = metric_source or StoreMetricSource(store)
        self.clock = clock or SystemClock(cfg.timezone)

        self.check_interval_s = cfg.check_interval_s
        self.max_concurrent_tasks = cfg.max_concurrent_tasks
        self.task_timeout_s = cfg.task_timeout_s
        self.shutdown_timeout_s = cfg.shutdown_timeout_s
        self.enable_threshold_watchers = cfg.enable_threshold_watchers

        self._ticker_factory = ticker_factory
        self.triggers = TriggerEvaluator(cfg.threshold_check_interval_s, ticker_factory)

        self._running = False
        self._poll: TickHandle | None = None
        self._active: set[str] = set()
        self._inflight: dict[str, asyncio.Task] = {}
        self.started_at: datetime | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_task_ids(self) -> list[str]:
        return sorted(self._active)

    # ════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ════════════════════════════════════════════════════════════

    async def start(self) -> None:
        """Register watchers, start the poll ticker and run one immediate check."""
        if self._running:
            logger.info("Scheduler already running")
            return
        self._running = True
        self.started_at = self.clock.now()

        if self.enable_threshold_watchers:
            for task in self.store.get_enabled_tasks(["threshold"]):
                self._register_watcher(task)

        self._poll = self._ticker_factory(
            self.check_interval_s, self.check_due_tasks, "scheduler:poll"
        )
        logger.info(
            f"Scheduler started (interval={self.check_interval_s:g}s, "
            f"max_concurrent={self.max_concurrent_tasks}, "
            f"watchers={len(self.triggers.watched_task_ids)})"
        )
        await self.check_due_tasks()

    async def stop(self) -> None:
        """Stop polling and watchers; wait for in-flight executions to drain.

        Executions still running after ``shutdown_timeout_s`` are left to
        finish on their own; they are not cancelled.
        """
        if not self._running:
            return
        self._running = False
        if self._poll is not None:
            self._poll.cancel()
            self._poll = None
        self.triggers.stop_all()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.shutdown_timeout_s
        while self._active and loop.time() < deadline:
            await asyncio.sleep(SHUTDOWN_POLL_S)

        if self._active:
            logger.warning(
                f"Scheduler stopped with {len(self._active)} task(s) still running: "
                f"{', '.join(sorted(self._active))}"
            )
        else:
            logger.info("Scheduler stopped")

    # ════════════════════════════════════════════════════════════
    # POLLING
    # ════════════════════════════════════════════════════════════

    async def check_due_tasks(self) -> list[str]:
        """Dispatch due cron/interval tasks up to the free concurrency budget.

        Returns the ids dispatched. Executions run in the background.
        """
        if not self._running:
            return []
        available = self.max_concurrent_tasks - len(self._active)
        if available <= 0:
            logger.debug(f"At capacity ({len(self._active)} running), skipping check")
            return []

        due = self.store.find_due_tasks(self.clock.now(), available)
        dispatched: list[str] = []
        for task in due:
            if task.id in self._active:
                continue
            if len(self._active) >= self.max_concurrent_tasks:
                break
            self._dispatch(task, "scheduled")
            dispatched.append(task.id)

        if dispatched:
            logger.info(f"Dispatched {len(dispatched)} due task(s): {', '.join(dispatched)}")
        else:
            logger.debug("No due tasks")
        return dispatched

    def _dispatch(self, task: ScheduledTask, trigger_type: str) -> None:
        self._active.add(task.id)
        bg = asyncio.create_task(
            self._run_dispatched(task, trigger_type), name=f"task:{task.id}"
        )
        self._inflight[task.id] = bg
        bg.add_done_callback(lambda _, tid=task.id: self._inflight.pop(tid, None))

    async def _run_dispatched(self, task: ScheduledTask, trigger_type: str) -> None:
        try:
            await self._run_claimed(task, trigger_type)
        except Exception as e:
            logger.error(f"Error executing task {task.id}: {e}")
        finally:
            self._active.discard(task.id)

    # ════════════════════════════════════════════════════════════
    # EXECUTION
    # ════════════════════════════════════════════════════════════

    async def execute_task(self, task: ScheduledTask, trigger_type: str = "scheduled") -> str:
        """Run ``task`` now and return the execution id.

        Raises AlreadyRunning when the task has an in-flight execution.
        Handler failures (including TimedOut) are recorded and re-raised.
        """
        if task.id in self._active:
            raise AlreadyRunning(task.id)
        self._active.add(task.id)
        try:
            execution_id, error = await self._run_claimed(task, trigger_type)
        finally:
            self._active.discard(task.id)
        if error is not None:
            raise error
        return execution_id

    async def trigger_task(self, task_id: str, trigger_type: str = "manual") -> str:
        task = self.store.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        if not task.enabled:
            raise TaskDisabled(task_id)
        return await self.execute_task(task, trigger_type)

    async def _run_claimed(
        self, task: ScheduledTask, trigger_type: str
    ) -> tuple[str, Exception | None]:
        """Execute a task whose id is already in the active set.

        Returns (execution_id, error or None). Once the execution record exists,
        errors before or inside the handler are recorded as a failed run.
        """
        started_at = self.clock.now()
        t0 = time.monotonic()
        execution = self.store.create_execution(task, trigger_type, started_at)
        logger.info(f"Task {task.id} ({task.name}) started [{trigger_type}]")

        # from here on every exit finalizes the execution record
        webhooks: list[WebhookConfig] = []
        try:
            webhooks = self.store.get_webhooks_for_task(task)
            if webhooks:
                await self._notify(webhooks, "task_started", task_started_payload(task))

            result = await asyncio.wait_for(
                self.handlers.execute(task), timeout=self.task_timeout_s
            )
            if not isinstance(result, TaskResult):
                result = TaskResult.model_validate(result)
        except asyncio.CancelledError:
            self._finish_failed(task, execution.id, t0, "Execution cancelled")
            raise
        except asyncio.TimeoutError:
            error = TimedOut(self.task_timeout_s)
            await self._on_failure(task, execution.id, t0, error, webhooks)
            return execution.id, error
        except Exception as e:
            await self._on_failure(task, execution.id, t0, e, webhooks)
            return execution.id, e

        await self._on_success(task, execution.id, t0, result, webhooks)
        return execution.id, None

    async def _on_success(self, task, execution_id, t0, result: TaskResult, webhooks) -> None:
        completed_at = self.clock.now()
        duration_ms = _elapsed_ms(t0)
        self.store.finalize_execution(
            execution_id, "completed", completed_at, duration_ms, result=result
        )
        self.store.set_run_times(
            task.id, self._next_run_after(task, completed_at), last_run_at=completed_at
        )
        logger.info(
            f"Task {task.id} ({task.name}) completed in {duration_ms}ms "
            f"(subjects={result.subjects_processed}, issues={result.issues_found}, "
            f"tokens_saved={result.tokens_saved})"
        )

        if not webhooks:
            return
        if task.notify_on_success:
            await self._notify(webhooks, "task_completed", task_completed_payload(
                task, execution_id, duration_ms,
                subjects_processed=result.subjects_processed,
                issues_found=result.issues_found,
                tokens_saved=result.tokens_saved,
            ))
        details = result.details or {}
        if details.get("optimizations_applied"):
            await self._notify(webhooks, "optimization_applied", optimization_applied_payload(
                task, execution_id, details["optimizations_applied"], result.tokens_saved,
            ))
        if details.get("alert"):
            score = details.get("health_score", 0)
            await self._notify(webhooks, "health_alert", health_alert_payload(
                score, details.get("previous_score", score), result.issues_found,
            ))

    async def _on_failure(self, task, execution_id, t0, error: Exception, webhooks) -> None:
        duration_ms, message = self._finish_failed(task, execution_id, t0, str(error) or type(error).__name__)
        logger.error(f"Task {task.id} ({task.name}) failed after {duration_ms}ms: {message}")
        if webhooks and task.notify_on_failure:
            await self._notify(
                webhooks, "task_failed",
                task_failed_payload(task, execution_id, message, duration_ms),
            )

    def _finish_failed(self, task, execution_id, t0, message: str) -> tuple[int, str]:
        completed_at = self.clock.now()
        duration_ms = _elapsed_ms(t0)
        self.store.finalize_execution(
            execution_id, "failed", completed_at, duration_ms, error=message
        )
        self.store.set_run_times(
            task.id, self._next_run_after(task, completed_at), last_run_at=completed_at
        )
        return duration_ms, message

    def _next_run_after(self, task: ScheduledTask, now: datetime) -> datetime | None:
        try:
            return calculate_next_run(task.model_copy(update={"last_run_at": now}), now)
        except NoMatchFound as e:
            logger.warning(f"Task {task.id}: {e}")
            return None

    async def _notify(self, webhooks, event: str, partial: dict[str, Any]) -> list[DeliveryResult]:
        results = await self.notifier.notify(webhooks, event, partial)
        now = self.clock.now()
        for r in results:
            if not r.skipped:
                self.store.record_webhook_result(r.webhook_id, r.success, now)
        return results

    # ════════════════════════════════════════════════════════════
    # THRESHOLD WATCHERS
    # ════════════════════════════════════════════════════════════

    def _register_watcher(self, task: ScheduledTask) -> None:
        metric = task.threshold_metric or ""

        async def fetch_metric() -> float:
            return await self.metric_source.fetch(metric, task.owner_id)

        async def on_trigger(value: float) -> None:
            if task.id in self._active:
                logger.debug(f"Threshold task {task.id} already running, skipping")
                return
            logger.info(f"Threshold triggered for task {task.id}: {metric}={value:g}")
            webhooks = self.store.get_webhooks_for_task(task)
            if webhooks:
                await self._notify(
                    webhooks, "threshold_triggered",
                    threshold_triggered_payload(task, metric, value),
                )
            try:
                await self.execute_task(task, "threshold")
            except AlreadyRunning:
                return

        self.triggers.register_watcher(task, fetch_metric, on_trigger)

    def update_threshold_watcher(self, task_id: str) -> None:
        """Re-register or drop the watcher for ``task_id`` after an edit."""
        task = self.store.get_task(task_id)
        if (
            task is not None
            and task.enabled
            and task.schedule_type == "threshold"
            and self._running
            and self.enable_threshold_watchers
        ):
            self._register_watcher(task)
        else:
            self.triggers.unregister_watcher(task_id)

    # ════════════════════════════════════════════════════════════
    # QUERIES / MAINTENANCE
    # ════════════════════════════════════════════════════════════

    def create_task(self, task: ScheduledTask) -> ScheduledTask:
        """Validate, seed next_run_at, persist, and start a watcher if needed.

        Raises InvalidSchedule for missing schedule fields, and
        InvalidExpression / NoMatchFound for unusable cron expressions.
        """
        validate_schedule(task)
        if task.schedule_type == "cron":
            expression.parse(task.cron_expression or "")
        nxt = calculate_next_run(task, self.clock.now()) if task.enabled else None
        task = self.store.create_task(task.model_copy(update={"next_run_at": nxt}))
        self.update_threshold_watcher(task.id)
        return task

    def update_task(self, task_id: str, **fields: Any) -> ScheduledTask:
        """Apply an edit to a stored task.

        When the schedule or ``enabled`` changes, next_run_at is recomputed
        from now. The threshold watcher is re-registered or dropped to match.

        Raises TaskNotFound, InvalidSchedule, and InvalidExpression /
        NoMatchFound for unusable cron expressions. Nothing is written
        when validation fails.
        """
        existing = self.store.get_task(task_id)
        if existing is None:
            raise TaskNotFound(task_id)
        merged = existing.model_copy(update=fields)
        validate_schedule(merged)
        if merged.schedule_type == "cron":
            expression.parse(merged.cron_expression or "")

        if _RESCHEDULE_FIELDS & fields.keys():
            fields["next_run_at"] = (
                calculate_next_run(merged, self.clock.now()) if merged.enabled else None
            )
        self.store.update_task(task_id, **fields)
        self.update_threshold_watcher(task_id)
        logger.info(f"Task updated: {task_id} ({', '.join(sorted(fields))})")
        return self.store.get_task(task_id)

    def delete_task(self, task_id: str) -> bool:
        self.triggers.unregister_watcher(task_id)
        return self.store.delete_task(task_id)

    def refresh_next_run_times(self) -> int:
        """Recompute next_run_at for every enabled cron/interval task."""
        now = self.clock.now()
        count = 0
        for task in self.store.get_enabled_tasks(POLLED_SCHEDULE_TYPES):
            try:
                nxt = calculate_next_run(task, now)
            except NoMatchFound as e:
                logger.warning(f"Task {task.id}: {e}")
                nxt = None
            self.store.set_run_times(task.id, nxt)
            count += 1
        logger.info(f"Refreshed next run times for {count} task(s)")
        return count

    def get_upcoming_tasks(self, hours: int = 24) -> list[ScheduledTask]:
        now = self.clock.now()
        return self.store.find_upcoming_tasks(now, now + timedelta(hours=hours))

    def get_status(self) -> dict[str, Any]:
        now = self.clock.now()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        upcoming = self.store.find_upcoming_tasks(now, now + timedelta(days=366))
        nxt = upcoming[0] if upcoming else None
        return {
            "running": self._running,
            "started_at": self.started_at,
            "check_interval_s": self.check_interval_s,
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "active_tasks": self.active_task_ids,
            "threshold_watchers": self.triggers.watched_task_ids,
            "tasks": {
                "total": self.store.count_tasks(),
                "enabled": self.store.count_tasks(enabled=True),
            },
            "webhooks": {
                "total": self.store.count_webhooks(),
                "enabled": self.store.count_webhooks(enabled=True),
            },
            "today": self.store.execution_stats(midnight),
            "next_task": (
                {"id": nxt.id, "name": nxt.name, "next_run_at": nxt.next_run_at}
                if nxt else None
            ),
        }

    async def test_webhook(self, webhook_id: str) -> DeliveryResult:
        webhook = self.store.get_webhook(webhook_id)
        if webhook is None:
            raise WebhookNotFound(webhook_id)
        result = await self.notifier.test_webhook(webhook)
        self.store.record_webhook_result(webhook.id, result.success, self.clock.now())
        return result


def _elapsed_ms(t0: float) -> int:
    return int((time.monotonic() - t0) * 1000)


def create_runner(
    config: Config,
    client: httpx.AsyncClient | None = None,
    clock: Clock | None = None,
    ticker_factory: TickerFactory = start_ticker,
) -> SchedulerRunner:
    """Wire store → handlers → notifier → runner from a root Config."""
    store = SchedulerStore(str(config.db_path))
    handlers = make_handlers(
        store,
        analyzer=load_analyzer(config.tasks.analyzer),
        artifact_name=config.tasks.artifact_name,
    )
    notifier = WebhookNotifier(
        base_url=config.webhooks.base_url,
        timeout_s=config.webhooks.timeout_s,
        user_agent=config.webhooks.user_agent,
        client=client,
    )
    return SchedulerRunner(
        store,
        handlers,
        notifier,
        metric_source=StoreMetricSource(store, config.tasks.artifact_name),
        config=config.scheduler,
        clock=clock,
        ticker_factory=ticker_factory,
    )
