"""Scheduler API routes — status, tasks, executions, webhooks, cron helpers."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger

from ccmsched import __version__
from ccmsched.api.deps import get_runner, get_store
from ccmsched.core.cron import expression
from ccmsched.core.cron.triggers import describe_schedule
from ccmsched.core.cron.types import ScheduledTask, TaskExecution, WebhookConfig
from ccmsched.core.errors import (
    AlreadyRunning,
    InvalidExpression,
    InvalidSchedule,
    NoMatchFound,
    TaskDisabled,
    TaskNotFound,
    WebhookNotFound,
)
from ccmsched.core.scheduler.runner import SchedulerRunner
from ccmsched.core.webhooks.notifier import DeliveryResult
from ccmsched.storage.models import (
    CronDescribeResponse,
    HealthResponse,
    TaskCreate,
    TaskRunResponse,
    TaskUpdate,
    UpcomingTask,
    WebhookCreate,
    WebhookUpdate,
)
from ccmsched.storage.store import SchedulerStore

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health(runner: SchedulerRunner = Depends(get_runner)):
    """Health check."""
    return HealthResponse(status="ok", version=__version__, scheduler_running=runner.running)


# ── Scheduler ────────────────────────────────────────────────


@router.get("/scheduler/status")
async def scheduler_status(runner: SchedulerRunner = Depends(get_runner)):
    """Runner state, task/webhook counts, today's executions, next task."""
    return runner.get_status()


@router.get("/scheduler/upcoming", response_model=list[UpcomingTask])
async def upcoming_tasks(
    hours: int = Query(default=24, ge=1, le=168),
    runner: SchedulerRunner = Depends(get_runner),
):
    """Enabled cron/interval tasks due within the next ``hours``."""
    return [
        UpcomingTask(
            id=t.id,
            name=t.name,
            task_type=t.task_type,
            schedule_type=t.schedule_type,
            next_run_at=t.next_run_at,
            schedule=describe_schedule(t),
        )
        for t in runner.get_upcoming_tasks(hours)
    ]


@router.post("/scheduler/refresh")
async def refresh_schedule(runner: SchedulerRunner = Depends(get_runner)):
    """Recompute next_run_at for every enabled cron/interval task."""
    return {"refreshed": runner.refresh_next_run_times()}


@router.get("/scheduler/cron/describe", response_model=CronDescribeResponse)
async def describe_cron(
    expr: str = Query(alias="expression"),
    count: int = Query(default=5, ge=0, le=50),
    runner: SchedulerRunner = Depends(get_runner),
):
    """Validate an expression, describe it and list its next run times."""
    check = expression.validate(expr)
    next_runs = []
    if check.valid:
        cursor = runner.clock.now()
        try:
            for _ in range(count):
                cursor = expression.next_run(expr, cursor)
                next_runs.append(cursor)
        except NoMatchFound:
            pass
    return CronDescribeResponse(
        expression=expr,
        valid=check.valid,
        error=check.error,
        description=expression.describe(expr),
        next_runs=next_runs,
    )


# ── Tasks ────────────────────────────────────────────────────


@router.get("/scheduler/tasks", response_model=list[ScheduledTask])
async def list_tasks(
    owner_id: str | None = None,
    enabled: bool | None = None,
    store: SchedulerStore = Depends(get_store),
):
    return store.list_tasks(owner_id=owner_id, enabled=enabled)


@router.post("/scheduler/tasks", response_model=ScheduledTask, status_code=201)
async def create_task(body: TaskCreate, runner: SchedulerRunner = Depends(get_runner)):
    """Create a task; next_run_at is seeded from its schedule."""
    try:
        return runner.create_task(body.to_task())
    except (InvalidExpression, NoMatchFound) as e:
        raise HTTPException(status_code=400, detail=f"Invalid cron expression: {e}")


@router.get("/scheduler/tasks/{task_id}", response_model=ScheduledTask)
async def get_task(task_id: str, store: SchedulerStore = Depends(get_store)):
    task = store.get_task(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@router.patch("/scheduler/tasks/{task_id}", response_model=ScheduledTask)
async def update_task(
    task_id: str, body: TaskUpdate, runner: SchedulerRunner = Depends(get_runner)
):
    """Edit a task. Schedule changes recompute next_run_at."""
    try:
        return runner.update_task(task_id, **body.changes())
    except TaskNotFound:
        raise HTTPException(status_code=404, detail="Task not found")
    except InvalidSchedule as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (InvalidExpression, NoMatchFound) as e:
        raise HTTPException(status_code=400, detail=f"Invalid cron expression: {e}")


@router.delete("/scheduler/tasks/{task_id}")
async def delete_task(task_id: str, runner: SchedulerRunner = Depends(get_runner)):
    if not runner.delete_task(task_id):
        raise HTTPException(status_code=404, detail="Task not found")
    return {"success": True, "task_id": task_id}


@router.post("/scheduler/tasks/{task_id}/run", response_model=TaskRunResponse)
async def run_task(task_id: str, runner: SchedulerRunner = Depends(get_runner)):
    """Run a task now and wait for it to finish."""
    try:
        execution_id = await runner.trigger_task(task_id, trigger_type="api")
    except TaskNotFound:
        raise HTTPException(status_code=404, detail="Task not found")
    except TaskDisabled as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Manual run of task {task_id} failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return TaskRunResponse(task_id=task_id, execution_id=execution_id)


# ── Executions ───────────────────────────────────────────────


@router.get("/scheduler/executions", response_model=list[TaskExecution])
async def list_executions(
    task_id: str | None = None,
    status: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    store: SchedulerStore = Depends(get_store),
):
    return store.list_executions(task_id=task_id, status=status, limit=limit)


@router.get("/scheduler/executions/{execution_id}", response_model=TaskExecution)
async def get_execution(execution_id: str, store: SchedulerStore = Depends(get_store)):
    execution = store.get_execution(execution_id)
    if not execution:
        raise HTTPException(status_code=404, detail="Execution not found")
    return execution


# ── Webhooks ─────────────────────────────────────────────────


@router.get("/scheduler/webhooks", response_model=list[WebhookConfig])
async def list_webhooks(
    owner_id: str | None = None,
    store: SchedulerStore = Depends(get_store),
):
    return store.list_webhooks(owner_id=owner_id)


@router.post("/scheduler/webhooks", response_model=WebhookConfig, status_code=201)
async def create_webhook(body: WebhookCreate, store: SchedulerStore = Depends(get_store)):
    return store.add_webhook(body.to_webhook())


@router.get("/scheduler/webhooks/{webhook_id}", response_model=WebhookConfig)
async def get_webhook(webhook_id: str, store: SchedulerStore = Depends(get_store)):
    webhook = store.get_webhook(webhook_id)
    if not webhook:
        raise HTTPException(status_code=404, detail="Webhook not found")
    return webhook


@router.patch("/scheduler/webhooks/{webhook_id}", response_model=WebhookConfig)
async def update_webhook(
    webhook_id: str, body: WebhookUpdate, store: SchedulerStore = Depends(get_store)
):
    if not store.update_webhook(webhook_id, **body.changes()):
        raise HTTPException(status_code=404, detail="Webhook not found")
    return store.get_webhook(webhook_id)


@router.delete("/scheduler/webhooks/{webhook_id}")
async def delete_webhook(webhook_id: str, store: SchedulerStore = Depends(get_store)):
    if not store.delete_webhook(webhook_id):
        raise HTTPException(status_code=404, detail="Webhook not found")
    return {"success": True, "webhook_id": webhook_id}


@router.post("/scheduler/webhooks/{webhook_id}/test", response_model=DeliveryResult)
async def test_webhook(webhook_id: str, runner: SchedulerRunner = Depends(get_runner)):
    """Send a sample notification; updates failure_count / last_used_at."""
    try:
        return await runner.test_webhook(webhook_id)
    except WebhookNotFound:
        raise HTTPException(status_code=404, detail="Webhook not found")
