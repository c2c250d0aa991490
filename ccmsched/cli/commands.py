"""ccmsched CLI — Typer-based command-line interface."""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ccmsched import __version__

app = typer.Typer(
    name="ccmsched",
    help="ccmsched - scheduler for configuration-management tasks",
    no_args_is_help=True,
)

console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"ccmsched v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=_version_callback, is_eager=True
    ),
) -> None:
    """ccmsched - scheduler for configuration-management tasks."""


def _fmt_time(value) -> str:
    return value.astimezone().strftime("%Y-%m-%d %H:%M") if value else "-"


def _load_runner():
    from ccmsched.core.config.loader import configure_logging, load_config
    from ccmsched.core.scheduler.runner import create_runner

    config = load_config()
    configure_logging(config.logging)
    return create_runner(config)


def _load_store():
    from ccmsched.core.config.loader import load_config
    from ccmsched.storage.store import SchedulerStore

    config = load_config()
    return SchedulerStore(config.database.path)


# ════════════════════════════════════════════════════════════
# run: API server, or the scheduler loop alone
# ════════════════════════════════════════════════════════════


@app.command()
def run(
    port: int | None = typer.Option(None, "--port", "-p", help="Port number (default: server.port)"),
    host: str | None = typer.Option(None, "--host", "-h", help="Host address (default: server.host)"),
    standalone: bool = typer.Option(
        False, "--standalone", help="Run only the scheduler loop, without the API"
    ),
) -> None:
    """Start the API server with the scheduler (uvicorn)."""
    if standalone:
        runner = _load_runner()

        async def _serve() -> None:
            await runner.start()
            try:
                await asyncio.Event().wait()
            finally:
                await runner.stop()

        console.print("[green]Scheduler running[/green] (Ctrl+C to stop)")
        try:
            asyncio.run(_serve())
        except KeyboardInterrupt:
            console.print("\nStopped.")
        return

    import uvicorn

    from ccmsched.core.config.loader import load_config

    server = load_config().server
    host = host or server.host
    port = port or server.port
    console.print(f"[green]Starting ccmsched API on {host}:{port}[/green]")
    uvicorn.run("ccmsched.api.app:app", host=host, port=port)


# ════════════════════════════════════════════════════════════
# status: config + store info
# ════════════════════════════════════════════════════════════


@app.command()
def status() -> None:
    """Show configuration and scheduler store status."""
    from datetime import datetime

    from ccmsched.core.config.loader import load_config
    from ccmsched.storage.store import SchedulerStore

    config = load_config()
    store = SchedulerStore(config.database.path)

    midnight = datetime.now().astimezone().replace(hour=0, minute=0, second=0, microsecond=0)
    today = store.execution_stats(midnight)

    table = Table(title="ccmsched status")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("DB Path", config.database.path)
    table.add_row("Check Interval", f"{config.scheduler.check_interval_s:g}s")
    table.add_row("Max Concurrent", str(config.scheduler.max_concurrent_tasks))
    table.add_row("Tasks", f"{store.count_tasks(enabled=True)} enabled / {store.count_tasks()}")
    table.add_row(
        "Webhooks", f"{store.count_webhooks(enabled=True)} enabled / {store.count_webhooks()}"
    )
    table.add_row(
        "Today",
        f"{today['completed']} completed, {today['failed']} failed, {today['running']} running",
    )

    console.print(table)


# ════════════════════════════════════════════════════════════
# cron: expression helpers (sub-command group)
# ════════════════════════════════════════════════════════════

cron_app = typer.Typer(help="Inspect cron expressions")
app.add_typer(cron_app, name="cron")


@cron_app.command("describe")
def cron_describe(expr: str = typer.Argument(help='Cron expression, e.g. "0 9 * * 1"')) -> None:
    """Print a human-readable description."""
    from ccmsched.core.cron.expression import describe

    console.print(describe(expr))


@cron_app.command("next")
def cron_next(
    expr: str = typer.Argument(help="Cron expression"),
    count: int = typer.Option(5, "--count", "-n", help="Number of run times"),
) -> None:
    """List the next run times (local time)."""
    from datetime import datetime

    from ccmsched.core.cron.expression import next_run
    from ccmsched.core.errors import InvalidExpression, NoMatchFound

    cursor = datetime.now().astimezone()
    try:
        for _ in range(count):
            cursor = next_run(expr, cursor)
            console.print(cursor.strftime("%Y-%m-%d %H:%M %a"))
    except (InvalidExpression, NoMatchFound) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)


@cron_app.command("validate")
def cron_validate(expr: str = typer.Argument(help="Cron expression")) -> None:
    """Exit non-zero when the expression is invalid."""
    from ccmsched.core.cron.expression import validate

    result = validate(expr)
    if result.valid:
        console.print(f"[green]Valid:[/green] {expr}")
    else:
        console.print(f"[red]Invalid:[/red] {result.error}")
        raise typer.Exit(code=1)


# ════════════════════════════════════════════════════════════
# task: scheduled task management (sub-command group)
# ════════════════════════════════════════════════════════════

task_app = typer.Typer(help="Manage scheduled tasks")
app.add_typer(task_app, name="task")


@task_app.command("list")
def task_list() -> None:
    """List all scheduled tasks."""
    from ccmsched.core.cron.triggers import describe_schedule

    store = _load_store()
    tasks = store.list_tasks()

    if not tasks:
        console.print("[dim]No scheduled tasks found.[/dim]")
        return

    table = Table(title="Scheduled Tasks")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Type", style="blue")
    table.add_column("Schedule", style="yellow")
    table.add_column("Next Run", style="magenta")
    table.add_column("Enabled", style="green")

    for t in tasks:
        table.add_row(
            t.id, t.name, t.task_type, describe_schedule(t), _fmt_time(t.next_run_at), str(t.enabled)
        )

    console.print(table)


@task_app.command("add")
def task_add(
    name: str = typer.Argument(help="Task name"),
    task_type: str = typer.Option("analyze", "--type", "-t", help="analyze | optimize | health_check"),
    cron: str | None = typer.Option(None, "--cron", "-c", help="Cron expression"),
    every: int | None = typer.Option(None, "--every", "-e", help="Interval in minutes"),
    metric: str | None = typer.Option(None, "--metric", help="Threshold metric"),
    operator: str | None = typer.Option(None, "--operator", help="lt | gt | eq | lte | gte"),
    value: float | None = typer.Option(None, "--value", help="Threshold value"),
    subject: list[str] | None = typer.Option(None, "--subject", "-s", help="Subject path (repeatable)"),
    owner: str | None = typer.Option(None, "--owner", help="Owner id"),
    notify_success: bool = typer.Option(False, "--notify-success", help="Send task_completed webhooks"),
) -> None:
    """Add a task. Schedule comes from --cron, --every or --metric/--operator/--value."""
    from pydantic import ValidationError

    from ccmsched.core.errors import InvalidExpression, NoMatchFound
    from ccmsched.storage.models import TaskCreate

    if cron:
        schedule_type = "cron"
    elif every:
        schedule_type = "interval"
    elif metric:
        schedule_type = "threshold"
    else:
        schedule_type = "manual"

    try:
        body = TaskCreate(
            name=name,
            owner_id=owner,
            task_type=task_type,
            schedule_type=schedule_type,
            cron_expression=cron,
            interval_minutes=every,
            threshold_metric=metric,
            threshold_operator=operator,
            threshold_value=value,
            subject_filter=subject or None,
            notify_on_success=notify_success,
        )
        task = _load_runner().create_task(body.to_task())
    except (ValidationError, InvalidExpression, NoMatchFound) as e:
        console.print(f"[red]Cannot create task:[/red] {escape(str(e))}")
        raise typer.Exit(code=1)

    console.print(f"[green]Task created:[/green] {task.id} ({task.name})")
    if task.next_run_at:
        console.print(f"  [dim]Next run: {_fmt_time(task.next_run_at)}[/dim]")


@task_app.command("update")
def task_update(
    task_id: str = typer.Argument(help="Task ID to edit"),
    name: str | None = typer.Option(None, "--name", help="New name"),
    cron: str | None = typer.Option(None, "--cron", "-c", help="Switch to this cron expression"),
    every: int | None = typer.Option(None, "--every", "-e", help="Switch to this interval in minutes"),
    notify_success: bool | None = typer.Option(
        None, "--notify-success/--no-notify-success", help="Send task_completed webhooks"
    ),
) -> None:
    """Edit a task. --cron or --every changes its schedule and next run."""
    from ccmsched.core.errors import SchedulerError

    fields = {}
    if name:
        fields["name"] = name
    if cron:
        fields.update(schedule_type="cron", cron_expression=cron)
    elif every:
        fields.update(schedule_type="interval", interval_minutes=every)
    if notify_success is not None:
        fields["notify_on_success"] = notify_success
    if not fields:
        console.print("[yellow]Nothing to update.[/yellow]")
        raise typer.Exit(code=1)

    try:
        task = _load_runner().update_task(task_id, **fields)
    except SchedulerError as e:
        console.print(f"[red]Cannot update task:[/red] {escape(str(e))}")
        raise typer.Exit(code=1)

    console.print(f"[green]Task updated:[/green] {task.id} ({task.name})")
    console.print(f"  [dim]Next run: {_fmt_time(task.next_run_at)}[/dim]")


def _set_task_enabled(task_id: str, enabled: bool) -> None:
    from ccmsched.core.errors import TaskNotFound

    try:
        task = _load_runner().update_task(task_id, enabled=enabled)
    except TaskNotFound as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    state = "enabled" if enabled else "disabled"
    console.print(f"[green]Task {state}:[/green] {task.id} ({task.name})")
    if task.next_run_at:
        console.print(f"  [dim]Next run: {_fmt_time(task.next_run_at)}[/dim]")


@task_app.command("enable")
def task_enable(task_id: str = typer.Argument(help="Task ID")) -> None:
    """Enable a task and schedule its next run."""
    _set_task_enabled(task_id, True)


@task_app.command("disable")
def task_disable(task_id: str = typer.Argument(help="Task ID")) -> None:
    """Disable a task; it will not run until enabled again."""
    _set_task_enabled(task_id, False)


@task_app.command("refresh")
def task_refresh() -> None:
    """Recompute next run times for all enabled cron/interval tasks."""
    count = _load_runner().refresh_next_run_times()
    console.print(f"[green]Refreshed {count} task(s)[/green]")


@task_app.command("remove")
def task_remove(task_id: str = typer.Argument(help="Task ID to remove")) -> None:
    """Remove a task and its execution history."""
    store = _load_store()
    if store.delete_task(task_id):
        console.print(f"[green]Removed task:[/green] {task_id}")
    else:
        console.print(f"[red]Task not found:[/red] {task_id}")
        raise typer.Exit(code=1)


@task_app.command("run")
def task_run(task_id: str = typer.Argument(help="Task ID to run now")) -> None:
    """Run a task immediately and wait for it."""
    from ccmsched.core.errors import SchedulerError

    runner = _load_runner()
    try:
        execution_id = asyncio.run(runner.trigger_task(task_id, trigger_type="manual"))
    except SchedulerError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    except Exception as e:
        console.print(f"[red]Task failed:[/red] {e}")
        raise typer.Exit(code=1)

    execution = runner.store.get_execution(execution_id)
    console.print(f"[green]Task completed:[/green] execution {execution_id}")
    if execution is not None:
        console.print(
            f"  [dim]{execution.subjects_processed} subjects, "
            f"{execution.issues_found} issues, {execution.tokens_saved} tokens saved, "
            f"{execution.duration_ms}ms[/dim]"
        )


# ════════════════════════════════════════════════════════════
# webhook: notification targets (sub-command group)
# ════════════════════════════════════════════════════════════

webhook_app = typer.Typer(help="Manage webhook targets")
app.add_typer(webhook_app, name="webhook")


@webhook_app.command("list")
def webhook_list() -> None:
    """List webhook targets."""
    store = _load_store()
    webhooks = store.list_webhooks()

    if not webhooks:
        console.print("[dim]No webhooks found.[/dim]")
        return

    table = Table(title="Webhooks")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Provider", style="blue")
    table.add_column("Events", style="yellow")
    table.add_column("Failures", style="red")
    table.add_column("Enabled", style="green")

    for w in webhooks:
        table.add_row(
            w.id, w.name, w.provider, ", ".join(w.event_types) or "all",
            str(w.failure_count), str(w.enabled),
        )

    console.print(table)


@webhook_app.command("add")
def webhook_add(
    name: str = typer.Argument(help="Display name"),
    url: str = typer.Argument(help="Webhook URL"),
    provider: str = typer.Option("generic", "--provider", "-p", help="slack | discord | n8n | generic"),
    event: list[str] | None = typer.Option(None, "--event", "-e", help="Event type (repeatable)"),
    owner: str | None = typer.Option(None, "--owner", help="Owner id (omit for global)"),
) -> None:
    """Add a webhook target."""
    from pydantic import ValidationError

    from ccmsched.storage.models import WebhookCreate

    try:
        body = WebhookCreate(
            name=name, url=url, provider=provider, event_types=event or [], owner_id=owner
        )
    except ValidationError as e:
        console.print(f"[red]Invalid webhook:[/red] {escape(str(e))}")
        raise typer.Exit(code=1)

    webhook = _load_store().add_webhook(body.to_webhook())
    console.print(f"[green]Webhook added:[/green] {webhook.id} ({webhook.provider})")


@webhook_app.command("test")
def webhook_test(webhook_id: str = typer.Argument(help="Webhook ID")) -> None:
    """Send a sample notification."""
    from ccmsched.core.errors import WebhookNotFound

    runner = _load_runner()
    try:
        result = asyncio.run(runner.test_webhook(webhook_id))
    except WebhookNotFound as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    if result.success:
        console.print(f"[green]Delivered[/green] (HTTP {result.status_code})")
    else:
        console.print(f"[red]Delivery failed:[/red] {result.error}")
        raise typer.Exit(code=1)


def _set_webhook_enabled(webhook_id: str, enabled: bool) -> None:
    if not _load_store().update_webhook(webhook_id, enabled=enabled):
        console.print(f"[red]Webhook not found:[/red] {webhook_id}")
        raise typer.Exit(code=1)
    state = "enabled" if enabled else "disabled"
    console.print(f"[green]Webhook {state}:[/green] {webhook_id}")


@webhook_app.command("enable")
def webhook_enable(webhook_id: str = typer.Argument(help="Webhook ID")) -> None:
    """Resume deliveries to a webhook."""
    _set_webhook_enabled(webhook_id, True)


@webhook_app.command("disable")
def webhook_disable(webhook_id: str = typer.Argument(help="Webhook ID")) -> None:
    """Stop deliveries to a webhook without removing it."""
    _set_webhook_enabled(webhook_id, False)
