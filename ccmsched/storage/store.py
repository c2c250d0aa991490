"""SQLite-backed scheduler store.

Six tables:
    scheduled_tasks, task_executions, webhook_configs,
    subjects, context_analyses, health_scores

Timestamps are stored as fixed-width UTC strings so that SQL string
comparison orders them correctly.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from loguru import logger

from ccmsched.core.cron.types import (
    POLLED_SCHEDULE_TYPES,
    ScheduledTask,
    TaskExecution,
    TaskResult,
    WebhookConfig,
)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Columns a caller may change through update_task()
_TASK_UPDATABLE = frozenset({
    "owner_id", "name", "description", "task_type", "schedule_type",
    "cron_expression", "interval_minutes", "threshold_metric",
    "threshold_operator", "threshold_value", "subject_filter", "task_config",
    "notify_on_success", "notify_on_failure", "webhook_ids", "enabled",
    "last_run_at", "next_run_at",
})
_JSON_TASK_COLUMNS = frozenset({"subject_filter", "task_config", "webhook_ids"})
_TS_TASK_COLUMNS = frozenset({"last_run_at", "next_run_at"})
_WEBHOOK_UPDATABLE = frozenset({
    "owner_id", "name", "provider", "url", "config", "event_types", "enabled",
})


def new_id() -> str:
    return str(uuid.uuid4())[:8]


def to_db_time(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _dumps(value: Any) -> str | None:
    return None if value is None else json.dumps(value, ensure_ascii=False)


def _loads(value: str | None, default: Any = None) -> Any:
    if not value:
        return default
    return json.loads(value)


class SchedulerStore:
    """SQLite persistence for tasks, executions, webhooks and metric sources."""

    def __init__(self, db_path: str = "data/ccmsched.db"):
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.info(f"SchedulerStore initialized: {db_path}")

    @contextmanager
    def _get_conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._get_conn() as conn:
            conn.executescript(_SCHEMA)
            conn.commit()

    # ════════════════════════════════════════════════════════════
    # SCHEDULED TASKS
    # ════════════════════════════════════════════════════════════

    def create_task(self, task: ScheduledTask) -> ScheduledTask:
        """Insert ``task``. An empty id is replaced with a generated one."""
        task = task.model_copy(update={
            "id": task.id or new_id(),
            "created_at": task.created_at or datetime.now(timezone.utc),
        })
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO scheduled_tasks
                   (id, owner_id, name, description, task_type, schedule_type,
                    cron_expression, interval_minutes, threshold_metric,
                    threshold_operator, threshold_value, subject_filter, task_config,
                    notify_on_success, notify_on_failure, webhook_ids, enabled,
                    last_run_at, next_run_at, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    task.id, task.owner_id, task.name, task.description,
                    task.task_type, task.schedule_type, task.cron_expression,
                    task.interval_minutes, task.threshold_metric,
                    task.threshold_operator, task.threshold_value,
                    _dumps(task.subject_filter), _dumps(task.task_config),
                    int(task.notify_on_success), int(task.notify_on_failure),
                    _dumps(task.webhook_ids), int(task.enabled),
                    to_db_time(task.last_run_at), to_db_time(task.next_run_at),
                    to_db_time(task.created_at),
                ),
            )
            conn.commit()
        logger.info(f"Task created: {task.id} ({task.name}, {task.schedule_type})")
        return task

    def get_task(self, task_id: str) -> ScheduledTask | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM scheduled_tasks WHERE id = ?", (task_id,)
            ).fetchone()
        return _row_to_task(row) if row else None

    def list_tasks(
        self, owner_id: str | None = None, enabled: bool | None = None
    ) -> list[ScheduledTask]:
        clauses, params = [], []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if enabled is not None:
            clauses.append("enabled = ?")
            params.append(int(enabled))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM scheduled_tasks {where} ORDER BY created_at", params
            ).fetchall()
        return [_row_to_task(r) for r in rows]

    def update_task(self, task_id: str, **fields: Any) -> bool:
        """Update columns of a task. Returns True if the task existed."""
        unknown = set(fields) - _TASK_UPDATABLE
        if unknown:
            raise ValueError(f"Unknown task fields: {sorted(unknown)}")
        if not fields:
            return self.get_task(task_id) is not None

        assignments, params = [], []
        for col, value in fields.items():
            if col in _JSON_TASK_COLUMNS:
                value = _dumps(value)
            elif col in _TS_TASK_COLUMNS:
                value = to_db_time(value)
            elif isinstance(value, bool):
                value = int(value)
            assignments.append(f"{col} = ?")
            params.append(value)
        params.append(task_id)

        with self._get_conn() as conn:
            cur = conn.execute(
                f"UPDATE scheduled_tasks SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
            conn.commit()
        return cur.rowcount > 0

    def delete_task(self, task_id: str) -> bool:
        with self._get_conn() as conn:
            conn.execute("DELETE FROM task_executions WHERE task_id = ?", (task_id,))
            cur = conn.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
            conn.commit()
        return cur.rowcount > 0

    def set_run_times(
        self,
        task_id: str,
        next_run_at: datetime | None,
        last_run_at: datetime | None = None,
    ) -> None:
        """Persist schedule bookkeeping. ``last_run_at=None`` leaves it unchanged."""
        with self._get_conn() as conn:
            if last_run_at is None:
                conn.execute(
                    "UPDATE scheduled_tasks SET next_run_at = ? WHERE id = ?",
                    (to_db_time(next_run_at), task_id),
                )
            else:
                conn.execute(
                    """UPDATE scheduled_tasks
                       SET last_run_at = ?, next_run_at = ?
                       WHERE id = ?""",
                    (to_db_time(last_run_at), to_db_time(next_run_at), task_id),
                )
            conn.commit()

    def find_due_tasks(self, now: datetime, limit: int) -> list[ScheduledTask]:
        """Enabled cron/interval tasks with next_run_at <= now, oldest due first."""
        if limit <= 0:
            return []
        with self._get_conn() as conn:
            rows = conn.execute(
                f"""SELECT * FROM scheduled_tasks
                    WHERE enabled = 1
                      AND schedule_type IN ({_placeholders(POLLED_SCHEDULE_TYPES)})
                      AND next_run_at IS NOT NULL
                      AND next_run_at <= ?
                    ORDER BY next_run_at ASC
                    LIMIT ?""",
                (*POLLED_SCHEDULE_TYPES, to_db_time(now), limit),
            ).fetchall()
        return [_row_to_task(r) for r in rows]

    def find_upcoming_tasks(self, start: datetime, end: datetime) -> list[ScheduledTask]:
        with self._get_conn() as conn:
            rows = conn.execute(
                f"""SELECT * FROM scheduled_tasks
                    WHERE enabled = 1
                      AND schedule_type IN ({_placeholders(POLLED_SCHEDULE_TYPES)})
                      AND next_run_at >= ? AND next_run_at <= ?
                    ORDER BY next_run_at ASC""",
                (*POLLED_SCHEDULE_TYPES, to_db_time(start), to_db_time(end)),
            ).fetchall()
        return [_row_to_task(r) for r in rows]

    def get_enabled_tasks(self, schedule_types: Iterable[str]) -> list[ScheduledTask]:
        types = tuple(schedule_types)
        with self._get_conn() as conn:
            rows = conn.execute(
                f"""SELECT * FROM scheduled_tasks
                    WHERE enabled = 1 AND schedule_type IN ({_placeholders(types)})
                    ORDER BY created_at""",
                types,
            ).fetchall()
        return [_row_to_task(r) for r in rows]

    def count_tasks(self, enabled: bool | None = None) -> int:
        with self._get_conn() as conn:
            if enabled is None:
                row = conn.execute("SELECT COUNT(*) FROM scheduled_tasks").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM scheduled_tasks WHERE enabled = ?", (int(enabled),)
                ).fetchone()
        return row[0]

    # ════════════════════════════════════════════════════════════
    # EXECUTIONS
    # ════════════════════════════════════════════════════════════

    def create_execution(
        self, task: ScheduledTask, trigger_type: str, started_at: datetime
    ) -> TaskExecution:
        execution = TaskExecution(
            id=new_id(),
            task_id=task.id,
            owner_id=task.owner_id,
            status="running",
            trigger_type=trigger_type,
            started_at=started_at,
        )
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO task_executions
                   (id, task_id, owner_id, status, trigger_type, started_at)
                   VALUES (?, ?, ?, 'running', ?, ?)""",
                (execution.id, task.id, task.owner_id, trigger_type, to_db_time(started_at)),
            )
            conn.commit()
        return execution

    def finalize_execution(
        self,
        execution_id: str,
        status: str,
        completed_at: datetime,
        duration_ms: int,
        result: TaskResult | None = None,
        error: str | None = None,
    ) -> bool:
        """Move a running execution to completed/failed. Only the first call wins."""
        if status not in ("completed", "failed"):
            raise ValueError(f"Invalid final status: {status}")
        result = result or TaskResult()
        with self._get_conn() as conn:
            cur = conn.execute(
                """UPDATE task_executions
                   SET status = ?, completed_at = ?, duration_ms = ?, result = ?,
                       subjects_processed = ?, issues_found = ?, tokens_saved = ?,
                       error = ?
                   WHERE id = ? AND status = 'running'""",
                (
                    status, to_db_time(completed_at), duration_ms,
                    json.dumps(result.model_dump(), ensure_ascii=False, default=str)
                    if status == "completed" else None,
                    result.subjects_processed, result.issues_found,
                    result.tokens_saved, error, execution_id,
                ),
            )
            conn.commit()
        return cur.rowcount > 0

    def get_execution(self, execution_id: str) -> TaskExecution | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM task_executions WHERE id = ?", (execution_id,)
            ).fetchone()
        return _row_to_execution(row) if row else None

    def list_executions(
        self,
        task_id: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> list[TaskExecution]:
        clauses, params = [], []
        if task_id is not None:
            clauses.append("task_id = ?")
            params.append(task_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._get_conn() as conn:
            rows = conn.execute(
                f"""SELECT * FROM task_executions {where}
                    ORDER BY started_at DESC LIMIT ?""",
                (*params, limit),
            ).fetchall()
        return [_row_to_execution(r) for r in rows]

    def execution_stats(self, since: datetime) -> dict[str, int]:
        """Counts and totals for executions started at or after ``since``."""
        with self._get_conn() as conn:
            row = conn.execute(
                """SELECT COUNT(*) AS total,
                          COALESCE(SUM(status = 'completed'), 0) AS completed,
                          COALESCE(SUM(status = 'failed'), 0) AS failed,
                          COALESCE(SUM(status = 'running'), 0) AS running,
                          COALESCE(SUM(tokens_saved), 0) AS tokens_saved,
                          COALESCE(SUM(subjects_processed), 0) AS subjects_processed
                   FROM task_executions WHERE started_at >= ?""",
                (to_db_time(since),),
            ).fetchone()
        return dict(row)

    # ════════════════════════════════════════════════════════════
    # WEBHOOKS
    # ════════════════════════════════════════════════════════════

    def add_webhook(self, webhook: WebhookConfig) -> WebhookConfig:
        webhook = webhook.model_copy(update={"id": webhook.id or new_id()})
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO webhook_configs
                   (id, owner_id, name, provider, url, config, event_types, enabled)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    webhook.id, webhook.owner_id, webhook.name, webhook.provider,
                    webhook.url, _dumps(webhook.config), _dumps(webhook.event_types),
                    int(webhook.enabled),
                ),
            )
            conn.commit()
        logger.info(f"Webhook added: {webhook.id} ({webhook.provider})")
        return webhook

    def get_webhook(self, webhook_id: str) -> WebhookConfig | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM webhook_configs WHERE id = ?", (webhook_id,)
            ).fetchone()
        return _row_to_webhook(row) if row else None

    def list_webhooks(self, owner_id: str | None = None) -> list[WebhookConfig]:
        with self._get_conn() as conn:
            if owner_id is None:
                rows = conn.execute(
                    "SELECT * FROM webhook_configs ORDER BY created_at"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM webhook_configs WHERE owner_id = ? ORDER BY created_at",
                    (owner_id,),
                ).fetchall()
        return [_row_to_webhook(r) for r in rows]

    def update_webhook(self, webhook_id: str, **fields: Any) -> bool:
        """Update columns of a webhook. Returns True if the webhook existed."""
        unknown = set(fields) - _WEBHOOK_UPDATABLE
        if unknown:
            raise ValueError(f"Unknown webhook fields: {sorted(unknown)}")
        if not fields:
            return self.get_webhook(webhook_id) is not None

        assignments, params = [], []
        for col, value in fields.items():
            if col in ("config", "event_types"):
                value = _dumps(value)
            elif isinstance(value, bool):
                value = int(value)
            assignments.append(f"{col} = ?")
            params.append(value)
        params.append(webhook_id)

        with self._get_conn() as conn:
            cur = conn.execute(
                f"UPDATE webhook_configs SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
            conn.commit()
        return cur.rowcount > 0

    def delete_webhook(self, webhook_id: str) -> bool:
        with self._get_conn() as conn:
            cur = conn.execute("DELETE FROM webhook_configs WHERE id = ?", (webhook_id,))
            conn.commit()
        return cur.rowcount > 0

    def get_webhooks_for_task(self, task: ScheduledTask) -> list[WebhookConfig]:
        """Explicit webhook ids if the task lists them, else global + owner webhooks."""
        with self._get_conn() as conn:
            if task.webhook_ids is None:
                rows = conn.execute(
                    """SELECT * FROM webhook_configs
                       WHERE enabled = 1 AND (owner_id IS NULL OR owner_id = ?)
                       ORDER BY created_at""",
                    (task.owner_id,),
                ).fetchall()
            elif not task.webhook_ids:
                rows = []
            else:
                rows = conn.execute(
                    f"""SELECT * FROM webhook_configs
                        WHERE enabled = 1 AND id IN ({_placeholders(task.webhook_ids)})
                        ORDER BY created_at""",
                    task.webhook_ids,
                ).fetchall()
        return [_row_to_webhook(r) for r in rows]

    def record_webhook_result(self, webhook_id: str, success: bool, at: datetime) -> None:
        """Reset failure_count on success, increment it on failure."""
        with self._get_conn() as conn:
            if success:
                conn.execute(
                    """UPDATE webhook_configs
                       SET failure_count = 0, last_used_at = ? WHERE id = ?""",
                    (to_db_time(at), webhook_id),
                )
            else:
                conn.execute(
                    """UPDATE webhook_configs
                       SET failure_count = failure_count + 1 WHERE id = ?""",
                    (webhook_id,),
                )
            conn.commit()

    def count_webhooks(self, enabled: bool | None = None) -> int:
        with self._get_conn() as conn:
            if enabled is None:
                row = conn.execute("SELECT COUNT(*) FROM webhook_configs").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM webhook_configs WHERE enabled = ?", (int(enabled),)
                ).fetchone()
        return row[0]

    # ════════════════════════════════════════════════════════════
    # SUBJECTS + ANALYSES (task handler / metric sources)
    # ════════════════════════════════════════════════════════════

    def add_subject(self, path: str, owner_id: str | None = None) -> None:
        with self._get_conn() as conn:
            conn.execute(
                """INSERT OR IGNORE INTO subjects (owner_id, path) VALUES (?, ?)""",
                (owner_id or "", path),
            )
            conn.commit()

    def get_subjects(self, owner_id: str | None = None) -> list[str]:
        """Registered subject paths; all owners when ``owner_id`` is None."""
        with self._get_conn() as conn:
            if owner_id is None:
                rows = conn.execute("SELECT DISTINCT path FROM subjects ORDER BY path").fetchall()
            else:
                rows = conn.execute(
                    "SELECT path FROM subjects WHERE owner_id = ? ORDER BY path", (owner_id,)
                ).fetchall()
        return [r["path"] for r in rows]

    def upsert_analysis(
        self,
        subject_path: str,
        artifact_path: str,
        optimization_score: float,
        total_tokens: int,
        total_lines: int,
        issues: list[Any],
        estimated_savings: int,
        owner_id: str | None = None,
        status: str = "analyzed",
    ) -> None:
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO context_analyses
                   (owner_id, subject_path, artifact_path, optimization_score,
                    total_tokens, total_lines, issue_count, issues,
                    estimated_savings, status)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(owner_id, subject_path, artifact_path) DO UPDATE SET
                       optimization_score = excluded.optimization_score,
                       total_tokens = excluded.total_tokens,
                       total_lines = excluded.total_lines,
                       issue_count = excluded.issue_count,
                       issues = excluded.issues,
                       estimated_savings = excluded.estimated_savings,
                       status = excluded.status,
                       analyzed_at = CURRENT_TIMESTAMP""",
                (
                    owner_id or "", subject_path, artifact_path, optimization_score,
                    total_tokens, total_lines, len(issues),
                    json.dumps(issues, ensure_ascii=False, default=str),
                    estimated_savings, status,
                ),
            )
            conn.commit()

    def set_analysis_status(
        self, subject_path: str, status: str, owner_id: str | None = None
    ) -> None:
        with self._get_conn() as conn:
            conn.execute(
                """UPDATE context_analyses SET status = ?
                   WHERE owner_id = ? AND subject_path = ?""",
                (status, owner_id or "", subject_path),
            )
            conn.commit()

    def get_analyses(self, owner_id: str | None = None) -> list[dict[str, Any]]:
        with self._get_conn() as conn:
            if owner_id is None:
                rows = conn.execute("SELECT * FROM context_analyses").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM context_analyses WHERE owner_id = ?", (owner_id,)
                ).fetchall()
        return [dict(r) for r in rows]

    def aggregate_analyses(self, column: str, func: str, owner_id: str | None = None) -> float | None:
        """AVG/SUM over a numeric context_analyses column, optionally owner-scoped."""
        if column not in ("optimization_score", "total_tokens", "issue_count"):
            raise ValueError(f"Unsupported column: {column}")
        if func not in ("AVG", "SUM"):
            raise ValueError(f"Unsupported aggregate: {func}")
        sql = f"SELECT {func}({column}) FROM context_analyses"
        with self._get_conn() as conn:
            if owner_id is None:
                row = conn.execute(sql).fetchone()
            else:
                row = conn.execute(f"{sql} WHERE owner_id = ?", (owner_id,)).fetchone()
        return row[0]

    # ── Health scores ────────────────────────────────────────

    def add_health_score(
        self, score: float, active_issues: int, owner_id: str | None = None
    ) -> dict[str, Any]:
        """Append a health score; returns the stored row including trend."""
        previous = self.get_latest_health_score(owner_id)
        previous_score = previous["score"] if previous else score
        if score > previous_score:
            trend = "improving"
        elif score < previous_score:
            trend = "declining"
        else:
            trend = "stable"
        with self._get_conn() as conn:
            conn.execute(
                """INSERT INTO health_scores
                   (owner_id, score, previous_score, active_issues, trend)
                   VALUES (?, ?, ?, ?, ?)""",
                (owner_id or "", score, previous_score, active_issues, trend),
            )
            conn.commit()
        return {
            "score": score,
            "previous_score": previous_score,
            "active_issues": active_issues,
            "trend": trend,
        }

    def get_latest_health_score(self, owner_id: str | None = None) -> dict[str, Any] | None:
        with self._get_conn() as conn:
            row = conn.execute(
                """SELECT * FROM health_scores WHERE owner_id = ?
                   ORDER BY id DESC LIMIT 1""",
                (owner_id or "",),
            ).fetchone()
        return dict(row) if row else None


# ════════════════════════════════════════════════════════════
# ROW MAPPING
# ════════════════════════════════════════════════════════════


def _placeholders(values: Iterable[Any]) -> str:
    return ",".join("?" for _ in values)


def _row_to_task(row: sqlite3.Row) -> ScheduledTask:
    return ScheduledTask(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        description=row["description"],
        task_type=row["task_type"],
        schedule_type=row["schedule_type"],
        cron_expression=row["cron_expression"],
        interval_minutes=row["interval_minutes"],
        threshold_metric=row["threshold_metric"],
        threshold_operator=row["threshold_operator"],
        threshold_value=row["threshold_value"],
        subject_filter=_loads(row["subject_filter"]),
        task_config=_loads(row["task_config"], {}),
        notify_on_success=bool(row["notify_on_success"]),
        notify_on_failure=bool(row["notify_on_failure"]),
        webhook_ids=_loads(row["webhook_ids"]),
        enabled=bool(row["enabled"]),
        last_run_at=from_db_time(row["last_run_at"]),
        next_run_at=from_db_time(row["next_run_at"]),
        created_at=from_db_time(row["created_at"]),
    )


def _row_to_execution(row: sqlite3.Row) -> TaskExecution:
    return TaskExecution(
        id=row["id"],
        task_id=row["task_id"],
        owner_id=row["owner_id"],
        status=row["status"],
        trigger_type=row["trigger_type"],
        started_at=from_db_time(row["started_at"]),
        completed_at=from_db_time(row["completed_at"]),
        duration_ms=row["duration_ms"],
        result=_loads(row["result"]),
        subjects_processed=row["subjects_processed"],
        issues_found=row["issues_found"],
        tokens_saved=row["tokens_saved"],
        error=row["error"],
    )


def _row_to_webhook(row: sqlite3.Row) -> WebhookConfig:
    return WebhookConfig(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        provider=row["provider"],
        url=row["url"],
        config=_loads(row["config"], {}),
        event_types=_loads(row["event_types"], []),
        enabled=bool(row["enabled"]),
        failure_count=row["failure_count"],
        last_used_at=from_db_time(row["last_used_at"]),
    )


# ════════════════════════════════════════════════════════════
# SCHEMA
# ════════════════════════════════════════════════════════════

_SCHEMA = """
-- 1. Scheduled tasks
CREATE TABLE IF NOT EXISTS scheduled_tasks (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    name TEXT NOT NULL,
    description TEXT,
    task_type TEXT NOT NULL DEFAULT 'analyze',
    schedule_type TEXT NOT NULL DEFAULT 'manual',
    cron_expression TEXT,
    interval_minutes INTEGER,
    threshold_metric TEXT,
    threshold_operator TEXT,
    threshold_value REAL,
    subject_filter TEXT,
    task_config TEXT NOT NULL DEFAULT '{}',
    notify_on_success INTEGER DEFAULT 0,
    notify_on_failure INTEGER DEFAULT 1,
    webhook_ids TEXT,
    enabled INTEGER DEFAULT 1,
    last_run_at TEXT,
    next_run_at TEXT,
    created_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_tasks_due
    ON scheduled_tasks(enabled, schedule_type, next_run_at);

-- 2. Executions (one row per attempt)
CREATE TABLE IF NOT EXISTS task_executions (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL,
    owner_id TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    trigger_type TEXT NOT NULL DEFAULT 'scheduled',
    started_at TEXT NOT NULL,
    completed_at TEXT,
    duration_ms INTEGER,
    result TEXT,
    subjects_processed INTEGER DEFAULT 0,
    issues_found INTEGER DEFAULT 0,
    tokens_saved INTEGER DEFAULT 0,
    error TEXT,
    FOREIGN KEY (task_id) REFERENCES scheduled_tasks(id)
);
CREATE INDEX IF NOT EXISTS idx_executions_task ON task_executions(task_id, started_at DESC);

-- 3. Webhook targets
CREATE TABLE IF NOT EXISTS webhook_configs (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    name TEXT NOT NULL,
    provider TEXT NOT NULL DEFAULT 'generic',
    url TEXT NOT NULL,
    config TEXT NOT NULL DEFAULT '{}',
    event_types TEXT NOT NULL DEFAULT '[]',
    enabled INTEGER DEFAULT 1,
    failure_count INTEGER DEFAULT 0,
    last_used_at TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- 4. Subject registry (owner '' = unowned)
CREATE TABLE IF NOT EXISTS subjects (
    owner_id TEXT NOT NULL DEFAULT '',
    path TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (owner_id, path)
);

-- 5. Latest analysis per subject artifact
CREATE TABLE IF NOT EXISTS context_analyses (
    owner_id TEXT NOT NULL DEFAULT '',
    subject_path TEXT NOT NULL,
    artifact_path TEXT NOT NULL,
    optimization_score REAL DEFAULT 100,
    total_tokens INTEGER DEFAULT 0,
    total_lines INTEGER DEFAULT 0,
    issue_count INTEGER DEFAULT 0,
    issues TEXT NOT NULL DEFAULT '[]',
    estimated_savings INTEGER DEFAULT 0,
    status TEXT DEFAULT 'analyzed',
    analyzed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (owner_id, subject_path, artifact_path)
);

-- 6. Health score history
CREATE TABLE IF NOT EXISTS health_scores (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL DEFAULT '',
    score REAL NOT NULL,
    previous_score REAL,
    active_issues INTEGER DEFAULT 0,
    trend TEXT DEFAULT 'stable',
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_health_owner ON health_scores(owner_id, id DESC);
"""
