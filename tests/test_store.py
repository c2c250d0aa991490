"""Tests for ccmsched.storage.store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ccmsched.core.cron.types import ScheduledTask, TaskResult, WebhookConfig
from ccmsched.storage.store import SchedulerStore, from_db_time, to_db_time

T0 = datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    return SchedulerStore(str(tmp_path / "test.db"))


def _task(**overrides) -> ScheduledTask:
    data = dict(id="", name="job", schedule_type="interval", interval_minutes=10)
    data.update(overrides)
    return ScheduledTask(**data)


# ── time encoding ──────────────────────────────────────────


def test_db_time_roundtrip_normalizes_to_utc():
    local = datetime(2025, 1, 6, 11, 0, tzinfo=timezone(timedelta(hours=3)))
    encoded = to_db_time(local)
    assert encoded == "2025-01-06T08:00:00.000000Z"
    assert from_db_time(encoded) == T0
    assert to_db_time(None) is None
    assert from_db_time(None) is None


# ── tasks ──────────────────────────────────────────────────


def test_create_task_generates_id(store):
    task = store.create_task(_task(subject_filter=["/a"], task_config={"max_subjects": 2}))
    assert len(task.id) == 8
    assert task.created_at is not None

    loaded = store.get_task(task.id)
    assert loaded.name == "job"
    assert loaded.subject_filter == ["/a"]
    assert loaded.task_config == {"max_subjects": 2}
    assert loaded.webhook_ids is None
    assert loaded.notify_on_failure is True


def test_create_task_keeps_given_id(store):
    assert store.create_task(_task(id="fixed")).id == "fixed"
    assert store.get_task("fixed") is not None
    assert store.get_task("missing") is None


def test_list_tasks_filters(store):
    store.create_task(_task(id="a", owner_id="u1"))
    store.create_task(_task(id="b", owner_id="u2", enabled=False))
    store.create_task(_task(id="c", owner_id="u1", enabled=False))

    assert {t.id for t in store.list_tasks()} == {"a", "b", "c"}
    assert {t.id for t in store.list_tasks(owner_id="u1")} == {"a", "c"}
    assert {t.id for t in store.list_tasks(enabled=False)} == {"b", "c"}
    assert store.count_tasks() == 3
    assert store.count_tasks(enabled=True) == 1


def test_update_task(store):
    store.create_task(_task(id="a"))
    assert store.update_task("a", enabled=False, webhook_ids=["w1"], next_run_at=T0)

    task = store.get_task("a")
    assert task.enabled is False
    assert task.webhook_ids == ["w1"]
    assert task.next_run_at == T0

    assert store.update_task("missing", name="x") is False


def test_update_task_rejects_unknown_fields(store):
    store.create_task(_task(id="a"))
    with pytest.raises(ValueError):
        store.update_task("a", id="b")


def test_delete_task_removes_executions(store):
    task = store.create_task(_task(id="a"))
    execution = store.create_execution(task, "manual", T0)

    assert store.delete_task("a") is True
    assert store.get_task("a") is None
    assert store.get_execution(execution.id) is None
    assert store.delete_task("a") is False


def test_set_run_times(store):
    store.create_task(_task(id="a"))
    store.set_run_times("a", T0 + timedelta(minutes=10), last_run_at=T0)
    task = store.get_task("a")
    assert task.last_run_at == T0
    assert task.next_run_at == T0 + timedelta(minutes=10)

    store.set_run_times("a", None)
    task = store.get_task("a")
    assert task.next_run_at is None
    assert task.last_run_at == T0


def test_find_due_tasks(store):
    store.create_task(_task(id="late", next_run_at=T0 - timedelta(minutes=5)))
    store.create_task(_task(id="now", schedule_type="cron", cron_expression="* * * * *",
                            next_run_at=T0))
    store.create_task(_task(id="future", next_run_at=T0 + timedelta(seconds=1)))
    store.create_task(_task(id="off", enabled=False, next_run_at=T0 - timedelta(hours=1)))
    store.create_task(_task(id="thr", schedule_type="threshold", next_run_at=T0 - timedelta(hours=1)))
    store.create_task(_task(id="unscheduled"))

    assert [t.id for t in store.find_due_tasks(T0, 10)] == ["late", "now"]
    assert [t.id for t in store.find_due_tasks(T0, 1)] == ["late"]
    assert store.find_due_tasks(T0, 0) == []


def test_find_due_tasks_compares_across_timezones(store):
    plus3 = timezone(timedelta(hours=3))
    store.create_task(_task(id="a", next_run_at=datetime(2025, 1, 6, 10, 30, tzinfo=plus3)))
    assert [t.id for t in store.find_due_tasks(T0, 5)] == ["a"]


def test_find_upcoming_tasks(store):
    store.create_task(_task(id="soon", next_run_at=T0 + timedelta(hours=2)))
    store.create_task(_task(id="later", next_run_at=T0 + timedelta(hours=30)))
    store.create_task(_task(id="past", next_run_at=T0 - timedelta(hours=1)))

    upcoming = store.find_upcoming_tasks(T0, T0 + timedelta(hours=24))
    assert [t.id for t in upcoming] == ["soon"]


def test_get_enabled_tasks(store):
    store.create_task(_task(id="a", schedule_type="threshold"))
    store.create_task(_task(id="b", schedule_type="threshold", enabled=False))
    store.create_task(_task(id="c"))
    assert [t.id for t in store.get_enabled_tasks(["threshold"])] == ["a"]


# ── executions ─────────────────────────────────────────────


def test_execution_lifecycle(store):
    task = store.create_task(_task(id="a", owner_id="u1"))
    execution = store.create_execution(task, "scheduled", T0)
    assert execution.status == "running"
    assert execution.owner_id == "u1"

    result = TaskResult(subjects_processed=2, issues_found=3, tokens_saved=40,
                        details={"subjects": []})
    assert store.finalize_execution(execution.id, "completed", T0 + timedelta(seconds=2), 2000,
                                    result=result)

    loaded = store.get_execution(execution.id)
    assert loaded.status == "completed"
    assert loaded.duration_ms == 2000
    assert loaded.completed_at == T0 + timedelta(seconds=2)
    assert loaded.subjects_processed == 2
    assert loaded.tokens_saved == 40
    assert loaded.result["details"] == {"subjects": []}
    assert loaded.error is None


def test_finalize_only_first_call_wins(store):
    task = store.create_task(_task(id="a"))
    execution = store.create_execution(task, "manual", T0)

    assert store.finalize_execution(execution.id, "failed", T0, 5, error="boom") is True
    assert store.finalize_execution(execution.id, "completed", T0, 9) is False

    loaded = store.get_execution(execution.id)
    assert loaded.status == "failed"
    assert loaded.error == "boom"
    assert loaded.result is None


def test_finalize_rejects_non_terminal_status(store):
    task = store.create_task(_task(id="a"))
    execution = store.create_execution(task, "manual", T0)
    with pytest.raises(ValueError):
        store.finalize_execution(execution.id, "running", T0, 0)


def test_list_executions_and_stats(store):
    task = store.create_task(_task(id="a"))
    other = store.create_task(_task(id="b"))
    e1 = store.create_execution(task, "scheduled", T0 - timedelta(days=1))
    e2 = store.create_execution(task, "scheduled", T0 + timedelta(minutes=1))
    e3 = store.create_execution(other, "manual", T0 + timedelta(minutes=2))
    store.create_execution(other, "manual", T0 + timedelta(minutes=3))

    store.finalize_execution(e1.id, "completed", T0, 1, TaskResult(tokens_saved=100))
    store.finalize_execution(e2.id, "completed", T0, 1,
                             TaskResult(tokens_saved=5, subjects_processed=2))
    store.finalize_execution(e3.id, "failed", T0, 1, error="x")

    assert [e.id for e in store.list_executions(task_id="a")] == [e2.id, e1.id]
    assert [e.id for e in store.list_executions(status="failed")] == [e3.id]
    assert len(store.list_executions(limit=2)) == 2

    stats = store.execution_stats(T0)
    assert stats == {
        "total": 3,
        "completed": 1,
        "failed": 1,
        "running": 1,
        "tokens_saved": 5,
        "subjects_processed": 2,
    }


# ── webhooks ───────────────────────────────────────────────


def test_webhook_crud(store):
    hook = store.add_webhook(WebhookConfig(
        id="", name="ops", provider="slack", url="https://hooks.test/ops",
        config={"channel": "#ops"}, event_types=["task_failed"],
    ))
    assert hook.id

    loaded = store.get_webhook(hook.id)
    assert loaded.config == {"channel": "#ops"}
    assert loaded.event_types == ["task_failed"]
    assert loaded.failure_count == 0

    assert store.count_webhooks() == 1
    assert store.delete_webhook(hook.id) is True
    assert store.delete_webhook(hook.id) is False
    assert store.get_webhook(hook.id) is None


def test_update_webhook(store):
    store.add_webhook(WebhookConfig(id="w", name="w", url="https://h/w"))

    assert store.update_webhook(
        "w", provider="slack", config={"channel": "#alerts"},
        event_types=["health_alert"], enabled=False,
    ) is True
    hook = store.get_webhook("w")
    assert hook.provider == "slack"
    assert hook.config == {"channel": "#alerts"}
    assert hook.event_types == ["health_alert"]
    assert hook.enabled is False
    assert store.count_webhooks(enabled=True) == 0

    assert store.update_webhook("w") is True
    assert store.update_webhook("nope", name="x") is False
    with pytest.raises(ValueError):
        store.update_webhook("w", failure_count=0)


def test_webhooks_for_task(store):
    store.add_webhook(WebhookConfig(id="global", name="g", url="https://h/g"))
    store.add_webhook(WebhookConfig(id="mine", owner_id="u1", name="m", url="https://h/m"))
    store.add_webhook(WebhookConfig(id="theirs", owner_id="u2", name="t", url="https://h/t"))
    store.add_webhook(WebhookConfig(id="off", name="o", url="https://h/o", enabled=False))

    default = ScheduledTask(id="t", name="t", owner_id="u1")
    explicit = default.model_copy(update={"webhook_ids": ["theirs", "off", "nope"]})
    silenced = default.model_copy(update={"webhook_ids": []})
    unowned = ScheduledTask(id="t2", name="t2")

    assert {w.id for w in store.get_webhooks_for_task(default)} == {"global", "mine"}
    assert {w.id for w in store.get_webhooks_for_task(explicit)} == {"theirs"}
    assert store.get_webhooks_for_task(silenced) == []
    assert {w.id for w in store.get_webhooks_for_task(unowned)} == {"global"}
    assert {w.id for w in store.list_webhooks(owner_id="u2")} == {"theirs"}


def test_record_webhook_result(store):
    store.add_webhook(WebhookConfig(id="w", name="w", url="https://h/w"))

    store.record_webhook_result("w", False, T0)
    store.record_webhook_result("w", False, T0)
    hook = store.get_webhook("w")
    assert hook.failure_count == 2
    assert hook.last_used_at is None

    store.record_webhook_result("w", True, T0)
    hook = store.get_webhook("w")
    assert hook.failure_count == 0
    assert hook.last_used_at == T0


# ── subjects, analyses, health ─────────────────────────────


def test_subjects(store):
    store.add_subject("/repo/b", owner_id="u1")
    store.add_subject("/repo/a", owner_id="u1")
    store.add_subject("/repo/a", owner_id="u1")
    store.add_subject("/repo/a")

    assert store.get_subjects("u1") == ["/repo/a", "/repo/b"]
    assert store.get_subjects() == ["/repo/a", "/repo/b"]
    assert store.get_subjects("u2") == []


def test_analyses_upsert_and_aggregate(store):
    store.upsert_analysis("/a", "/a/CLAUDE.md", 40, 1000, 50, ["x", "y"], 200, owner_id="u1")
    store.upsert_analysis("/b", "/b/CLAUDE.md", 80, 500, 20, [], 0, owner_id="u1")
    store.upsert_analysis("/a", "/a/CLAUDE.md", 60, 900, 45, ["x"], 100, owner_id="u1")
    store.upsert_analysis("/c", "/c/CLAUDE.md", 10, 10, 1, ["z"], 0, owner_id="u2")

    assert len(store.get_analyses("u1")) == 2
    assert store.aggregate_analyses("optimization_score", "AVG", "u1") == 70
    assert store.aggregate_analyses("total_tokens", "SUM", "u1") == 1400
    assert store.aggregate_analyses("issue_count", "SUM") == 2
    assert store.aggregate_analyses("total_tokens", "SUM", "nobody") is None

    store.set_analysis_status("/a", "optimized", owner_id="u1")
    statuses = {a["subject_path"]: a["status"] for a in store.get_analyses("u1")}
    assert statuses == {"/a": "optimized", "/b": "analyzed"}


def test_aggregate_rejects_unknown_column(store):
    with pytest.raises(ValueError):
        store.aggregate_analyses("name; DROP TABLE x", "SUM")
    with pytest.raises(ValueError):
        store.aggregate_analyses("total_tokens", "MAX")


def test_health_scores_trend(store):
    assert store.get_latest_health_score() is None

    first = store.add_health_score(80, 2)
    assert first == {"score": 80, "previous_score": 80, "active_issues": 2, "trend": "stable"}

    second = store.add_health_score(60, 5)
    assert second["previous_score"] == 80
    assert second["trend"] == "declining"

    third = store.add_health_score(90, 0)
    assert third["trend"] == "improving"
    assert store.get_latest_health_score()["score"] == 90

    # Owners are tracked separately
    assert store.add_health_score(50, 1, owner_id="u1")["trend"] == "stable"
