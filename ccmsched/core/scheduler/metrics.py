"""Metric source for threshold watchers, backed by the analysis tables."""

from __future__ import annotations

from pathlib import Path

from ccmsched.storage.store import SchedulerStore

DEFAULT_SCORE = 100.0


class StoreMetricSource:
    """Owner-scoped aggregates; ``owner_id=None`` aggregates across owners."""

    def __init__(self, store: SchedulerStore, artifact_name: str = "CLAUDE.md"):
        self.store = store
        self.artifact_name = artifact_name

    async def fetch(self, metric: str, owner_id: str | None = None) -> float:
        if metric == "optimization_score":
            avg = self.store.aggregate_analyses("optimization_score", "AVG", owner_id)
            return DEFAULT_SCORE if avg is None else float(avg)
        if metric == "token_count":
            return float(self.store.aggregate_analyses("total_tokens", "SUM", owner_id) or 0)
        if metric == "issue_count":
            return float(self.store.aggregate_analyses("issue_count", "SUM", owner_id) or 0)
        if metric == "file_size":
            return float(self._artifact_bytes(owner_id))
        return 0.0

    def _artifact_bytes(self, owner_id: str | None) -> int:
        total = 0
        for subject in self.store.get_subjects(owner_id):
            path = Path(subject) / self.artifact_name
            if path.is_file():
                total += path.stat().st_size
        return total
