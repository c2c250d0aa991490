"""Task handlers — strategy map from task_type to an async execute(task)."""

from __future__ import annotations

import importlib
import inspect
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

from loguru import logger
from pydantic import BaseModel, Field

from ccmsched.core.cron.types import ScheduledTask, TaskResult
from ccmsched.core.errors import SchedulerError, UnknownTaskType
from ccmsched.storage.store import SchedulerStore

TaskHandler = Callable[[ScheduledTask], Awaitable[TaskResult]]

# Subjects scoring below this get an optimization recommendation
RECOMMEND_BELOW_SCORE = 70
POOR_HEALTH_SCORE = 50


class AnalysisReport(BaseModel):
    """What a ContextAnalyzer returns for one artifact."""

    optimization_score: float = 100
    total_tokens: int = 0
    total_lines: int = 0
    issues: list[Any] = Field(default_factory=list)
    estimated_savings: int = 0


class OptimizationOutput(BaseModel):
    new_content: str
    tokens_saved: int = 0


class ContextAnalyzer(Protocol):
    """External collaborator that scores and rewrites configuration artifacts.

    Methods may be sync or async.
    """

    def analyze(self, path: str) -> AnalysisReport | dict | Awaitable[AnalysisReport | dict]: ...

    def optimize(
        self, report: AnalysisReport, strategy: str, subject: str
    ) -> OptimizationOutput | dict | Awaitable[OptimizationOutput | dict]: ...


class TaskHandlerRegistry:
    """task_type → handler. Lookups of unregistered types raise UnknownTaskType."""

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}

    def register(self, task_type: str, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    def get(self, task_type: str) -> TaskHandler:
        try:
            return self._handlers[task_type]
        except KeyError:
            raise UnknownTaskType(task_type) from None

    async def execute(self, task: ScheduledTask) -> TaskResult:
        return await self.get(task.task_type)(task)

    @property
    def task_types(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, task_type: str) -> bool:
        return task_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def load_analyzer(path: str | None) -> ContextAnalyzer | None:
    """Import ``module:attr``. Classes and zero-arg factories are called."""
    if not path:
        return None
    module_name, _, attr = path.partition(":")
    if not attr:
        raise ValueError(f"Analyzer path must look like 'module:attr', got {path!r}")
    obj = getattr(importlib.import_module(module_name), attr)
    if inspect.isclass(obj) or (callable(obj) and not hasattr(obj, "analyze")):
        obj = obj()
    logger.info(f"Context analyzer loaded: {path}")
    return obj


async def _call(fn: Callable[..., Any], *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class ContextTaskHandlers:
    """Built-in analyze / optimize / health_check handlers.

    Parameters
    ----------
    store : SchedulerStore
        Subject registry and analysis/health tables.
    analyzer : ContextAnalyzer, optional
        When None every built-in handler fails with a SchedulerError.
    artifact_name : str
        File looked up inside each subject directory.
    """

    def __init__(
        self,
        store: SchedulerStore,
        analyzer: ContextAnalyzer | None = None,
        artifact_name: str = "CLAUDE.md",
    ):
        self.store = store
        self.analyzer = analyzer
        self.artifact_name = artifact_name

    def register_all(self, registry: TaskHandlerRegistry) -> TaskHandlerRegistry:
        registry.register("analyze", self.analyze)
        registry.register("optimize", self.optimize)
        registry.register("health_check", self.health_check)
        return registry

    # ── helpers ──────────────────────────────────────────────

    def resolve_subjects(self, task: ScheduledTask) -> list[str]:
        """Explicit subject_filter, else every registered subject of the owner."""
        if task.subject_filter is not None:
            return list(task.subject_filter)
        return self.store.get_subjects(task.owner_id)

    def artifact_path(self, subject: str) -> Path | None:
        path = Path(subject) / self.artifact_name
        return path if path.is_file() else None

    def _require_analyzer(self) -> ContextAnalyzer:
        if self.analyzer is None:
            raise SchedulerError("No context analyzer configured (tasks.analyzer)")
        return self.analyzer

    async def _analyze(self, artifact: Path) -> AnalysisReport:
        raw = await _call(self._require_analyzer().analyze, str(artifact))
        return raw if isinstance(raw, AnalysisReport) else AnalysisReport.model_validate(raw)

    def _record(self, task: ScheduledTask, subject: str, artifact: Path, report: AnalysisReport,
                status: str = "analyzed") -> None:
        self.store.upsert_analysis(
            subject_path=subject,
            artifact_path=str(artifact),
            optimization_score=report.optimization_score,
            total_tokens=report.total_tokens,
            total_lines=report.total_lines,
            issues=report.issues,
            estimated_savings=report.estimated_savings,
            owner_id=task.owner_id,
            status=status,
        )

    # ── analyze ──────────────────────────────────────────────

    async def analyze(self, task: ScheduledTask) -> TaskResult:
        """Analyze each subject's artifact and store the report.

        task_config: ``max_subjects`` (int), ``include_health_score`` (bool).
        """
        self._require_analyzer()
        cfg = task.task_config
        subjects = self.resolve_subjects(task)
        if cfg.get("max_subjects"):
            subjects = subjects[: int(cfg["max_subjects"])]

        rows: list[dict[str, Any]] = []
        total_issues = 0
        for subject in subjects:
            artifact = self.artifact_path(subject)
            if artifact is None:
                continue
            try:
                report = await self._analyze(artifact)
            except Exception as e:
                logger.error(f"Error analyzing {subject}: {e}")
                continue
            self._record(task, subject, artifact, report)
            total_issues += len(report.issues)
            rows.append({
                "path": subject,
                "score": report.optimization_score,
                "issues": len(report.issues),
                "savings": report.estimated_savings,
            })

        details: dict[str, Any] = {"subjects": rows}
        if cfg.get("include_health_score") and rows:
            score = round(sum(r["score"] for r in rows) / len(rows))
            health = self.store.add_health_score(score, total_issues, task.owner_id)
            details["health_score"] = score
            details["previous_score"] = health["previous_score"]

        return TaskResult(
            subjects_processed=len(rows),
            issues_found=total_issues,
            tokens_saved=0,
            details=details,
        )

    # ── optimize ─────────────────────────────────────────────

    async def optimize(self, task: ScheduledTask) -> TaskResult:
        """Analyze, then rewrite artifacts that qualify.

        task_config: ``strategy`` (default "moderate"), ``dry_run``,
        ``min_score`` (only optimize below it), ``auto_apply_threshold``
        (only write when savings reach it).
        """
        analyzer = self._require_analyzer()
        cfg = task.task_config
        strategy = cfg.get("strategy") or "moderate"
        dry_run = bool(cfg.get("dry_run"))
        min_score = cfg.get("min_score")
        apply_threshold = cfg.get("auto_apply_threshold")

        rows: list[dict[str, Any]] = []
        processed = issues_found = tokens_saved = applied = 0
        for subject in self.resolve_subjects(task):
            artifact = self.artifact_path(subject)
            if artifact is None:
                continue
            row: dict[str, Any] = {"path": subject, "score": 0, "issues": 0, "savings": 0}
            try:
                report = await self._analyze(artifact)
                processed += 1
                issues_found += len(report.issues)
                row.update(score=report.optimization_score, issues=len(report.issues),
                           action="analyzed")

                wants = not min_score or report.optimization_score < min_score
                if wants and report.issues:
                    raw = await _call(analyzer.optimize, report, strategy, subject)
                    output = (raw if isinstance(raw, OptimizationOutput)
                              else OptimizationOutput.model_validate(raw))
                    row["savings"] = output.tokens_saved
                    if not dry_run and (not apply_threshold
                                        or output.tokens_saved >= apply_threshold):
                        artifact.write_text(output.new_content, encoding="utf-8")
                        self._record(task, subject, artifact, report, status="optimized")
                        tokens_saved += output.tokens_saved
                        applied += 1
                        row["action"] = "optimized"
                    else:
                        row["action"] = "dry_run" if dry_run else "skipped"
            except Exception as e:
                logger.error(f"Error optimizing {subject}: {e}")
                row["action"] = f"error: {e}"
            rows.append(row)

        return TaskResult(
            subjects_processed=processed,
            issues_found=issues_found,
            tokens_saved=tokens_saved,
            details={"subjects": rows, "optimizations_applied": applied},
        )

    # ── health_check ─────────────────────────────────────────

    async def health_check(self, task: ScheduledTask) -> TaskResult:
        """Average score across subjects, stored as a health-score sample.

        task_config: ``alert_threshold`` (alert when the score drops below),
        ``include_recommendations`` (bool).
        """
        self._require_analyzer()
        cfg = task.task_config

        rows: list[dict[str, Any]] = []
        total_issues = 0
        for subject in self.resolve_subjects(task):
            artifact = self.artifact_path(subject)
            if artifact is None:
                continue
            try:
                report = await self._analyze(artifact)
            except Exception as e:
                logger.error(f"Error checking health for {subject}: {e}")
                continue
            total_issues += len(report.issues)
            rows.append({
                "path": subject,
                "score": report.optimization_score,
                "issues": len(report.issues),
                "savings": report.estimated_savings,
            })

        score = round(sum(r["score"] for r in rows) / len(rows)) if rows else 0
        health = self.store.add_health_score(score, total_issues, task.owner_id)

        recommendations: list[str] = []
        if cfg.get("include_recommendations"):
            for row in sorted(rows, key=lambda r: r["score"])[:3]:
                if row["score"] < RECOMMEND_BELOW_SCORE:
                    recommendations.append(
                        f"Optimize {Path(row['path']).name}: score {row['score']:g}, "
                        f"potential savings {row['savings']} tokens"
                    )
            if score < POOR_HEALTH_SCORE:
                recommendations.append(
                    "Overall health is poor. Consider running weekly optimization across all subjects."
                )

        threshold = cfg.get("alert_threshold")
        alert = threshold is not None and score < threshold
        if alert:
            recommendations.insert(0, f"ALERT: Health score {score} is below threshold {threshold}")

        return TaskResult(
            subjects_processed=len(rows),
            issues_found=total_issues,
            tokens_saved=0,
            details={
                "subjects": rows,
                "health_score": score,
                "previous_score": health["previous_score"],
                "alert": alert,
                "recommendations": recommendations,
            },
        )


def make_handlers(
    store: SchedulerStore,
    analyzer: ContextAnalyzer | None = None,
    artifact_name: str = "CLAUDE.md",
) -> TaskHandlerRegistry:
    """Registry with the built-in handlers registered."""
    return ContextTaskHandlers(store, analyzer, artifact_name).register_all(TaskHandlerRegistry())
