"""ccmsched configuration schema — YAML + Pydantic + env override."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# ════════════════════════════════════════════════════════════
# SUB-CONFIGS (nested BaseModel)
# ════════════════════════════════════════════════════════════


class SchedulerConfig(BaseModel):
    """Runner loop, concurrency and shutdown (scheduler.*)."""

    check_interval_s: float = 60.0
    max_concurrent_tasks: int = 3
    task_timeout_s: float = 300.0
    shutdown_timeout_s: float = 30.0
    enable_threshold_watchers: bool = True
    threshold_check_interval_s: float = 60.0
    autostart: bool = True
    timezone: str | None = None  # None → host local time


class WebhooksConfig(BaseModel):
    """Outbound webhook delivery."""

    base_url: str = ""  # used for "View Details" links
    timeout_s: float = 10.0
    user_agent: str = "CCM-Scheduler/1.0"


class TasksConfig(BaseModel):
    """Built-in task handlers."""

    analyzer: str | None = None  # "package.module:attr" → ContextAnalyzer
    artifact_name: str = "CLAUDE.md"


class DatabaseConfig(BaseModel):
    path: str = "data/ccmsched.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str | None = None  # None → stderr only
    rotation: str = "10 MB"
    retention: int = 5  # rotated files kept


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


# ════════════════════════════════════════════════════════════
# ROOT CONFIG (BaseSettings, env + .env support)
# ════════════════════════════════════════════════════════════


class Config(BaseSettings):
    """
    Root configuration.

    Priority: env vars > .env > YAML (init kwargs) > defaults

    Env override examples:
        CCMSCHED_SCHEDULER__MAX_CONCURRENT_TASKS=5
        CCMSCHED_DATABASE__PATH=data/prod.db
        CCMSCHED_WEBHOOKS__BASE_URL=https://ccm.example.com
    """

    model_config = SettingsConfigDict(
        env_prefix="CCMSCHED_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    webhooks: WebhooksConfig = Field(default_factory=WebhooksConfig)
    tasks: TasksConfig = Field(default_factory=TasksConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings
    ):
        # YAML arrives as init kwargs, so it ranks below env and .env
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    # ── Computed properties ─────────────────────────────────

    @property
    def db_path(self) -> Path:
        return Path(self.database.path)
