"""Configuration loader — locate the YAML file, build Config, set up loguru."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from ccmsched.core.config.schema import Config, LoggingConfig

CONFIG_ENV_VAR = "CCMSCHED_CONFIG"
DEFAULT_CONFIG_FILE = Path("config.yaml")

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)


class ConfigError(ValueError):
    """Config file exists but does not hold a YAML mapping."""


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load configuration.

    File lookup, first hit wins:
        1. Explicit ``config_path`` argument
        2. ``CCMSCHED_CONFIG`` env variable
        3. ``./config.yaml`` in cwd (optional)

    A named file that does not exist is logged and skipped; defaults apply.

    Values priority (see Config.settings_customise_sources):
        env vars  >  .env file  >  YAML  >  defaults

    Raises
    ------
    ConfigError
        If the file parses to something other than a mapping.
    """
    path = config_file_path(config_path)
    data = read_config_file(path) if path else {}
    config = Config(**data)
    logger.debug(f"Config loaded from {path or 'defaults'} (db: {config.db_path})")
    return config


def config_file_path(config_path: str | Path | None = None) -> Path | None:
    """The YAML file ``load_config`` would read, or None for defaults only."""
    named = config_path or os.environ.get(CONFIG_ENV_VAR)
    if named:
        path = Path(named)
        if path.exists():
            return path
        logger.warning(f"Config file not found: {path}, using defaults")
        return None
    return DEFAULT_CONFIG_FILE if DEFAULT_CONFIG_FILE.exists() else None


def read_config_file(path: Path) -> dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level, got {type(data).__name__}")
    return data


def configure_logging(settings: LoggingConfig) -> None:
    """Replace loguru's default sink with the ones ``settings`` asks for.

    Always logs to stderr. With ``settings.file`` set, also writes a rotating
    log file (rotation and retention as loguru accepts them).
    """
    level = settings.level.upper()
    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)
    if settings.file:
        Path(settings.file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            settings.file,
            level=level,
            format=LOG_FORMAT,
            rotation=settings.rotation,
            retention=settings.retention,
        )
