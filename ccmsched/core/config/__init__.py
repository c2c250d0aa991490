"""Configuration module."""

from ccmsched.core.config.loader import configure_logging, load_config
from ccmsched.core.config.schema import Config

__all__ = ["Config", "configure_logging", "load_config"]
