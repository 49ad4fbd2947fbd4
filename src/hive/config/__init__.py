"""Configuration management."""

from hive.config.manager import ConfigManager
from hive.config.schema import HiveConfig

__all__ = ["ConfigManager", "HiveConfig"]
