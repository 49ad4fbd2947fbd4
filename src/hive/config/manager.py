"""Configuration manager for loading and merging configs."""

import logging
import os
from pathlib import Path
from typing import Any

import toml

from hive.config.schema import HiveConfig, get_config_file

logger = logging.getLogger(__name__)

PROJECT_CONFIG_NAME = ".hive.toml"

# Environment variable -> dotted config path
ENV_OVERRIDES = {
    "HIVE_DIR": "global.hive_dir",
    "HIVE_MAX_PARALLEL": "branches.max_parallel",
}


class ConfigManager:
    """Manages configuration loading, merging, and access."""

    _config: HiveConfig | None = None

    @classmethod
    def get_config(cls) -> HiveConfig:
        """Get the current configuration, loading if necessary."""
        if cls._config is None:
            cls._config = cls.load_config()
        return cls._config

    @classmethod
    def load_config(cls) -> HiveConfig:
        """Load configuration from all sources.

        Priority (highest to lowest):
        1. Environment variables (HIVE_DIR, HIVE_MAX_PARALLEL)
        2. Project-level config (.hive.toml in cwd or parents)
        3. User config (~/.config/hive/config.toml)
        4. Default config
        """
        config_dict: dict[str, Any] = {}

        user_config_file = get_config_file()
        if user_config_file.exists():
            config_dict = cls._deep_merge(config_dict, toml.load(user_config_file))

        project_config_file = cls._find_project_config()
        if project_config_file is not None:
            logger.debug("Loading project config from %s", project_config_file)
            config_dict = cls._deep_merge(config_dict, toml.load(project_config_file))

        config_dict = cls._deep_merge(config_dict, cls._env_overrides())

        if config_dict:
            return HiveConfig.model_validate(config_dict)
        return HiveConfig.default()

    @classmethod
    def reload(cls) -> HiveConfig:
        """Force reload configuration from disk."""
        cls._config = cls.load_config()
        return cls._config

    @classmethod
    def reset(cls) -> None:
        """Drop the cached configuration."""
        cls._config = None

    @classmethod
    def _find_project_config(cls) -> Path | None:
        """Find project-level config file by searching up from cwd."""
        cwd = Path.cwd()
        for parent in [cwd, *cwd.parents]:
            config_file = parent / PROJECT_CONFIG_NAME
            if config_file.exists():
                return config_file
            # Stop at home directory
            if parent == Path.home():
                break
        return None

    @classmethod
    def _env_overrides(cls) -> dict[str, Any]:
        """Build a nested override dict from environment variables."""
        overrides: dict[str, Any] = {}
        for env_name, key_path in ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if not value:
                continue
            section, key = key_path.split(".")
            overrides.setdefault(section, {})[key] = value
        return overrides

    @classmethod
    def _deep_merge(
        cls, base: dict[str, Any], override: dict[str, Any]
    ) -> dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = cls._deep_merge(result[key], value)
            else:
                result[key] = value
        return result

    @classmethod
    def get_value(cls, key_path: str, default: Any = None) -> Any:
        """Get a configuration value by dot-separated path.

        Example: get_value("branches.max_parallel")
        """
        config_dict = cls.get_config().model_dump(by_alias=True)

        current: Any = config_dict
        for key in key_path.split("."):
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default
        return current
