"""Configuration loader for the change-tracking sync service."""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml
from pydantic import ValidationError

from ctsync.models.config import AppConfig

log = structlog.stdlib.get_logger()


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class ConfigLoader:
    """Loads and validates sync configuration from YAML files and environment variables."""

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize the ConfigLoader.

        Args:
            config_dir: Directory holding ``<env>.yaml`` files. Defaults to the
                repository's ``config`` directory.
        """
        self.env_var_pattern = re.compile(r"\$\{([^}]+)\}")
        self.config_dir = config_dir or Path(__file__).parent.parent.parent / "config"

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """Load configuration from YAML file with environment variable overrides.

        Args:
            config_path: Path to the configuration YAML file. If None, uses
                ``<APP_ENV>.yaml`` falling back to ``default.yaml``

        Returns:
            AppConfig: Validated application configuration

        Raises:
            ConfigurationError: If configuration file is missing or invalid
        """
        if config_path is None:
            config_path = self._get_default_config_path()

        log.info("loading_configuration", config_path=config_path)

        config_dict = self._load_yaml_file(config_path)
        config_dict = self._substitute_env_vars(config_dict)

        try:
            app_config = AppConfig(**config_dict)
        except ValidationError as e:
            log.error("configuration_validation_failed", error=str(e))
            raise ConfigurationError(f"Configuration validation failed: {e}") from e

        log.info(
            "configuration_loaded_successfully",
            tables=app_config.table_names,
            source_type=app_config.source.type,
        )
        return app_config

    def _get_default_config_path(self) -> str:
        """Get the default configuration file path based on environment.

        Returns:
            str: Path to the configuration file
        """
        env = os.getenv("APP_ENV", "default")
        config_file = self.config_dir / f"{env}.yaml"

        if not config_file.exists():
            config_file = self.config_dir / "default.yaml"

        if not config_file.exists():
            raise ConfigurationError(
                f"Configuration file not found: {config_file}. "
                f"Please create config/default.yaml or set APP_ENV to a valid environment."
            )

        return str(config_file)

    def _load_yaml_file(self, config_path: str) -> Dict[str, Any]:
        """Load YAML configuration file.

        Raises:
            ConfigurationError: If file cannot be read or parsed
        """
        try:
            with open(config_path, "r") as f:
                config_dict = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML file {config_path}: {e}")

        if config_dict is None:
            raise ConfigurationError(f"Configuration file is empty: {config_path}")
        if not isinstance(config_dict, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

        log.debug("yaml_file_loaded", config_path=config_path)
        return config_dict

    def _substitute_env_vars(self, config: Any) -> Any:
        """Recursively substitute ``${VAR_NAME}`` references in configuration values.

        Raises:
            ConfigurationError: If a required environment variable is not set
        """
        if isinstance(config, dict):
            return {key: self._substitute_env_vars(value) for key, value in config.items()}
        elif isinstance(config, list):
            return [self._substitute_env_vars(item) for item in config]
        elif isinstance(config, str):
            return self._substitute_env_var_in_string(config)
        else:
            return config

    def _substitute_env_var_in_string(self, value: str) -> str:
        matches = self.env_var_pattern.findall(value)

        for var_name in matches:
            env_value = os.getenv(var_name)
            if env_value is None:
                raise ConfigurationError(
                    f"Required environment variable not set: {var_name}. "
                    f"Please set {var_name} in your environment or .env file."
                )
            value = value.replace(f"${{{var_name}}}", env_value)

        return value

    def validate_config(self, config: AppConfig) -> list[str]:
        """Check configuration for problems pydantic cannot catch on its own.

        Args:
            config: Application configuration to validate

        Returns:
            List of warning messages (empty if no warnings)
        """
        warnings = []

        names = config.table_names
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            warnings.append(f"tables listed more than once: {duplicates}")

        if not config.tables:
            warnings.append("no tables configured; nothing will be synchronized")

        if config.source.type == "sqlserver" and not config.source.url:
            warnings.append("source.url is required for the sqlserver source")

        for table in config.tables:
            column_names = [column.name for column in table.columns]
            missing = [key for key in table.primary_key if key not in column_names]
            if missing:
                warnings.append(
                    f"table {table.name}: primary key columns {missing} are not destination columns"
                )

        if config.sync.retry_base_delay > config.sync.retry_max_delay:
            warnings.append(
                f"sync.retry_base_delay ({config.sync.retry_base_delay}) exceeds "
                f"sync.retry_max_delay ({config.sync.retry_max_delay})"
            )

        if warnings:
            log.warning("configuration_validation_warnings", warnings=warnings)

        return warnings
