"""Configuration loader for JSON/YAML files."""

import json
import yaml
from pathlib import Path
from typing import Dict, Any, Union

from pydantic import ValidationError

from .settings import AppSettings, reload_settings
from ..utils.logging import get_logger


class ConfigurationError(Exception):
    """Raised when configuration loading fails."""
    pass


class ConfigLoader:
    """Loads and validates settings documents."""

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    def load_from_file(self, file_path: Union[str, Path], activate: bool = False) -> AppSettings:
        """Load settings from a JSON or YAML file.

        Args:
            file_path: Path to configuration file
            activate: Install the result as the process settings

        Returns:
            Validated AppSettings object

        Raises:
            ConfigurationError: If file cannot be loaded or validated
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise ConfigurationError(f"Configuration file not found: {file_path}")

        self.logger.info("Loading configuration from file", file_path=str(file_path))

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                if file_path.suffix.lower() in ['.yaml', '.yml']:
                    data = yaml.safe_load(f) or {}
                elif file_path.suffix.lower() == '.json':
                    data = json.load(f)
                else:
                    raise ConfigurationError(f"Unsupported file format: {file_path.suffix}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML format: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON format: {e}") from e

        return self.load_from_dict(data, activate=activate)

    def load_from_dict(self, data: Dict[str, Any], activate: bool = False) -> AppSettings:
        """Load settings from a dictionary.

        Environment variables still apply to keys the document leaves out.
        """
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration document must be a mapping")

        try:
            config = AppSettings(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        if activate:
            reload_settings(config)

        self.logger.info(
            "Configuration loaded",
            environment=config.environment,
            database_url=config.database.url
        )
        return config
