"""Configuration Manager for import settings.

This module loads the dispatcher configuration (size limit, enabled formats,
validation level, duplicate handling, batching) from environment variables or
a JSON file and validates it into an immutable ImportConfig.

Security Impact:
    - Configuration is validated before use (fail fast on bad values)
    - File parsing is JSON only (no code execution)

Architecture:
    - Follows Hexagonal Architecture: Infrastructure layer isolated from domain
    - Type-safe configuration using Pydantic models
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from clinical_import.domain.enums import ImportFormat
from clinical_import.domain.ports import ConfigurationError
from clinical_import.services.format_detector import is_valid_file_size, parse_file_size

logger = logging.getLogger(__name__)

ENV_PREFIX = "CI_"


def load_env_file(env_path: Optional[Union[str, Path]] = None) -> bool:
    """Load a ``.env`` file into the process environment.

    Existing environment variables take precedence over the file.

    Parameters:
        env_path: Path to the file, ``./.env`` by default

    Returns:
        bool: True when a file was found and loaded
    """
    path = Path(env_path) if env_path else Path.cwd() / ".env"
    if not path.exists():
        return False
    loaded = load_dotenv(path, override=False)
    logger.debug(f"Loaded environment variables from {path}")
    return loaded


class ImportConfig(BaseModel):
    """Dispatcher configuration.

    Parameters:
        max_file_size: Size limit such as "50MB" (B/KB/MB/GB, 1024-based)
        supported_formats: Formats the dispatcher accepts
        validation_level: "strict" or "lenient"
        duplicate_handling: What the persistence layer does with duplicates
            ("skip", "update" or "error")
        batch_size: Rows per insert batch handed to the persistence layer
        transaction_mode: "single" (one transaction) or "batch"
    """

    max_file_size: Union[str, int] = "50MB"
    supported_formats: list[ImportFormat] = Field(default_factory=lambda: list(ImportFormat))
    validation_level: Literal["strict", "lenient"] = "strict"
    duplicate_handling: Literal["skip", "update", "error"] = "skip"
    batch_size: int = Field(default=1000, ge=1)
    transaction_mode: Literal["single", "batch"] = "single"

    @field_validator("supported_formats", mode="before")
    @classmethod
    def split_formats(cls, v):
        if isinstance(v, str):
            return [item.strip().lower() for item in v.split(",") if item.strip()]
        return v

    @field_validator("max_file_size")
    @classmethod
    def validate_max_file_size(cls, v):
        if not is_valid_file_size(v):
            raise ValueError(f"Invalid file size: {v!r} (expected e.g. '50MB')")
        return v

    @property
    def max_file_size_bytes(self) -> int:
        return parse_file_size(self.max_file_size)

    model_config = ConfigDict(frozen=True, extra="forbid")


class ConfigManager:
    """Configuration manager for import settings.

    Example Usage:
        ```python
        # Load from environment variables
        config = ConfigManager.from_environment()
        import_config = config.get_import_config()

        # Load from file
        config = ConfigManager.from_file("clinical_import.json")
        import_config = config.get_import_config()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        """Initialize configuration manager.

        Parameters:
            config_data: Configuration dictionary
        """
        self._config_data = config_data
        self._import_config: Optional[ImportConfig] = None

    @classmethod
    def from_environment(cls, env_path: Optional[Union[str, Path]] = None) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - CI_MAX_FILE_SIZE: Size limit, e.g. "50MB"
            - CI_SUPPORTED_FORMATS: Comma separated formats (csv,json,hl7,html)
            - CI_VALIDATION_LEVEL: strict or lenient
            - CI_DUPLICATE_HANDLING: skip, update or error
            - CI_BATCH_SIZE: Insert batch size
            - CI_TRANSACTION_MODE: single or batch

        A ``.env`` file is loaded first when present.

        Returns:
            ConfigManager instance
        """
        load_env_file(env_path)

        variables = {
            "max_file_size": "MAX_FILE_SIZE",
            "supported_formats": "SUPPORTED_FORMATS",
            "validation_level": "VALIDATION_LEVEL",
            "duplicate_handling": "DUPLICATE_HANDLING",
            "batch_size": "BATCH_SIZE",
            "transaction_mode": "TRANSACTION_MODE",
        }
        import_data = {
            key: os.getenv(f"{ENV_PREFIX}{name}")
            for key, name in variables.items()
            if os.getenv(f"{ENV_PREFIX}{name}")
        }
        return cls({"import": import_data})

    @classmethod
    def from_file(cls, config_path: Union[str, Path]) -> 'ConfigManager':
        """Load configuration from a JSON file.

        The file holds an ``import`` object with ImportConfig fields, plus
        any other sections the caller reads through ``get``.

        Parameters:
            config_path: Path to configuration file

        Returns:
            ConfigManager instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")

        if not isinstance(config_data, dict):
            raise ValueError("Configuration file must contain a JSON object")
        return cls(config_data)

    def get_import_config(self) -> ImportConfig:
        """Get the validated import configuration.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        if self._import_config is None:
            try:
                self._import_config = ImportConfig(**(self._config_data.get("import") or {}))
            except ValidationError as e:
                raise ConfigurationError(f"Invalid import configuration: {e.error_count()} error(s)\n{e}")
        return self._import_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key.

        Parameters:
            key: Configuration key (supports dot notation, e.g., "import.batch_size")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key.split(".")
        value = self._config_data

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default


# ============================================================================
# Convenience Functions
# ============================================================================

def get_import_config() -> ImportConfig:
    """Convenience function to get the import configuration from environment."""
    return ConfigManager.from_environment().get_import_config()
