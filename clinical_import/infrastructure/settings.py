"""Application Settings and Configuration.

This module provides application-wide settings that combine configuration
from the configuration manager with application-specific defaults.

Security Impact:
    - Settings are loaded from the environment (and an optional .env file)
    - Defaults are provided for development convenience
"""

import os
from typing import Optional

from clinical_import import __version__
from clinical_import.infrastructure.config_manager import ConfigManager, ImportConfig, load_env_file

# Application metadata
APP_NAME = "clinical-import"
APP_VERSION = __version__


class Settings:
    """Application settings loaded from configuration manager and environment.

    This class provides a unified interface for accessing application settings,
    combining values from the configuration manager with environment variables
    and sensible defaults.
    """

    def __init__(self):
        """Initialize settings from configuration manager and environment."""
        load_env_file()
        self._config_manager: Optional[ConfigManager] = None
        self._import_config: Optional[ImportConfig] = None

        self.app_name = os.getenv("CI_APP_NAME", APP_NAME)

        # Logging
        self.log_level = os.getenv("CI_LOG_LEVEL", "INFO")
        self.log_json = os.getenv("CI_LOG_JSON", "false").lower() == "true"

        # Concept/rule seed data for the in-memory repositories
        self.seed_file = os.getenv("CI_SEED_FILE") or None

    @property
    def config_manager(self) -> ConfigManager:
        """Get configuration manager instance."""
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def import_config(self) -> ImportConfig:
        """Get the validated import configuration.

        Raises:
            ConfigurationError: If the environment holds invalid values
        """
        if self._import_config is None:
            self._import_config = self.config_manager.get_import_config()
        return self._import_config


# Global settings instance
settings = Settings()
