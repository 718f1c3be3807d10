"""Application Settings.

Process-wide settings: application metadata plus the validated AppConfig,
loaded lazily from a JSON file (``CS_CONFIG_FILE``) or the environment.
"""

import os
from typing import Optional

from clinisync.infrastructure.config_manager import AppConfig, ConfigManager, DatabaseConfig

# Application metadata
APP_NAME = "clinisync"
APP_VERSION = "1.0.0"


class Settings:
    """Application settings loaded from the configuration manager."""

    def __init__(self, config_file: Optional[str] = None):
        self.app_name = os.getenv("CS_APP_NAME", APP_NAME)
        self.config_file = config_file or os.getenv("CS_CONFIG_FILE")
        self._config_manager: Optional[ConfigManager] = None

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            if self.config_file:
                self._config_manager = ConfigManager.from_file(self.config_file)
            else:
                self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def config(self) -> AppConfig:
        return self.config_manager.get_app_config()

    @property
    def db_config(self) -> DatabaseConfig:
        return self.config.database

    def get_db_path(self) -> str:
        """Database path, or ':memory:' for an in-memory database."""
        return self.db_config.db_path or ":memory:"


# Global settings instance
settings = Settings()
