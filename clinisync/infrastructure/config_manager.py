"""Configuration Manager.

Typed configuration for the sync engine, loaded from environment variables
(``CS_`` prefix, with an optional ``.env`` file) or from a JSON file whose
sections are merged over the defaults.

Architecture:
    - Infrastructure layer, isolated from the domain
    - Type-safe configuration using Pydantic
    - Fail-fast validation: invalid values raise at load time
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from clinisync.domain.legacy_schema import DEFAULT_PRELOAD_TABLES, VISIT_LEDGER_TABLE

logger = logging.getLogger(__name__)

ENV_PREFIX = "CS_"

SUPPORTED_ENCODINGS = ("utf-8", "utf-8-sig", "big5", "cp950")


class DatabaseConfig(BaseModel):
    """Durable lab store configuration.

    Parameters:
        db_type: Database type; only 'duckdb' is supported
        db_path: Path to the database file, or ':memory:'
    """

    db_type: str = Field(default="duckdb", description="Database type")
    db_path: Optional[str] = Field(default=":memory:", description="Path to database file")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        if v.lower() != "duckdb":
            raise ValueError(f"Unsupported database type: {v}. Supported: ['duckdb']")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == ":memory:":
            return v
        db_path_obj = Path(v)
        # File may not exist yet; its directory must.
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")
        return str(db_path_obj)


class SourceConfig(BaseModel):
    root: str = Field(default="data/legacy", description="Directory of legacy table exports")
    file_extension: str = Field(default=".csv", description="Export file extension")
    delimiter: str = Field(default=",", min_length=1, max_length=1)
    encoding: str = Field(default="utf-8")

    @field_validator("encoding")
    @classmethod
    def validate_encoding(cls, v: str) -> str:
        if v.lower() not in SUPPORTED_ENCODINGS:
            raise ValueError(f"Unsupported encoding: {v}. Supported: {list(SUPPORTED_ENCODINGS)}")
        return v.lower()


class PreloadConfig(BaseModel):
    tables: list[str] = Field(default_factory=lambda: list(DEFAULT_PRELOAD_TABLES))
    retention_years: int = Field(default=3, description="<= 0 keeps every row")
    # The visit ledger feeds the 5-year preventive-care lookback.
    retention_years_by_table: Dict[str, int] = Field(default_factory=lambda: {VISIT_LEDGER_TABLE: 5})


class LabsConfig(BaseModel):
    item_map_path: Optional[str] = Field(default=None, description="JSON lab item mapping")
    data_retention_years: int = Field(default=3, description="Initial import window")


class SyncConfig(BaseModel):
    batch_size: int = Field(default=5000, gt=0)
    interval_minutes: float = Field(default=10, gt=0)
    sync_on_startup: bool = True


class RulesConfig(BaseModel):
    flu_min_age: int = Field(default=50, ge=0)
    covid_min_age: int = Field(default=50, ge=0)
    glycemic_item: str = "HBA1C"
    glycemic_high_threshold: float = 9.0
    glycemic_moderate_threshold: float = 7.0
    max_action_items: int = Field(default=10, gt=0)
    visit_history_limit: int = Field(default=10, gt=0)
    appointment_limit: int = Field(default=10, gt=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_format: bool = Field(default=False, alias="json")
    file: Optional[str] = None

    model_config = {"populate_by_name": True}

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class AppConfig(BaseModel):
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    preload: PreloadConfig = Field(default_factory=PreloadConfig)
    labs: LabsConfig = Field(default_factory=LabsConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    rules: RulesConfig = Field(default_factory=RulesConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _env(name: str) -> Optional[str]:
    value = os.getenv(f"{ENV_PREFIX}{name}")
    return value if value not in (None, "") else None


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# (section, key) <- environment variable (without prefix), converter
_ENV_VARS = {
    ("database", "db_path"): ("DB_PATH", str),
    ("source", "root"): ("SOURCE_ROOT", str),
    ("source", "file_extension"): ("SOURCE_EXTENSION", str),
    ("source", "delimiter"): ("SOURCE_DELIMITER", str),
    ("source", "encoding"): ("SOURCE_ENCODING", str),
    ("preload", "tables"): ("PRELOAD_TABLES", lambda v: [t.strip() for t in v.split(",") if t.strip()]),
    ("preload", "retention_years"): ("PRELOAD_RETENTION_YEARS", int),
    ("labs", "item_map_path"): ("LAB_ITEM_MAP", str),
    ("labs", "data_retention_years"): ("LAB_RETENTION_YEARS", int),
    ("sync", "batch_size"): ("SYNC_BATCH_SIZE", int),
    ("sync", "interval_minutes"): ("SYNC_INTERVAL_MINUTES", float),
    ("sync", "sync_on_startup"): ("SYNC_ON_STARTUP", _env_bool),
    ("rules", "flu_min_age"): ("FLU_MIN_AGE", int),
    ("rules", "covid_min_age"): ("COVID_MIN_AGE", int),
    ("rules", "glycemic_item"): ("GLYCEMIC_ITEM", str),
    ("rules", "glycemic_high_threshold"): ("GLYCEMIC_HIGH", float),
    ("rules", "glycemic_moderate_threshold"): ("GLYCEMIC_MODERATE", float),
    ("rules", "max_action_items"): ("MAX_ACTION_ITEMS", int),
    ("logging", "level"): ("LOG_LEVEL", str),
    ("logging", "json"): ("LOG_JSON", _env_bool),
    ("logging", "file"): ("LOG_FILE", str),
}


class ConfigManager:
    """Configuration manager for the sync engine.

    Example Usage:
        ```python
        # Load from environment variables
        config = ConfigManager.from_environment()
        app_config = config.get_app_config()

        # Load from file
        config = ConfigManager.from_file("config.json")
        db_config = config.get_database_config()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        self._config_data = config_data
        self._app_config: Optional[AppConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[str] = None) -> 'ConfigManager':
        """Load configuration from ``CS_*`` environment variables.

        A ``.env`` file in the working directory (or ``env_file``) is loaded
        first; variables already set in the environment win.

        Raises:
            ValueError: If a variable cannot be converted to its type
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug(f"Loaded environment variables from {env_path}")

        config_data: Dict[str, Dict[str, Any]] = {}
        for (section, key), (name, convert) in _ENV_VARS.items():
            raw = _env(name)
            if raw is None:
                continue
            try:
                config_data.setdefault(section, {})[key] = convert(raw)
            except ValueError as e:
                raise ValueError(f"Invalid value for {ENV_PREFIX}{name}: {raw!r}") from e

        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        stat_info = config_file.stat()
        if stat_info.st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600."
            )

        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")

        if not isinstance(config_data, dict):
            raise ValueError("Configuration file must contain a JSON object")
        return cls(config_data)

    def get_app_config(self) -> AppConfig:
        """Validated configuration; raises pydantic.ValidationError on bad values."""
        if self._app_config is None:
            self._app_config = AppConfig(**self._config_data)
        return self._app_config

    def get_database_config(self) -> DatabaseConfig:
        return self.get_app_config().database

    def get(self, key: str, default: Any = None) -> Any:
        """Get a raw configuration value by dotted key (e.g. ``"sync.batch_size"``)."""
        value: Any = self._config_data
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default


def get_database_config() -> DatabaseConfig:
    """Database configuration from the environment, defaulting to in-memory DuckDB."""
    return ConfigManager.from_environment().get_database_config()
