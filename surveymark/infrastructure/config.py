"""
Centralized configuration management for the survey marking engine.

Provides environment-specific configuration with validation and type safety
using pydantic-settings. Each concern lives in its own settings section with
its own environment prefix.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class DatabaseConfig(BaseSettings):
    """
    Database configuration settings.

    Example:
        >>> db_config = DatabaseConfig(backend="sqlite", sqlite_path="./test.db")
        >>> db_config.get_connection_url()
        'sqlite:///./test.db'
    """

    backend: Literal["sqlite", "mysql"] = Field("sqlite", description="Database backend type")

    sqlite_path: str | None = Field("./surveymark.db", description="SQLite database file path")

    mysql_host: str | None = Field("localhost", description="MySQL host")
    mysql_port: int | None = Field(3306, ge=1, le=65535, description="MySQL port")
    mysql_user: str | None = Field("root", description="MySQL username")
    mysql_password: str | None = Field("", description="MySQL password")
    mysql_database: str | None = Field("surveymark", description="MySQL database name")
    mysql_charset: str = Field("utf8mb4", description="MySQL character set")

    pool_pre_ping: bool = Field(True, description="Enable connection pool pre-ping")
    pool_recycle: int = Field(3600, ge=60, description="Connection pool recycle time (seconds)")
    echo: bool = Field(False, description="Enable SQL query logging")

    model_config = {"env_prefix": "DB_", "case_sensitive": False}

    @field_validator("sqlite_path")
    def validate_sqlite_path(cls, v):
        """Ensure the SQLite directory exists and the file has an extension."""
        if v and v != ":memory:":
            path = Path(v)
            path.parent.mkdir(parents=True, exist_ok=True)
            if not path.suffix:
                v = str(path.with_suffix(".db"))
        return v

    @model_validator(mode="after")
    def validate_mysql_config(self):
        if self.backend == "mysql":
            missing = []
            if not self.mysql_host:
                missing.append("mysql_host")
            if not self.mysql_user:
                missing.append("mysql_user")
            if not self.mysql_database:
                missing.append("mysql_database")
            if missing:
                raise ValueError(f"MySQL backend requires: {', '.join(missing)}")
        return self

    def get_connection_url(self) -> str:
        """
        Generate database connection URL.

        Raises:
            ValueError: If backend is unsupported
        """
        if self.backend == "sqlite":
            return f"sqlite:///{self.sqlite_path}"
        elif self.backend == "mysql":
            password_part = f":{self.mysql_password}" if self.mysql_password else ""
            return (
                f"mysql+pymysql://{self.mysql_user}{password_part}@{self.mysql_host}:"
                f"{self.mysql_port}/{self.mysql_database}?charset={self.mysql_charset}"
            )
        else:
            raise ValueError(f"Unsupported database backend: {self.backend}")

    def get_engine_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {
            "echo": self.echo,
            "future": True,
            "pool_pre_ping": self.pool_pre_ping,
        }
        if self.backend == "sqlite":
            # Batch workers open their own sessions from separate threads.
            options["connect_args"] = {"check_same_thread": False}
        else:
            options["pool_recycle"] = self.pool_recycle
        return options


class LoggingConfig(BaseSettings):
    """
    Logging configuration settings.

    Example:
        >>> log_config = LoggingConfig(level="DEBUG", file_path="./logs/marking.log")
        >>> log_config.get_file_handler_config()["maxBytes"]
        10485760
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        "INFO", description="Minimum logging level"
    )
    file_path: str | None = Field("./logs/surveymark.log", description="Log file path")
    max_bytes: int = Field(10 * 1024 * 1024, ge=1024, description="Max log file size in bytes")
    backup_count: int = Field(5, ge=1, description="Number of backup log files")
    structured: bool = Field(True, description="Use structured JSON logging")
    console_enabled: bool = Field(True, description="Enable console output")

    model_config = {"env_prefix": "LOG_", "case_sensitive": False}

    @field_validator("file_path")
    def validate_log_path(cls, v):
        if v:
            Path(v).parent.mkdir(parents=True, exist_ok=True)
        return v

    def get_file_handler_config(self) -> dict[str, Any] | None:
        if not self.file_path:
            return None

        return {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": self.file_path,
            "maxBytes": self.max_bytes,
            "backupCount": self.backup_count,
            "encoding": "utf-8",
        }


class MarkingConfig(BaseSettings):
    """
    Marking engine settings.

    Controls the grade sentinel used when no boundary matches, the batch
    worker pool, progress reporting and how long batch status records live.

    Example:
        >>> cfg = MarkingConfig(batch_max_workers=8)
        >>> cfg.default_grade
        'F'
    """

    default_grade: str = Field("F", min_length=1, max_length=16, description="Fallback grade")
    batch_max_workers: int = Field(4, ge=1, le=64, description="Concurrent marking workers")
    progress_interval: int = Field(10, ge=1, description="Log progress every N sessions")
    batch_status_ttl_seconds: int = Field(
        3600, ge=1, description="How long batch status records are retrievable"
    )
    status_backend: Literal["memory", "redis"] = Field(
        "memory", description="Where batch status records are stored"
    )
    keyword_policy: Literal["any", "all", "proportional"] = Field(
        "any", description="Keyword scoring when a rule does not name one"
    )
    notify_on_mark: bool = Field(True, description="Invoke the notifier after marking")

    model_config = {"env_prefix": "MARKING_", "case_sensitive": False}


class QueueConfig(BaseSettings):
    """
    Background job queue settings (rq on Redis).

    Example:
        >>> QueueConfig().queue_name
        'marking'
    """

    redis_url: str = Field("redis://localhost:6379/0", description="Redis connection URL")
    queue_name: str = Field("marking", min_length=1, description="rq queue name")
    job_timeout_seconds: int = Field(300, ge=1, description="Per-job timeout on the worker")
    result_ttl_seconds: int = Field(3600, ge=0, description="How long rq keeps job results")

    model_config = {"env_prefix": "QUEUE_", "case_sensitive": False}

    @field_validator("redis_url")
    def validate_redis_url(cls, v):
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("redis_url must use the redis://, rediss:// or unix:// scheme")
        return v


class ApplicationConfig(BaseSettings):
    """
    Main application configuration.

    Example:
        >>> config = get_settings()
        >>> config.app.environment in {"development", "testing", "production"}
        True
    """

    environment: Literal["development", "testing", "production"] = Field(
        "development", description="Application environment"
    )
    debug: bool = Field(False, description="Enable debug mode")
    version: str = Field("0.1.0", description="Application version")

    model_config = {"env_prefix": "APP_", "case_sensitive": False}

    @model_validator(mode="after")
    def debug_implies_development(self):
        if self.debug and self.environment == "production":
            raise ValueError("Debug mode cannot be enabled in production")
        return self


class Settings:
    """
    Complete application settings container with lazily built sections.

    Example:
        >>> settings = get_settings()
        >>> settings.marking.batch_max_workers >= 1
        True
    """

    def __init__(self):
        self._app: ApplicationConfig | None = None
        self._database: DatabaseConfig | None = None
        self._logging: LoggingConfig | None = None
        self._marking: MarkingConfig | None = None
        self._queue: QueueConfig | None = None

    @property
    def app(self) -> ApplicationConfig:
        if self._app is None:
            self._app = ApplicationConfig()
        return self._app

    @property
    def database(self) -> DatabaseConfig:
        if self._database is None:
            self._database = DatabaseConfig()
        return self._database

    @property
    def logging(self) -> LoggingConfig:
        if self._logging is None:
            level = "DEBUG" if self.app.debug else "INFO"
            if self.app.environment == "production":
                level = "WARNING"
            self._logging = LoggingConfig(level=level)
        return self._logging

    @property
    def marking(self) -> MarkingConfig:
        if self._marking is None:
            self._marking = MarkingConfig()
        return self._marking

    @property
    def queue(self) -> QueueConfig:
        if self._queue is None:
            self._queue = QueueConfig()
        return self._queue

    def is_development(self) -> bool:
        return self.app.environment == "development"

    def is_production(self) -> bool:
        return self.app.environment == "production"

    def is_testing(self) -> bool:
        return self.app.environment == "testing"

    def get_environment_info(self) -> dict[str, Any]:
        """Get summary of current environment configuration."""
        return {
            "environment": self.app.environment,
            "version": self.app.version,
            "debug": self.app.debug,
            "database_backend": self.database.backend,
            "logging_level": self.logging.level,
            "marking": {
                "default_grade": self.marking.default_grade,
                "batch_max_workers": self.marking.batch_max_workers,
                "status_backend": self.marking.status_backend,
            },
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get application settings instance (cached).

    Example:
        >>> settings = get_settings()
        >>> settings.database.get_connection_url().startswith(("sqlite", "mysql"))
        True
    """
    return Settings()


def load_settings_from_file(file_path: str) -> Settings:
    """
    Load settings from a JSON file of ``{section: {key: value}}`` pairs.

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        ValueError: If file format is unsupported

    Example:
        >>> settings = load_settings_from_file("config/production.json")
    """
    config_path = Path(file_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {file_path}")

    if config_path.suffix.lower() == ".json":
        with open(config_path) as f:
            config_data = json.load(f)
    else:
        raise ValueError(f"Unsupported configuration file format: {config_path.suffix}")

    for section, values in config_data.items():
        if isinstance(values, dict):
            for key, value in values.items():
                env_key = f"{section.upper()}_{key.upper()}"
                os.environ[env_key] = str(value)

    get_settings.cache_clear()
    return get_settings()


def override_settings(**kwargs) -> Settings:
    """
    Override specific settings for testing or development.

    Keys are environment variable names without case, e.g.
    ``marking_batch_max_workers=2`` sets ``MARKING_BATCH_MAX_WORKERS``.

    Example:
        >>> settings = override_settings(app_environment="testing")
        >>> settings.app.environment
        'testing'
    """
    for key, value in kwargs.items():
        os.environ[key.upper()] = str(value)

    get_settings.cache_clear()
    return get_settings()


def reset_settings() -> None:
    """Reset settings cache to reload from environment."""
    get_settings.cache_clear()
