"""
Logging for the survey marking engine.

Everything logs under the ``surveymark`` logger. Records carry the marking
context (user, session, batch, scheme, operation) through a ``ContextVar``,
so each thread of a batch pool reports the session it is working on.
"""

from __future__ import annotations

import json
import logging
import logging.config
import os
import time
from collections.abc import Callable
from contextvars import ContextVar
from datetime import UTC, datetime
from functools import wraps
from types import TracebackType
from typing import Any, ParamSpec, TypeVar

from .config import LoggingConfig

P = ParamSpec("P")
R = TypeVar("R")

ROOT_LOGGER_NAME = "surveymark"
CONTEXT_FIELDS = ("user_id", "session_id", "batch_id", "scheme_id", "operation")
QUIET_LOGGERS = ("sqlalchemy.engine", "rq.worker")

# LoggingConfig overrides per ENVIRONMENT value
ENVIRONMENT_PROFILES: dict[str, dict[str, Any]] = {
    "development": {"level": "DEBUG", "structured": False},
    "production": {"level": "INFO", "console_enabled": False},
    "test": {"level": "WARNING", "file_path": None, "structured": False},
}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, including any marking context."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(
            {name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)}
        )
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, ensure_ascii=False, default=str)


class ContextFilter(logging.Filter):
    """Copies the current marking context onto every record."""

    def __init__(self):
        super().__init__()
        self._context: ContextVar[dict[str, Any] | None] = ContextVar("log_context", default=None)

    @property
    def context(self) -> dict[str, Any]:
        return self._context.get() or {}

    @context.setter
    def context(self, value: dict[str, Any]) -> None:
        self._context.set(dict(value))

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            setattr(record, key, value)
        return True


context_filter = ContextFilter()


def setup_logging(config: LoggingConfig) -> None:
    """
    Apply a ``LoggingConfig`` through ``dictConfig``.

    The file handler always writes JSON; the console follows ``structured``.

    Example:
        >>> setup_logging(LoggingConfig(level="DEBUG", file_path="./logs/marking.log"))
    """
    handlers: dict[str, dict[str, Any]] = {}
    if config.console_enabled:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "formatter": "structured" if config.structured else "standard",
            "stream": "ext://sys.stdout",
        }
    file_handler = config.get_file_handler_config()
    if file_handler is not None:
        handlers["file"] = {**file_handler, "formatter": "structured"}
    for handler in handlers.values():
        handler.update(level=config.level, filters=["context"])

    names = list(handlers)
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "structured": {"()": StructuredFormatter},
                "standard": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
            },
            "filters": {"context": {"()": lambda: context_filter}},
            "handlers": handlers,
            "loggers": {
                ROOT_LOGGER_NAME: {"level": config.level, "handlers": names, "propagate": False},
                **{
                    name: {"level": "WARNING", "handlers": names, "propagate": False}
                    for name in QUIET_LOGGERS
                },
            },
            "root": {"level": config.level, "handlers": names},
        }
    )


def configure_for_environment(environment: str | None = None) -> str:
    """Configure logging for ``environment`` (default: ``$ENVIRONMENT``); unknown names use development."""
    env = (environment or os.getenv("ENVIRONMENT", "development")).lower()
    profile = ENVIRONMENT_PROFILES.get(env, ENVIRONMENT_PROFILES["development"])
    setup_logging(LoggingConfig(**profile))
    get_logger(__name__).info(f"Logging configured for {env} environment")
    return env


def get_logger(name: str) -> logging.Logger:
    """
    A logger under the package logger.

    Example:
        >>> get_logger("batch").name
        'surveymark.batch'
    """
    prefix = f"{ROOT_LOGGER_NAME}."
    full = name if name.startswith(prefix) or name == ROOT_LOGGER_NAME else f"{prefix}{name}"
    return logging.getLogger(full)


def set_context(**kwargs: Any) -> None:
    context_filter.context = {**context_filter.context, **kwargs}


def clear_context() -> None:
    context_filter.context = {}


class LogContext:
    """
    Scoped marking context; the previous context is restored on exit.

    Example:
        >>> with LogContext(session_id=42, operation="mark"):
        ...     logger.info("marking")
    """

    def __init__(self, **kwargs: Any):
        self.context = kwargs
        self.previous_context: dict[str, Any] = {}

    def __enter__(self) -> LogContext:
        self.previous_context = context_filter.context
        set_context(**self.context)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        context_filter.context = self.previous_context


def log_operation(
    operation: str, logger: logging.Logger | None = None
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Log start, success and failure of a facade call; failures are re-raised."""

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            func_logger = logger or get_logger(func.__module__)
            with LogContext(operation=operation):
                func_logger.info(f"Starting {operation}")
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    func_logger.error(f"Failed {operation}: {e}", exc_info=True)
                    raise
                func_logger.info(f"Completed {operation}")
                return result

        return wrapper

    return decorator


def log_database_operation(operation: str) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Time a repository call at DEBUG; failures are logged with their duration and re-raised."""

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            logger = get_logger("database")
            with LogContext(operation=f"db_{operation}"):
                started = time.perf_counter()
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    logger.error(
                        f"Database operation {operation} failed after "
                        f"{time.perf_counter() - started:.3f}s: {e}",
                        exc_info=True,
                    )
                    raise
                logger.debug(f"{operation} took {time.perf_counter() - started:.3f}s")
                return result

        return wrapper

    return decorator


if not logging.getLogger().handlers:
    configure_for_environment()
