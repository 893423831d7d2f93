"""Logger manager with structured output, per-task context and counters.

Each lifecycle instance runs in its own asyncio task, so log context (the
instance id, the target account) is carried in a `ContextVar` rather than on
the logger itself. A filter copies the active context onto every record; the
JSON formatter emits it as the `context` field.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
import datetime
from enum import Enum
import json
import logging
from logging import Handler, Logger, LogRecord, getLevelName
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
import threading
from typing import Any, ClassVar

import colorlog

_log_context: ContextVar[Mapping[str, Any]] = ContextVar(
    "ephemeral_agent_log_context", default={}
)


class MetricType(Enum):
    """Enum for supported metric types."""

    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass
class LoggerConfig:
    """Configuration for LoggerManager."""

    log_dir: Path = Path("artifacts/logs")
    log_level: str = "INFO"
    log_file_name: str = "orchestrator.log"
    max_file_size_mb: int = 10
    backup_count: int = 3
    structured_logging: bool = False
    file_logging: bool = True
    telemetry_enabled: bool = True
    log_colors: dict[str, str] | None = None

    DEFAULT_LOG_COLORS: ClassVar[dict[str, str]] = {
        "DEBUG": "cyan",
        "INFO": "green",
        "WARNING": "yellow",
        "ERROR": "red",
        "CRITICAL": "red,bg_white",
    }

    def __post_init__(self) -> None:
        self.log_dir = Path(self.log_dir).resolve()
        self.log_level = self.log_level.upper()
        if self.file_logging:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        self.log_colors = self.log_colors or self.DEFAULT_LOG_COLORS


class ContextFilter(logging.Filter):
    """Attach the active log context to each record."""

    def filter(self, record: LogRecord) -> bool:
        if not hasattr(record, "context"):
            record.context = dict(_log_context.get())
        return True


class StructuredFormatter(logging.Formatter):
    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": datetime.datetime.fromtimestamp(
                record.created, tz=datetime.UTC
            ).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
            "context": getattr(record, "context", {}),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False, default=str)


class LoggerSettings:
    """Builds console and file handlers from a LoggerConfig."""

    def __init__(self, config: LoggerConfig) -> None:
        self.config = config

    def get_handlers(self) -> tuple[Handler, Handler | None]:
        return self._get_console_handler(), self._get_file_handler()

    def _get_console_handler(self) -> Handler:
        handler = colorlog.StreamHandler()
        formatter: logging.Formatter = (
            StructuredFormatter()
            if self.config.structured_logging
            else colorlog.ColoredFormatter(
                "%(log_color)s%(asctime)s - [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
                log_colors=self.config.log_colors,
            )
        )
        handler.setFormatter(formatter)
        handler.addFilter(ContextFilter())
        return handler

    def _get_file_handler(self) -> RotatingFileHandler | None:
        if not self.config.file_logging:
            return None
        file_path = self.config.log_dir / self.config.log_file_name
        try:
            handler = RotatingFileHandler(
                file_path,
                maxBytes=self.config.max_file_size_mb * 1024 * 1024,
                backupCount=self.config.backup_count,
                encoding="utf-8",
            )
        except OSError as e:
            print(f"Failed to create RotatingFileHandler: {e}", file=sys.stderr)
            return None
        handler.setFormatter(
            StructuredFormatter()
            if self.config.structured_logging
            else logging.Formatter(
                "%(asctime)s - [%(levelname)s] %(name)s: %(message)s %(context)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        handler.addFilter(ContextFilter())
        return handler


class CustomLogger:
    """Logger wrapper exposing context and metric helpers."""

    def __init__(self, logger: Logger, manager: LoggerManager) -> None:
        self.logger = logger
        self.manager = manager

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.logger.error(msg, *args, **kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.logger.exception(msg, *args, **kwargs)

    def critical(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.logger.critical(msg, *args, **kwargs)

    @contextmanager
    def context(self, **context_kwargs: Any) -> Iterator[CustomLogger]:
        with self.manager.context(**context_kwargs):
            yield self

    def metric(
        self,
        metric_name: str,
        value: int | float = 1,
        metric_type: MetricType = MetricType.COUNTER,
        tags: Mapping[str, str] | None = None,
    ) -> None:
        self.manager.log_metric(metric_name, value, metric_type, tags)


class LoggerManager:
    """Owns the orchestrator logger, its handlers and in-process counters."""

    def __init__(
        self,
        name: str | LoggerConfig = "ephemeral_agent",
        config: LoggerConfig | None = None,
    ) -> None:
        if isinstance(name, LoggerConfig):
            config = name
            name = "ephemeral_agent"
        self.name = name
        self.config = config or LoggerConfig()
        self.settings = LoggerSettings(self.config)
        self._metrics: dict[str, dict[str, Any]] = defaultdict(
            lambda: {"type": MetricType.COUNTER.value, "value": 0, "tags": {}}
        )
        self._metrics_lock = threading.Lock()
        self._logger = self._configure_logger()

    def get_logger(self, child: str | None = None) -> CustomLogger:
        logger = self._logger.getChild(child) if child else self._logger
        return CustomLogger(logger, self)

    def _configure_logger(self) -> Logger:
        logger = logging.getLogger(self.name)
        logger.setLevel(getLevelName(self.config.log_level))
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        console_handler, file_handler = self.settings.get_handlers()
        logger.addHandler(console_handler)
        if file_handler:
            logger.addHandler(file_handler)
        logger.propagate = False
        return logger

    @contextmanager
    def context(self, **context_kwargs: Any) -> Iterator[Logger]:
        """Merge fields into the log context for the current task."""
        merged = {**_log_context.get(), **context_kwargs}
        token = _log_context.set(merged)
        try:
            yield self._logger
        finally:
            _log_context.reset(token)

    def log_metric(
        self,
        metric_name: str,
        value: int | float = 1,
        metric_type: MetricType = MetricType.COUNTER,
        tags: Mapping[str, str] | None = None,
    ) -> None:
        if not self.config.telemetry_enabled:
            return
        tags_dict = dict(tags or {})
        key = metric_name
        if tags_dict:
            key = metric_name + "{" + ",".join(
                f"{k}={v}" for k, v in sorted(tags_dict.items())
            ) + "}"
        with self._metrics_lock:
            metric = self._metrics[key]
            metric["type"] = metric_type.value
            metric["tags"] = tags_dict
            if metric_type == MetricType.COUNTER:
                metric["value"] += value
            else:
                metric["value"] = value
        self._logger.debug(f"Metric recorded: {key} = {value}")

    def get_metrics(self) -> dict[str, dict[str, Any]]:
        with self._metrics_lock:
            return {key: dict(value) for key, value in self._metrics.items()}

    def reset_metrics(self) -> None:
        with self._metrics_lock:
            self._metrics.clear()

    def flush(self) -> None:
        for handler in self._logger.handlers:
            handler.flush()

    def export_metrics_to_file(self, file_path: str | Path) -> None:
        metrics = self.get_metrics()
        try:
            with open(file_path, "w", encoding="utf-8") as f:
                json.dump(metrics, f, indent=2)
        except OSError as e:
            self._logger.error(f"Metrics export to file failed: {e}")
            return
        self._logger.info(f"Metrics exported to {file_path}")


def component_logger(
    logger_manager: LoggerManager | None, name: str
) -> CustomLogger | Logger:
    """Logger for a component: the manager's child logger, or a module logger."""
    if logger_manager is not None:
        return logger_manager.get_logger(name.rsplit(".", 1)[-1])
    return logging.getLogger(name)


def record_metric(
    logger_manager: LoggerManager | None,
    metric_name: str,
    value: int | float = 1,
    tags: Mapping[str, str] | None = None,
) -> None:
    if logger_manager is not None:
        logger_manager.log_metric(metric_name, value, MetricType.COUNTER, tags)
