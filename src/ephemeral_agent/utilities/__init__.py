"""Utility helpers shared across the orchestrator."""

from __future__ import annotations

from .clock import Clock, SystemClock
from .logger_manager import CustomLogger, LoggerConfig, LoggerManager, MetricType
from .retry import RetryExhausted, retry_async

__all__ = [
    "Clock",
    "CustomLogger",
    "LoggerConfig",
    "LoggerManager",
    "MetricType",
    "RetryExhausted",
    "SystemClock",
    "retry_async",
]
