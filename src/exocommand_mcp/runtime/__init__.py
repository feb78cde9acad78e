"""Runtime module for subprocess execution and cancellation.

This module provides isolated shell command execution with ordered line
streaming, process-group termination and composable cancellation signals.
"""

from __future__ import annotations

from .cancellation import CancellationController, CancellationSignal
from .process_runner import (
    ExecutionResult,
    LogCallback,
    LogLevel,
    LogRecord,
    LogSource,
    ProcessRunner,
)

__all__ = [
    "CancellationController",
    "CancellationSignal",
    "ExecutionResult",
    "LogCallback",
    "LogLevel",
    "LogRecord",
    "LogSource",
    "ProcessRunner",
]
