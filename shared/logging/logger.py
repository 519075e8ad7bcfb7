"""
FarmLogger - Structured logging for device-farm components.
"""

import logging
import os
import time
import traceback
from pathlib import Path
from typing import Any, Optional
from logging.handlers import RotatingFileHandler

from .formatters import JsonLinesFormatter, ConsoleFormatter

# Cache of loggers by module.component
_loggers: dict[str, "FarmLogger"] = {}

# Default log directory (relative to project root)
_log_dir: Optional[Path] = None


def _get_log_dir() -> Path:
    """Get or create log directory."""
    global _log_dir
    if _log_dir is None:
        override = os.environ.get("FARM_LOG_DIR")
        if override:
            _log_dir = Path(override)
        else:
            # Try to find project root (look for shared/ directory)
            current = Path(__file__).resolve()
            for parent in current.parents:
                if (parent / "shared").exists():
                    _log_dir = parent / "logs"
                    break
            else:
                _log_dir = Path("logs")

        _log_dir.mkdir(parents=True, exist_ok=True)
    return _log_dir


def get_logger(module: str, component: str, console: bool = True) -> "FarmLogger":
    """
    Get or create a FarmLogger for a module/component.

    Args:
        module: Module name (coordinator, api, worker)
        component: Component within module (queue, state, pools, etc.)
        console: Whether to also output to console

    Returns:
        FarmLogger instance
    """
    key = f"{module}.{component}"
    if key not in _loggers:
        _loggers[key] = FarmLogger(module, component, console)
    return _loggers[key]


class FarmLogger:
    """
    Structured logger for farm components.

    Outputs JSON Lines to file and optionally human-readable to console.
    All events include correlation ID for tracing.
    """

    def __init__(self, module: str, component: str, console: bool = True):
        """
        Initialize logger.

        Args:
            module: Module name (coordinator, api, worker)
            component: Component within module
            console: Whether to output to console
        """
        self.module = module
        self.component = component
        self._logger = logging.getLogger(f"farm.{module}.{component}")
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False  # Don't propagate to root logger

        self._logger.handlers.clear()

        log_dir = _get_log_dir()
        log_file = log_dir / f"{module}.jsonl"

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=50 * 1024 * 1024,  # 50MB
            backupCount=10,
            encoding='utf-8',
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JsonLinesFormatter())
        self._logger.addHandler(file_handler)

        if console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.INFO)
            console_handler.setFormatter(ConsoleFormatter())
            self._logger.addHandler(console_handler)

    def event(
        self,
        event_type: str,
        level: str = "INFO",
        **data: Any,
    ) -> None:
        """
        Log a structured event.

        Args:
            event_type: Event type identifier (e.g., "coordinator.queue.task_leased")
            level: Log level (DEBUG, INFO, WARNING, ERROR)
            **data: Event-specific data fields
        """
        log_level = getattr(logging, level.upper(), logging.INFO)

        event_data = {
            "event_type": event_type,
            "farm_module": self.module,
            "component": self.component,
            **data,
        }

        self._logger.log(
            log_level,
            event_type,
            extra={
                "event_type": event_type,
                "farm_module": self.module,
                "component": self.component,
                "event_data": event_data,
            },
        )

    def debug(self, event_type: str, **data: Any) -> None:
        """Log a DEBUG level event."""
        self.event(event_type, level="DEBUG", **data)

    def info(self, event_type: str, **data: Any) -> None:
        """Log an INFO level event."""
        self.event(event_type, level="INFO", **data)

    def warning(self, event_type: str, **data: Any) -> None:
        """Log a WARNING level event."""
        self.event(event_type, level="WARNING", **data)

    def error(self, event_type: str, **data: Any) -> None:
        """Log an ERROR level event."""
        self.event(event_type, level="ERROR", **data)

    def exception(
        self,
        error: Exception,
        event_type: str = "error",
        context: Optional[dict] = None,
    ) -> None:
        """
        Log an exception with full stack trace.

        Args:
            error: The exception to log
            event_type: Event type (default: "error")
            context: Additional context about what was happening
        """
        self.event(
            event_type,
            level="ERROR",
            error_class=type(error).__name__,
            error_message=str(error),
            stack_trace=traceback.format_exc(),
            context=context or {},
        )

    def timed(self, event_type: str, start_time: float, **data: Any) -> None:
        """
        Log an event with the elapsed time since start_time.

        Args:
            event_type: Event type identifier
            start_time: Value of time.time() when the operation began
            **data: Additional fields
        """
        duration_ms = (time.time() - start_time) * 1000
        self.event(event_type, duration_ms=round(duration_ms, 2), **data)
