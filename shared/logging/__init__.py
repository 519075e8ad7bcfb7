"""
Structured logging for the device farm.

Provides JSON Lines logging with correlation IDs for tracing work
across components (coordinator, api, worker).

Usage:
    from shared.logging import get_logger, device_context

    log = get_logger("coordinator", "queue")

    with device_context("00008030-001A2C3E0A88802E"):
        log.info("coordinator.queue.task_leased", task_id=12, attempts=1)
"""

from .logger import get_logger, FarmLogger
from .context import (
    correlation_context,
    device_context,
    get_correlation_id,
    set_correlation_id,
    get_session_id,
    set_session_id,
    get_device_id,
    set_device_id,
)

__all__ = [
    "get_logger",
    "FarmLogger",
    "correlation_context",
    "device_context",
    "get_correlation_id",
    "set_correlation_id",
    "get_session_id",
    "set_session_id",
    "get_device_id",
    "set_device_id",
]
