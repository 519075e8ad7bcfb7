"""
Root-level shared fixtures for all device farm tests.

This file provides common fixtures used across multiple test modules.
Module-specific fixtures should be defined in their respective conftest.py files.
"""

import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Generator

import pytest

# Keep test runs from writing JSONL logs into the project tree. Must be set
# before any module creates its logger.
os.environ.setdefault("FARM_LOG_DIR", tempfile.mkdtemp(prefix="farm_logs_"))


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Automatically cleaned up after test completion.
    """
    temp_path = Path(tempfile.mkdtemp(prefix="farm_test_"))
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def sample_config(temp_dir: Path) -> dict[str, Any]:
    """
    Standard test configuration.

    Everything lives under temp_dir; background loops are slowed down so
    tests drive them explicitly.
    """
    return {
        "data_dir": str(temp_dir / "data"),
        "store": {
            "enable_legacy_sync": False,
            "auto_save": False,
        },
        "queue": {
            "lease_timeout": 30,
            "cleanup_interval": 3600,
            "max_attempts": 3,
        },
        "health": {"check_interval": 3600, "timeout": 1},
        "supervisor": {
            "logs_dir": str(temp_dir / "logs"),
            "watch_interval": 3600,
        },
        "worker": {"command": ["true"]},
        "api": {"host": "127.0.0.1", "port": 9999},
        "devices": [
            {"udid": "device-a", "name": "iPhone A"},
            {"udid": "device-b", "name": "iPhone B"},
        ],
    }


@pytest.fixture
def sample_task_data() -> dict[str, Any]:
    """A task as it appears in queue-state.json."""
    return {
        "id": 7,
        "type": "create_account",
        "status": "in_progress",
        "config": {"app": "hinge", "proxyProvider": "marsproxies"},
        "deviceId": "device-a",
        "startedAt": "2025-01-15T10:30:00.000Z",
        "attempts": 1,
        "maxAttempts": 3,
        "createdAt": "2025-01-15T10:00:00.000Z",
        "lastDeviceId": "device-a",
    }


# Utility functions for tests

def create_test_file(path: Path, content: str | dict) -> Path:
    """
    Helper to create a test file with content.

    Args:
        path: Path to create the file at
        content: String content or dict to serialize as JSON

    Returns:
        The path to the created file
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, dict):
        path.write_text(json.dumps(content, indent=2))
    else:
        path.write_text(content)
    return path
