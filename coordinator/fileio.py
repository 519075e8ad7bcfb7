"""
Atomic JSON file helpers.

Every durable write in the coordinator goes through write_json_atomic:
.tmp -> fsync -> replace, so a reader sees either the previous file or
the new one, never a truncated document.
"""

import json
import os
from pathlib import Path
from typing import Any, Optional


def tmp_path_for(path: Path) -> Path:
    """Sibling temp file used while writing path."""
    return path.with_name(path.name + ".tmp")


def write_text_atomic(path: Path, text: str) -> None:
    """Atomically replace path with text."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = tmp_path_for(path)
    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except BaseException:
        if temp_path.exists():
            temp_path.unlink()
        raise


def write_json_atomic(path: Path, data: Any) -> None:
    """Serialize data and atomically replace path with it."""
    write_text_atomic(path, json.dumps(data, indent=2))


def read_json(path: Path) -> Optional[Any]:
    """
    Read a JSON file.

    Returns None if the file does not exist. Decode errors propagate
    so callers can decide how to recover.
    """
    path = Path(path)
    if not path.exists():
        return None
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)
