"""
Checkpoints for rollback-style recovery.

Before a task-bound worker starts, the orchestrator records what the
device held at that moment. If the run fails, anything acquired after the
checkpoint is handed back to its pool.

Checkpoints are one JSON file each; a task keeps at most max_checkpoints.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from shared.logging import get_logger

from .fileio import read_json, write_json_atomic

log = get_logger("coordinator", "recovery")


@dataclass
class Checkpoint:
    id: str
    task_id: int
    device_id: str
    # Pool kind -> resource key held at checkpoint time (None if nothing)
    holdings: dict[str, Optional[str]] = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "taskId": self.task_id,
            "deviceId": self.device_id,
            "holdings": self.holdings,
            "metadata": self.metadata,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Checkpoint":
        return cls(
            id=data["id"],
            task_id=int(data["taskId"]),
            device_id=data["deviceId"],
            holdings=data.get("holdings") or {},
            metadata=data.get("metadata") or {},
            created_at=data.get("createdAt", time.time()),
        )


class CheckpointStore:
    """
    Per-task checkpoint history on disk.
    """

    def __init__(self, checkpoint_dir: Path, max_checkpoints: int = 10):
        self.checkpoint_dir = Path(checkpoint_dir)
        self.max_checkpoints = max_checkpoints
        self._checkpoints: dict[int, list[Checkpoint]] = {}
        self._stats = {"saved": 0, "restored": 0, "deleted": 0}

    @classmethod
    def from_config(cls, config) -> "CheckpointStore":
        return cls(
            checkpoint_dir=config.resolve(config.recovery.checkpoint_dir),
            max_checkpoints=config.recovery.max_checkpoints,
        )

    def _path(self, checkpoint_id: str) -> Path:
        return self.checkpoint_dir / f"{checkpoint_id}.json"

    def load(self):
        """Read every checkpoint file; unreadable files are skipped."""
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        self._checkpoints = {}

        for path in sorted(self.checkpoint_dir.glob("*.json")):
            try:
                checkpoint = Checkpoint.from_dict(read_json(path))
            except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                log.warning("coordinator.recovery.checkpoint_unreadable",
                            path=str(path), error=str(e))
                continue
            self._checkpoints.setdefault(checkpoint.task_id, []).append(checkpoint)

        for history in self._checkpoints.values():
            history.sort(key=lambda c: c.created_at)

        log.info("coordinator.recovery.loaded",
                 tasks=len(self._checkpoints),
                 checkpoints=sum(len(h) for h in self._checkpoints.values()))

    def create(
        self,
        task_id: int,
        device_id: str,
        holdings: dict[str, Optional[str]],
        metadata: Optional[dict] = None,
    ) -> Checkpoint:
        """Record a checkpoint, dropping the task's oldest beyond the limit."""
        checkpoint = Checkpoint(
            id=str(uuid.uuid4()),
            task_id=task_id,
            device_id=device_id,
            holdings=dict(holdings),
            metadata=metadata or {},
        )
        write_json_atomic(self._path(checkpoint.id), checkpoint.to_dict())

        history = self._checkpoints.setdefault(task_id, [])
        history.append(checkpoint)
        while len(history) > self.max_checkpoints:
            self._remove_file(history.pop(0))

        self._stats["saved"] += 1
        log.info("coordinator.recovery.checkpoint_created",
                 task_id=task_id, device_id=device_id, checkpoint_id=checkpoint.id)
        return checkpoint

    def latest(self, task_id: int) -> Optional[Checkpoint]:
        history = self._checkpoints.get(task_id)
        return history[-1] if history else None

    def get(self, checkpoint_id: str) -> Optional[Checkpoint]:
        for history in self._checkpoints.values():
            for checkpoint in history:
                if checkpoint.id == checkpoint_id:
                    return checkpoint
        return None

    def restore(self, checkpoint_id: str) -> Checkpoint:
        """
        Look up a checkpoint for rollback.

        Raises:
            KeyError: Unknown checkpoint id.
        """
        checkpoint = self.get(checkpoint_id)
        if checkpoint is None:
            raise KeyError(f"Checkpoint {checkpoint_id} not found")
        self._stats["restored"] += 1
        log.info("coordinator.recovery.checkpoint_restored",
                 task_id=checkpoint.task_id, checkpoint_id=checkpoint_id)
        return checkpoint

    def discard(self, task_id: int) -> int:
        """Delete every checkpoint of a finished task."""
        history = self._checkpoints.pop(task_id, [])
        for checkpoint in history:
            self._remove_file(checkpoint)
        return len(history)

    def _remove_file(self, checkpoint: Checkpoint):
        path = self._path(checkpoint.id)
        try:
            path.unlink()
            self._stats["deleted"] += 1
        except FileNotFoundError:
            pass

    def summary(self) -> dict[str, dict]:
        """task id -> latest checkpoint, for the ui namespace."""
        return {str(task_id): history[-1].to_dict()
                for task_id, history in self._checkpoints.items() if history}

    def get_stats(self) -> dict:
        return {
            "tasks": len(self._checkpoints),
            "checkpoints": sum(len(h) for h in self._checkpoints.values()),
            **self._stats,
        }
