"""
Thread-safe worker process supervision, one process per device.
"""

import os
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, TextIO

from shared.logging import get_logger

log = get_logger("coordinator", "supervisor")


@dataclass
class WorkerProcess:
    """A spawned worker and what it was started for."""
    device_id: str
    session_id: str
    proc: subprocess.Popen
    log_path: Path
    task_id: Optional[int] = None
    started_at: float = field(default_factory=time.time)

    @property
    def pid(self) -> int:
        return self.proc.pid

    def to_dict(self) -> dict:
        return {
            "deviceId": self.device_id,
            "sessionId": self.session_id,
            "pid": self.proc.pid,
            "taskId": self.task_id,
            "startedAt": self.started_at,
            "logPath": str(self.log_path),
            "running": self.proc.poll() is None,
        }


@dataclass
class ProcessExit:
    """A worker that has exited since the last poll."""
    device_id: str
    session_id: str
    pid: int
    exit_code: int
    task_id: Optional[int] = None


class ProcessSupervisor:
    """
    Spawns and tracks worker processes keyed by device id.

    Uses a lock so the API thread and the coordinator loop can both query
    process state.
    """

    def __init__(
        self,
        command: list[str],
        logs_dir: Path = Path("logs/workers"),
        cwd: Optional[str] = None,
        stop_timeout: float = 5.0,
    ):
        self.command = list(command)
        self.logs_dir = Path(logs_dir)
        self.cwd = cwd
        self.stop_timeout = stop_timeout

        self._lock = threading.Lock()
        self._processes: dict[str, WorkerProcess] = {}
        self._log_files: dict[str, TextIO] = {}

    @classmethod
    def from_config(cls, config) -> "ProcessSupervisor":
        return cls(
            command=config.worker.command,
            logs_dir=config.resolve(config.supervisor.logs_dir),
            cwd=config.worker.cwd,
        )

    def get(self, device_id: str) -> Optional[WorkerProcess]:
        """Get the worker for a device."""
        with self._lock:
            return self._processes.get(device_id)

    def is_running(self, device_id: str) -> bool:
        """Check if a device has a live worker."""
        with self._lock:
            worker = self._processes.get(device_id)
            return worker is not None and worker.proc.poll() is None

    def get_pid(self, device_id: str) -> Optional[int]:
        """Get the PID of a device's live worker."""
        with self._lock:
            worker = self._processes.get(device_id)
            if worker is not None and worker.proc.poll() is None:
                return worker.proc.pid
            return None

    def _open_log_file(self, device_id: str) -> tuple[TextIO, Path]:
        """Open (or truncate) the log file for a device's worker."""
        self._close_log_file(device_id)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        safe_name = device_id.replace(os.sep, "_")
        log_path = self.logs_dir / f"{safe_name}.log"
        # Truncate on start to avoid unbounded growth
        log_file = open(log_path, "w", encoding="utf-8", buffering=1)  # Line buffered
        self._log_files[device_id] = log_file
        return log_file, log_path

    def _close_log_file(self, device_id: str):
        log_file = self._log_files.pop(device_id, None)
        if log_file is not None:
            try:
                log_file.close()
            except OSError as e:
                log.warning("coordinator.supervisor.log_close_failed",
                            device_id=device_id, error=str(e))

    def spawn(
        self,
        device_id: str,
        session_id: str,
        env: dict[str, str],
        task_id: Optional[int] = None,
    ) -> WorkerProcess:
        """
        Start a worker for device_id.

        Raises:
            RuntimeError: The device already has a live worker.
            OSError: The worker command could not be started.
        """
        with self._lock:
            existing = self._processes.get(device_id)
            if existing is not None and existing.proc.poll() is None:
                raise RuntimeError(f"Device {device_id} already has a running worker")

            log_file, log_path = self._open_log_file(device_id)
            try:
                proc = subprocess.Popen(
                    self.command,
                    cwd=self.cwd,
                    env={**os.environ, **env},
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                )
            except OSError:
                self._close_log_file(device_id)
                raise

            worker = WorkerProcess(
                device_id=device_id,
                session_id=session_id,
                proc=proc,
                log_path=log_path,
                task_id=task_id,
            )
            self._processes[device_id] = worker

        log.info("coordinator.supervisor.spawned",
                 device_id=device_id, session_id=session_id,
                 pid=proc.pid, task_id=task_id)
        return worker

    def stop(self, device_id: str) -> bool:
        """
        Stop a device's worker. Returns True if a live worker was stopped.

        The worker stays registered so the next poll_exits() reports it.
        """
        with self._lock:
            worker = self._processes.get(device_id)
            if worker is None or worker.proc.poll() is not None:
                return False

            proc = worker.proc
            try:
                proc.terminate()
                proc.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                log.warning("coordinator.supervisor.kill", device_id=device_id, pid=proc.pid)
                proc.kill()
                proc.wait(timeout=self.stop_timeout)

        log.info("coordinator.supervisor.stopped", device_id=device_id, pid=proc.pid)
        return True

    def poll_exits(self) -> list[ProcessExit]:
        """Collect and forget every worker that has exited."""
        exits = []
        with self._lock:
            for device_id, worker in list(self._processes.items()):
                code = worker.proc.poll()
                if code is None:
                    continue
                exits.append(ProcessExit(
                    device_id=device_id,
                    session_id=worker.session_id,
                    pid=worker.proc.pid,
                    exit_code=code,
                    task_id=worker.task_id,
                ))
                del self._processes[device_id]
                self._close_log_file(device_id)

        for item in exits:
            log.info("coordinator.supervisor.exited",
                     device_id=item.device_id, pid=item.pid, exit_code=item.exit_code)
        return exits

    def list_processes(self) -> list[dict]:
        with self._lock:
            return [w.to_dict() for w in self._processes.values()]

    def cleanup_all(self):
        """
        Stop all workers.

        Stopped workers stay registered; the next poll_exits() reports them
        and closes their log files.
        """
        with self._lock:
            devices = list(self._processes.keys())
        for device_id in devices:
            self.stop(device_id)
        with self._lock:
            for device_id in list(self._log_files.keys()):
                if device_id not in self._processes:
                    self._close_log_file(device_id)
