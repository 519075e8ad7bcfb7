"""
Task Queue for the coordinator.

Leases tasks to devices one at a time:
- FIFO over pending tasks (and failed tasks with attempts left)
- Lease timeout: in-progress tasks older than lease_timeout are reclaimed
- Crash recovery: on startup every in-progress task goes back to pending

All mutations run under one asyncio.Lock, which is what makes concurrent
get_next_task calls from many devices lease-exclusive.
"""

import asyncio
import copy
import time
from dataclasses import dataclass, field
from typing import Optional, Any, Callable

from shared.logging import get_logger, device_context

from .errors import OwnershipError, TaskNotFoundError
from .models import Namespace, Task, TaskStatus, TaskType
from .state import StateStore

log = get_logger("coordinator", "queue")

DEFAULT_TASK_CONFIG = {
    "app": "hinge",
    "proxyProvider": "marsproxies",
}

# Completed tasks older than this are dropped by purge_completed()
DEFAULT_PURGE_AGE = 7 * 24 * 3600


@dataclass
class QueueState:
    """Persisted queue namespace."""
    tasks: list[Task] = field(default_factory=list)

    # device id -> ids of tasks currently leased to it
    device_assignments: dict[str, list[int]] = field(default_factory=dict)

    # Highest id ever handed out; ids are never reused
    last_task_id: int = 0

    def to_dict(self) -> dict:
        return {
            "tasks": [t.to_dict() for t in self.tasks],
            "deviceAssignments": {k: list(v) for k, v in self.device_assignments.items()},
            "stats": self.stats(),
            "lastTaskId": self.last_task_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueueState":
        tasks = [Task.from_dict(t) for t in data.get("tasks", [])]
        assignments = {
            device: [int(i) for i in ids]
            for device, ids in (data.get("deviceAssignments") or {}).items()
        }
        highest = max((t.id for t in tasks), default=0)
        return cls(
            tasks=tasks,
            device_assignments=assignments,
            last_task_id=max(highest, int(data.get("lastTaskId", 0))),
        )

    def find(self, task_id: int) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def stats(self) -> dict:
        counts = {status: 0 for status in TaskStatus}
        for task in self.tasks:
            counts[task.status] += 1
        return {
            "total": len(self.tasks),
            "pending": counts[TaskStatus.PENDING],
            "inProgress": counts[TaskStatus.IN_PROGRESS],
            "completed": counts[TaskStatus.COMPLETED],
            "failed": counts[TaskStatus.FAILED],
        }

    def assign(self, device_id: str, task_id: int):
        self.device_assignments.setdefault(device_id, []).append(task_id)

    def unassign(self, device_id: Optional[str], task_id: int):
        """Drop task_id from the device's list; empty lists are removed."""
        if device_id is None:
            return
        ids = self.device_assignments.get(device_id)
        if not ids:
            return
        if task_id in ids:
            ids.remove(task_id)
        if not ids:
            del self.device_assignments[device_id]


class TaskQueue:
    """
    Per-device task leasing backed by the StateStore's queue namespace.
    """

    def __init__(
        self,
        store: StateStore,
        lease_timeout: float = 30.0,
        cleanup_interval: float = 10.0,
        max_attempts: int = 3,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.lease_timeout = lease_timeout
        self.cleanup_interval = cleanup_interval
        self.max_attempts = max_attempts
        self._clock = clock

        self.state = QueueState()
        self._lock = asyncio.Lock()
        self._running = False
        self._cleanup_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, store: StateStore, config) -> "TaskQueue":
        return cls(
            store,
            lease_timeout=config.queue.lease_timeout,
            cleanup_interval=config.queue.cleanup_interval,
            max_attempts=config.queue.max_attempts,
        )

    # ==================== Lifecycle ====================

    async def initialize(self, start_cleanup: bool = True):
        """Load the queue, reclaim every lease left by a dead process, start cleanup."""
        self.state = QueueState.from_dict(self.store.get(Namespace.QUEUE) or {})

        reclaimed = await self.reclaim_abandoned(startup=True)

        if start_cleanup:
            self._running = True
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

        log.info("coordinator.queue.initialized",
                 tasks=len(self.state.tasks),
                 reclaimed=len(reclaimed),
                 last_task_id=self.state.last_task_id)

    async def shutdown(self):
        """Stop the cleanup loop."""
        self._running = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        log.info("coordinator.queue.shutdown")

    async def _cleanup_loop(self):
        """Periodically reclaim expired leases."""
        while self._running:
            try:
                await asyncio.sleep(self.cleanup_interval)
                await self.reclaim_abandoned()
            except asyncio.CancelledError:
                break
            except Exception as e:
                log.exception(e, "coordinator.queue.cleanup_error", {})

    async def _persist(self):
        await self.store.set(Namespace.QUEUE, self.state.to_dict())
        await self.store.save()

    # ==================== Worker protocol ====================

    async def add_batch(
        self,
        count: int,
        config: Optional[dict] = None,
        task_type: TaskType = TaskType.CREATE_ACCOUNT,
    ) -> list[Task]:
        """
        Append count new pending tasks.

        Ids continue from the highest id ever assigned, so a cleared or
        purged queue never hands out an old id again.
        """
        if not isinstance(count, int) or isinstance(count, bool) or count < 1:
            raise ValueError(f"count must be a positive integer, got {count!r}")

        task_config = {**DEFAULT_TASK_CONFIG, **(config or {})}
        task_type = TaskType(task_type)

        async with self._lock:
            now = self._clock()
            next_id = max([self.state.last_task_id] + [t.id for t in self.state.tasks]) + 1
            new_tasks = []
            for i in range(count):
                task = Task(
                    id=next_id + i,
                    type=task_type,
                    config=copy.deepcopy(task_config),
                    max_attempts=self.max_attempts,
                    created_at=now,
                )
                self.state.tasks.append(task)
                new_tasks.append(task)
            self.state.last_task_id = new_tasks[-1].id

            await self._persist()

        log.info("coordinator.queue.batch_added",
                 count=count,
                 first_id=new_tasks[0].id,
                 last_id=new_tasks[-1].id,
                 task_type=task_type.value)
        return [copy.deepcopy(t) for t in new_tasks]

    async def get_next_task(self, device_id: str) -> Optional[Task]:
        """
        Lease the first eligible task to device_id.

        Returns None when nothing is eligible; that is not an error.
        """
        async with self._lock:
            await self._reclaim_locked(startup=False)

            task, exhausted = self._select_leasable()
            if task is None:
                if exhausted:
                    await self._persist()
                log.debug("coordinator.queue.no_task_available", device_id=device_id)
                return None

            task.lease(device_id, now=self._clock())
            self.state.assign(device_id, task.id)
            await self._persist()
            leased = copy.deepcopy(task)

        with device_context(device_id):
            log.info("coordinator.queue.task_leased",
                     task_id=leased.id, attempts=leased.attempts,
                     max_attempts=leased.max_attempts)
        return leased

    def _select_leasable(self) -> tuple[Optional[Task], int]:
        """First leasable task, plus how many exhausted tasks were retired on the way."""
        exhausted = 0
        for task in self.state.tasks:
            if not task.is_leasable():
                continue
            if not task.can_retry():
                # Reclaimed after its last attempt: nothing left to lease
                task.status = TaskStatus.FAILED
                task.last_error = task.last_error or "Attempts exhausted"
                task.failed_at = task.failed_at or self._clock()
                exhausted += 1
                log.warning("coordinator.queue.task_exhausted",
                            task_id=task.id, attempts=task.attempts)
                continue
            return task, exhausted
        return None, exhausted

    def _owned_task(self, device_id: str, task_id: int) -> Task:
        task = self.state.find(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.status != TaskStatus.IN_PROGRESS or task.device_id != device_id:
            raise OwnershipError(f"Task {task_id} not assigned to {device_id}")
        return task

    async def mark_completed(self, device_id: str, task_id: int, result: Any = None) -> Task:
        """
        Complete a task leased to device_id.

        Raises:
            TaskNotFoundError: Unknown task id.
            OwnershipError: The task is not leased to device_id.
        """
        async with self._lock:
            task = self._owned_task(device_id, task_id)
            task.mark_completed(result if result is not None else {}, now=self._clock())
            self.state.unassign(device_id, task_id)
            await self._persist()
            completed = copy.deepcopy(task)

        with device_context(device_id):
            log.info("coordinator.queue.task_completed", task_id=task_id)
        return completed

    async def mark_failed(self, device_id: str, task_id: int, error: Optional[str]) -> Task:
        """
        Record a failed attempt by device_id.

        The task goes back to pending (for any device) while attempts
        remain, otherwise it is terminally failed.

        Raises:
            TaskNotFoundError: Unknown task id.
            OwnershipError: The task is not leased to device_id.
        """
        async with self._lock:
            task = self._owned_task(device_id, task_id)
            task.mark_failed(error, now=self._clock())
            self.state.unassign(device_id, task_id)
            await self._persist()
            failed = copy.deepcopy(task)

        with device_context(device_id):
            log.warning("coordinator.queue.task_failed",
                        task_id=task_id,
                        status=failed.status.value,
                        attempts=failed.attempts,
                        max_attempts=failed.max_attempts,
                        error=error)
        return failed

    # ==================== Reclamation ====================

    async def reclaim_abandoned(self, startup: bool = False) -> list[int]:
        """
        Return abandoned leases to pending.

        Startup mode reclaims every in-progress task and clears all device
        assignments. Runtime mode only reclaims leases at least
        lease_timeout old.

        Returns:
            Ids of the reclaimed tasks.
        """
        async with self._lock:
            return await self._reclaim_locked(startup)

    async def _reclaim_locked(self, startup: bool) -> list[int]:
        now = self._clock()
        reclaimed = []

        for task in self.state.tasks:
            if task.status != TaskStatus.IN_PROGRESS:
                continue
            if not startup:
                if task.started_at is None or now - task.started_at < self.lease_timeout:
                    continue
            device_id = task.device_id
            task.reclaim()
            if not startup:
                self.state.unassign(device_id, task.id)
            reclaimed.append(task.id)
            log.warning("coordinator.queue.lease_reclaimed",
                        task_id=task.id, device_id=device_id,
                        mode="startup" if startup else "timeout")

        had_assignments = bool(self.state.device_assignments)
        if startup:
            self.state.device_assignments = {}

        if reclaimed or (startup and had_assignments):
            await self._persist()
            log.info("coordinator.queue.reclaimed",
                     count=len(reclaimed), mode="startup" if startup else "timeout")
        return reclaimed

    # ==================== Inspection & maintenance ====================

    def get_task(self, task_id: int) -> Optional[Task]:
        """Get a copy of a task by id."""
        task = self.state.find(task_id)
        return copy.deepcopy(task) if task else None

    def get_tasks(self, status: Optional[TaskStatus] = None) -> list[Task]:
        """All tasks in queue order, optionally filtered by status."""
        if status is not None:
            status = TaskStatus(status)
        return [copy.deepcopy(t) for t in self.state.tasks
                if status is None or t.status == status]

    def get_stats(self) -> dict:
        """Counts per status plus the number of leases each device holds."""
        return {
            **self.state.stats(),
            "deviceAssignments": {d: len(ids) for d, ids in self.state.device_assignments.items()},
            "lastTaskId": self.state.last_task_id,
        }

    def get_device_status(self, device_id: str) -> dict:
        """Active leases and completed count for one device."""
        ids = self.state.device_assignments.get(device_id, [])
        active = [self.state.find(i) for i in ids]
        return {
            "deviceId": device_id,
            "activeTasks": [t.to_dict() for t in active
                            if t is not None and t.status == TaskStatus.IN_PROGRESS],
            "completedCount": sum(
                1 for t in self.state.tasks
                if t.status == TaskStatus.COMPLETED and t.last_device_id == device_id
            ),
        }

    def active_task_ids(self, device_id: str) -> list[int]:
        """Ids of tasks currently leased to device_id."""
        return list(self.state.device_assignments.get(device_id, []))

    async def clear_queue(self):
        """Drop every task and assignment. Ids keep counting from lastTaskId."""
        async with self._lock:
            dropped = len(self.state.tasks)
            self.state.tasks = []
            self.state.device_assignments = {}
            await self._persist()
        log.warning("coordinator.queue.cleared", dropped=dropped)

    async def purge_completed(self, older_than: float = DEFAULT_PURGE_AGE) -> int:
        """Remove completed tasks finished more than older_than seconds ago."""
        async with self._lock:
            cutoff = self._clock() - older_than
            keep = [
                t for t in self.state.tasks
                if not (t.status == TaskStatus.COMPLETED
                        and t.completed_at is not None
                        and t.completed_at < cutoff)
            ]
            purged = len(self.state.tasks) - len(keep)
            if purged:
                self.state.tasks = keep
                await self._persist()

        if purged:
            log.info("coordinator.queue.purged", count=purged, older_than=older_than)
        return purged
