"""
Main Orchestrator.

Ties together all coordinator components:
- StateStore: namespaced durable state
- TaskQueue: per-device task leasing
- ResourcePools: locations and email addresses
- ProcessSupervisor: one worker process per device
- HealthMonitor: Appium / WDA probes
- CheckpointStore: rollback of pool allocations after a failed run
- EventBus: lifecycle events, handled one at a time in order
"""

import asyncio
import time
import uuid
from typing import Optional, Any

from shared.logging import get_logger, device_context

from .adapters import DeviceInventory, build_inventory
from .config import CoordinatorConfig
from .errors import DeviceUnavailableError, OwnershipError, TaskNotFoundError
from .events import Event, EventBus, EventType
from .health import HealthMonitor
from .models import DeviceInfo, Namespace, Session, SessionStatus, Task, TaskType, to_iso
from .pools import ResourcePool, build_pools
from .queue import TaskQueue
from .recovery import CheckpointStore
from .state import StateStore
from .supervisor import ProcessSupervisor, ProcessExit

log = get_logger("coordinator", "main")

# Bounded history kept in the ui and metrics namespaces
MAX_ALERTS = 100
MAX_ERRORS = 100


class Orchestrator:
    """
    Coordinates devices, worker processes, tasks and pooled resources.

    Provides:
    - Session launch with the worker environment contract
    - Task enqueueing and task-bound runs with checkpoints
    - Reaction to worker exits (complete/fail leased tasks, rollback)
    - Aggregated status for observability
    """

    def __init__(
        self,
        config: Optional[CoordinatorConfig] = None,
        store: Optional[StateStore] = None,
        queue: Optional[TaskQueue] = None,
        pools: Optional[dict[str, ResourcePool]] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        health: Optional[HealthMonitor] = None,
        checkpoints: Optional[CheckpointStore] = None,
        inventory: Optional[DeviceInventory] = None,
    ):
        self.config = config or CoordinatorConfig()

        self.store = store or StateStore.from_config(self.config)
        self.queue = queue or TaskQueue.from_config(self.store, self.config)
        self.pools = pools if pools is not None else build_pools(self.store, self.config)
        self.supervisor = supervisor or ProcessSupervisor.from_config(self.config)
        self.checkpoints = checkpoints or CheckpointStore.from_config(self.config)
        self.inventory = inventory or build_inventory(self.config)

        self.events = EventBus(self._handle_event)
        self.health = health or HealthMonitor.from_config(self.config)
        if self.health.publish is None:
            self.health.publish = self.events.publish_nowait

        self.devices: dict[str, DeviceInfo] = {}
        self.sessions: dict[str, Session] = {}

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._ui_lock = asyncio.Lock()
        self._watch_task: Optional[asyncio.Task] = None
        self._running = False
        self._started_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._running

    # ==================== Lifecycle ====================

    async def start(self):
        """Load state, recover, start background loops."""
        if self._running:
            return

        log.info("coordinator.starting", data_dir=self.config.data_dir)
        self.loop = asyncio.get_running_loop()

        await self.store.initialize()
        await self.queue.initialize()
        for pool in self.pools.values():
            await pool.initialize()
        await asyncio.to_thread(self.checkpoints.load)

        self._restore_sessions()

        await self.events.start()
        await self.scan_devices()
        await self.health.start(lambda: list(self.devices.values()))

        self._running = True
        self._started_at = time.time()
        self._watch_task = asyncio.create_task(self._watch_loop())

        log.info("coordinator.started",
                 devices=len(self.devices),
                 tasks=len(self.queue.state.tasks))

    async def stop(self):
        """Stop workers and loops, then flush state."""
        if not self._running:
            return

        log.info("coordinator.stopping")
        self._running = False

        if self._watch_task:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None

        await self.health.stop()

        # Terminate live workers and settle their leases before the queue stops
        await asyncio.to_thread(self.supervisor.cleanup_all)
        for exited in await asyncio.to_thread(self.supervisor.poll_exits):
            await self.events.publish(self._exit_event(exited))
        await self.events.stop(drain=True)

        await self.queue.shutdown()
        try:
            await self._persist_ui()
            await self.store.shutdown()
        except Exception as e:
            log.exception(e, "coordinator.stop_save_failed", {})
            raise

        log.info("coordinator.stopped")

    def _restore_sessions(self):
        """Reload persisted sessions; a restart means their workers are gone."""
        saved = self.store.get(Namespace.UI, "sessions") or {}
        for session_id, data in saved.items():
            try:
                session = Session.from_dict(data)
            except (KeyError, ValueError) as e:
                log.warning("coordinator.session_unreadable", session_id=session_id, error=str(e))
                continue
            if session.status == SessionStatus.RUNNING:
                session.status = SessionStatus.EXITED
                session.ended_at = time.time()
            self.sessions[session.id] = session

    async def _watch_loop(self):
        """Poll the supervisor for exited workers."""
        while self._running:
            try:
                await asyncio.sleep(self.config.supervisor.watch_interval)
                for exited in await asyncio.to_thread(self.supervisor.poll_exits):
                    await self.events.publish(self._exit_event(exited))
            except asyncio.CancelledError:
                break
            except Exception as e:
                log.exception(e, "coordinator.watch_error", {})

    @staticmethod
    def _exit_event(exited: ProcessExit) -> Event:
        return Event(
            type=EventType.PROCESS_EXITED,
            device_id=exited.device_id,
            data={
                "sessionId": exited.session_id,
                "pid": exited.pid,
                "exitCode": exited.exit_code,
                "taskId": exited.task_id,
            },
        )

    # ==================== Devices ====================

    async def scan_devices(self) -> list[dict]:
        """Refresh the device list from the inventory."""
        found = await self.inventory.scan()
        devices = {d.udid: d for d in found}

        # A device with a live worker stays known even if the scan missed it
        for udid, device in self.devices.items():
            if udid not in devices and self.supervisor.is_running(udid):
                devices[udid] = device
        self.devices = devices

        await self.store.set(Namespace.SERVERS, {
            "servers": [
                {
                    "udid": d.udid,
                    "host": d.appium_host,
                    "appiumPort": d.appium_port,
                    "wdaPort": d.wda_port,
                    "wdaUrl": d.wda_url,
                }
                for d in self.devices.values()
            ]
        })
        await self._persist_ui()

        log.info("coordinator.devices_scanned", count=len(self.devices))
        return [d.to_dict() for d in self.devices.values()]

    def _running_session(self, device_id: str) -> Optional[Session]:
        for session in self.sessions.values():
            if session.device_id == device_id and session.status == SessionStatus.RUNNING:
                return session
        return None

    def _is_busy(self, device_id: str) -> bool:
        return self.supervisor.is_running(device_id) or self._running_session(device_id) is not None

    def _worker_env(self, device: DeviceInfo, session_id: str, task_id: Optional[int] = None) -> dict[str, str]:
        env = {
            "DEVICE_UDID": device.udid,
            "SESSION_ID": session_id,
            "COORDINATOR_URL": self.config.api.base_url,
            "APPIUM_HOST": device.appium_host,
            "APPIUM_PORT": str(device.appium_port),
            "WDA_PORT": str(device.wda_port),
            "WDA_URL": device.wda_url,
        }
        if task_id is not None:
            env["TASK_ID"] = str(task_id)
        return env

    async def _spawn(self, device: DeviceInfo, config: dict, task_id: Optional[int] = None) -> Session:
        session_id = uuid.uuid4().hex
        env = self._worker_env(device, session_id, task_id)
        worker = await asyncio.to_thread(
            self.supervisor.spawn, device.udid, session_id, env, task_id
        )
        session = Session(
            id=session_id,
            device_id=device.udid,
            config=config,
            pid=worker.pid,
            task_id=task_id,
        )
        self.sessions[session_id] = session
        await self.events.publish(Event(
            type=EventType.PROCESS_STARTED,
            device_id=device.udid,
            data={"sessionId": session_id, "pid": worker.pid, "taskId": task_id},
        ))
        return session

    # ==================== Public API ====================

    async def launch_session(self, device_ids: list[str], config: Optional[dict] = None) -> dict:
        """
        Start one worker per idle, known device.

        Returns:
            {"launched": [session...], "skipped": [{"deviceId", "reason"}...]}
        """
        config = config or {}
        launched, skipped = [], []

        for device_id in device_ids:
            device = self.devices.get(device_id)
            if device is None:
                skipped.append({"deviceId": device_id, "reason": "unknown device"})
                continue
            if self._is_busy(device_id):
                skipped.append({"deviceId": device_id, "reason": "device busy"})
                continue

            try:
                session = await self._spawn(device, config)
            except (OSError, RuntimeError) as e:
                log.exception(e, "coordinator.launch_failed", {"device_id": device_id})
                skipped.append({"deviceId": device_id, "reason": str(e)})
                continue

            launched.append(session.to_dict())
            with device_context(device_id):
                log.info("coordinator.session_launched", session_id=session.id, pid=session.pid)

        await self._persist_ui()
        return {"launched": launched, "skipped": skipped}

    async def stop_session(self, session_id: str) -> bool:
        """
        Terminate a session's worker.

        Returns False if the session is unknown or not running. Leases are
        settled when the exit is observed.
        """
        session = self.sessions.get(session_id)
        if session is None or session.status != SessionStatus.RUNNING:
            return False

        await asyncio.to_thread(self.supervisor.stop, session.device_id)
        session.status = SessionStatus.STOPPED
        session.ended_at = time.time()

        await self.events.publish(Event(
            type=EventType.SESSION_STOPPED,
            device_id=session.device_id,
            data={"sessionId": session_id},
        ))
        await self._persist_ui()

        with device_context(session.device_id):
            log.info("coordinator.session_stopped", session_id=session_id)
        return True

    async def enqueue_task(
        self,
        count: int,
        config: Optional[dict] = None,
        task_type: TaskType = TaskType.CREATE_ACCOUNT,
    ) -> list[Task]:
        """Add count tasks to the queue."""
        return await self.queue.add_batch(count, config, task_type=task_type)

    async def run_task(self, device_id: str, config: Optional[dict] = None) -> Optional[dict]:
        """
        Lease the next task to device_id and start a worker bound to it.

        A checkpoint of the device's pool allocations is taken first so a
        failed run can hand back anything acquired afterwards.

        Returns:
            {"session", "task", "checkpointId"}, or None if no task is available.

        Raises:
            DeviceUnavailableError: Unknown or busy device.
        """
        device = self.devices.get(device_id)
        if device is None:
            raise DeviceUnavailableError(f"Unknown device {device_id}")
        if self._is_busy(device_id):
            raise DeviceUnavailableError(f"Device {device_id} busy")

        task = await self.queue.get_next_task(device_id)
        if task is None:
            return None

        holdings = {kind: self._held_key(pool, device_id) for kind, pool in self.pools.items()}
        checkpoint = await asyncio.to_thread(
            self.checkpoints.create, task.id, device_id, holdings,
            {"attempt": task.attempts},
        )

        try:
            session = await self._spawn(device, {**task.config, **(config or {})}, task_id=task.id)
        except (OSError, RuntimeError) as e:
            log.exception(e, "coordinator.run_task_spawn_failed",
                          {"device_id": device_id, "task_id": task.id})
            await self.queue.mark_failed(device_id, task.id, f"Spawn failed: {e}")
            raise

        await self._persist_ui()
        with device_context(device_id):
            log.info("coordinator.task_started",
                     task_id=task.id, session_id=session.id, checkpoint_id=checkpoint.id)
        return {
            "session": session.to_dict(),
            "task": task.to_dict(),
            "checkpointId": checkpoint.id,
        }

    @staticmethod
    def _held_key(pool: ResourcePool, requester_id: str) -> Optional[str]:
        held = pool.held_by(requester_id)
        return pool.key_of(held) if held is not None else None

    # ==================== Event handling ====================

    async def _handle_event(self, event: Event):
        """Single dispatcher target for every lifecycle event."""
        if event.type == EventType.PROCESS_EXITED:
            await self._on_process_exited(event)
        elif event.type in (EventType.DEVICE_UNHEALTHY, EventType.DEVICE_RECOVERED):
            await self._on_health_change(event)
        elif event.type == EventType.PROCESS_STARTED:
            await self._bump_counter("sessionsLaunched")
        elif event.type == EventType.SESSION_STOPPED:
            await self._bump_counter("sessionsStopped")

    async def _on_process_exited(self, event: Event):
        device_id = event.device_id
        exit_code = event.data.get("exitCode")
        session_id = event.data.get("sessionId")
        task_id = event.data.get("taskId")

        session = self.sessions.get(session_id)
        if session is not None:
            if session.status == SessionStatus.RUNNING:
                session.status = SessionStatus.EXITED
            session.ended_at = session.ended_at or time.time()
            session.exit_code = exit_code

        with device_context(device_id):
            settled = []
            for leased_id in self.queue.active_task_ids(device_id):
                try:
                    if exit_code == 0:
                        await self.queue.mark_completed(device_id, leased_id, {"exitCode": 0})
                    else:
                        await self.queue.mark_failed(
                            device_id, leased_id, f"Process exited with code {exit_code}"
                        )
                    settled.append(leased_id)
                except (OwnershipError, TaskNotFoundError) as e:
                    # Lease already reclaimed or task cleared
                    log.debug("coordinator.exit_lease_gone", task_id=leased_id, error=str(e))

            if task_id is not None:
                if exit_code != 0:
                    await self._rollback(task_id, device_id)
                else:
                    await asyncio.to_thread(self.checkpoints.discard, task_id)

            log.info("coordinator.process_exited",
                     session_id=session_id, exit_code=exit_code, settled=settled)

        await self._bump_counter("processExits")
        if exit_code != 0:
            await self._record_error({
                "deviceId": device_id,
                "sessionId": session_id,
                "taskId": task_id,
                "exitCode": exit_code,
                "timestamp": to_iso(event.timestamp),
            })
        await self._persist_ui()

    async def _rollback(self, task_id: int, device_id: str) -> list[str]:
        """Release allocations the device made after the task's last checkpoint."""
        checkpoint = self.checkpoints.latest(task_id)
        if checkpoint is None:
            return []
        self.checkpoints.restore(checkpoint.id)

        released = []
        for kind, pool in self.pools.items():
            held_key = self._held_key(pool, device_id)
            if held_key is None or held_key == checkpoint.holdings.get(kind):
                continue
            try:
                await pool.release(device_id)
                released.append(f"{kind}:{held_key}")
            except OwnershipError as e:
                log.debug("coordinator.rollback_skip", kind=kind, error=str(e))

        if released:
            await self._bump_counter("rollbacks")
            log.warning("coordinator.rolled_back",
                        task_id=task_id, checkpoint_id=checkpoint.id, released=released)
        return released

    async def _on_health_change(self, event: Event):
        async with self._ui_lock:
            ui = self.store.get(Namespace.UI)
            ui.setdefault("health", {})[event.device_id] = event.data
            if event.type == EventType.DEVICE_UNHEALTHY:
                alerts = ui.setdefault("alerts", [])
                alerts.append({
                    "type": "device_unhealthy",
                    "deviceId": event.device_id,
                    "message": event.data.get("error") or "Device health check failed",
                    "timestamp": to_iso(event.timestamp),
                })
                ui["alerts"] = alerts[-MAX_ALERTS:]
            await self.store.set(Namespace.UI, ui)

    async def _bump_counter(self, name: str):
        stats = self.store.get(Namespace.METRICS, "stats") or {}
        stats[name] = stats.get(name, 0) + 1
        await self.store.set(Namespace.METRICS, stats, path="stats")

    async def _record_error(self, entry: dict):
        errors = self.store.get(Namespace.METRICS, "errors") or []
        errors.append(entry)
        await self.store.set(Namespace.METRICS, errors[-MAX_ERRORS:], path="errors")

    async def _persist_ui(self):
        """Write devices, sessions, processes and checkpoints to the ui namespace."""
        async with self._ui_lock:
            ui = self.store.get(Namespace.UI)
            ui["devices"] = {udid: d.to_dict() for udid, d in self.devices.items()}
            ui["sessions"] = {sid: s.to_dict() for sid, s in self.sessions.items()}
            ui["processes"] = {p["deviceId"]: p for p in self.supervisor.list_processes()}
            ui["checkpoints"] = self.checkpoints.summary()
            await self.store.set(Namespace.UI, ui)

    # ==================== Status ====================

    def get_device_status(self, device_id: str) -> Optional[dict]:
        """Everything known about one device, or None if it is unknown."""
        device = self.devices.get(device_id)
        if device is None:
            return None
        session = self._running_session(device_id)
        health = self.health.get_health(device_id)
        return {
            "device": device.to_dict(),
            "busy": self._is_busy(device_id),
            "session": session.to_dict() if session else None,
            "pid": self.supervisor.get_pid(device_id),
            "queue": self.queue.get_device_status(device_id),
            "holdings": {kind: self._held_key(pool, device_id) for kind, pool in self.pools.items()},
            "health": health.to_dict() if health else None,
        }

    def get_global_status(self) -> dict:
        """Aggregate counts across devices, sessions, tasks and pools."""
        sessions = list(self.sessions.values())
        return {
            "running": self._running,
            "startedAt": to_iso(self._started_at),
            "devices": {
                "total": len(self.devices),
                "busy": sum(1 for d in self.devices if self._is_busy(d)),
                "healthy": sum(1 for d in self.devices if self.health.is_healthy(d)),
            },
            "sessions": {
                "total": len(sessions),
                "running": sum(1 for s in sessions if s.status == SessionStatus.RUNNING),
            },
            "processes": self.supervisor.list_processes(),
            "queue": self.queue.get_stats(),
            "pools": {kind: pool.get_stats() for kind, pool in self.pools.items()},
            "health": self.health.get_all(),
            "checkpoints": self.checkpoints.get_stats(),
            "events": self.events.get_stats(),
            "store": self.store.get_stats(),
        }

    def get_pool(self, kind: str) -> Optional[ResourcePool]:
        return self.pools.get(kind)

    def list_sessions(self) -> list[dict]:
        return [s.to_dict() for s in self.sessions.values()]


async def run_coordinator(config: CoordinatorConfig, serve_api: bool = True):
    """
    Run the coordinator until SIGINT/SIGTERM.

    The HTTP API (if enabled) runs in a background thread and submits work
    onto this loop.
    """
    import signal

    orchestrator = Orchestrator(config)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()

    def signal_handler():
        log.info("coordinator.signal_received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await orchestrator.start()
        if serve_api:
            from .api import start_api_thread
            start_api_thread(orchestrator, config.api.host, config.api.port)
        await stop_event.wait()
    except KeyboardInterrupt:
        log.info("coordinator.keyboard_interrupt")
    finally:
        await orchestrator.stop()
