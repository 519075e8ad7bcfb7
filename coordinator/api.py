"""
HTTP API for the coordinator.

Worker processes poll for tasks and pooled resources over these routes;
operators read status. Flask runs in a thread; every handler submits its
work onto the coordinator's event loop so all mutations still happen on
that single loop.
"""

import asyncio
import concurrent.futures
import inspect
import json
import threading
import uuid
from functools import wraps
from typing import TYPE_CHECKING, Any, Optional, Callable

from flask import Flask, jsonify, request
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shared.logging import get_logger, set_correlation_id

from .errors import (
    DeviceUnavailableError,
    OwnershipError,
    PersistenceError,
    StateShapeError,
    TaskNotFoundError,
)
from .models import TaskStatus, TaskType

if TYPE_CHECKING:
    from .main import Orchestrator

log = get_logger("coordinator", "api")

# Seconds a request waits for the coordinator loop
CALL_TIMEOUT = 30.0

# Global reference to orchestrator instance (set by create_app / start_api_thread)
_orchestrator: Optional["Orchestrator"] = None


# ==================== Request bodies ====================

class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class BatchRequest(_Body):
    count: int = Field(ge=1)
    config: dict = Field(default_factory=dict)
    type: TaskType = TaskType.CREATE_ACCOUNT


class NextTaskRequest(_Body):
    device_id: str = Field(alias="deviceId", min_length=1)


class CompleteRequest(_Body):
    device_id: str = Field(alias="deviceId", min_length=1)
    result: Any = None


class FailRequest(_Body):
    device_id: str = Field(alias="deviceId", min_length=1)
    error: Optional[str] = None


class AllocateRequest(_Body):
    requester_id: str = Field(alias="requesterId", min_length=1)


class ReleaseRequest(_Body):
    requester_id: str = Field(alias="requesterId", min_length=1)
    # Location dict, email string, or omitted for "whatever is held"
    resource: Any = None


class SessionRequest(_Body):
    device_ids: list[str] = Field(alias="deviceIds", min_length=1)
    config: dict = Field(default_factory=dict)


class RunTaskRequest(_Body):
    device_id: str = Field(alias="deviceId", min_length=1)
    config: dict = Field(default_factory=dict)


# ==================== Helpers ====================

def get_orchestrator() -> Optional["Orchestrator"]:
    """Get the global orchestrator instance."""
    return _orchestrator


def set_orchestrator(orchestrator: Optional["Orchestrator"]):
    global _orchestrator
    _orchestrator = orchestrator


def require_orchestrator(f):
    """Decorator to require orchestrator to be running."""
    @wraps(f)
    def decorated(*args, **kwargs):
        if _orchestrator is None:
            return jsonify({"error": "Coordinator not initialized"}), 503
        if not _orchestrator.running or _orchestrator.loop is None:
            return jsonify({"error": "Coordinator not running"}), 503
        return f(*args, **kwargs)
    return decorated


def call_on_loop(func: Callable, *args, **kwargs) -> Any:
    """
    Run func (sync or async) on the coordinator loop and wait for it.

    On timeout the call is cancelled. A call that already got past its
    last await (e.g. a lease that was persisted) still takes effect; such
    a lease is reclaimed once lease_timeout passes.
    """
    async def runner():
        result = func(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    future = asyncio.run_coroutine_threadsafe(runner(), _orchestrator.loop)
    try:
        return future.result(timeout=CALL_TIMEOUT)
    except concurrent.futures.TimeoutError:
        future.cancel()
        raise


def parse_body(model: type[BaseModel]) -> BaseModel:
    """Validate the JSON body; raises ValidationError (-> 400)."""
    return model.model_validate(request.get_json(silent=True) or {})


def _pool_or_404(kind: str):
    pool = _orchestrator.get_pool(kind)
    if pool is None:
        return None, (jsonify({"error": f"Unknown pool: {kind}"}), 404)
    return pool, None


def _serialize_resource(resource: Any) -> Any:
    if resource is None or isinstance(resource, str):
        return resource
    return resource.to_dict()


def create_app(orchestrator: Optional["Orchestrator"] = None) -> Flask:
    """Create Flask app for the coordinator API."""
    if orchestrator is not None:
        set_orchestrator(orchestrator)

    app = Flask(__name__)

    # ==================== Error mapping ====================

    @app.errorhandler(ValidationError)
    def invalid_body(e: ValidationError):
        return jsonify({"error": "Invalid request body", "details": json.loads(e.json(include_url=False))}), 400

    @app.errorhandler(TaskNotFoundError)
    def task_not_found(e: TaskNotFoundError):
        return jsonify({"error": str(e), "taskId": e.task_id}), 404

    @app.errorhandler(OwnershipError)
    def ownership(e: OwnershipError):
        return jsonify({"error": str(e)}), 409

    @app.errorhandler(DeviceUnavailableError)
    def device_unavailable(e: DeviceUnavailableError):
        return jsonify({"error": str(e)}), 409

    @app.errorhandler(StateShapeError)
    def bad_shape(e: StateShapeError):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(PersistenceError)
    def persistence(e: PersistenceError):
        log.error("api.persistence_error", error=str(e))
        return jsonify({"error": str(e)}), 503

    @app.errorhandler(concurrent.futures.TimeoutError)
    def loop_timeout(e):
        log.error("api.loop_timeout", path=request.path)
        return jsonify({"error": "Coordinator did not respond in time"}), 503

    @app.before_request
    def bind_correlation():
        # Workers pass their own id so their log lines join ours
        set_correlation_id(request.headers.get("X-Correlation-ID") or str(uuid.uuid4()))

    # ==================== Status ====================

    @app.route("/health")
    def health():
        """Liveness."""
        if _orchestrator and _orchestrator.running:
            return jsonify({"status": "healthy", "running": True})
        return jsonify({"status": "starting", "running": False})

    @app.route("/status")
    @require_orchestrator
    def status():
        """Full coordinator status."""
        return jsonify(call_on_loop(_orchestrator.get_global_status))

    @app.route("/devices/<device_id>")
    @require_orchestrator
    def device_status(device_id: str):
        status = call_on_loop(_orchestrator.get_device_status, device_id)
        if status is None:
            return jsonify({"error": f"Unknown device: {device_id}"}), 404
        return jsonify(status)

    @app.route("/devices/scan", methods=["POST"])
    @require_orchestrator
    def scan_devices():
        devices = call_on_loop(_orchestrator.scan_devices)
        return jsonify({"devices": devices})

    # ==================== Sessions ====================

    @app.route("/sessions", methods=["POST"])
    @require_orchestrator
    def launch_session():
        body = parse_body(SessionRequest)
        result = call_on_loop(_orchestrator.launch_session, body.device_ids, body.config)
        log.info("api.session_launch", launched=len(result["launched"]), skipped=len(result["skipped"]))
        return jsonify(result)

    @app.route("/sessions/<session_id>/stop", methods=["POST"])
    @require_orchestrator
    def stop_session(session_id: str):
        stopped = call_on_loop(_orchestrator.stop_session, session_id)
        if not stopped:
            return jsonify({"error": f"No running session {session_id}"}), 404
        return jsonify({"success": True, "sessionId": session_id})

    @app.route("/sessions/run-task", methods=["POST"])
    @require_orchestrator
    def run_task():
        body = parse_body(RunTaskRequest)
        result = call_on_loop(_orchestrator.run_task, body.device_id, body.config)
        if result is None:
            return jsonify({"task": None, "message": "no tasks available"})
        return jsonify(result)

    # ==================== Queue ====================

    @app.route("/queue")
    @require_orchestrator
    def queue_stats():
        """Queue statistics."""
        return jsonify(call_on_loop(_orchestrator.queue.get_stats))

    @app.route("/tasks")
    @require_orchestrator
    def list_tasks():
        """List tasks with optional status filter."""
        status_filter = request.args.get("status")
        limit = request.args.get("limit", 100, type=int)
        if status_filter is not None:
            try:
                status_filter = TaskStatus(status_filter)
            except ValueError:
                return jsonify({"error": f"Unknown status: {status_filter}"}), 400

        tasks = call_on_loop(_orchestrator.queue.get_tasks, status_filter)
        return jsonify({
            "tasks": [t.to_dict() for t in tasks[:limit]],
            "total": len(tasks),
        })

    @app.route("/tasks/<int:task_id>")
    @require_orchestrator
    def get_task(task_id: int):
        """Task details by id."""
        task = call_on_loop(_orchestrator.queue.get_task, task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return jsonify(task.to_dict())

    @app.route("/queue/batch", methods=["POST"])
    @require_orchestrator
    def add_batch():
        body = parse_body(BatchRequest)
        tasks = call_on_loop(_orchestrator.enqueue_task, body.count, body.config, body.type)
        log.info("api.batch_added", count=len(tasks))
        return jsonify({"tasks": [t.to_dict() for t in tasks]}), 201

    @app.route("/queue/next", methods=["POST"])
    @require_orchestrator
    def next_task():
        body = parse_body(NextTaskRequest)
        task = call_on_loop(_orchestrator.queue.get_next_task, body.device_id)
        return jsonify({"task": task.to_dict() if task else None})

    @app.route("/queue/<int:task_id>/complete", methods=["POST"])
    @require_orchestrator
    def complete_task(task_id: int):
        body = parse_body(CompleteRequest)
        task = call_on_loop(_orchestrator.queue.mark_completed, body.device_id, task_id, body.result)
        return jsonify({"task": task.to_dict()})

    @app.route("/queue/<int:task_id>/fail", methods=["POST"])
    @require_orchestrator
    def fail_task(task_id: int):
        body = parse_body(FailRequest)
        task = call_on_loop(_orchestrator.queue.mark_failed, body.device_id, task_id, body.error)
        return jsonify({"task": task.to_dict()})

    # ==================== Pools ====================

    @app.route("/pools/<kind>")
    @require_orchestrator
    def pool_state(kind: str):
        pool, error = _pool_or_404(kind)
        if error:
            return error
        return jsonify(call_on_loop(pool.get_state))

    @app.route("/pools/<kind>/allocate", methods=["POST"])
    @require_orchestrator
    def allocate(kind: str):
        pool, error = _pool_or_404(kind)
        if error:
            return error
        body = parse_body(AllocateRequest)
        resource = call_on_loop(pool.allocate, body.requester_id)
        return jsonify({"resource": _serialize_resource(resource)})

    @app.route("/pools/<kind>/release", methods=["POST"])
    @require_orchestrator
    def release(kind: str):
        pool, error = _pool_or_404(kind)
        if error:
            return error
        body = parse_body(ReleaseRequest)
        outcome = call_on_loop(pool.release, body.requester_id, body.resource)
        return jsonify({"success": True, "outcome": outcome})

    @app.route("/pools/<kind>/mark-used", methods=["POST"])
    @require_orchestrator
    def mark_used(kind: str):
        pool, error = _pool_or_404(kind)
        if error:
            return error
        body = parse_body(ReleaseRequest)
        call_on_loop(pool.mark_used, body.requester_id, body.resource)
        return jsonify({"success": True})

    return app


def run_api_server(host: str = "127.0.0.1", port: int = 9001):
    """Run the Flask API server (blocking)."""
    app = create_app()
    app.run(host=host, port=port, threaded=True)


def start_api_thread(
    orchestrator: "Orchestrator",
    host: str = "127.0.0.1",
    port: int = 9001,
) -> threading.Thread:
    """Serve the API from a daemon thread."""
    set_orchestrator(orchestrator)
    api_thread = threading.Thread(
        target=run_api_server,
        kwargs={"host": host, "port": port},
        daemon=True,
    )
    api_thread.start()
    log.info("api.server_started", host=host, port=port)
    return api_thread
