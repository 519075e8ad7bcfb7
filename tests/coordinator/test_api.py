"""
Tests for the coordinator HTTP API.

Tests cover:
- Queue routes (batch, next, complete, fail, listing)
- Pool routes (allocate, release, mark-used)
- Session and device routes
- Error mapping (400 / 404 / 409 / 503)
"""

import asyncio
import threading
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from coordinator.api import create_app, set_orchestrator
from coordinator.errors import DeviceUnavailableError, PersistenceError
from coordinator.pools import EmailPool, LocationPool
from coordinator.queue import TaskQueue
from coordinator.state import StateStore


def run(loop, coro):
    return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout=10)


@pytest.fixture
def loop():
    """An event loop running in a background thread, like the coordinator's."""
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    yield loop
    loop.call_soon_threadsafe(loop.stop)
    thread.join(timeout=5)
    loop.close()


@pytest.fixture
def mock_orchestrator(loop, temp_dir, locations_csv, emails_txt):
    """
    Orchestrator stand-in backed by a real queue and real pools.

    Session and device operations are mocks.
    """
    store = StateStore(temp_dir / "api-data", auto_save=False)
    queue = TaskQueue(store)
    pools = {
        "locations": LocationPool(store, seed_file=locations_csv),
        "emails": EmailPool(store, auto_reset=False, seed_file=emails_txt),
    }

    async def setup():
        await store.initialize()
        await queue.initialize(start_cleanup=False)
        for pool in pools.values():
            await pool.initialize()

    run(loop, setup())

    orchestrator = MagicMock()
    orchestrator.running = True
    orchestrator.loop = loop
    orchestrator.queue = queue
    orchestrator.enqueue_task = queue.add_batch
    orchestrator.get_pool = pools.get
    orchestrator.get_global_status = MagicMock(return_value={"running": True, "queue": {}})
    orchestrator.get_device_status = MagicMock(
        side_effect=lambda d: {"device": {"udid": d}} if d == "device-a" else None
    )
    orchestrator.scan_devices = AsyncMock(return_value=[{"udid": "device-a"}])
    orchestrator.launch_session = AsyncMock(return_value={"launched": [{"id": "s1"}], "skipped": []})
    orchestrator.stop_session = AsyncMock(return_value=False)
    orchestrator.run_task = AsyncMock(return_value=None)

    yield orchestrator

    run(loop, store.shutdown())
    set_orchestrator(None)


@pytest.fixture
def flask_client(mock_orchestrator):
    app = create_app(mock_orchestrator)
    app.config["TESTING"] = True
    return app.test_client()


class TestStatusRoutes:
    """Tests for /health, /status and /devices."""

    def test_health(self, flask_client):
        response = flask_client.get("/health")
        assert response.status_code == 200
        assert response.get_json() == {"status": "healthy", "running": True}

    def test_status(self, flask_client):
        response = flask_client.get("/status")
        assert response.status_code == 200
        assert response.get_json()["running"] is True

    def test_not_initialized(self):
        set_orchestrator(None)
        client = create_app().test_client()

        assert client.get("/status").status_code == 503
        assert client.get("/health").get_json()["running"] is False

    def test_not_running(self, flask_client, mock_orchestrator):
        mock_orchestrator.running = False
        assert flask_client.post("/queue/next", json={"deviceId": "A"}).status_code == 503

    def test_device_status(self, flask_client):
        assert flask_client.get("/devices/device-a").get_json()["device"]["udid"] == "device-a"
        assert flask_client.get("/devices/ghost").status_code == 404

    def test_scan(self, flask_client):
        response = flask_client.post("/devices/scan")
        assert response.get_json() == {"devices": [{"udid": "device-a"}]}


class TestQueueRoutes:
    """Tests for the worker queue protocol."""

    def test_batch_then_lease_and_complete(self, flask_client):
        response = flask_client.post("/queue/batch", json={"count": 2, "config": {"app": "hinge"}})
        assert response.status_code == 201
        assert [t["id"] for t in response.get_json()["tasks"]] == [1, 2]

        task = flask_client.post("/queue/next", json={"deviceId": "A"}).get_json()["task"]
        assert task["id"] == 1
        assert task["deviceId"] == "A"
        assert task["status"] == "in_progress"

        response = flask_client.post("/queue/1/complete", json={"deviceId": "A", "result": {"ok": True}})
        assert response.status_code == 200
        assert response.get_json()["task"]["status"] == "completed"
        assert response.get_json()["task"]["result"] == {"ok": True}

    def test_next_when_empty(self, flask_client):
        response = flask_client.post("/queue/next", json={"deviceId": "A"})
        assert response.status_code == 200
        assert response.get_json() == {"task": None}

    def test_fail_returns_to_pending(self, flask_client):
        flask_client.post("/queue/batch", json={"count": 1})
        flask_client.post("/queue/next", json={"deviceId": "A"})

        response = flask_client.post("/queue/1/fail", json={"deviceId": "A", "error": "captcha"})
        task = response.get_json()["task"]
        assert task["status"] == "pending"
        assert task["lastError"] == "captcha"

    def test_complete_by_other_device_is_409(self, flask_client):
        flask_client.post("/queue/batch", json={"count": 1})
        flask_client.post("/queue/next", json={"deviceId": "A"})

        response = flask_client.post("/queue/1/complete", json={"deviceId": "B"})
        assert response.status_code == 409
        assert "not assigned to B" in response.get_json()["error"]

    def test_unknown_task_is_404(self, flask_client):
        response = flask_client.post("/queue/42/complete", json={"deviceId": "A"})
        assert response.status_code == 404
        assert response.get_json()["taskId"] == 42

    @pytest.mark.parametrize("body", [{}, {"count": 0}, {"count": "many"}, {"count": 1, "type": "bogus"}])
    def test_invalid_batch_is_400(self, flask_client, body):
        response = flask_client.post("/queue/batch", json=body)
        assert response.status_code == 400
        assert response.get_json()["error"] == "Invalid request body"
        assert response.get_json()["details"]

    def test_missing_device_id_is_400(self, flask_client):
        assert flask_client.post("/queue/next", json={}).status_code == 400

    def test_list_and_get_tasks(self, flask_client):
        flask_client.post("/queue/batch", json={"count": 3})
        flask_client.post("/queue/next", json={"deviceId": "A"})

        pending = flask_client.get("/tasks?status=pending").get_json()
        assert pending["total"] == 2
        limited = flask_client.get("/tasks?limit=1").get_json()
        assert len(limited["tasks"]) == 1
        assert limited["total"] == 3

        assert flask_client.get("/tasks?status=bogus").status_code == 400
        assert flask_client.get("/tasks/1").get_json()["deviceId"] == "A"
        assert flask_client.get("/tasks/99").status_code == 404

        stats = flask_client.get("/queue").get_json()
        assert stats["inProgress"] == 1
        assert stats["deviceAssignments"] == {"A": 1}


class TestPoolRoutes:
    """Tests for the pool protocol."""

    def test_location_allocate_release(self, flask_client):
        response = flask_client.post("/pools/locations/allocate", json={"requesterId": "A"})
        resource = response.get_json()["resource"]
        assert resource["city"] == "Austin"
        assert resource["countryCode"] == "US"

        response = flask_client.post("/pools/locations/release", json={"requesterId": "A", "resource": resource})
        assert response.get_json() == {"success": True, "outcome": "available"}

        state = flask_client.get("/pools/locations").get_json()
        assert state["failures"] == {"Austin, TX": 1}

    def test_email_allocate_and_mark_used(self, flask_client):
        email = flask_client.post("/pools/emails/allocate", json={"requesterId": "A"}).get_json()["resource"]
        assert email == "alpha@example.com"

        response = flask_client.post("/pools/emails/mark-used", json={"requesterId": "A"})
        assert response.get_json() == {"success": True}

        state = flask_client.get("/pools/emails").get_json()
        assert state["used"] == ["alpha@example.com"]

    def test_release_by_non_holder_is_409(self, flask_client):
        response = flask_client.post("/pools/emails/release", json={"requesterId": "nobody"})
        assert response.status_code == 409

    def test_unknown_pool_is_404(self, flask_client):
        assert flask_client.get("/pools/phones").status_code == 404
        assert flask_client.post("/pools/phones/allocate", json={"requesterId": "A"}).status_code == 404


class TestSessionRoutes:
    """Tests for session and run-task routes."""

    def test_launch(self, flask_client, mock_orchestrator):
        response = flask_client.post("/sessions", json={"deviceIds": ["device-a"], "config": {"x": 1}})
        assert response.status_code == 200
        assert response.get_json()["launched"] == [{"id": "s1"}]
        mock_orchestrator.launch_session.assert_awaited_once_with(["device-a"], {"x": 1})

    def test_launch_requires_devices(self, flask_client):
        assert flask_client.post("/sessions", json={"deviceIds": []}).status_code == 400

    def test_stop_unknown_session_is_404(self, flask_client):
        assert flask_client.post("/sessions/s9/stop").status_code == 404

    def test_stop_session(self, flask_client, mock_orchestrator):
        mock_orchestrator.stop_session.return_value = True
        response = flask_client.post("/sessions/s1/stop")
        assert response.get_json() == {"success": True, "sessionId": "s1"}

    def test_run_task_without_tasks(self, flask_client):
        response = flask_client.post("/sessions/run-task", json={"deviceId": "device-a"})
        assert response.get_json()["task"] is None

    def test_run_task_busy_device_is_409(self, flask_client, mock_orchestrator):
        mock_orchestrator.run_task.side_effect = DeviceUnavailableError("Device device-a busy")
        response = flask_client.post("/sessions/run-task", json={"deviceId": "device-a"})
        assert response.status_code == 409

    def test_persistence_failure_is_503(self, flask_client, mock_orchestrator):
        mock_orchestrator.run_task.side_effect = PersistenceError("disk full")
        response = flask_client.post("/sessions/run-task", json={"deviceId": "device-a"})
        assert response.status_code == 503
        assert "disk full" in response.get_json()["error"]

    def test_timeout_cancels_loop_call(self, flask_client, mock_orchestrator, loop):
        outcome = []

        async def slow_run(device_id, config):
            try:
                await asyncio.sleep(5)
                outcome.append("finished")
            except asyncio.CancelledError:
                outcome.append("cancelled")
                raise

        mock_orchestrator.run_task = slow_run
        with patch("coordinator.api.CALL_TIMEOUT", 0.1):
            response = flask_client.post("/sessions/run-task", json={"deviceId": "device-a"})

        assert response.status_code == 503
        assert "did not respond" in response.get_json()["error"]
        run(loop, asyncio.sleep(0.05))
        assert outcome == ["cancelled"]
