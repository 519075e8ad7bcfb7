"""
Tests for coordinator/client.py
"""

import json

import httpx
import pytest

from coordinator.client import CoordinatorClient
from coordinator.errors import CoordinatorError, OwnershipError, PersistenceError, TaskNotFoundError
from coordinator.models import Location, TaskStatus
from shared.logging import correlation_context


def make_client(handler, **kwargs) -> CoordinatorClient:
    return CoordinatorClient(
        "http://coordinator.test/",
        "device-a",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def task_payload(**overrides) -> dict:
    payload = {
        "id": 5,
        "type": "create_account",
        "status": "in_progress",
        "config": {},
        "deviceId": "device-a",
        "attempts": 1,
        "createdAt": "2026-01-01T00:00:00+00:00",
    }
    payload.update(overrides)
    return payload


class TestQueueProtocol:
    """Tests for lease / complete / fail calls."""

    @pytest.mark.asyncio
    async def test_get_next_task(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"task": task_payload()})

        client = make_client(handler)
        try:
            with correlation_context(correlation_id="cid-123"):
                task = await client.get_next_task()
        finally:
            await client.close()

        assert task.id == 5
        assert task.status == TaskStatus.IN_PROGRESS
        assert seen[0].url.path == "/queue/next"
        assert json.loads(seen[0].content) == {"deviceId": "device-a"}
        assert seen[0].headers["X-Correlation-ID"] == "cid-123"

    @pytest.mark.asyncio
    async def test_get_next_task_none(self):
        client = make_client(lambda request: httpx.Response(200, json={"task": None}))
        try:
            assert await client.get_next_task() is None
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_mark_completed_sends_result(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"task": task_payload(status="completed", result={"ok": 1})})

        async with make_client(handler) as client:
            task = await client.mark_completed(5, {"ok": 1})

        assert task.status == TaskStatus.COMPLETED
        assert bodies == [{"deviceId": "device-a", "result": {"ok": 1}}]

    @pytest.mark.asyncio
    async def test_mark_failed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/queue/5/fail"
            return httpx.Response(200, json={"task": task_payload(status="pending", deviceId=None)})

        async with make_client(handler) as client:
            task = await client.mark_failed(5, "captcha")

        assert task.status == TaskStatus.PENDING


class TestErrorMapping:
    """HTTP statuses come back as coordinator exceptions."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,body,expected", [
        (409, {"error": "Task 5 not assigned to device-a"}, OwnershipError),
        (404, {"error": "Task 5 not found", "taskId": 5}, TaskNotFoundError),
        (503, {"error": "disk full"}, PersistenceError),
        (500, {"error": "boom"}, CoordinatorError),
    ])
    async def test_status_mapping(self, status, body, expected):
        client = make_client(lambda request: httpx.Response(status, json=body))
        try:
            with pytest.raises(expected):
                await client.mark_completed(5)
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_404_without_task_id_is_generic(self):
        client = make_client(lambda request: httpx.Response(404, json={"error": "Unknown pool: x"}))
        try:
            with pytest.raises(CoordinatorError, match="HTTP 404: Unknown pool: x") as exc_info:
                await client.allocate("x")
            assert not isinstance(exc_info.value, TaskNotFoundError)
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        client = make_client(lambda request: httpx.Response(502, text="bad gateway"))
        try:
            with pytest.raises(CoordinatorError, match="HTTP 502: bad gateway"):
                await client.status()
        finally:
            await client.close()


class TestPoolProtocol:
    """Tests for allocate / release / mark-used calls."""

    @pytest.mark.asyncio
    async def test_allocate_location(self):
        location = {"city": "Austin", "state": "TX", "lat": 30.27, "lon": -97.74, "countryCode": "US"}
        client = make_client(lambda request: httpx.Response(200, json={"resource": location}))
        try:
            resource = await client.allocate("locations")
        finally:
            await client.close()

        assert isinstance(resource, Location)
        assert resource.key == "Austin, TX"

    @pytest.mark.asyncio
    async def test_allocate_email_and_exhaustion(self):
        responses = iter([{"resource": "alpha@example.com"}, {"resource": None}])
        client = make_client(lambda request: httpx.Response(200, json=next(responses)))
        try:
            assert await client.allocate("emails") == "alpha@example.com"
            assert await client.allocate("emails") is None
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_release_encodes_location(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True, "outcome": "blacklisted"})

        location = Location(city="Denver", state="CO", lat=39.74, lon=-104.99)
        async with make_client(handler) as client:
            outcome = await client.release("locations", location)

        assert outcome == "blacklisted"
        assert bodies[0]["requesterId"] == "device-a"
        assert bodies[0]["resource"]["city"] == "Denver"


class TestFromEnv:
    def test_reads_worker_environment(self):
        client = CoordinatorClient.from_env({
            "COORDINATOR_URL": "http://127.0.0.1:9001",
            "DEVICE_UDID": "udid-1",
            "SESSION_ID": "s-1",
        })
        assert client.base_url == "http://127.0.0.1:9001"
        assert client.device_id == "udid-1"
        assert client.session_id == "s-1"

    def test_missing_device(self):
        with pytest.raises(KeyError):
            CoordinatorClient.from_env({"COORDINATOR_URL": "http://127.0.0.1:9001"})
