"""
Worker-side client for the coordinator API.

A worker process launched by the orchestrator finds everything it needs
in its environment (DEVICE_UDID, SESSION_ID, COORDINATOR_URL) and uses
this client for the poll / lease / report cycle.

Exhaustion comes back as None; ownership violations and unknown tasks
raise the same exceptions the coordinator raises internally.
"""

import os
from typing import Optional, Any

import httpx

from shared.logging import get_logger, get_correlation_id

from .errors import CoordinatorError, OwnershipError, PersistenceError, TaskNotFoundError
from .models import Location, Task

log = get_logger("worker", "client")


class CoordinatorClient:
    """
    Async HTTP client for one device worker.
    """

    def __init__(
        self,
        base_url: str,
        device_id: str,
        session_id: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.device_id = device_id
        self.session_id = session_id
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_env(cls, env: Optional[dict] = None, **kwargs) -> "CoordinatorClient":
        """
        Build a client from the worker environment.

        Raises:
            KeyError: DEVICE_UDID or COORDINATOR_URL is missing.
        """
        env = env if env is not None else os.environ
        return cls(
            base_url=env["COORDINATOR_URL"],
            device_id=env["DEVICE_UDID"],
            session_id=env.get("SESSION_ID"),
            **kwargs,
        )

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self) -> "CoordinatorClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ==================== Transport ====================

    async def _post(self, path: str, body: dict) -> dict:
        response = await self._client.post(
            path,
            json=body,
            headers={"X-Correlation-ID": get_correlation_id()},
        )
        return self._check(response)

    async def _get(self, path: str) -> dict:
        response = await self._client.get(path)
        return self._check(response)

    def _check(self, response: httpx.Response) -> dict:
        if response.status_code < 400:
            return response.json()

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = body.get("error", response.text)

        log.warning("worker.client.request_failed",
                    path=response.request.url.path,
                    status=response.status_code,
                    error=message)

        if response.status_code == 409:
            raise OwnershipError(message)
        if response.status_code == 404 and "taskId" in body:
            raise TaskNotFoundError(body["taskId"])
        if response.status_code == 503:
            raise PersistenceError(message)
        raise CoordinatorError(f"HTTP {response.status_code}: {message}")

    # ==================== Queue protocol ====================

    async def get_next_task(self) -> Optional[Task]:
        """Lease the next task for this device, or None if there is none."""
        data = await self._post("/queue/next", {"deviceId": self.device_id})
        task = data.get("task")
        return Task.from_dict(task) if task else None

    async def mark_completed(self, task_id: int, result: Any = None) -> Task:
        data = await self._post(
            f"/queue/{task_id}/complete",
            {"deviceId": self.device_id, "result": result},
        )
        return Task.from_dict(data["task"])

    async def mark_failed(self, task_id: int, error: str) -> Task:
        data = await self._post(
            f"/queue/{task_id}/fail",
            {"deviceId": self.device_id, "error": error},
        )
        return Task.from_dict(data["task"])

    # ==================== Pool protocol ====================

    async def allocate(self, kind: str) -> Optional[Any]:
        """
        Take one item from a pool ("locations" or "emails").

        Returns a Location, an email string, or None on exhaustion.
        """
        data = await self._post(f"/pools/{kind}/allocate", {"requesterId": self.device_id})
        resource = data.get("resource")
        if isinstance(resource, dict):
            return Location.from_dict(resource)
        return resource

    async def release(self, kind: str, resource: Any = None) -> str:
        """Hand back a failed item. Returns "available" or "blacklisted"."""
        data = await self._post(f"/pools/{kind}/release", {
            "requesterId": self.device_id,
            "resource": self._encode(resource),
        })
        return data["outcome"]

    async def mark_used(self, kind: str, resource: Any = None):
        await self._post(f"/pools/{kind}/mark-used", {
            "requesterId": self.device_id,
            "resource": self._encode(resource),
        })

    @staticmethod
    def _encode(resource: Any) -> Any:
        if isinstance(resource, Location):
            return resource.to_dict()
        return resource

    async def status(self) -> dict:
        return await self._get("/status")
