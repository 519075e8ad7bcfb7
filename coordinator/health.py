"""
Device health probing.

Each device is driven through an Appium server and a WebDriverAgent
endpoint; both expose GET /status. A device is healthy when both answer
200. Transitions are published as lifecycle events.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Optional, Callable

import httpx

from shared.logging import get_logger, device_context

from .events import Event, EventType
from .models import DeviceInfo, to_iso

log = get_logger("coordinator", "health")


@dataclass
class DeviceHealth:
    """Result of the latest probe for one device."""
    device_id: str
    healthy: bool
    appium_ok: bool
    wda_ok: bool
    last_check: float
    consecutive_failures: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "deviceId": self.device_id,
            "healthy": self.healthy,
            "appium": self.appium_ok,
            "wda": self.wda_ok,
            "lastCheck": to_iso(self.last_check),
            "consecutiveFailures": self.consecutive_failures,
            "error": self.error,
        }


class HealthMonitor:
    """
    Periodically probes every known device.
    """

    def __init__(
        self,
        check_interval: float = 30.0,
        timeout: float = 5.0,
        publish: Optional[Callable[[Event], bool]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.check_interval = check_interval
        self.timeout = timeout
        self.publish = publish

        self._client = client
        self._owns_client = client is None
        self._health: dict[str, DeviceHealth] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._devices: Callable[[], list[DeviceInfo]] = list

    @classmethod
    def from_config(cls, config, publish=None) -> "HealthMonitor":
        return cls(
            check_interval=config.health.check_interval,
            timeout=config.health.timeout,
            publish=publish,
        )

    async def start(self, devices: Callable[[], list[DeviceInfo]]):
        """
        Start the probe loop.

        Args:
            devices: Called each round to get the devices to probe.
        """
        if self._running:
            return
        self._devices = devices
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        log.info("coordinator.health.started", interval=self.check_interval)

    async def stop(self):
        """Stop the probe loop."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

        log.info("coordinator.health.stopped")

    async def _run_loop(self):
        while self._running:
            try:
                await self.check_all(self._devices())
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                log.exception(e, "coordinator.health.loop_error", {})
                await asyncio.sleep(self.check_interval)

    async def _probe(self, url: str) -> tuple[bool, Optional[str]]:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await self._client.get(f"{url}/status", timeout=self.timeout)
        except httpx.HTTPError as e:
            return False, f"{url}: {type(e).__name__}"
        if response.status_code != 200:
            return False, f"{url}: HTTP {response.status_code}"
        return True, None

    async def check_device(self, device: DeviceInfo) -> DeviceHealth:
        """Probe one device and publish a transition if its health changed."""
        (appium_ok, appium_err), (wda_ok, wda_err) = await asyncio.gather(
            self._probe(device.appium_url),
            self._probe(device.wda_url),
        )
        healthy = appium_ok and wda_ok
        previous = self._health.get(device.udid)

        health = DeviceHealth(
            device_id=device.udid,
            healthy=healthy,
            appium_ok=appium_ok,
            wda_ok=wda_ok,
            last_check=time.time(),
            consecutive_failures=0 if healthy else (previous.consecutive_failures + 1 if previous else 1),
            error=appium_err or wda_err,
        )
        self._health[device.udid] = health

        # A device with no history counts as previously healthy
        was_healthy = previous.healthy if previous else True
        with device_context(device.udid):
            if was_healthy and not healthy:
                log.warning("coordinator.health.device_unhealthy",
                            appium=appium_ok, wda=wda_ok, error=health.error)
                self._emit(EventType.DEVICE_UNHEALTHY, health)
            elif not was_healthy and healthy:
                log.info("coordinator.health.device_recovered")
                self._emit(EventType.DEVICE_RECOVERED, health)
        return health

    def _emit(self, event_type: EventType, health: DeviceHealth):
        if self.publish is not None:
            self.publish(Event(type=event_type, device_id=health.device_id, data=health.to_dict()))

    async def check_all(self, devices: list[DeviceInfo]) -> dict[str, DeviceHealth]:
        """Probe every device concurrently."""
        if not devices:
            return {}
        results = await asyncio.gather(*(self.check_device(d) for d in devices))
        return {h.device_id: h for h in results}

    def get_health(self, device_id: str) -> Optional[DeviceHealth]:
        return self._health.get(device_id)

    def get_all(self) -> dict[str, dict]:
        return {d: h.to_dict() for d, h in self._health.items()}

    def is_healthy(self, device_id: str) -> bool:
        """Devices never probed are assumed healthy."""
        health = self._health.get(device_id)
        return health is None or health.healthy
