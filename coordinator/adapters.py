"""
Device inventory adapters.

The orchestrator does not discover devices itself; it asks a
DeviceInventory. Two implementations ship here:

- StaticInventory: the `devices` list from config.yaml
- IDeviceInventory: USB-attached iOS devices listed by `idevice_id -l`
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from shared.logging import get_logger

from .models import DeviceInfo

log = get_logger("coordinator", "adapters")


class DeviceInventory(ABC):
    """
    Abstract source of devices.
    """

    @abstractmethod
    async def scan(self) -> list[DeviceInfo]:
        """
        Return the devices currently available.

        Must not raise for "no devices"; return an empty list instead.
        """
        pass


class StaticInventory(DeviceInventory):
    """Devices declared in configuration."""

    def __init__(
        self,
        entries: list[dict],
        appium_host: str = "127.0.0.1",
        appium_base_port: int = 4723,
        wda_base_port: int = 8100,
    ):
        self.devices = []
        for index, entry in enumerate(entries):
            self.devices.append(DeviceInfo(
                udid=entry["udid"],
                name=entry.get("name"),
                appium_host=entry.get("appium_host", appium_host),
                appium_port=int(entry.get("appium_port", appium_base_port + index)),
                wda_port=int(entry.get("wda_port", wda_base_port + index)),
            ))

    async def scan(self) -> list[DeviceInfo]:
        return list(self.devices)


class IDeviceInventory(DeviceInventory):
    """
    USB devices from libimobiledevice.

    Ports are assigned base + index the first time a udid is seen and kept
    for the life of the process, so a device keeps its ports across scans.
    """

    def __init__(
        self,
        appium_host: str = "127.0.0.1",
        appium_base_port: int = 4723,
        wda_base_port: int = 8100,
        command: Optional[list[str]] = None,
        timeout: float = 10.0,
    ):
        self.appium_host = appium_host
        self.appium_base_port = appium_base_port
        self.wda_base_port = wda_base_port
        self.command = command or ["idevice_id", "-l"]
        self.timeout = timeout
        self._slots: dict[str, int] = {}

    async def _list_udids(self) -> list[str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            log.warning("coordinator.adapters.idevice_missing", command=self.command[0])
            return []

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            log.warning("coordinator.adapters.scan_timeout", timeout=self.timeout)
            return []

        if proc.returncode != 0:
            log.warning("coordinator.adapters.scan_failed",
                        returncode=proc.returncode,
                        stderr=stderr.decode(errors="replace").strip())
            return []

        udids = []
        for line in stdout.decode(errors="replace").splitlines():
            udid = line.strip()
            if udid and udid not in udids:
                udids.append(udid)
        return udids

    def _slot_for(self, udid: str) -> int:
        if udid not in self._slots:
            self._slots[udid] = len(self._slots)
        return self._slots[udid]

    async def scan(self) -> list[DeviceInfo]:
        devices = []
        for udid in await self._list_udids():
            slot = self._slot_for(udid)
            devices.append(DeviceInfo(
                udid=udid,
                appium_host=self.appium_host,
                appium_port=self.appium_base_port + slot,
                wda_port=self.wda_base_port + slot,
            ))
        log.debug("coordinator.adapters.scanned", count=len(devices))
        return devices


def build_inventory(config) -> DeviceInventory:
    """Pick the inventory named by config.inventory.source."""
    inventory = config.inventory
    if inventory.source == "idevice":
        return IDeviceInventory(
            appium_host=inventory.appium_host,
            appium_base_port=inventory.appium_base_port,
            wda_base_port=inventory.wda_base_port,
        )
    if inventory.source != "static":
        raise ValueError(f"Unknown inventory source: {inventory.source!r}")
    return StaticInventory(
        config.devices,
        appium_host=inventory.appium_host,
        appium_base_port=inventory.appium_base_port,
        wda_base_port=inventory.wda_base_port,
    )
