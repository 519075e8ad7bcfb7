"""
Data models for the coordinator.

Tasks and pool items are kept in memory as dataclasses and persisted with
the camelCase keys and ISO-8601 timestamps that existing readers of the
per-namespace JSON files expect.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Any
import time


def to_iso(timestamp: Optional[float]) -> Optional[str]:
    """Epoch seconds -> ISO-8601 UTC string (None passes through)."""
    if timestamp is None:
        return None
    dt = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def from_iso(value: Any) -> Optional[float]:
    """
    ISO-8601 string (or a bare epoch number) -> epoch seconds.

    Older files store JavaScript millisecond timestamps; any number larger
    than 1e11 is treated as milliseconds.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return value / 1000.0 if value > 1e11 else float(value)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


class Namespace(str, Enum):
    """Top-level sections of the state document, one owner each."""
    UI = "ui"
    QUEUE = "queue"
    SERVERS = "servers"
    LOCATIONS = "locations"
    RESOURCES = "resources"
    METRICS = "metrics"

    @classmethod
    def parse(cls, value: Any) -> "Namespace":
        """Coerce a string to a Namespace, raising ValueError if unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown namespace: {value!r}") from None


class TaskType(str, Enum):
    """Kinds of work a device worker can be asked to do."""
    CREATE_ACCOUNT = "create_account"
    TEST = "test"
    CUSTOM = "custom"


class TaskStatus(str, Enum):
    """Task lifecycle states."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Task:
    """
    A unit of work leased to one device at a time.

    device_id and started_at are set exactly while the task is
    IN_PROGRESS. last_device_id remembers who held the most recent lease.
    """
    # Unique, monotonically assigned identifier
    id: int

    type: TaskType = TaskType.CREATE_ACCOUNT
    status: TaskStatus = TaskStatus.PENDING

    # Opaque payload handed to the worker
    config: dict = field(default_factory=dict)

    # Lease
    device_id: Optional[str] = None
    started_at: Optional[float] = None

    # Retry tracking
    attempts: int = 0
    max_attempts: int = 3

    # Timestamps
    created_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    failed_at: Optional[float] = None

    # Outcome
    last_error: Optional[str] = None
    result: Any = None
    last_device_id: Optional[str] = None

    def to_dict(self) -> dict:
        """Serialize to the persisted (camelCase) form."""
        data = {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "config": self.config,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "createdAt": to_iso(self.created_at),
        }
        # Optional fields are omitted rather than written as null
        optional = {
            "deviceId": self.device_id,
            "startedAt": to_iso(self.started_at),
            "completedAt": to_iso(self.completed_at),
            "failedAt": to_iso(self.failed_at),
            "lastError": self.last_error,
            "result": self.result,
            "lastDeviceId": self.last_device_id,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        """Deserialize from the persisted form."""
        created_at = from_iso(data.get("createdAt"))
        return cls(
            id=int(data["id"]),
            type=TaskType(data.get("type", TaskType.CREATE_ACCOUNT.value)),
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            config=data.get("config") or {},
            device_id=data.get("deviceId"),
            started_at=from_iso(data.get("startedAt")),
            attempts=data.get("attempts", 0),
            max_attempts=data.get("maxAttempts", 3),
            created_at=created_at if created_at is not None else time.time(),
            completed_at=from_iso(data.get("completedAt")),
            failed_at=from_iso(data.get("failedAt")),
            last_error=data.get("lastError"),
            result=data.get("result"),
            last_device_id=data.get("lastDeviceId"),
        )

    def can_retry(self) -> bool:
        """Check if the task has attempts left."""
        return self.attempts < self.max_attempts

    def is_leasable(self) -> bool:
        """Pending, or failed with attempts remaining."""
        if self.status == TaskStatus.PENDING:
            return True
        return self.status == TaskStatus.FAILED and self.can_retry()

    def lease(self, device_id: str, now: Optional[float] = None):
        """Hand the task to a device."""
        self.status = TaskStatus.IN_PROGRESS
        self.device_id = device_id
        self.last_device_id = device_id
        self.started_at = now if now is not None else time.time()
        self.attempts += 1

    def mark_completed(self, result: Any = None, now: Optional[float] = None):
        """Terminal success; ends the lease."""
        self.status = TaskStatus.COMPLETED
        self.completed_at = now if now is not None else time.time()
        self.result = result
        self._clear_lease()

    def mark_failed(self, error: Optional[str], now: Optional[float] = None):
        """
        Record a failed attempt.

        Exhausted tasks become terminally FAILED; the rest go back to
        PENDING for any device to pick up.
        """
        self.last_error = error
        self.failed_at = now if now is not None else time.time()
        if self.can_retry():
            self.status = TaskStatus.PENDING
        else:
            self.status = TaskStatus.FAILED
        self._clear_lease()

    def reclaim(self):
        """Forcibly end the lease and return the task to PENDING."""
        self.status = TaskStatus.PENDING
        self._clear_lease()

    def _clear_lease(self):
        self.device_id = None
        self.started_at = None


@dataclass
class Location:
    """A geographic location handed to a worker for account setup."""
    city: str
    state: str
    lat: float
    lon: float
    country_code: str = "US"

    @property
    def key(self) -> str:
        return f"{self.city}, {self.state}"

    def to_dict(self) -> dict:
        return {
            "city": self.city,
            "state": self.state,
            "lat": self.lat,
            "lon": self.lon,
            "countryCode": self.country_code,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Location":
        country = data.get("countryCode", data.get("CountryCode", "US"))
        return cls(
            city=str(data["city"]).strip(),
            state=str(data["state"]).strip(),
            lat=float(data["lat"]),
            lon=float(data["lon"]),
            country_code=str(country).strip(),
        )


@dataclass
class DeviceInfo:
    """A physical device and the automation endpoints that drive it."""
    udid: str
    name: Optional[str] = None
    appium_host: str = "127.0.0.1"
    appium_port: int = 4723
    wda_port: int = 8100

    @property
    def appium_url(self) -> str:
        return f"http://{self.appium_host}:{self.appium_port}"

    @property
    def wda_url(self) -> str:
        return f"http://{self.appium_host}:{self.wda_port}"

    def to_dict(self) -> dict:
        return {
            "udid": self.udid,
            "name": self.name or self.udid,
            "appiumHost": self.appium_host,
            "appiumPort": self.appium_port,
            "wdaPort": self.wda_port,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DeviceInfo":
        return cls(
            udid=data["udid"],
            name=data.get("name"),
            appium_host=data.get("appiumHost", data.get("appium_host", "127.0.0.1")),
            appium_port=int(data.get("appiumPort", data.get("appium_port", 4723))),
            wda_port=int(data.get("wdaPort", data.get("wda_port", 8100))),
        )


class SessionStatus(str, Enum):
    """Worker session lifecycle."""
    RUNNING = "running"
    STOPPED = "stopped"
    EXITED = "exited"


@dataclass
class Session:
    """One worker process bound to one device."""
    id: str
    device_id: str
    status: SessionStatus = SessionStatus.RUNNING
    config: dict = field(default_factory=dict)
    pid: Optional[int] = None
    task_id: Optional[int] = None
    started_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None
    exit_code: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "deviceId": self.device_id,
            "status": self.status.value,
            "config": self.config,
            "pid": self.pid,
            "taskId": self.task_id,
            "startedAt": to_iso(self.started_at),
            "endedAt": to_iso(self.ended_at),
            "exitCode": self.exit_code,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        started_at = from_iso(data.get("startedAt"))
        return cls(
            id=data["id"],
            device_id=data["deviceId"],
            status=SessionStatus(data.get("status", SessionStatus.RUNNING.value)),
            config=data.get("config") or {},
            pid=data.get("pid"),
            task_id=data.get("taskId"),
            started_at=started_at if started_at is not None else time.time(),
            ended_at=from_iso(data.get("endedAt")),
            exit_code=data.get("exitCode"),
        )
