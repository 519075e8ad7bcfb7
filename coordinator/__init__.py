"""
Device Farm Coordinator - task distribution and resource coordination.

Lets many device workers run unattended and crash-tolerant:
- Task queue with per-device leasing and timeout reclamation
- Namespaced state store with atomic writes, backups and legacy file sync
- Bounded resource pools (locations, email addresses) with blacklisting
- Orchestrator that launches workers and reacts to their exits
"""

from .config import CoordinatorConfig, load_config
from .errors import (
    CoordinatorError,
    DeviceUnavailableError,
    OwnershipError,
    PersistenceError,
    StateShapeError,
    TaskNotFoundError,
)
from .models import (
    DeviceInfo,
    Location,
    Namespace,
    Session,
    SessionStatus,
    Task,
    TaskStatus,
    TaskType,
)
from .state import StateStore
from .legacy import LegacyExporter, LegacyFileExporter
from .queue import TaskQueue, QueueState
from .pools import ResourcePool, LocationPool, EmailPool, PoolState
from .events import Event, EventBus, EventType
from .supervisor import ProcessSupervisor
from .health import HealthMonitor
from .recovery import CheckpointStore, Checkpoint
from .adapters import DeviceInventory, StaticInventory, IDeviceInventory
from .main import Orchestrator

__all__ = [
    # Config
    "CoordinatorConfig",
    "load_config",
    # Errors
    "CoordinatorError",
    "DeviceUnavailableError",
    "OwnershipError",
    "PersistenceError",
    "StateShapeError",
    "TaskNotFoundError",
    # Models
    "DeviceInfo",
    "Location",
    "Namespace",
    "Session",
    "SessionStatus",
    "Task",
    "TaskStatus",
    "TaskType",
    # State
    "StateStore",
    "LegacyExporter",
    "LegacyFileExporter",
    # Queue
    "TaskQueue",
    "QueueState",
    # Pools
    "ResourcePool",
    "LocationPool",
    "EmailPool",
    "PoolState",
    # Events
    "Event",
    "EventBus",
    "EventType",
    # Collaborators
    "ProcessSupervisor",
    "HealthMonitor",
    "CheckpointStore",
    "Checkpoint",
    "DeviceInventory",
    "StaticInventory",
    "IDeviceInventory",
    # Main
    "Orchestrator",
]
