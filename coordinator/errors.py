"""
Exceptions raised by the coordinator.

Exhaustion (no pending task, no available resource) is never an
exception: those calls return None so pollers can back off quietly.
"""


class CoordinatorError(Exception):
    """Base class for coordinator errors."""


class OwnershipError(CoordinatorError):
    """The caller does not hold the task or resource it tried to act on."""


class TaskNotFoundError(CoordinatorError, KeyError):
    """No task with the requested id exists."""

    def __init__(self, task_id):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")

    def __str__(self) -> str:
        return f"Task {self.task_id} not found"


class DeviceUnavailableError(CoordinatorError):
    """The device is unknown to the inventory or already running a worker."""


class PersistenceError(CoordinatorError):
    """Writing (or reading back) durable state failed."""


class StateShapeError(CoordinatorError, TypeError):
    """A partial update does not match the shape of the stored namespace."""
