"""
Lifecycle event channel.

Producers (process watcher, health monitor, API) publish onto a bounded
asyncio.Queue; one dispatcher task hands each event, in order, to the
single handler given at construction.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Callable, Awaitable

from shared.logging import get_logger

log = get_logger("coordinator", "events")


class EventType(str, Enum):
    """Lifecycle events the orchestrator reacts to."""
    PROCESS_STARTED = "process_started"
    PROCESS_EXITED = "process_exited"
    SESSION_STOPPED = "session_stopped"
    DEVICE_UNHEALTHY = "device_unhealthy"
    DEVICE_RECOVERED = "device_recovered"


@dataclass
class Event:
    type: EventType
    device_id: Optional[str] = None
    data: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "deviceId": self.device_id,
            "data": self.data,
            "timestamp": self.timestamp,
        }


EventHandler = Callable[[Event], Awaitable[None]]


class EventBus:
    """
    Bounded, ordered event channel with exactly one consumer.
    """

    def __init__(self, handler: EventHandler, maxsize: int = 1000):
        self.handler = handler
        self.maxsize = maxsize
        self._queue: Optional[asyncio.Queue] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._dropped = 0
        self._dispatched = 0

    @property
    def running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    def _ensure_queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.maxsize)
        return self._queue

    async def start(self):
        """Start the dispatcher task."""
        if self.running:
            return
        self._ensure_queue()
        self._dispatcher = asyncio.create_task(self._dispatch_loop())
        log.info("coordinator.events.started", maxsize=self.maxsize)

    async def stop(self, drain: bool = True):
        """
        Stop the dispatcher.

        Args:
            drain: Deliver already-queued events first.
        """
        if drain and self._queue is not None and self.running:
            await self._queue.join()

        if self._dispatcher:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

        log.info("coordinator.events.stopped",
                 dispatched=self._dispatched, dropped=self._dropped)

    async def publish(self, event: Event):
        """Queue an event, waiting for room if the channel is full."""
        await self._ensure_queue().put(event)

    def publish_nowait(self, event: Event) -> bool:
        """
        Queue an event without waiting.

        Returns False (and counts a drop) if the channel is full.
        """
        try:
            self._ensure_queue().put_nowait(event)
            return True
        except asyncio.QueueFull:
            self._dropped += 1
            log.warning("coordinator.events.dropped",
                        kind=event.type.value, device_id=event.device_id)
            return False

    async def drain(self):
        """Wait until every queued event has been handled."""
        if self._queue is not None:
            await self._queue.join()

    async def _dispatch_loop(self):
        queue = self._ensure_queue()
        while True:
            event = await queue.get()
            try:
                await self.handler(event)
                self._dispatched += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.exception(e, "coordinator.events.handler_error", event.to_dict())
            finally:
                queue.task_done()

    def get_stats(self) -> dict:
        return {
            "running": self.running,
            "queued": self._queue.qsize() if self._queue is not None else 0,
            "dispatched": self._dispatched,
            "dropped": self._dropped,
        }
