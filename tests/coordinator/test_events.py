"""
Tests for coordinator/events.py
"""

import asyncio

import pytest

from coordinator.events import Event, EventBus, EventType


class TestEventBus:
    """Tests for the ordered single-consumer channel."""

    @pytest.mark.asyncio
    async def test_events_delivered_in_order(self):
        seen = []

        async def handler(event):
            seen.append(event.data["n"])

        bus = EventBus(handler)
        await bus.start()
        try:
            for n in range(5):
                await bus.publish(Event(type=EventType.PROCESS_STARTED, data={"n": n}))
            await bus.drain()
            assert seen == [0, 1, 2, 3, 4]
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_stop_dispatch(self):
        seen = []

        async def handler(event):
            if event.data.get("boom"):
                raise RuntimeError("handler failed")
            seen.append(event.type)

        bus = EventBus(handler)
        await bus.start()
        try:
            await bus.publish(Event(type=EventType.PROCESS_EXITED, data={"boom": True}))
            await bus.publish(Event(type=EventType.SESSION_STOPPED))
            await bus.drain()
            assert seen == [EventType.SESSION_STOPPED]
            assert bus.get_stats()["dispatched"] == 1
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_handler_runs_one_at_a_time(self):
        active = 0
        peak = 0

        async def handler(event):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        bus = EventBus(handler)
        await bus.start()
        try:
            for _ in range(3):
                bus.publish_nowait(Event(type=EventType.DEVICE_UNHEALTHY))
            await bus.drain()
            assert peak == 1
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_publish_nowait_drops_when_full(self):
        async def handler(event):
            pass

        bus = EventBus(handler, maxsize=1)
        assert bus.publish_nowait(Event(type=EventType.PROCESS_STARTED)) is True
        assert bus.publish_nowait(Event(type=EventType.PROCESS_STARTED)) is False
        assert bus.get_stats()["dropped"] == 1
        assert bus.get_stats()["queued"] == 1

    @pytest.mark.asyncio
    async def test_stop_drains_queued_events(self):
        seen = []

        async def handler(event):
            seen.append(event)

        bus = EventBus(handler)
        await bus.start()
        bus.publish_nowait(Event(type=EventType.PROCESS_EXITED))
        await bus.stop(drain=True)

        assert len(seen) == 1
        assert bus.running is False

    def test_event_to_dict(self):
        event = Event(type=EventType.DEVICE_RECOVERED, device_id="u1", timestamp=5.0)
        assert event.to_dict() == {
            "type": "device_recovered",
            "deviceId": "u1",
            "data": {},
            "timestamp": 5.0,
        }
