"""
Tests for coordinator/pools.py
"""

import pytest

from coordinator.config import config_from_dict
from coordinator.errors import OwnershipError
from coordinator.models import Location, Namespace
from coordinator.pools import EmailPool, LocationPool, PoolState, build_pools


class TestPoolState:
    """Tests for PoolState serialization."""

    def test_holding_key_is_used(self):
        state = PoolState(holding_key="testing", held={"d1": {"city": "A", "state": "B"}})
        data = state.to_dict()
        assert "testing" in data
        assert data["stats"]["testingCount"] == 1

    def test_from_dict(self):
        state = PoolState.from_dict(
            {"available": ["a"], "allocated": {"d1": "b"}, "failures": {"a": "2"}},
            holding_key="allocated",
        )
        assert state.held == {"d1": "b"}
        assert state.failures == {"a": 2}
        assert state.stats()["total"] == 2


class TestLocationPool:
    """Tests for LocationPool."""

    @pytest.mark.asyncio
    async def test_seeded_on_initialize(self, store, location_pool):
        await store.initialize()
        try:
            await location_pool.initialize()
            stats = location_pool.get_stats()
            assert stats["kind"] == "locations"
            assert stats["availableCount"] == 3
            assert store.get(Namespace.LOCATIONS)["stats"]["availableCount"] == 3
        finally:
            await store.shutdown()

    @pytest.mark.asyncio
    async def test_allocate_is_idempotent(self, store, location_pool):
        await store.initialize()
        try:
            await location_pool.initialize()
            first = await location_pool.allocate("device-a")
            again = await location_pool.allocate("device-a")
            other = await location_pool.allocate("device-b")

            assert isinstance(first, Location)
            assert first.key == "Austin, TX"
            assert again == first
            assert other.key == "Denver, CO"
            assert location_pool.holders() == {"device-a": "Austin, TX", "device-b": "Denver, CO"}
            assert store.get(Namespace.LOCATIONS)["testing"]["device-a"]["city"] == "Austin"
        finally:
            await store.shutdown()

    @pytest.mark.asyncio
    async def test_release_returns_item_to_back(self, store, location_pool):
        await store.initialize()
        try:
            await location_pool.initialize()
            location = await location_pool.allocate("device-a")
            outcome = await location_pool.release("device-a", location)

            assert outcome == "available"
            state = location_pool.get_state()
            assert state["available"][-1]["city"] == "Austin"
            assert state["failures"] == {"Austin, TX": 1}
            assert location_pool.held_by("device-a") is None
        finally:
            await store.shutdown()

    @pytest.mark.asyncio
    async def test_blacklisted_after_threshold(self, store, location_pool):
        await store.initialize()
        try:
            await location_pool.initialize()
            outcomes = []
            for _ in range(3):
                # Cycle through until Austin comes back to the same requester
                while True:
                    location = await location_pool.allocate("device-a")
                    if location.key == "Austin, TX":
                        break
                    await location_pool.mark_used("device-a")
                outcomes.append(await location_pool.release("device-a"))

            assert outcomes == ["available", "available", "blacklisted"]
            state = location_pool.get_state()
            assert [l["city"] for l in state["blacklisted"]] == ["Austin"]
            assert "Austin, TX" not in state["failures"]
        finally:
            await store.shutdown()

    @pytest.mark.asyncio
    async def test_release_by_non_holder_rejected(self, store, location_pool):
        await store.initialize()
        try:
            await location_pool.initialize()
            await location_pool.allocate("device-a")
            with pytest.raises(OwnershipError):
                await location_pool.release("device-b")
            with pytest.raises(OwnershipError):
                await location_pool.mark_used("device-b")
            assert location_pool.held_by("device-a").key == "Austin, TX"
        finally:
            await store.shutdown()

    @pytest.mark.asyncio
    async def test_release_wrong_resource_rejected(self, store, location_pool):
        await store.initialize()
        try:
            await location_pool.initialize()
            await location_pool.allocate("device-a")
            with pytest.raises(OwnershipError, match="Denver"):
                await location_pool.release("device-a", {"city": "Denver", "state": "CO"})
        finally:
            await store.shutdown()

    @pytest.mark.asyncio
    async def test_mark_used_is_terminal(self, store, location_pool):
        await store.initialize()
        try:
            await location_pool.initialize()
            await location_pool.allocate("device-a")
            await location_pool.mark_used("device-a", "Austin, TX")

            state = location_pool.get_state()
            assert [l["city"] for l in state["used"]] == ["Austin"]
            nxt = await location_pool.allocate("device-a")
            assert nxt.key == "Denver, CO"
        finally:
            await store.shutdown()

    @pytest.mark.asyncio
    async def test_auto_reset_on_exhaustion(self, store, location_pool):
        await store.initialize()
        try:
            await location_pool.initialize()
            for device in ("d1", "d2", "d3"):
                await location_pool.allocate(device)
                await location_pool.mark_used(device)

            location = await location_pool.allocate("d4")
            assert location is not None
            assert location.key == "Austin, TX"
            assert location_pool.get_stats()["usedCount"] == 0
        finally:
            await store.shutdown()

    @pytest.mark.asyncio
    async def test_exhaustion_with_everything_held(self, store, location_pool):
        """Auto-reset cannot recover items that are still held."""
        await store.initialize()
        try:
            await location_pool.initialize()
            for device in ("d1", "d2", "d3"):
                await location_pool.allocate(device)
            assert await location_pool.allocate("d4") is None
        finally:
            await store.shutdown()

    @pytest.mark.asyncio
    async def test_reset_keeps_live_allocations(self, store, location_pool):
        await store.initialize()
        try:
            await location_pool.initialize()
            await location_pool.allocate("d1")
            await location_pool.mark_used("d1")
            await location_pool.allocate("d2")
            await location_pool.release("d2")

            await location_pool.allocate("d3")
            await location_pool.reset()

            stats = location_pool.get_stats()
            assert stats["testingCount"] == 1
            assert stats["usedCount"] == 0
            assert stats["availableCount"] == 2
            assert location_pool.get_state()["failures"] == {}
            assert location_pool.held_by("d3") is not None
        finally:
            await store.shutdown()

    @pytest.mark.asyncio
    async def test_seed_is_additive_and_deduplicated(self, store, location_pool, locations_csv):
        await store.initialize()
        try:
            await location_pool.initialize()
            await location_pool.allocate("d1")
            assert await location_pool.load_seed(locations_csv) == 0
            assert location_pool.get_stats()["total"] == 3

            added = await location_pool.add_items([
                Location(city="Austin", state="TX", lat=0, lon=0),
                {"city": "Boise", "state": "ID", "lat": 43.6, "lon": -116.2},
            ])
            assert added == 1
            assert location_pool.get_stats()["total"] == 4
        finally:
            await store.shutdown()

    @pytest.mark.asyncio
    async def test_state_survives_reload(self, store, location_pool, locations_csv):
        await store.initialize()
        await location_pool.initialize()
        await location_pool.allocate("d1")
        await store.shutdown()

        await store.initialize()
        try:
            reloaded = LocationPool(store, seed_file=locations_csv)
            await reloaded.initialize()
            assert reloaded.held_by("d1").key == "Austin, TX"
            assert reloaded.get_stats()["total"] == 3
        finally:
            await store.shutdown()

    def test_parse_seed_skips_bad_rows(self, store, temp_dir):
        path = temp_dir / "mixed.csv"
        path.write_text(
            "city,state,lat,lon,CountryCode\n"
            "Austin,TX,30.2,-97.7,US\n"
            "Nowhere,,1.0,2.0,US\n"
            "Bad,XX,north,2.0,US\n"
            "Toronto,ON,43.6,-79.3,CA\n"
        )
        locations = LocationPool(store).parse_seed(path)
        assert [l.key for l in locations] == ["Austin, TX", "Toronto, ON"]
        assert locations[1].country_code == "CA"

    def test_key_of(self, store):
        pool = LocationPool(store)
        location = Location(city="Austin", state="TX", lat=1, lon=2)
        assert pool.key_of(location) == "Austin, TX"
        assert pool.key_of(location.to_dict()) == "Austin, TX"
        assert pool.key_of(" Austin, TX ") == "Austin, TX"


class TestEmailPool:
    """Tests for EmailPool."""

    @pytest.mark.asyncio
    async def test_seeded_lowercase(self, store, email_pool):
        await store.initialize()
        try:
            await email_pool.initialize()
            state = email_pool.get_state()
            assert state["available"] == ["alpha@example.com", "beta@example.com", "gamma@example.com"]
            assert "allocated" in state
            assert store.get(Namespace.RESOURCES)["stats"]["allocatedCount"] == 0
        finally:
            await store.shutdown()

    @pytest.mark.asyncio
    async def test_no_auto_reset_returns_none(self, store, email_pool):
        await store.initialize()
        try:
            await email_pool.initialize()
            for device in ("d1", "d2", "d3"):
                assert await email_pool.allocate(device) is not None
                await email_pool.mark_used(device)
            assert await email_pool.allocate("d4") is None
        finally:
            await store.shutdown()

    @pytest.mark.asyncio
    async def test_release_matches_case_insensitively(self, store, email_pool):
        await store.initialize()
        try:
            await email_pool.initialize()
            email = await email_pool.allocate("d1")
            assert email == "alpha@example.com"
            assert await email_pool.release("d1", "ALPHA@example.com") == "available"
        finally:
            await store.shutdown()

    @pytest.mark.asyncio
    async def test_add_emails(self, store, email_pool):
        await store.initialize()
        try:
            await email_pool.initialize()
            added = await email_pool.add_emails(["New@Example.com", "alpha@example.com", "junk", ""])
            assert added == 1
            assert email_pool.get_state()["available"][-1] == "new@example.com"
        finally:
            await store.shutdown()


class TestBuildPools:
    """Tests for build_pools."""

    def test_pools_from_config(self, store, temp_dir):
        config = config_from_dict({
            "data_dir": str(temp_dir),
            "pools": {"emails": {"failure_threshold": 5}},
        })
        pools = build_pools(store, config)

        assert set(pools) == {"locations", "emails"}
        assert isinstance(pools["locations"], LocationPool)
        assert pools["locations"].auto_reset is True
        assert pools["locations"].seed_file == temp_dir / "resources/locations.csv"
        assert pools["emails"].failure_threshold == 5
        assert pools["emails"].auto_reset is False
        assert isinstance(pools["emails"], EmailPool)
