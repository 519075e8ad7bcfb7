"""
Resource Pools for the coordinator.

Hands scarce external resources (locations, email addresses) to workers.
Every item sits in exactly one of four sets:

- available: ready to hand out (front of the list first)
- held: keyed by requester, at most one item per requester
  ("testing" for locations, "allocated" for emails)
- used: consumed by a successful run, terminal until reset()
- blacklisted: released as failed failure_threshold times
"""

import asyncio
import csv
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Any, Union

from shared.logging import get_logger

from .errors import OwnershipError
from .models import Location, Namespace
from .state import StateStore

log = get_logger("coordinator", "pools")

DEFAULT_FAILURE_THRESHOLD = 3

LOCATION_COLUMNS = ("city", "state", "lat", "lon", "countryCode")


@dataclass
class PoolState:
    """Persisted pool namespace. Items are kept in their stored (JSON) form."""
    holding_key: str
    available: list = field(default_factory=list)
    held: dict[str, Any] = field(default_factory=dict)
    used: list = field(default_factory=list)
    blacklisted: list = field(default_factory=list)
    failures: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "available": list(self.available),
            self.holding_key: dict(self.held),
            "used": list(self.used),
            "blacklisted": list(self.blacklisted),
            "failures": dict(self.failures),
            "stats": self.stats(),
        }

    @classmethod
    def from_dict(cls, data: dict, holding_key: str) -> "PoolState":
        return cls(
            holding_key=holding_key,
            available=list(data.get("available") or []),
            held=dict(data.get(holding_key) or {}),
            used=list(data.get("used") or []),
            blacklisted=list(data.get("blacklisted") or []),
            failures={k: int(v) for k, v in (data.get("failures") or {}).items()},
        )

    def stats(self) -> dict:
        return {
            "total": len(self.available) + len(self.held) + len(self.used) + len(self.blacklisted),
            "availableCount": len(self.available),
            f"{self.holding_key}Count": len(self.held),
            "usedCount": len(self.used),
            "blacklistedCount": len(self.blacklisted),
        }


class ResourcePool(ABC):
    """
    Allocation, release and blacklisting of one kind of resource.

    Subclasses define how an item is keyed, stored and seeded.
    """

    kind: str = "resource"
    namespace: Namespace
    holding_key: str = "allocated"

    def __init__(
        self,
        store: StateStore,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        auto_reset: bool = True,
        seed_file: Optional[Union[str, Path]] = None,
    ):
        self.store = store
        self.failure_threshold = failure_threshold
        self.auto_reset = auto_reset
        self.seed_file = Path(seed_file) if seed_file else None

        self.state = PoolState(holding_key=self.holding_key)
        self._lock = asyncio.Lock()

    # ==================== Item handling (per kind) ====================

    @abstractmethod
    def key_of(self, item: Any) -> str:
        """Key for a stored item, a resource object, or a key string."""
        pass

    @abstractmethod
    def to_stored(self, resource: Any) -> Any:
        """Resource -> stored form."""
        pass

    @abstractmethod
    def from_stored(self, stored: Any) -> Any:
        """Stored form -> resource returned to callers."""
        pass

    @abstractmethod
    def parse_seed(self, path: Path) -> list:
        """Read a seed file into resources."""
        pass

    # ==================== Lifecycle ====================

    async def initialize(self):
        """Load persisted state and merge in the seed file if there is one."""
        self.state = PoolState.from_dict(self.store.get(self.namespace) or {}, self.holding_key)

        if self.seed_file is not None and self.seed_file.exists():
            await self.load_seed(self.seed_file)
        else:
            async with self._lock:
                await self._persist()

        log.info(f"coordinator.pools.{self.kind}.initialized", **self.state.stats())

    async def _persist(self):
        await self.store.set(self.namespace, self.state.to_dict())
        await self.store.save()

    # ==================== Public API ====================

    async def allocate(self, requester_id: str) -> Optional[Any]:
        """
        Give requester_id one item.

        Idempotent: a requester that already holds an item gets the same
        item back. On exhaustion the pool is reset once (if auto_reset) and
        retried; still empty returns None.
        """
        async with self._lock:
            if requester_id in self.state.held:
                return self.from_stored(self.state.held[requester_id])

            if not self.state.available and self.auto_reset:
                log.warning(f"coordinator.pools.{self.kind}.exhausted_auto_reset",
                            requester_id=requester_id)
                self._reset_locked()

            if not self.state.available:
                log.warning(f"coordinator.pools.{self.kind}.exhausted",
                            requester_id=requester_id)
                return None

            stored = self.state.available.pop(0)
            self.state.held[requester_id] = stored
            await self._persist()

        log.info(f"coordinator.pools.{self.kind}.allocated",
                 requester_id=requester_id, key=self.key_of(stored))
        return self.from_stored(stored)

    def _take_held(self, requester_id: str, resource: Any) -> Any:
        """Pop the requester's item after checking it matches resource."""
        if requester_id not in self.state.held:
            raise OwnershipError(f"{requester_id} holds no {self.kind}")

        stored = self.state.held[requester_id]
        if resource is not None and self.key_of(resource) != self.key_of(stored):
            raise OwnershipError(
                f"{requester_id} holds {self.key_of(stored)!r}, not {self.key_of(resource)!r}"
            )
        return self.state.held.pop(requester_id)

    async def release(self, requester_id: str, resource: Any = None) -> str:
        """
        Return a failed item.

        Returns:
            "available" if the item went back to the pool, "blacklisted" if
            it reached the failure threshold.

        Raises:
            OwnershipError: requester_id does not hold resource.
        """
        async with self._lock:
            stored = self._take_held(requester_id, resource)
            key = self.key_of(stored)
            count = self.state.failures.get(key, 0) + 1

            if count >= self.failure_threshold:
                self.state.blacklisted.append(stored)
                self.state.failures.pop(key, None)
                outcome = "blacklisted"
            else:
                self.state.failures[key] = count
                self.state.available.append(stored)
                outcome = "available"

            await self._persist()

        if outcome == "blacklisted":
            log.warning(f"coordinator.pools.{self.kind}.blacklisted",
                        requester_id=requester_id, key=key, failures=count)
        else:
            log.info(f"coordinator.pools.{self.kind}.released",
                     requester_id=requester_id, key=key, failures=count)
        return outcome

    async def mark_used(self, requester_id: str, resource: Any = None):
        """
        Consume the requester's item (success). Terminal until reset().

        Raises:
            OwnershipError: requester_id does not hold resource.
        """
        async with self._lock:
            stored = self._take_held(requester_id, resource)
            key = self.key_of(stored)
            self.state.used.append(stored)
            self.state.failures.pop(key, None)
            await self._persist()

        log.info(f"coordinator.pools.{self.kind}.used", requester_id=requester_id, key=key)

    async def reset(self):
        """
        Put used and blacklisted items back into available and clear failure
        counters. Live allocations are left with their holders.
        """
        async with self._lock:
            self._reset_locked()
            await self._persist()

    def _reset_locked(self):
        recovered = len(self.state.used) + len(self.state.blacklisted)
        seen = set()
        combined = []
        for item in self.state.available + self.state.used + self.state.blacklisted:
            key = self.key_of(item)
            if key in seen:
                continue
            seen.add(key)
            combined.append(item)

        self.state.available = combined
        self.state.used = []
        self.state.blacklisted = []
        self.state.failures = {}
        log.warning(f"coordinator.pools.{self.kind}.reset",
                    recovered=recovered, available=len(combined),
                    held=len(self.state.held))

    async def add_items(self, items: list) -> int:
        """
        Add resources to available, skipping any already known in any set.

        Returns:
            Number of items actually added.
        """
        async with self._lock:
            known = self._known_keys()
            added = 0
            for item in items:
                stored = self.to_stored(item)
                key = self.key_of(stored)
                if key in known:
                    continue
                known.add(key)
                self.state.available.append(stored)
                added += 1

            await self._persist()

        log.info(f"coordinator.pools.{self.kind}.items_added",
                 offered=len(items), added=added)
        return added

    async def load_seed(self, path: Union[str, Path]) -> int:
        """Additively seed the pool from a file."""
        items = await asyncio.to_thread(self.parse_seed, Path(path))
        return await self.add_items(items)

    def _known_keys(self) -> set[str]:
        everything = (
            self.state.available
            + list(self.state.held.values())
            + self.state.used
            + self.state.blacklisted
        )
        return {self.key_of(item) for item in everything}

    def held_by(self, requester_id: str) -> Optional[Any]:
        """The item requester_id currently holds, if any."""
        stored = self.state.held.get(requester_id)
        return self.from_stored(stored) if stored is not None else None

    def holders(self) -> dict[str, str]:
        """requester id -> key of the item it holds."""
        return {r: self.key_of(item) for r, item in self.state.held.items()}

    def get_stats(self) -> dict:
        return {"kind": self.kind, **self.state.stats()}

    def get_state(self) -> dict:
        """The full persisted form."""
        return self.state.to_dict()


class LocationPool(ResourcePool):
    """Locations keyed by "<city>, <state>", seeded from CSV."""

    kind = "locations"
    namespace = Namespace.LOCATIONS
    holding_key = "testing"

    def key_of(self, item: Any) -> str:
        if isinstance(item, Location):
            return item.key
        if isinstance(item, dict):
            return f"{str(item['city']).strip()}, {str(item['state']).strip()}"
        return str(item).strip()

    def to_stored(self, resource: Any) -> dict:
        if isinstance(resource, Location):
            return resource.to_dict()
        return Location.from_dict(resource).to_dict()

    def from_stored(self, stored: dict) -> Location:
        return Location.from_dict(stored)

    def parse_seed(self, path: Path) -> list[Location]:
        """
        Parse a locations CSV.

        Requires city,state,lat,lon,countryCode columns ("CountryCode" is
        accepted). Rows missing a value or with bad coordinates are skipped.
        """
        locations = []
        with open(path, "r", encoding="utf-8-sig", newline="") as f:
            reader = csv.DictReader(f)
            for line_no, row in enumerate(reader, start=2):
                row = {(k or "").strip(): (v or "").strip() for k, v in row.items()}
                if "countryCode" not in row and "CountryCode" in row:
                    row["countryCode"] = row["CountryCode"]
                missing = [c for c in LOCATION_COLUMNS if not row.get(c)]
                if missing:
                    log.warning("coordinator.pools.locations.row_skipped",
                                path=str(path), line=line_no, missing=missing)
                    continue
                try:
                    locations.append(Location.from_dict(row))
                except ValueError as e:
                    log.warning("coordinator.pools.locations.row_skipped",
                                path=str(path), line=line_no, error=str(e))
        return locations


class EmailPool(ResourcePool):
    """Email addresses keyed by their lower-cased form, seeded from text."""

    kind = "emails"
    namespace = Namespace.RESOURCES
    holding_key = "allocated"

    def key_of(self, item: Any) -> str:
        return str(item).strip().lower()

    def to_stored(self, resource: Any) -> str:
        return str(resource).strip().lower()

    def from_stored(self, stored: str) -> str:
        return stored

    def parse_seed(self, path: Path) -> list[str]:
        """One address per line; blank lines and lines without "@" are skipped."""
        emails = []
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                address = line.strip()
                if address and "@" in address:
                    emails.append(address)
        return emails

    async def add_emails(self, emails: list[str]) -> int:
        """Alias of add_items for address lists."""
        clean = [e.strip() for e in emails if e and "@" in e]
        return await self.add_items(clean)


def build_pools(store: StateStore, config) -> dict[str, ResourcePool]:
    """Both pools, configured from a CoordinatorConfig, keyed by kind."""
    locations = config.pools.locations
    emails = config.pools.emails
    return {
        LocationPool.kind: LocationPool(
            store,
            failure_threshold=locations.failure_threshold,
            auto_reset=locations.auto_reset,
            seed_file=config.resolve(locations.seed_file),
        ),
        EmailPool.kind: EmailPool(
            store,
            failure_threshold=emails.failure_threshold,
            auto_reset=emails.auto_reset,
            seed_file=config.resolve(emails.seed_file),
        ),
    }
