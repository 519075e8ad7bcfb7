"""
State Store for the coordinator.

One consolidated JSON document split into fixed namespaces, each owned
by a single component:

1. Mutations: set/update/delete mark the document dirty and mirror the
   namespace to its legacy file through the registered exporters
2. Persistence: serialize on the loop, write .tmp in a thread, fsync,
   replace. The previous generation is kept as .backup.1 ... .backup.N
3. Single writer: a write flag plus a FIFO of waiting save() calls that
   are resolved by one follow-up write
"""

import asyncio
import copy
import json
import shutil
import time
from collections import deque
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, Any, Union, Iterable

from shared.logging import get_logger

from .errors import PersistenceError, StateShapeError
from .fileio import read_json, write_text_atomic, tmp_path_for
from .legacy import LegacyExporter, LegacyFileExporter
from .models import Namespace, to_iso

log = get_logger("coordinator", "state")

DOCUMENT_VERSION = "1.0.0"

PathSpec = Union[str, Iterable[str], None]


# Skeleton for each namespace when neither the consolidated document nor
# a legacy file provides one
NAMESPACE_DEFAULTS: dict[Namespace, dict] = {
    Namespace.UI: {
        "devices": {},
        "sessions": {},
        "processes": {},
        "checkpoints": {},
        "health": {},
        "alerts": [],
        "config": {},
    },
    Namespace.QUEUE: {
        "tasks": [],
        "deviceAssignments": {},
        "stats": {"total": 0, "pending": 0, "inProgress": 0, "completed": 0, "failed": 0},
        "lastTaskId": 0,
    },
    Namespace.SERVERS: {
        "servers": [],
    },
    Namespace.LOCATIONS: {
        "available": [],
        "testing": {},
        "used": [],
        "blacklisted": [],
        "failures": {},
        "stats": {},
    },
    Namespace.RESOURCES: {
        "available": [],
        "allocated": {},
        "used": [],
        "blacklisted": [],
        "failures": {},
        "stats": {},
    },
    Namespace.METRICS: {
        "performance": {},
        "errors": [],
        "stats": {},
    },
}


def default_namespace(namespace: Namespace) -> dict:
    """Fresh copy of a namespace's skeleton."""
    return copy.deepcopy(NAMESPACE_DEFAULTS[namespace])


def _split_path(path: PathSpec) -> list[str]:
    if path is None:
        return []
    if isinstance(path, str):
        return [p for p in path.split(".") if p]
    return [str(p) for p in path]


def deep_merge(target: dict, partial: dict, _trail: str = "") -> dict:
    """
    Merge partial into target in place.

    Nested dicts merge key by key; everything else is replaced. Merging a
    dict onto a non-dict value (or the reverse) raises StateShapeError.
    """
    for key, value in partial.items():
        where = f"{_trail}.{key}" if _trail else key
        current = target.get(key)
        if current is None or key not in target:
            target[key] = copy.deepcopy(value)
            continue
        if isinstance(current, dict) != isinstance(value, dict):
            raise StateShapeError(
                f"Cannot merge {type(value).__name__} into {type(current).__name__} at '{where}'"
            )
        if isinstance(current, dict):
            deep_merge(current, value, where)
        else:
            target[key] = copy.deepcopy(value)
    return target


class StateStore:
    """
    Namespaced, durable state shared by every coordinator component.

    Components own their namespace and serialize their own mutations;
    the store guarantees namespace isolation and a single file writer.
    """

    def __init__(
        self,
        data_dir: Union[str, Path] = "data",
        state_file: str = "unified-state.json",
        exporters: Optional[list[LegacyExporter]] = None,
        auto_save: bool = True,
        auto_save_interval: float = 5.0,
        save_debounce: float = 1.0,
        max_backups: int = 5,
    ):
        self.data_dir = Path(data_dir)
        self.state_path = self.data_dir / state_file

        self.auto_save = auto_save
        self.auto_save_interval = auto_save_interval
        self.save_debounce = save_debounce
        self.max_backups = max_backups

        self._exporters: list[LegacyExporter] = list(exporters or [])
        self._document: dict = self._skeleton_document()

        # Dirty tracking: generation bumps on every commit
        self._generation = 0
        self._saved_generation = 0

        # Single writer
        self._writing = False
        self._waiters: deque[asyncio.Future] = deque()
        self._export_lock = asyncio.Lock()

        self._initialized = False
        self._running = False
        self._auto_save_task: Optional[asyncio.Task] = None
        self._debounce_task: Optional[asyncio.Task] = None

        self._stats = {
            "saves": 0,
            "save_failures": 0,
            "exports": 0,
            "export_failures": 0,
            "last_save": None,
            "loaded_from": None,
        }

    @classmethod
    def from_config(cls, config) -> "StateStore":
        """Build a store from a CoordinatorConfig."""
        store_config = config.store
        exporters = []
        if store_config.enable_legacy_sync:
            exporters.append(LegacyFileExporter(Path(store_config.legacy_root)))
        return cls(
            data_dir=config.data_dir,
            state_file=store_config.state_file,
            exporters=exporters,
            auto_save=store_config.auto_save,
            auto_save_interval=store_config.auto_save_interval,
            save_debounce=store_config.save_debounce,
            max_backups=store_config.max_backups,
        )

    # ==================== Lifecycle ====================

    async def initialize(self):
        """Load (or migrate) the document and start the auto-save loop."""
        if self._initialized:
            return

        self.data_dir.mkdir(parents=True, exist_ok=True)

        document, source = await asyncio.to_thread(self._load_or_migrate)
        self._document = self._normalize(document)
        self._stats["loaded_from"] = source
        self._initialized = True

        if source == "legacy":
            self._generation += 1
            await self.save()

        self._running = True
        if self.auto_save:
            self._auto_save_task = asyncio.create_task(self._auto_save_loop())

        log.info("coordinator.state.initialized",
                 source=source,
                 path=str(self.state_path),
                 exporters=len(self._exporters))

    async def shutdown(self):
        """Stop background saving and flush any unsaved changes."""
        self._running = False

        for task in (self._auto_save_task, self._debounce_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._auto_save_task = None
        self._debounce_task = None

        try:
            if self._initialized and self.dirty:
                await self.save()
        finally:
            self._initialized = False

        log.info("coordinator.state.shutdown", saves=self._stats["saves"])

    async def _auto_save_loop(self):
        """Periodically flush the dirty document."""
        while self._running:
            try:
                await asyncio.sleep(self.auto_save_interval)
                if self.dirty:
                    await self.save()
            except asyncio.CancelledError:
                break
            except Exception as e:
                log.exception(e, "coordinator.state.auto_save_error", {})

    # ==================== Loading ====================

    def _skeleton_document(self) -> dict:
        document = {"version": DOCUMENT_VERSION, "timestamp": to_iso(time.time())}
        for namespace in Namespace:
            document[namespace.value] = default_namespace(namespace)
        return document

    def _normalize(self, data: dict) -> dict:
        """Fill in missing or malformed namespaces from their skeletons."""
        document = self._skeleton_document()
        document["version"] = data.get("version", DOCUMENT_VERSION)
        document["timestamp"] = data.get("timestamp", document["timestamp"])
        for namespace in Namespace:
            value = data.get(namespace.value)
            if isinstance(value, dict):
                document[namespace.value] = value
            elif value is not None:
                log.warning("coordinator.state.namespace_reset",
                            namespace=namespace.value,
                            found=type(value).__name__)
        return document

    def _read_document(self, path: Path) -> Optional[dict]:
        try:
            data = read_json(path)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            log.warning("coordinator.state.document_unreadable", path=str(path), error=str(e))
            return None
        if data is not None and not isinstance(data, dict):
            log.warning("coordinator.state.document_unreadable",
                        path=str(path), error=f"top level is {type(data).__name__}")
            return None
        return data

    def _load_or_migrate(self) -> tuple[dict, str]:
        """
        Runs in a worker thread.

        Order: main document, numbered backups newest first (only when the
        main document exists but is unreadable), then legacy files.
        """
        if self.state_path.exists():
            data = self._read_document(self.state_path)
            if data is not None:
                return data, "document"

            for n in range(1, self.max_backups + 1):
                backup = self.backup_path(n)
                if not backup.exists():
                    continue
                data = self._read_document(backup)
                if data is not None:
                    log.warning("coordinator.state.recovered_from_backup", backup=n)
                    return data, f"backup.{n}"

        return self._migrate_from_legacy(), "legacy"

    def _migrate_from_legacy(self) -> dict:
        document = self._skeleton_document()
        for namespace in Namespace:
            for exporter in self._exporters:
                if not exporter.handles(namespace):
                    continue
                data = exporter.load(namespace)
                if data is not None:
                    document[namespace.value] = data
                    break
        return document

    # ==================== Public API ====================

    def get(self, namespace: Union[Namespace, str], path: PathSpec = None) -> Any:
        """
        Read a namespace, or a dotted path inside it.

        Returns a copy; mutate through set/update/delete. A missing path
        returns None.
        """
        ns = Namespace.parse(namespace)
        node: Any = self._document[ns.value]
        for key in _split_path(path):
            if not isinstance(node, dict) or key not in node:
                return None
            node = node[key]
        return copy.deepcopy(node)

    async def set(self, namespace: Union[Namespace, str], value: Any, path: PathSpec = None):
        """Replace a namespace (path=None) or the value at a dotted path."""
        ns = Namespace.parse(namespace)
        keys = _split_path(path)

        if not keys:
            if not isinstance(value, dict):
                raise StateShapeError(
                    f"Namespace '{ns.value}' must be a dict, got {type(value).__name__}"
                )
            self._document[ns.value] = copy.deepcopy(value)
        else:
            parent = self._walk(ns, keys[:-1], create=True)
            parent[keys[-1]] = copy.deepcopy(value)

        await self._commit(ns)

    async def update(self, namespace: Union[Namespace, str], partial: dict):
        """Shape-checked deep merge of partial into a namespace."""
        ns = Namespace.parse(namespace)
        if not isinstance(partial, dict):
            raise StateShapeError(f"update() expects a dict, got {type(partial).__name__}")

        # Merge into a copy so a shape error leaves the namespace untouched
        merged = deep_merge(copy.deepcopy(self._document[ns.value]), partial)
        self._document[ns.value] = merged
        await self._commit(ns)

    async def delete(self, namespace: Union[Namespace, str], path: PathSpec) -> bool:
        """Remove the value at a dotted path. Returns False if it was absent."""
        ns = Namespace.parse(namespace)
        keys = _split_path(path)
        if not keys:
            raise ValueError("delete() requires a path; use set() to reset a namespace")

        parent = self._walk(ns, keys[:-1], create=False)
        if parent is None or keys[-1] not in parent:
            return False

        del parent[keys[-1]]
        await self._commit(ns)
        return True

    def _walk(self, ns: Namespace, keys: list[str], create: bool) -> Optional[dict]:
        node = self._document[ns.value]
        for i, key in enumerate(keys):
            child = node.get(key)
            if child is None:
                if not create:
                    return None
                child = node[key] = {}
            elif not isinstance(child, dict):
                where = ".".join(keys[: i + 1])
                raise StateShapeError(
                    f"'{ns.value}.{where}' is a {type(child).__name__}, not a dict"
                )
            node = child
        return node

    @asynccontextmanager
    async def transaction(self):
        """
        Snapshot the document; restore it if the body raises.

        Usage:
            async with store.transaction():
                await store.set(Namespace.QUEUE, queue_state)
                await store.set(Namespace.LOCATIONS, pool_state)
        """
        snapshot = copy.deepcopy(self._document)
        try:
            yield self
        except BaseException:
            self._document = snapshot
            self._generation += 1
            await self._export_all()
            log.warning("coordinator.state.transaction_rolled_back")
            raise

    # ==================== Commit & export ====================

    async def _commit(self, ns: Namespace):
        self._generation += 1
        self._document["timestamp"] = to_iso(time.time())
        await self._export(ns)
        if self.auto_save and self._initialized:
            self.schedule_save()

    async def _export(self, ns: Namespace):
        """Mirror one namespace to every exporter that handles it."""
        targets = [e for e in self._exporters if e.handles(ns)]
        if not targets:
            return

        data = copy.deepcopy(self._document[ns.value])
        # Commits export in order; one export thread at a time
        async with self._export_lock:
            for exporter in targets:
                try:
                    await asyncio.to_thread(exporter.export, ns, data)
                    self._stats["exports"] += 1
                except Exception as e:
                    self._stats["export_failures"] += 1
                    log.exception(e, "coordinator.state.legacy_export_failed",
                                  {"namespace": ns.value, "exporter": type(exporter).__name__})

    async def _export_all(self):
        for namespace in Namespace:
            await self._export(namespace)

    def add_exporter(self, exporter: LegacyExporter):
        """Attach another export adapter."""
        self._exporters.append(exporter)

    # ==================== Persistence ====================

    @property
    def dirty(self) -> bool:
        return self._generation != self._saved_generation

    def backup_path(self, n: int) -> Path:
        return self.state_path.with_name(f"{self.state_path.name}.backup.{n}")

    def schedule_save(self):
        """Coalesce a burst of mutations into one write after save_debounce."""
        if self._debounce_task and not self._debounce_task.done():
            return
        self._debounce_task = asyncio.create_task(self._debounced_save())

    async def _debounced_save(self):
        try:
            await asyncio.sleep(self.save_debounce)
            if self.dirty:
                await self.save()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception(e, "coordinator.state.scheduled_save_failed", {})

    async def save(self):
        """
        Write the document to disk.

        If a write is already in flight, wait for a follow-up write that
        includes this caller's changes.

        Raises:
            PersistenceError: The write failed. The previous file stays in
            place and the store remains dirty.
        """
        if self._writing:
            future = asyncio.get_running_loop().create_future()
            self._waiters.append(future)
            await future
            return

        self._writing = True
        try:
            await self._write_document()
        finally:
            try:
                await self._drain_waiters()
            finally:
                self._writing = False

    async def _drain_waiters(self):
        while self._waiters:
            batch = list(self._waiters)
            self._waiters.clear()
            try:
                await self._write_document()
            except PersistenceError as e:
                for future in batch:
                    if not future.done():
                        future.set_exception(e)
                continue
            for future in batch:
                if not future.done():
                    future.set_result(None)

    async def _write_document(self):
        generation = self._generation
        start = time.time()
        try:
            text = json.dumps(self._document, indent=2)
            write = asyncio.ensure_future(asyncio.to_thread(self._write_files, text))
            try:
                await asyncio.shield(write)
            except asyncio.CancelledError:
                # The thread cannot be interrupted; keep the writer slot until it is done
                await asyncio.wait([write])
                if write.exception() is None:
                    self._saved_generation = generation
                raise
        except (OSError, TypeError, ValueError) as e:
            self._stats["save_failures"] += 1
            log.error("coordinator.state.save_failed", path=str(self.state_path), error=str(e))
            raise PersistenceError(f"Failed to save state to {self.state_path}: {e}") from e

        self._saved_generation = generation
        self._stats["saves"] += 1
        self._stats["last_save"] = time.time()
        log.timed("coordinator.state.saved", start, generation=generation)

    def _write_files(self, text: str):
        """Runs in a worker thread: rotate backups, then atomic replace."""
        self._rotate_backups()
        write_text_atomic(self.state_path, text)

    def _rotate_backups(self):
        if self.max_backups <= 0 or not self.state_path.exists():
            return
        oldest = self.backup_path(self.max_backups)
        if oldest.exists():
            oldest.unlink()
        for n in range(self.max_backups - 1, 0, -1):
            source = self.backup_path(n)
            if source.exists():
                source.replace(self.backup_path(n + 1))
        shutil.copy2(self.state_path, self.backup_path(1))

    async def restore_from_backup(self, n: int = 1):
        """
        Replace the document with backup n (1 = newest) and persist it.

        Raises:
            PersistenceError: The backup is missing or unreadable.
        """
        backup = self.backup_path(n)
        if not backup.exists():
            raise PersistenceError(f"Backup {n} not found at {backup}")

        try:
            data = await asyncio.to_thread(read_json, backup)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            raise PersistenceError(f"Backup {n} is unreadable: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"Backup {n} does not contain a state document")

        self._document = self._normalize(data)
        self._generation += 1
        await self._export_all()
        await self.save()

        log.info("coordinator.state.restored_from_backup", backup=n)

    def get_stats(self) -> dict:
        """Store health for status endpoints."""
        backups = sum(1 for n in range(1, self.max_backups + 1) if self.backup_path(n).exists())
        return {
            "initialized": self._initialized,
            "dirty": self.dirty,
            "writing": self._writing,
            "queued_saves": len(self._waiters),
            "path": str(self.state_path),
            "version": self._document.get("version"),
            "timestamp": self._document.get("timestamp"),
            "namespaces": {ns.value: len(self._document[ns.value]) for ns in Namespace},
            "backups": backups,
            "tmp_present": tmp_path_for(self.state_path).exists(),
            "exporters": [type(e).__name__ for e in self._exporters],
            **{k: v for k, v in self._stats.items() if k != "last_save"},
            "last_save": to_iso(self._stats["last_save"]),
        }
