"""
Legacy file export.

Older tooling reads one JSON file per namespace (queue-state.json,
locations-state.json, ...) instead of the consolidated state document.
The StateStore keeps those files current through a LegacyExporter that
it calls after every committed mutation, and reads them back once when
no consolidated document exists yet.
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from shared.logging import get_logger

from .fileio import read_json, write_json_atomic
from .models import Namespace

log = get_logger("coordinator", "legacy")


# Namespace -> legacy file, relative to the legacy root
LEGACY_FILES: dict[Namespace, str] = {
    Namespace.UI: "data/state.json",
    Namespace.QUEUE: "config/app/queue-state.json",
    Namespace.SERVERS: "config/app/appium_servers.json",
    Namespace.LOCATIONS: "config/app/locations-state.json",
    Namespace.RESOURCES: "config/app/emails-state.json",
}


class LegacyExporter(ABC):
    """
    Mirrors namespaces to and from an older storage layout.

    Implementations must be safe to call from a worker thread.
    """

    @abstractmethod
    def export(self, namespace: Namespace, data: dict) -> None:
        """Write the namespace's current value. May raise; the store logs it."""
        pass

    def load(self, namespace: Namespace) -> Optional[dict]:
        """
        Read a namespace from the legacy layout for migration.

        Returns None when nothing usable exists.
        """
        return None

    def handles(self, namespace: Namespace) -> bool:
        """Whether this exporter has a target for the namespace."""
        return True


class LegacyFileExporter(LegacyExporter):
    """Writes each namespace to its own JSON file."""

    def __init__(self, root: Path, files: Optional[dict[Namespace, str]] = None):
        self.root = Path(root)
        self.files = dict(files if files is not None else LEGACY_FILES)

    def path_for(self, namespace: Namespace) -> Optional[Path]:
        relative = self.files.get(namespace)
        if relative is None:
            return None
        return self.root / relative

    def handles(self, namespace: Namespace) -> bool:
        return namespace in self.files

    def directories(self) -> list[Path]:
        """Parent directories of every legacy file."""
        return sorted({self.root / Path(p).parent for p in self.files.values()})

    def export(self, namespace: Namespace, data: dict) -> None:
        path = self.path_for(namespace)
        if path is None:
            return
        write_json_atomic(path, data)
        log.debug("coordinator.legacy.exported", namespace=namespace.value, path=str(path))

    def load(self, namespace: Namespace) -> Optional[dict]:
        path = self.path_for(namespace)
        if path is None:
            return None

        try:
            data = read_json(path)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            log.warning("coordinator.legacy.load_failed",
                        namespace=namespace.value, path=str(path), error=str(e))
            return None

        if data is None:
            return None
        if not isinstance(data, dict):
            log.warning("coordinator.legacy.unexpected_shape",
                        namespace=namespace.value, path=str(path),
                        found=type(data).__name__)
            return None

        log.info("coordinator.legacy.migrated", namespace=namespace.value, path=str(path))
        return data
