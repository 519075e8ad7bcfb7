"""
Configuration for the coordinator.

Defaults live in the dataclasses below; config.yaml at the project root
(or an explicit path) is overlaid on top of them.
"""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Optional, Any

import yaml

from shared.logging import get_logger

log = get_logger("coordinator", "config")

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"


@dataclass
class StoreConfig:
    state_file: str = "unified-state.json"
    enable_legacy_sync: bool = True
    # Root that the per-namespace legacy files are resolved against
    legacy_root: str = "."
    auto_save: bool = True
    auto_save_interval: float = 5.0
    save_debounce: float = 1.0
    max_backups: int = 5


@dataclass
class QueueConfig:
    lease_timeout: float = 30.0
    cleanup_interval: float = 10.0
    max_attempts: int = 3


@dataclass
class PoolConfig:
    seed_file: Optional[str] = None
    failure_threshold: int = 3
    auto_reset: bool = True


@dataclass
class PoolsConfig:
    locations: PoolConfig = field(default_factory=lambda: PoolConfig(
        seed_file="resources/locations.csv", auto_reset=True))
    emails: PoolConfig = field(default_factory=lambda: PoolConfig(
        seed_file="resources/emails.txt", auto_reset=False))


@dataclass
class RecoveryConfig:
    checkpoint_dir: str = "checkpoints"
    max_checkpoints: int = 10


@dataclass
class HealthConfig:
    check_interval: float = 30.0
    timeout: float = 5.0


@dataclass
class SupervisorConfig:
    logs_dir: str = "logs/workers"
    watch_interval: float = 1.0


@dataclass
class WorkerConfig:
    """How a device worker process is launched."""
    command: list[str] = field(default_factory=lambda: ["node", "src/bot/bot.js"])
    cwd: Optional[str] = None


@dataclass
class InventoryConfig:
    """Where devices come from: "static" (the devices list) or "idevice" (USB scan)."""
    source: str = "static"
    appium_host: str = "127.0.0.1"
    appium_base_port: int = 4723
    wda_base_port: int = 8100


@dataclass
class ApiConfig:
    host: str = "127.0.0.1"
    port: int = 9001

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass
class CoordinatorConfig:
    """Full coordinator configuration."""
    data_dir: str = "data"
    store: StoreConfig = field(default_factory=StoreConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    pools: PoolsConfig = field(default_factory=PoolsConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    inventory: InventoryConfig = field(default_factory=InventoryConfig)
    # Static device inventory: [{udid, name, appium_port, wda_port}]
    devices: list[dict] = field(default_factory=list)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    def resolve(self, relative: Optional[str]) -> Optional[Path]:
        """Resolve a data-relative path (absolute paths pass through)."""
        if relative is None:
            return None
        path = Path(relative)
        if path.is_absolute():
            return path
        return self.data_path / path


def _overlay(target: Any, data: dict, prefix: str = "") -> Any:
    """Recursively copy known keys from data onto a dataclass instance."""
    known = {f.name: f for f in fields(target)}
    for key, value in data.items():
        if key not in known:
            log.warning("coordinator.config.unknown_key", key=f"{prefix}{key}")
            continue
        current = getattr(target, key)
        if is_dataclass(current) and isinstance(value, dict):
            _overlay(current, value, prefix=f"{prefix}{key}.")
        else:
            setattr(target, key, value)
    return target


def config_from_dict(data: Optional[dict]) -> CoordinatorConfig:
    """Build a CoordinatorConfig from a plain dict (e.g. parsed YAML)."""
    config = CoordinatorConfig()
    if data:
        _overlay(config, data)
    return config


def load_config(path: Optional[str] = None) -> CoordinatorConfig:
    """
    Load configuration from YAML.

    Args:
        path: Config file path. Defaults to config.yaml at the project root.

    Returns:
        CoordinatorConfig with file values overlaid on defaults. A missing
        file yields pure defaults.
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        log.info("coordinator.config.defaults_used", path=str(config_path))
        return CoordinatorConfig()

    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{config_path} must contain a mapping at the top level")

    config = config_from_dict(data)
    log.info("coordinator.config.loaded", path=str(config_path))
    return config
