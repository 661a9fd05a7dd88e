"""Configuration management for TVBox Sync."""

import json
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

from platformdirs import user_config_dir, user_data_dir, user_log_dir

__all__ = [
    "Config",
    "ServerSettings",
    "SyncSettings",
    "CacheSettings",
    "ConnectivitySettings",
    "setup_logging",
    "DEFAULT_API_URL",
    "DEFAULT_REALTIME_URL",
]

logger = logging.getLogger(__name__)

APP_NAME = "TVBox Sync"
APP_AUTHOR = "TVBox"

# Backend endpoints
DEFAULT_API_URL = "http://127.0.0.1:8080/api/content"
DEFAULT_REALTIME_URL = "ws://127.0.0.1:8080/ws/updates"

# Sync settings
DEFAULT_CONCURRENCY = 3
MAX_CONCURRENCY = 8
DEFAULT_MANIFEST_INTERVAL = 900  # seconds
MIN_MANIFEST_INTERVAL = 60

# Cache settings
DEFAULT_CAPACITY_BYTES = 2 * 1024 * 1024 * 1024  # 2 GiB
MIN_CAPACITY_BYTES = 16 * 1024 * 1024


@dataclass
class ServerSettings:
    """Backend connection settings."""

    api_url: str = DEFAULT_API_URL
    realtime_url: str = DEFAULT_REALTIME_URL
    timeout: float = 30.0  # seconds, applied to every HTTP call


@dataclass
class SyncSettings:
    """Sync queue and worker configuration."""

    concurrency: int = DEFAULT_CONCURRENCY
    base_delay: float = 2.0
    max_delay: float = 300.0
    max_attempts: int = 6
    manifest_interval_seconds: int = DEFAULT_MANIFEST_INTERVAL
    succeeded_grace_seconds: int = 3600
    max_dead_letters: int = 200


@dataclass
class CacheSettings:
    """Offline cache configuration."""

    capacity_bytes: int = DEFAULT_CAPACITY_BYTES
    sweep_interval_seconds: int = 300
    verify_on_sweep: bool = True


@dataclass
class ConnectivitySettings:
    """Reachability probe configuration."""

    check_interval: float = 30.0
    probe_timeout: float = 5.0
    reachability_ttl: float = 5.0


@dataclass
class Config:
    """Main configuration object."""

    device_id: Optional[str] = None
    server: ServerSettings = field(default_factory=ServerSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    connectivity: ConnectivitySettings = field(default_factory=ConnectivitySettings)
    debug_mode: bool = False

    @classmethod
    def get_config_dir(cls) -> Path:
        """Get the configuration directory path."""
        return Path(user_config_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_data_dir(cls) -> Path:
        """Get the data directory path (for the content store, etc.)."""
        return Path(user_data_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_log_dir(cls) -> Path:
        """Get the log directory path."""
        return Path(user_log_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_config_file(cls) -> Path:
        """Get the config file path."""
        return cls.get_config_dir() / "config.json"

    @classmethod
    def get_store_dir(cls) -> Path:
        """Get the Local Store root."""
        return cls.get_data_dir() / "store"

    @classmethod
    def load(cls) -> "Config":
        """Load config from file, or return defaults."""
        config_file = cls.get_config_file()
        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    data = json.load(f)
                return cls._from_dict(data)
            except Exception as e:
                logger.warning(f"Failed to load config: {e}, using defaults")
        return cls()

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Create Config from dictionary."""
        server_data = data.pop("server", {})
        sync_data = data.pop("sync", {})
        cache_data = data.pop("cache", {})
        connectivity_data = data.pop("connectivity", {})

        return cls(
            server=ServerSettings(**server_data) if server_data else ServerSettings(),
            sync=SyncSettings(**sync_data) if sync_data else SyncSettings(),
            cache=CacheSettings(**cache_data) if cache_data else CacheSettings(),
            connectivity=(
                ConnectivitySettings(**connectivity_data)
                if connectivity_data
                else ConnectivitySettings()
            ),
            **{k: v for k, v in data.items() if k in cls.__dataclass_fields__},
        )

    def save(self) -> None:
        """Save config to file."""
        config_file = self.get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)

        data = asdict(self)
        with open(config_file, "w") as f:
            json.dump(data, f, indent=2)
        logger.info(f"Config saved to {config_file}")

    def update_from_server(self, server_config: dict) -> None:
        """Update local config from server-pushed tuning.

        Server returns:
            sync.manifest_interval_seconds -> manifest refresh interval (>= 60)
            sync.concurrency -> worker count (1..8)
            cache.capacity_bytes -> cache capacity (>= 16 MiB)
        """
        if "sync" in server_config:
            sync = server_config["sync"]
            if "manifest_interval_seconds" in sync:
                self.sync.manifest_interval_seconds = max(
                    MIN_MANIFEST_INTERVAL, int(sync["manifest_interval_seconds"])
                )
            if "concurrency" in sync:
                self.sync.concurrency = min(max(1, int(sync["concurrency"])), MAX_CONCURRENCY)

        if "cache" in server_config:
            cache = server_config["cache"]
            if "capacity_bytes" in cache:
                self.cache.capacity_bytes = max(MIN_CAPACITY_BYTES, int(cache["capacity_bytes"]))

        self.save()


def setup_logging(debug: bool = False) -> None:
    """Configure logging."""
    log_dir = Config.get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "tvbox-sync.log"

    level = logging.DEBUG if debug else logging.INFO
    format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(),
        ],
    )

    # Reduce noise from libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
