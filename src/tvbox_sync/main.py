"""TVBox Sync - Main entry point."""

import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from . import __version__
from .config import Config, setup_logging
from .keychain import DeviceCredentials, KeychainManager
from .sync import (
    CacheManager,
    ChangeFeed,
    ConnectionStatus,
    ConnectivityMonitor,
    ContentClient,
    LocalStore,
    Priority,
    RetryConfig,
    SyncOrchestrator,
    SyncQueue,
    UpdateListener,
)
from .sync.errors import SyncError
from .sync.protocols import ContentClientProtocol

logger = logging.getLogger(__name__)

QUEUE_PRUNE_INTERVAL = 3600  # seconds
REPLAY_TIMEOUT = 60.0  # seconds to wait for the persisted queue at startup


class SyncService:
    """Wires the engine together and owns its lifecycle.

    Startup order: restore the persisted queue, start the orchestrator and
    let it replay what is eligible, then open the update channel, start the
    reachability monitor and the periodic jobs.
    """

    def __init__(
        self,
        config: Config,
        credentials: Optional[DeviceCredentials] = None,
        store_root: Optional[Path] = None,
        client: Optional[ContentClientProtocol] = None,
        connect: Optional[Callable] = None,
    ):
        """Initialize the service.

        Args:
            config: Loaded configuration
            credentials: Device id and API token
            store_root: Local Store directory (defaults to the data dir)
            client: Content API client (built from config if omitted)
            connect: WebSocket connect function for the update channel
        """
        self.config = config
        self.credentials = credentials or DeviceCredentials(
            device_id=config.device_id or "unprovisioned"
        )
        device_id = self.credentials.device_id
        token = self.credentials.api_token

        self.store = LocalStore(store_root or Config.get_store_dir())
        self.feed = ChangeFeed()
        self.cache = CacheManager(self.store, config.cache.capacity_bytes, feed=self.feed)

        self.retry_config = RetryConfig(
            max_attempts=config.sync.max_attempts,
            base_delay=config.sync.base_delay,
            max_delay=config.sync.max_delay,
        )
        self.queue = SyncQueue(
            self.store,
            retry_config=self.retry_config,
            succeeded_grace=config.sync.succeeded_grace_seconds,
            max_dead_letters=config.sync.max_dead_letters,
            feed=self.feed,
        )

        self.client = client or ContentClient(
            api_url=config.server.api_url,
            token=token,
            device_id=device_id,
            timeout=config.server.timeout,
            probe_timeout=config.connectivity.probe_timeout,
        )
        self.status = ConnectionStatus()
        self.monitor = ConnectivityMonitor(
            self.client,
            self.status,
            check_interval=config.connectivity.check_interval,
            reachability_ttl=config.connectivity.reachability_ttl,
        )
        listener_kwargs = {"connect": connect} if connect else {}
        self.listener = UpdateListener(
            config.server.realtime_url,
            self.store,
            self.queue,
            self.status,
            monitor=self.monitor,
            device_id=device_id,
            token=token,
            retry_config=self.retry_config,
            **listener_kwargs,
        )
        self.orchestrator = SyncOrchestrator(
            self.store,
            self.cache,
            self.queue,
            self.client,
            self.status,
            feed=self.feed,
            concurrency=config.sync.concurrency,
            defer_seconds=config.cache.sweep_interval_seconds,
        )
        self.scheduler = BackgroundScheduler()

        self._started = False
        self._shutdown_done = False
        self._shutdown_event = threading.Event()

    # -- Lifecycle --------------------------------------------------------

    def start(self) -> None:
        """Start all background work."""
        if self._started:
            return
        self._started = True

        orphans = self.store.collect_orphans()
        if orphans:
            logger.info(f"Removed {orphans} orphaned payloads")
        self.cache.refresh_from_store(force=True)

        if self.monitor.check_now():
            self._apply_server_config()

        pending = self.queue.stats()["queued"]
        self.orchestrator.start()
        if pending:
            logger.info(f"Replaying {pending} persisted tasks")
            if not self.orchestrator.wait_idle(REPLAY_TIMEOUT):
                logger.warning("Persisted queue still draining; continuing startup")

        self.orchestrator.request_manifest(Priority.NORMAL)
        self.listener.start()
        self.monitor.start()
        self._start_jobs()
        logger.info("TVBox Sync running")

    def stop(self) -> None:
        """Stop everything. Safe to call multiple times."""
        if self._shutdown_done:
            return
        self._shutdown_done = True
        logger.info("Shutting down...")

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.listener.stop()
        self.monitor.stop()
        self.orchestrator.stop()
        close = getattr(self.client, "close", None)
        if close:
            close()
        self.store.close()

        logger.info("Shutdown complete")

    def run(self) -> None:
        """Start and block until a shutdown signal arrives."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)
        self.start()
        try:
            self._shutdown_event.wait()
        finally:
            self.stop()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def get_status(self) -> dict:
        """Snapshot of engine state for diagnostics."""
        status = self.orchestrator.get_status()
        status.update(
            {
                "version": __version__,
                "device_id": self.credentials.device_id,
                "listener_running": self.listener.running,
                "cache": {
                    "usage_bytes": self.cache.usage,
                    "capacity_bytes": self.cache.capacity,
                    "entries": len(self.cache.entries()),
                },
                "store": {
                    "items": self.store.count(),
                    "change_counter": self.store.change_counter,
                },
            }
        )
        return status

    # -- Periodic jobs ----------------------------------------------------

    def _start_jobs(self) -> None:
        self.scheduler.add_job(
            self._sweep_cache,
            trigger=IntervalTrigger(seconds=self.config.cache.sweep_interval_seconds),
            id="cache_sweep_job",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._refresh_manifest,
            trigger=IntervalTrigger(seconds=self.config.sync.manifest_interval_seconds),
            id="manifest_job",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._prune_queue,
            trigger=IntervalTrigger(seconds=QUEUE_PRUNE_INTERVAL),
            id="queue_prune_job",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            f"Jobs scheduled (sweep: {self.config.cache.sweep_interval_seconds}s, "
            f"manifest: {self.config.sync.manifest_interval_seconds}s)"
        )

    def _sweep_cache(self) -> None:
        """Expire TTL-elapsed entries and check payload integrity."""
        try:
            self.cache.refresh_from_store()
            self.cache.evict_expired()
            if self.config.cache.verify_on_sweep:
                corrupt = self.cache.verify()
                if corrupt:
                    self.orchestrator.repair(corrupt)
        except SyncError as e:
            logger.error(f"Cache sweep failed: {e}")
        except Exception as e:
            logger.exception(f"Cache sweep error: {e}")

    def _refresh_manifest(self) -> None:
        try:
            self.orchestrator.request_manifest(Priority.BACKGROUND)
        except SyncError as e:
            logger.error(f"Could not queue manifest refresh: {e}")

    def _prune_queue(self) -> None:
        try:
            self.queue.prune()
        except SyncError as e:
            logger.error(f"Queue prune failed: {e}")

    def _apply_server_config(self) -> None:
        """Pull server-pushed tuning before workers start."""
        fetch = getattr(self.client, "fetch_device_config", None)
        if fetch is None:
            return
        try:
            server_config = fetch()
        except SyncError as e:
            logger.warning(f"Failed to fetch device config: {e}")
            return
        self.config.update_from_server(server_config)
        self.cache.capacity = self.config.cache.capacity_bytes
        self.orchestrator.concurrency = self.config.sync.concurrency
        logger.info("Applied server configuration")

    def _signal_handler(self, signum, frame) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}")
        self._shutdown_event.set()

    def __enter__(self) -> "SyncService":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()


class SingleInstanceLock:
    """File-based single-instance lock using advisory locking.

    Two engines must never share one Local Store, so the lock lives next to it.
    """

    def __init__(self, path: Optional[Path] = None):
        self._file = None
        self._path = Path(path) if path else Config.get_data_dir() / ".tvbox-sync.lock"

    def acquire(self) -> bool:
        """Try to acquire the lock. Returns True on success."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._path, "a+")  # noqa: SIM115
        try:
            if sys.platform == "win32":
                import msvcrt
                msvcrt.locking(self._file.fileno(), msvcrt.LK_NBLCK, 1)
            else:
                import fcntl
                fcntl.flock(self._file, fcntl.LOCK_EX | fcntl.LOCK_NB)
            self._file.seek(0)
            self._file.truncate(0)
            self._file.write(str(os.getpid()))
            self._file.flush()
            return True
        except OSError:
            self._file.close()
            self._file = None
            return False

    def release(self) -> None:
        """Release the lock and remove the lock file."""
        if not self._file:
            return
        try:
            if sys.platform == "win32":
                import msvcrt
                msvcrt.locking(self._file.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                import fcntl
                fcntl.flock(self._file, fcntl.LOCK_UN)
            self._file.close()
            self._path.unlink()
        except OSError as e:
            logger.debug(f"Error releasing instance lock: {e}")
        self._file = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def main() -> None:
    """Main entry point."""
    config = Config.load()
    setup_logging(config.debug_mode)

    lock = SingleInstanceLock()
    if not lock.acquire():
        print("TVBox Sync is already running.")
        sys.exit(0)

    try:
        logger.info(f"TVBox Sync {__version__} starting...")
        logger.info(f"Using API URL: {config.server.api_url}")

        credentials = KeychainManager().ensure(config.device_id)
        if config.device_id != credentials.device_id:
            config.device_id = credentials.device_id
            config.save()
        if not credentials.api_token:
            logger.warning("No API token provisioned; requests will be unauthenticated")

        SyncService(config, credentials).run()
    finally:
        lock.release()


if __name__ == "__main__":
    main()
