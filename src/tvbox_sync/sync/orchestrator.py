"""Sync Orchestrator - runs queued tasks against the backend and the Local Store."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional

from .cache import CacheManager, compute_checksum
from .conflict import Decision, resolve
from .connectivity import ConnectionStatus
from .errors import (
    AuthFailure,
    CapacityExceeded,
    EditRejected,
    IntegrityFailure,
    NetworkFailure,
    ProtocolFailure,
    StorageFailure,
)
from .events import ChangeFeed
from .models import (
    ConnectionState,
    ContentItem,
    Priority,
    SyncTask,
    TaskKind,
    TaskState,
    utcnow,
)
from .protocols import ContentClientProtocol
from .queue import SyncQueue
from .store import LocalStore

logger = logging.getLogger(__name__)

IDLE_WAIT = 5.0  # seconds the dispatcher sleeps when nothing is eligible


class _Deferred(Exception):
    """Raised by a handler that cannot run yet; the task is not charged an attempt."""

    def __init__(self, reason: str, delay: float):
        super().__init__(reason)
        self.delay = delay


@dataclass
class SyncStats:
    """Running totals since the orchestrator was created."""

    tasks_run: int = 0
    items_applied: int = 0
    items_kept: int = 0
    items_purged: int = 0
    edits_pushed: int = 0
    tasks_deferred: int = 0
    tasks_failed: int = 0
    errors: list[str] = field(default_factory=list)

    MAX_ERRORS = 20

    def record_error(self, message: str) -> None:
        self.errors.append(message)
        del self.errors[: -self.MAX_ERRORS]


class SyncOrchestrator:
    """Executes SyncTasks with bounded concurrency.

    A dispatcher thread claims eligible tasks from the queue and hands them
    to a worker pool. Each task either succeeds, is re-queued without cost
    (network went away, cache full, item pinned) or is charged a failed
    attempt. Commits to the store happen under the item's lock; cache calls
    are always made outside it.
    """

    def __init__(
        self,
        store: LocalStore,
        cache: CacheManager,
        queue: SyncQueue,
        client: ContentClientProtocol,
        status: ConnectionStatus,
        feed: Optional[ChangeFeed] = None,
        concurrency: int = 3,
        defer_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the orchestrator.

        Args:
            store: Local Store holding committed items
            cache: Cache Manager enforcing capacity
            queue: Sync Queue supplying tasks
            client: Content API client
            status: Shared ConnectionStatus
            feed: Change feed for applied/evicted events
            concurrency: Maximum number of tasks InFlight at once
            defer_seconds: Delay before retrying a task blocked by capacity or a pin
            clock: Source of the current time
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store
        self.cache = cache
        self.queue = queue
        self.client = client
        self.status = status
        self.feed = feed or ChangeFeed()
        self.concurrency = concurrency
        self.defer_seconds = defer_seconds
        self._clock = clock
        self.stats = SyncStats()
        self._stats_lock = threading.Lock()
        self._stop = threading.Event()
        self._slots = threading.Semaphore(concurrency)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._dispatcher: Optional[threading.Thread] = None
        self._handlers = {
            TaskKind.FETCH_MANIFEST: self._run_manifest,
            TaskKind.FETCH_ITEM: self._run_fetch_item,
            TaskKind.APPLY_ITEM: self._run_apply_item,
            TaskKind.PURGE_ITEM: self._run_purge_item,
        }
        status.subscribe(self._on_state_change)

    # Public operations

    def request_manifest(self, priority: Priority = Priority.NORMAL) -> SyncTask:
        """Queue a full manifest sync (coalesced with any queued one)."""
        return self.queue.enqueue(SyncTask.manifest(priority))

    def record_local_edit(self, content_id: str, payload: bytes) -> ContentItem:
        """Commit an on-device edit and queue it for upload.

        The item keeps its version number; ``pending_edit_base`` records the
        version the edit was made against, so remote notices at or below it
        do not overwrite the edit before the server acknowledges it.

        Raises:
            CapacityExceeded: If the payload does not fit in the cache
            StorageFailure: If the commit fails
        """
        self.cache.reserve(content_id, len(payload))
        try:
            with self.store.item_lock(content_id):
                local = self.store.find(content_id)
                if local is None:
                    item = ContentItem(
                        id=content_id,
                        version=0,
                        checksum=compute_checksum(payload),
                        pending_edit_base=0,
                    )
                else:
                    base = local.pending_edit_base if local.has_pending_edit else local.version
                    item = local.evolve(
                        checksum=compute_checksum(payload), pending_edit_base=base
                    )
                committed = self.store.put(item, payload)
        except Exception:
            self.cache.release(content_id)
            raise

        self.cache.admit(committed)
        self.feed.applied(content_id, committed.version)
        self.queue.enqueue(
            SyncTask(
                kind=TaskKind.APPLY_ITEM,
                content_id=content_id,
                priority=Priority.NORMAL,
                target_version=committed.pending_edit_base,
            )
        )
        logger.info(f"Recorded local edit of {content_id} on v{committed.pending_edit_base}")
        return committed

    def repair(self, content_ids: Iterable[str]) -> int:
        """Drop corrupt items and queue critical re-downloads.

        Returns:
            Number of items scheduled for repair
        """
        repaired = 0
        for content_id in content_ids:
            with self.store.item_lock(content_id):
                item = self.store.find(content_id)
                if item is None or self._payload_intact(item):
                    # Gone, or replaced by a good copy since the check
                    continue
                self.store.delete(content_id)
            self.cache.forget(content_id)
            self.feed.evicted(content_id, item.version)
            self.queue.enqueue(
                SyncTask(
                    kind=TaskKind.FETCH_ITEM,
                    content_id=content_id,
                    priority=Priority.CRITICAL,
                    target_version=item.version,
                    expected_checksum=item.checksum,
                )
            )
            repaired += 1
        if repaired:
            logger.warning(f"Scheduled {repaired} corrupt items for re-download")
        return repaired

    def run_task(self, task: SyncTask) -> TaskState:
        """Execute one InFlight task and record its outcome in the queue.

        Returns:
            The task's state afterwards
        """
        handler = self._handlers[task.kind]
        logger.debug(f"Running {task.kind.value} for {task.content_id} (attempt {task.attempts + 1})")
        with self._stats_lock:
            self.stats.tasks_run += 1

        try:
            handler(task)
        except _Deferred as e:
            logger.info(f"Deferring {task.kind.value} for {task.content_id}: {e}")
            self._count("tasks_deferred")
            self.queue.defer(task, e.delay)
            return TaskState.QUEUED
        except CapacityExceeded as e:
            logger.warning(f"{e}; deferring {task.content_id} for {self.defer_seconds:.0f}s")
            self._count("tasks_deferred")
            self.queue.defer(task, self.defer_seconds)
            return TaskState.QUEUED
        except NetworkFailure as e:
            if not self.status.connected:
                logger.info(f"Offline; re-queueing {task.kind.value} for {task.content_id}")
                self.queue.requeue(task)
                return TaskState.QUEUED
            return self._fail(task, e)
        except IntegrityFailure as e:
            # The announced version is untrustworthy; re-read the listing
            state = self._fail(task, e)
            self.request_manifest(Priority.CRITICAL)
            return state
        except ProtocolFailure as e:
            state = self._fail(task, e)
            if task.kind == TaskKind.FETCH_ITEM:
                self.request_manifest()
            return state
        except AuthFailure as e:
            logger.error(f"Device credentials rejected: {e}")
            return self._fail(task, e)
        except StorageFailure as e:
            return self._fail(task, e)
        except Exception as e:
            logger.exception(f"Unexpected error in {task.kind.value} for {task.content_id}")
            return self._fail(task, e)

        self.queue.mark_succeeded(task)
        return TaskState.SUCCEEDED

    def drain(self, max_tasks: Optional[int] = None) -> int:
        """Run eligible tasks on the calling thread until none remain.

        Returns:
            Number of tasks run
        """
        count = 0
        while max_tasks is None or count < max_tasks:
            task = self.queue.claim_next(network_available=self.status.connected)
            if task is None:
                break
            self.run_task(task)
            count += 1
        return count

    # Runtime

    def start(self) -> None:
        if self._dispatcher and self._dispatcher.is_alive():
            return
        self._stop.clear()
        self._slots = threading.Semaphore(self.concurrency)
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="sync-worker"
        )
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop, name="sync-dispatcher", daemon=True
        )
        self._dispatcher.start()
        logger.info(f"Sync orchestrator started ({self.concurrency} workers)")

    def stop(self, timeout: float = 30.0) -> None:
        """Stop dispatching, let running tasks finish, and re-queue leftovers."""
        self._stop.set()
        self.queue.notify()
        if self._dispatcher:
            self._dispatcher.join(timeout=timeout)
            self._dispatcher = None
        if self._executor:
            self._executor.shutdown(wait=True)
            self._executor = None
        self.queue.requeue_in_flight()
        logger.info("Sync orchestrator stopped")

    @property
    def running(self) -> bool:
        return self._dispatcher is not None and self._dispatcher.is_alive()

    def wait_idle(self, timeout: float) -> bool:
        """Block until the queue has nothing eligible and nothing InFlight.

        Returns:
            True if idle was reached before ``timeout``
        """
        deadline = time.monotonic() + timeout
        while not self.queue.is_idle(self.status.connected):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self.queue.wait_for_work(min(remaining, 0.5))
        return True

    def get_status(self) -> dict:
        with self._stats_lock:
            stats = {
                "tasks_run": self.stats.tasks_run,
                "items_applied": self.stats.items_applied,
                "items_kept": self.stats.items_kept,
                "items_purged": self.stats.items_purged,
                "edits_pushed": self.stats.edits_pushed,
                "tasks_deferred": self.stats.tasks_deferred,
                "tasks_failed": self.stats.tasks_failed,
                "recent_errors": list(self.stats.errors),
            }
        return {
            "running": self.running,
            "connection": self.status.state.value,
            "queue": self.queue.stats(),
            "stats": stats,
        }

    def _dispatch_loop(self) -> None:
        while not self._stop.is_set():
            if not self._slots.acquire(timeout=0.5):
                continue
            try:
                task = self.queue.claim_next(network_available=self.status.connected)
            except StorageFailure as e:
                self._slots.release()
                logger.error(f"Could not claim next task: {e}")
                self._stop.wait(1.0)
                continue

            if task is None:
                self._slots.release()
                wait = self.queue.next_eligible_in(self.status.connected)
                self.queue.wait_for_work(IDLE_WAIT if wait is None else min(wait, IDLE_WAIT))
                continue

            try:
                self._executor.submit(self._run_and_release, task)
            except RuntimeError:
                # Executor shut down under us
                self._slots.release()
                self.queue.requeue(task)
                break

    def _run_and_release(self, task: SyncTask) -> None:
        try:
            self.run_task(task)
        except Exception:
            logger.exception(f"Could not record outcome of task {task.id}")
        finally:
            self._slots.release()
            self.queue.notify()

    def _on_state_change(self, previous: ConnectionState, current: ConnectionState) -> None:
        # Requests already on the wire are not interrupted. They end at the
        # client timeout, and a NetworkFailure seen while disconnected is
        # re-queued without charging an attempt.
        if current == ConnectionState.CONNECTED:
            logger.info("Backend reachable; resuming network tasks")
        elif current == ConnectionState.DISCONNECTED:
            logger.info("Backend unreachable; network tasks paused")
        self.queue.notify()

    # Task handlers

    def _run_manifest(self, task: SyncTask) -> None:
        manifest = self.client.fetch_manifest()
        local_items = {item.id: item for item in self.store.enumerate()}
        rejected = self.queue.rejected_downloads()
        now = self._clock()

        queued = confirmed = skipped = 0
        for content_id, entry in manifest.items():
            local = local_items.get(content_id)
            resolution = resolve(local, entry)
            if resolution.decision == Decision.TAKE_REMOTE:
                failed = rejected.get(content_id)
                if (
                    failed is not None
                    and failed.target_version == entry.version
                    and failed.expected_checksum == entry.checksum
                ):
                    # Wait for the server to publish a different version or checksum
                    logger.debug(
                        f"Not re-fetching {content_id} v{entry.version}: {failed.last_error}"
                    )
                    skipped += 1
                    continue
                self.queue.enqueue(
                    SyncTask(
                        kind=TaskKind.FETCH_ITEM,
                        content_id=content_id,
                        priority=Priority.CRITICAL if resolution.integrity_warning else entry.priority,
                        target_version=entry.version,
                        expected_checksum=entry.checksum,
                    )
                )
                queued += 1
            elif (
                local is not None
                and not local.has_pending_edit
                and local.version == entry.version
            ):
                # Confirmed current; restart its TTL and pick up listing metadata
                with self.store.item_lock(content_id):
                    current = self.store.find(content_id)
                    if current is not None and current.version == entry.version:
                        self.store.put(
                            current.evolve(
                                last_verified=now,
                                ttl=entry.ttl,
                                priority=entry.priority,
                            )
                        )
                        confirmed += 1

        purged = 0
        for content_id in local_items.keys() - manifest.keys():
            local = local_items[content_id]
            if local.has_pending_edit:
                continue
            self.queue.enqueue(
                SyncTask(
                    kind=TaskKind.PURGE_ITEM,
                    content_id=content_id,
                    priority=Priority.BACKGROUND,
                )
            )
            purged += 1

        if confirmed:
            self.cache.refresh_from_store()
        logger.info(
            f"Manifest: {len(manifest)} items, {queued} to fetch, "
            f"{confirmed} confirmed, {purged} to purge, {skipped} rejected"
        )

    def _run_fetch_item(self, task: SyncTask) -> None:
        content_id = task.content_id
        if task.target_version is None:
            self.request_manifest(task.priority)
            return

        local = self.store.find(content_id)
        if local is not None and local.has_pending_edit:
            if task.target_version <= local.pending_edit_base:
                logger.debug(f"{content_id} has a pending edit on v{local.pending_edit_base}")
                self._count("items_kept")
                return
        elif local is not None:
            if task.target_version < local.version or (
                task.target_version == local.version
                and (task.expected_checksum is None or task.expected_checksum == local.checksum)
            ):
                logger.debug(f"{content_id} already at v{local.version}; nothing to fetch")
                self._count("items_kept")
                return

        fetched = self.client.fetch_item(content_id, task.target_version, task.expected_checksum)
        self.cache.reserve(content_id, fetched.size)
        try:
            with self.store.item_lock(content_id):
                local = self.store.find(content_id)
                remote = ContentItem(
                    id=content_id,
                    version=fetched.version,
                    checksum=fetched.checksum,
                    priority=task.priority if local is None else min(task.priority, local.priority),
                    ttl=fetched.ttl if fetched.ttl is not None else (local.ttl if local else None),
                    last_verified=self._clock(),
                )
                resolution = resolve(local, remote)
                committed = None
                if resolution.decision == Decision.TAKE_REMOTE:
                    committed = self.store.put(remote, fetched.data)
        except Exception:
            self.cache.release(content_id)
            raise

        if committed is None:
            self.cache.release(content_id)
            logger.debug(f"Keeping local {content_id}: {resolution.reason}")
            self._count("items_kept")
            return

        self.cache.admit(committed)
        self.feed.applied(content_id, committed.version)
        self._count("items_applied")
        logger.info(f"Applied {content_id} v{committed.version} ({committed.size} bytes)")

    def _run_apply_item(self, task: SyncTask) -> None:
        content_id = task.content_id
        local = self.store.find(content_id)
        if local is None or not local.has_pending_edit:
            logger.debug(f"No pending edit for {content_id}")
            return

        payload = self.store.read_payload(local)
        try:
            new_version = self.client.push_edit(content_id, local.pending_edit_base, payload)
        except EditRejected as e:
            logger.warning(f"{e}; taking the server copy")
            released = None
            with self.store.item_lock(content_id):
                current = self.store.find(content_id)
                if current is not None and current.checksum == local.checksum:
                    released = self.store.put(current.evolve(pending_edit_base=None))
            if released is not None:
                self.cache.admit(released)
            self.request_manifest(Priority.CRITICAL)
            return

        with self.store.item_lock(content_id):
            current = self.store.find(content_id)
            if current is None or current.checksum != local.checksum:
                # A newer edit replaced this one; its own task will push it
                logger.debug(f"Edit of {content_id} superseded before acknowledgement")
                return
            committed = self.store.put(
                current.evolve(
                    version=new_version, pending_edit_base=None, last_verified=self._clock()
                )
            )

        self.cache.admit(committed)
        self.feed.applied(content_id, new_version)
        self._count("edits_pushed")
        logger.info(f"Edit of {content_id} acknowledged as v{new_version}")

    def _run_purge_item(self, task: SyncTask) -> None:
        content_id = task.content_id
        if self.cache.is_pinned(content_id):
            raise _Deferred(f"{content_id} is pinned", self.defer_seconds)

        local = self.store.find(content_id)
        if local is None or local.has_pending_edit:
            return
        if self.store.delete(content_id):
            self.cache.forget(content_id)
            self.feed.evicted(content_id, local.version)
            self._count("items_purged")
            logger.info(f"Purged {content_id} v{local.version} (no longer listed)")

    # Helpers

    def _payload_intact(self, item: ContentItem) -> bool:
        try:
            return compute_checksum(self.store.read_payload(item)) == item.checksum
        except StorageFailure:
            return False

    def _fail(self, task: SyncTask, error: BaseException) -> TaskState:
        with self._stats_lock:
            self.stats.tasks_failed += 1
            self.stats.record_error(f"{task.kind.value} {task.content_id}: {error}")
        return self.queue.mark_failed(task, error)

    def _count(self, name: str) -> None:
        with self._stats_lock:
            setattr(self.stats, name, getattr(self.stats, name) + 1)
