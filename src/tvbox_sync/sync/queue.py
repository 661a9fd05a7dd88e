"""Sync Queue - persisted, prioritized task list with retry state."""

import itertools
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from .errors import IntegrityFailure, InvalidTransition, StorageFailure, SyncError
from .events import ChangeFeed
from .models import ErrorEvent, SyncTask, TaskKind, TaskState, utcnow
from .retry import RetryConfig, calculate_delay
from .store import LocalStore

logger = logging.getLogger(__name__)

DEFAULT_SUCCEEDED_GRACE = 3600.0  # seconds
DEFAULT_MAX_DEAD_LETTERS = 200


class SyncQueue:
    """Ordered SyncTask list backed by the Local Store.

    All tasks are held in memory and every state change is written through
    to the store. Only one task per content id may be InFlight at a time.
    """

    def __init__(
        self,
        store: LocalStore,
        retry_config: Optional[RetryConfig] = None,
        succeeded_grace: float = DEFAULT_SUCCEEDED_GRACE,
        max_dead_letters: int = DEFAULT_MAX_DEAD_LETTERS,
        feed: Optional[ChangeFeed] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the queue and restore persisted tasks.

        Args:
            store: Local Store used for durability
            retry_config: Backoff policy and attempt cap
            succeeded_grace: Seconds finished tasks are kept before pruning
            max_dead_letters: Number of dead-lettered tasks retained
            feed: Receives an ErrorEvent for every retired task
            clock: Source of the current time
        """
        self.store = store
        self.retry_config = retry_config or RetryConfig()
        self.succeeded_grace = succeeded_grace
        self.max_dead_letters = max_dead_letters
        self.feed = feed
        self._clock = clock
        self._tasks: dict[str, SyncTask] = {}
        self._order: dict[str, int] = {}
        self._in_flight: dict[str, str] = {}  # content_id -> task_id
        self._seq = itertools.count()
        self._lock = threading.RLock()
        self._cond = threading.Condition(self._lock)
        self.restore()

    def restore(self) -> int:
        """Load persisted tasks, returning interrupted InFlight tasks to Queued.

        Returns:
            Number of unfinished tasks restored
        """
        tasks = self.store.list_queue()
        restored = 0
        with self._lock:
            self._tasks.clear()
            self._order.clear()
            self._in_flight.clear()
            for task in tasks:
                if task.state == TaskState.IN_FLIGHT:
                    task.state = TaskState.QUEUED
                    task.next_eligible_at = self._clock()
                    self.store.put_queue_entry(task)
                self._tasks[task.id] = task
                self._order[task.id] = next(self._seq)
                if task.state == TaskState.QUEUED:
                    restored += 1
        if restored:
            logger.info(f"Restored {restored} pending sync tasks")
        return restored

    def enqueue(self, task: SyncTask) -> SyncTask:
        """Add a task, coalescing with an equivalent Queued task.

        An equivalent task has the same content id and kind and is still
        Queued. The survivor takes the higher priority and the newer target
        version.

        Returns:
            The task that is now queued (existing one if coalesced)
        """
        with self._lock:
            existing = self._find_queued(task.content_id, task.kind)
            if existing is not None:
                merged = self._coalesce(existing, task)
                self.store.put_queue_entry(merged)
                self._tasks[merged.id] = merged
                logger.debug(
                    f"Coalesced {task.kind.value} for {task.content_id} into {merged.id}"
                )
                self._cond.notify_all()
                return merged

            task.state = TaskState.QUEUED
            self.store.put_queue_entry(task)
            self._tasks[task.id] = task
            self._order[task.id] = next(self._seq)
            logger.debug(
                f"Enqueued {task.kind.value} for {task.content_id} "
                f"({task.priority.name.lower()})"
            )
            self._cond.notify_all()
            return task

    def dequeue_next(
        self, network_available: bool = True, now: Optional[datetime] = None
    ) -> Optional[SyncTask]:
        """Return the next eligible Queued task without claiming it.

        Eligible: next-eligible time has passed, no other task for the same
        content id is InFlight, and the task is not network-bound while the
        network is unavailable. Highest priority first, FIFO within a band.

        Returns:
            The task, or None if nothing is eligible
        """
        now = now or self._clock()
        with self._lock:
            candidates = [
                t
                for t in self._tasks.values()
                if t.state == TaskState.QUEUED
                and t.next_eligible_at <= now
                and t.content_id not in self._in_flight
                and (network_available or not t.network_bound)
            ]
            if not candidates:
                return None
            return min(
                candidates, key=lambda t: (t.priority, t.enqueued_at, self._order[t.id])
            )

    def claim_next(
        self, network_available: bool = True, now: Optional[datetime] = None
    ) -> Optional[SyncTask]:
        """Atomically dequeue the next eligible task and mark it InFlight."""
        with self._lock:
            task = self.dequeue_next(network_available, now)
            if task is not None:
                self.mark_in_flight(task)
            return task

    def mark_in_flight(self, task: SyncTask) -> None:
        with self._lock:
            task = self._require(task, TaskState.QUEUED)
            holder = self._in_flight.get(task.content_id)
            if holder is not None:
                raise InvalidTransition(
                    f"Task {holder} for {task.content_id} is already in flight"
                )
            task.state = TaskState.IN_FLIGHT
            try:
                self.store.put_queue_entry(task)
            except StorageFailure:
                task.state = TaskState.QUEUED
                raise
            self._in_flight[task.content_id] = task.id

    def mark_succeeded(self, task: SyncTask) -> None:
        with self._lock:
            task = self._require(task, TaskState.IN_FLIGHT)
            task.state = TaskState.SUCCEEDED
            task.finished_at = self._clock()
            task.last_error = None
            self._finish(task)

    def mark_failed(self, task: SyncTask, error: BaseException) -> TaskState:
        """Record a failed attempt.

        Retryable errors return the task to Queued with exponential backoff
        until the attempt cap, then dead-letter it. Non-retryable errors move
        it straight to Failed.

        Returns:
            The task's new state
        """
        retryable = error.retryable if isinstance(error, SyncError) else True
        with self._lock:
            task = self._require(task, TaskState.IN_FLIGHT)
            task.attempts += 1
            task.last_error = f"{type(error).__name__}: {error}"
            now = self._clock()

            if not retryable:
                task.state = TaskState.FAILED
                task.finished_at = now
                logger.warning(
                    f"Task {task.kind.value} for {task.content_id} failed: {task.last_error}"
                )
            elif task.attempts >= self.retry_config.max_attempts:
                task.state = TaskState.DEAD_LETTERED
                task.finished_at = now
                logger.error(
                    f"Task {task.kind.value} for {task.content_id} dead-lettered "
                    f"after {task.attempts} attempts: {task.last_error}"
                )
            else:
                delay = calculate_delay(task.attempts - 1, self.retry_config)
                task.state = TaskState.QUEUED
                task.next_eligible_at = now + timedelta(seconds=delay)
                logger.warning(
                    f"Task {task.kind.value} for {task.content_id} attempt {task.attempts} "
                    f"failed: {task.last_error}. Retrying in {delay:.1f}s"
                )

            self._finish(task)
            if task.state == TaskState.DEAD_LETTERED:
                self._cap_dead_letters()
            state = task.state

        if state in (TaskState.FAILED, TaskState.DEAD_LETTERED) and self.feed:
            self.feed.publish(
                ErrorEvent(task.id, task.content_id, task.kind, task.last_error or "", state)
            )
        return state

    def requeue(self, task: SyncTask) -> None:
        """Return an InFlight task to Queued without consuming an attempt."""
        self.defer(task, 0)

    def defer(self, task: SyncTask, delay: float) -> None:
        """Return an InFlight task to Queued, eligible again after ``delay`` seconds."""
        with self._lock:
            task = self._require(task, TaskState.IN_FLIGHT)
            task.state = TaskState.QUEUED
            task.next_eligible_at = self._clock() + timedelta(seconds=delay)
            self._finish(task)

    def requeue_in_flight(self) -> int:
        """Return every InFlight task to Queued (shutdown or disconnect)."""
        with self._lock:
            in_flight = [self._tasks[task_id] for task_id in self._in_flight.values()]
            for task in in_flight:
                self.requeue(task)
        if in_flight:
            logger.info(f"Re-queued {len(in_flight)} in-flight tasks")
        return len(in_flight)

    def requeue_dead_letters(self, task_ids: Optional[Iterable[str]] = None) -> int:
        """Give dead-lettered tasks a fresh set of attempts.

        Args:
            task_ids: Specific tasks, or None for all dead letters

        Returns:
            Number of tasks re-queued
        """
        wanted = set(task_ids) if task_ids is not None else None
        count = 0
        with self._lock:
            for task in list(self._tasks.values()):
                if task.state != TaskState.DEAD_LETTERED:
                    continue
                if wanted is not None and task.id not in wanted:
                    continue
                task.state = TaskState.QUEUED
                task.attempts = 0
                task.finished_at = None
                task.next_eligible_at = self._clock()
                self.store.put_queue_entry(task)
                count += 1
            if count:
                self._cond.notify_all()
        if count:
            logger.info(f"Re-queued {count} dead-lettered tasks")
        return count

    def prune(self, now: Optional[datetime] = None) -> int:
        """Delete Succeeded and Failed tasks older than the grace period.

        The latest checksum-rejected download per content id is kept, so the
        same version is not fetched again after the grace period.
        """
        now = now or self._clock()
        cutoff = now - timedelta(seconds=self.succeeded_grace)
        with self._lock:
            keep = {t.id for t in self._rejected_downloads().values()}
            expired = [
                t
                for t in self._tasks.values()
                if t.state in (TaskState.SUCCEEDED, TaskState.FAILED)
                and t.finished_at is not None
                and t.finished_at <= cutoff
                and t.id not in keep
            ]
            for task in expired:
                self._remove(task)
        if expired:
            logger.debug(f"Pruned {len(expired)} finished tasks")
        return len(expired)

    # Queries

    def get(self, task_id: str) -> Optional[SyncTask]:
        with self._lock:
            return self._tasks.get(task_id)

    def tasks(self, state: Optional[TaskState] = None) -> list[SyncTask]:
        with self._lock:
            tasks = [t for t in self._tasks.values() if state is None or t.state == state]
            return sorted(tasks, key=lambda t: self._order[t.id])

    def dead_letters(self) -> list[SyncTask]:
        return self.tasks(TaskState.DEAD_LETTERED)

    def rejected_downloads(self) -> dict[str, SyncTask]:
        """Latest Failed fetch per content id whose payload failed its checksum."""
        with self._lock:
            return self._rejected_downloads()

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def is_in_flight(self, content_id: str) -> bool:
        with self._lock:
            return content_id in self._in_flight

    def next_eligible_in(
        self, network_available: bool = True, now: Optional[datetime] = None
    ) -> Optional[float]:
        """Seconds until the earliest Queued task becomes eligible, or None."""
        now = now or self._clock()
        with self._lock:
            times = [
                t.next_eligible_at
                for t in self._tasks.values()
                if t.state == TaskState.QUEUED and (network_available or not t.network_bound)
            ]
        if not times:
            return None
        return max(0.0, (min(times) - now).total_seconds())

    def is_idle(self, network_available: bool = True) -> bool:
        """True when nothing is InFlight and nothing is eligible right now."""
        with self._lock:
            return not self._in_flight and self.dequeue_next(network_available) is None

    def stats(self) -> dict[str, int]:
        counts = {state.value: 0 for state in TaskState}
        with self._lock:
            for task in self._tasks.values():
                counts[task.state.value] += 1
        return counts

    def wait_for_work(self, timeout: Optional[float]) -> None:
        """Block until the queue changes or ``timeout`` elapses."""
        with self._cond:
            self._cond.wait(timeout)

    def notify(self) -> None:
        """Wake waiters (e.g. after connectivity changes)."""
        with self._cond:
            self._cond.notify_all()

    # Internals

    def _require(self, task: SyncTask, state: TaskState) -> SyncTask:
        current = self._tasks.get(task.id)
        if current is None:
            raise InvalidTransition(f"Unknown task {task.id}")
        if current.state != state:
            raise InvalidTransition(
                f"Task {task.id} is {current.state.value}, expected {state.value}"
            )
        return current

    def _rejected_downloads(self) -> dict[str, SyncTask]:
        latest: dict[str, SyncTask] = {}
        for task in sorted(self._tasks.values(), key=lambda t: self._order[t.id]):
            if (
                task.state == TaskState.FAILED
                and task.kind == TaskKind.FETCH_ITEM
                and (task.last_error or "").startswith(f"{IntegrityFailure.__name__}:")
            ):
                latest[task.content_id] = task
        return latest

    def _find_queued(self, content_id: str, kind) -> Optional[SyncTask]:
        for task in self._tasks.values():
            if (
                task.state == TaskState.QUEUED
                and task.content_id == content_id
                and task.kind == kind
            ):
                return task
        return None

    @staticmethod
    def _coalesce(existing: SyncTask, incoming: SyncTask) -> SyncTask:
        existing.priority = min(existing.priority, incoming.priority)
        if incoming.target_version is not None and (
            existing.target_version is None or incoming.target_version > existing.target_version
        ):
            existing.target_version = incoming.target_version
            existing.expected_checksum = incoming.expected_checksum
        return existing

    def _finish(self, task: SyncTask) -> None:
        """Persist a transition out of InFlight and release the content id."""
        try:
            self.store.put_queue_entry(task)
        finally:
            if self._in_flight.get(task.content_id) == task.id:
                del self._in_flight[task.content_id]
            self._cond.notify_all()

    def _remove(self, task: SyncTask) -> None:
        self.store.delete_queue_entry(task.id)
        self._tasks.pop(task.id, None)
        self._order.pop(task.id, None)

    def _cap_dead_letters(self) -> None:
        dead = [t for t in self._tasks.values() if t.state == TaskState.DEAD_LETTERED]
        excess = len(dead) - self.max_dead_letters
        if excess <= 0:
            return
        dead.sort(key=lambda t: t.finished_at or t.enqueued_at)
        for task in dead[:excess]:
            self._remove(task)
        logger.warning(f"Dropped {excess} oldest dead-lettered tasks")
