"""Tests for the Sync Queue."""

import shutil
import tempfile
import threading
import time
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from tvbox_sync.sync.errors import (
    IntegrityFailure,
    InvalidTransition,
    NetworkFailure,
    ProtocolFailure,
)
from tvbox_sync.sync.events import ChangeFeed
from tvbox_sync.sync.models import ErrorEvent, Priority, SyncTask, TaskKind, TaskState, utcnow
from tvbox_sync.sync.queue import SyncQueue
from tvbox_sync.sync.retry import RetryConfig
from tvbox_sync.sync.store import LocalStore


class FakeClock:
    def __init__(self):
        self.now = utcnow() + timedelta(seconds=1)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def fetch(content_id, priority=Priority.NORMAL, version=None):
    return SyncTask(
        kind=TaskKind.FETCH_ITEM,
        content_id=content_id,
        priority=priority,
        target_version=version,
    )


class TestSyncQueue:
    """Tests for SyncQueue ordering and transitions."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = LocalStore(Path(self.temp_dir))
        self.feed = ChangeFeed()
        self.events = []
        self.feed.subscribe(self.events.append)
        self.clock = FakeClock()
        self.config = RetryConfig(max_attempts=3, base_delay=2.0, max_delay=60.0)
        self.queue = SyncQueue(
            self.store, retry_config=self.config, feed=self.feed, clock=self.clock
        )

    def teardown_method(self):
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_priority_then_fifo(self):
        """Test that Critical runs before Normal, FIFO within a band."""
        self.queue.enqueue(fetch("n1"))
        self.queue.enqueue(fetch("b1", Priority.BACKGROUND))
        self.queue.enqueue(fetch("c1", Priority.CRITICAL))
        self.queue.enqueue(fetch("n2"))
        self.queue.enqueue(fetch("c2", Priority.CRITICAL))

        order = []
        while True:
            task = self.queue.claim_next()
            if task is None:
                break
            order.append(task.content_id)
            self.queue.mark_succeeded(task)

        assert order == ["c1", "c2", "n1", "n2", "b1"]

    def test_enqueue_coalesces_equivalent_task(self):
        """Test that a duplicate fetch merges into the queued one."""
        first = self.queue.enqueue(fetch("promo", Priority.BACKGROUND, version=3))
        second = self.queue.enqueue(fetch("promo", Priority.CRITICAL, version=5))

        assert second.id == first.id
        assert len(self.queue.tasks(TaskState.QUEUED)) == 1
        assert second.priority == Priority.CRITICAL
        assert second.target_version == 5

    def test_coalesce_keeps_newer_target(self):
        self.queue.enqueue(fetch("promo", version=5))
        merged = self.queue.enqueue(fetch("promo", version=4))

        assert merged.target_version == 5

    def test_different_kinds_do_not_coalesce(self):
        self.queue.enqueue(fetch("promo"))
        self.queue.enqueue(SyncTask(kind=TaskKind.PURGE_ITEM, content_id="promo"))

        assert len(self.queue.tasks(TaskState.QUEUED)) == 2

    def test_one_in_flight_per_content_id(self):
        """Test that a second task for a busy id is skipped, not claimed."""
        self.queue.enqueue(fetch("promo"))
        self.queue.enqueue(SyncTask(kind=TaskKind.PURGE_ITEM, content_id="promo"))
        self.queue.enqueue(fetch("other"))

        first = self.queue.claim_next()
        second = self.queue.claim_next()

        assert first.content_id == "promo"
        assert second.content_id == "other"
        assert self.queue.claim_next() is None

        self.queue.mark_succeeded(first)
        third = self.queue.claim_next()
        assert third.kind == TaskKind.PURGE_ITEM

    def test_one_in_flight_per_content_id_under_threads(self):
        """Test exclusivity while many threads enqueue and claim at once."""
        store = LocalStore(Path(self.temp_dir) / "threads")
        queue = SyncQueue(store, retry_config=self.config)
        kinds = [TaskKind.FETCH_ITEM, TaskKind.APPLY_ITEM, TaskKind.PURGE_ITEM]
        active = set()
        active_lock = threading.Lock()
        overlaps = []
        claimed = []

        def worker(seed):
            for i in range(40):
                queue.enqueue(
                    SyncTask(
                        kind=kinds[(seed + i) % len(kinds)],
                        content_id=f"item-{(seed + i) % 3}",
                        target_version=i,
                    )
                )
                task = queue.claim_next()
                if task is None:
                    continue
                with active_lock:
                    if task.content_id in active:
                        overlaps.append(task.content_id)
                    active.add(task.content_id)
                    claimed.append(task.id)
                time.sleep(0.001)
                with active_lock:
                    active.discard(task.content_id)
                queue.mark_succeeded(task)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        try:
            assert overlaps == []
            assert claimed
            assert queue.in_flight_count() == 0
            assert len(set(claimed)) == len(claimed)
        finally:
            store.close()

    def test_mark_in_flight_rejects_busy_id(self):
        self.queue.enqueue(fetch("promo"))
        purge = self.queue.enqueue(SyncTask(kind=TaskKind.PURGE_ITEM, content_id="promo"))
        self.queue.claim_next()

        with pytest.raises(InvalidTransition):
            self.queue.mark_in_flight(purge)

    def test_invalid_transition(self):
        task = self.queue.enqueue(fetch("promo"))

        with pytest.raises(InvalidTransition):
            self.queue.mark_succeeded(task)

    def test_network_bound_tasks_held_while_offline(self):
        """Test that only purge tasks run without a network."""
        self.queue.enqueue(fetch("promo"))
        self.queue.enqueue(SyncTask(kind=TaskKind.PURGE_ITEM, content_id="old"))

        task = self.queue.claim_next(network_available=False)

        assert task.kind == TaskKind.PURGE_ITEM
        self.queue.mark_succeeded(task)
        assert self.queue.claim_next(network_available=False) is None
        assert self.queue.claim_next(network_available=True).content_id == "promo"

    def test_retryable_failure_backs_off(self):
        task = self.queue.enqueue(fetch("promo"))
        claimed = self.queue.claim_next()

        with patch("tvbox_sync.sync.retry.random.uniform", return_value=1.0):
            state = self.queue.mark_failed(claimed, NetworkFailure("timeout"))

        assert state == TaskState.QUEUED
        assert task.attempts == 1
        assert task.next_eligible_at == self.clock.now + timedelta(seconds=2.0)
        assert self.queue.claim_next() is None
        assert self.queue.next_eligible_in() == pytest.approx(2.0)

        self.clock.advance(2.0)
        assert self.queue.claim_next().id == task.id

    def test_backoff_delays_non_decreasing(self):
        """Test that successive retry delays never shrink."""
        config = RetryConfig(max_attempts=10, base_delay=2.0, max_delay=60.0)
        queue = SyncQueue(self.store, retry_config=config, clock=self.clock)
        task = queue.enqueue(fetch("slow"))

        delays = []
        for _ in range(8):
            claimed = queue.claim_next()
            assert claimed is not None
            queue.mark_failed(claimed, NetworkFailure("reset"))
            delay = (task.next_eligible_at - self.clock.now).total_seconds()
            delays.append(delay)
            self.clock.advance(delay)

        assert delays == sorted(delays)
        assert delays[-1] == 60.0

    def test_dead_letter_exactly_once_at_cap(self):
        """Test that the final failed attempt dead-letters and emits one event."""
        task = self.queue.enqueue(fetch("promo"))
        states = []
        for _ in range(self.config.max_attempts):
            claimed = self.queue.claim_next()
            states.append(self.queue.mark_failed(claimed, NetworkFailure("down")))
            self.clock.advance(3600)

        assert states == [TaskState.QUEUED, TaskState.QUEUED, TaskState.DEAD_LETTERED]
        assert task.attempts == 3
        assert self.queue.claim_next() is None
        errors = [e for e in self.events if isinstance(e, ErrorEvent)]
        assert len(errors) == 1
        assert errors[0].task_id == task.id
        assert errors[0].state == TaskState.DEAD_LETTERED

    def test_non_retryable_failure_is_terminal(self):
        self.queue.enqueue(fetch("promo"))
        claimed = self.queue.claim_next()

        state = self.queue.mark_failed(claimed, IntegrityFailure("promo", "aaa", "bbb"))

        assert state == TaskState.FAILED
        assert self.queue.claim_next() is None
        assert self.events[-1].state == TaskState.FAILED

    def test_requeue_does_not_consume_attempt(self):
        task = self.queue.enqueue(fetch("promo"))
        self.queue.requeue(self.queue.claim_next())

        assert task.attempts == 0
        assert task.state == TaskState.QUEUED
        assert self.queue.claim_next().id == task.id

    def test_defer(self):
        task = self.queue.enqueue(fetch("promo"))
        self.queue.defer(self.queue.claim_next(), 30)

        assert task.attempts == 0
        assert self.queue.claim_next() is None
        self.clock.advance(30)
        assert self.queue.claim_next().id == task.id

    def test_restore_returns_in_flight_to_queued(self):
        """Test that a restart replays interrupted work."""
        task = self.queue.enqueue(fetch("promo", version=2))
        self.queue.claim_next()

        restored = SyncQueue(self.store, retry_config=self.config, clock=self.clock)

        reloaded = restored.get(task.id)
        assert reloaded.state == TaskState.QUEUED
        assert reloaded.target_version == 2
        assert restored.claim_next().id == task.id

    def test_requeue_in_flight(self):
        self.queue.enqueue(fetch("a"))
        self.queue.enqueue(fetch("b"))
        self.queue.claim_next()
        self.queue.claim_next()

        assert self.queue.requeue_in_flight() == 2
        assert self.queue.in_flight_count() == 0

    def test_requeue_dead_letters(self):
        task = self.queue.enqueue(fetch("promo"))
        for _ in range(self.config.max_attempts):
            self.queue.mark_failed(self.queue.claim_next(), NetworkFailure("down"))
            self.clock.advance(3600)

        assert self.queue.requeue_dead_letters() == 1
        assert task.state == TaskState.QUEUED
        assert task.attempts == 0

    def test_dead_letters_capped(self):
        queue = SyncQueue(
            self.store,
            retry_config=RetryConfig(max_attempts=1),
            max_dead_letters=2,
            clock=self.clock,
        )
        for i in range(4):
            queue.enqueue(fetch(f"item-{i}"))
            queue.mark_failed(queue.claim_next(), NetworkFailure("down"))
            self.clock.advance(1)

        assert [t.content_id for t in queue.dead_letters()] == ["item-2", "item-3"]

    def test_prune_finished_tasks(self):
        ok = self.queue.enqueue(fetch("a"))
        self.queue.mark_succeeded(self.queue.claim_next())
        self.queue.enqueue(fetch("b"))
        self.queue.mark_failed(self.queue.claim_next(), ProtocolFailure("bad"))

        assert self.queue.prune() == 0
        self.clock.advance(self.queue.succeeded_grace + 1)
        assert self.queue.prune() == 2
        assert self.queue.get(ok.id) is None
        assert self.store.list_queue() == []

    def test_stats(self):
        self.queue.enqueue(fetch("a"))
        self.queue.enqueue(fetch("b"))
        self.queue.mark_succeeded(self.queue.claim_next())

        stats = self.queue.stats()

        assert stats["queued"] == 1
        assert stats["succeeded"] == 1
        assert stats["in_flight"] == 0

    def test_is_idle(self):
        assert self.queue.is_idle()
        self.queue.enqueue(fetch("a"))
        assert not self.queue.is_idle()
        assert self.queue.is_idle(network_available=False)

    def test_prune_keeps_latest_rejected_download(self):
        """Test that a checksum-rejected fetch outlives the grace period."""
        self.queue.enqueue(fetch("a", version=1))
        self.queue.mark_failed(self.queue.claim_next(), IntegrityFailure("a", "aaa", "bbb"))
        self.queue.enqueue(fetch("a", version=2))
        rejected = self.queue.claim_next()
        self.queue.mark_failed(rejected, IntegrityFailure("a", "ccc", "ddd"))

        self.clock.advance(self.queue.succeeded_grace + 1)

        assert self.queue.prune() == 1
        assert self.queue.rejected_downloads() == {"a": rejected}

    def test_rejected_downloads_ignore_other_failures(self):
        self.queue.enqueue(fetch("a", version=1))
        self.queue.mark_failed(self.queue.claim_next(), ProtocolFailure("bad"))

        assert self.queue.rejected_downloads() == {}
