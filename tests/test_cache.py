"""Tests for the Cache Manager."""

import shutil
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from tvbox_sync.sync.cache import CacheManager, compute_checksum
from tvbox_sync.sync.errors import CapacityExceeded
from tvbox_sync.sync.events import ChangeFeed
from tvbox_sync.sync.models import ChangeAction, ContentItem, Priority
from tvbox_sync.sync.store import LocalStore


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class TestCacheManager:
    """Tests for admission, eviction and pinning."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = LocalStore(Path(self.temp_dir))
        self.feed = ChangeFeed()
        self.events = []
        self.feed.subscribe(self.events.append)
        self.clock = FakeClock()
        self.cache = CacheManager(self.store, capacity_bytes=100, feed=self.feed, clock=self.clock)

    def teardown_method(self):
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def commit(
        self, content_id, size, ttl=None, priority=Priority.NORMAL, pending_edit_base=None
    ):
        payload = bytes(size)
        item = ContentItem(
            id=content_id,
            version=1,
            checksum=compute_checksum(payload),
            priority=priority,
            ttl=ttl,
            last_verified=self.clock(),
            pending_edit_base=pending_edit_base,
        )
        committed = self.store.put(item, payload)
        self.cache.admit(committed)
        return committed

    def evicted_ids(self):
        return [e.content_id for e in self.events if e.action == ChangeAction.EVICTED]

    def test_admit_within_capacity(self):
        self.commit("a", 40)
        self.commit("b", 40)

        assert self.cache.usage == 80
        assert self.evicted_ids() == []

    def test_lru_eviction_when_full(self):
        """Test that the least recently used entry goes first."""
        self.commit("a", 40)
        self.commit("b", 40)
        self.cache.touch("a")

        self.commit("c", 40)

        assert self.evicted_ids() == ["b"]
        assert self.store.find("b") is None
        assert self.store.find("a") is not None
        assert self.cache.usage <= 100

    def test_expired_entries_evicted_before_lru(self):
        """Test that expired entries go first, oldest expiry first."""
        self.commit("old", 30)
        self.commit("short", 30, ttl=10)
        self.commit("shorter", 30, ttl=5)
        self.clock.advance(20)
        self.cache.touch("old")

        self.commit("new", 60)

        assert self.evicted_ids() == ["shorter", "short"]
        assert self.store.find("old") is not None

    def test_pinned_entry_never_evicted(self):
        """Test that admission fails rather than evicting pinned content."""
        self.commit("a", 60)
        self.cache.pin("a")

        with pytest.raises(CapacityExceeded):
            self.cache.reserve("b", 60)

        assert self.store.find("a") is not None
        assert self.evicted_ids() == []

    def test_capacity_exceeded_evicts_nothing(self):
        """Test that a failed admission leaves unpinned entries in place."""
        self.commit("pinned", 70)
        self.commit("loose", 20)
        self.cache.pin("pinned")

        with pytest.raises(CapacityExceeded):
            self.cache.reserve("big", 50)

        assert self.store.find("loose") is not None
        assert self.evicted_ids() == []

    def test_reservation_blocks_eviction_of_incoming_item(self):
        self.commit("a", 50)
        self.cache.reserve("b", 50)

        with pytest.raises(CapacityExceeded):
            self.cache.reserve("c", 60)

        self.cache.release("b")
        self.cache.reserve("c", 60)
        assert self.evicted_ids() == ["a"]

    def test_pin_before_admission(self):
        self.cache.pin("upcoming")
        self.commit("upcoming", 10)

        assert self.cache.get_entry("upcoming").pinned is True
        self.cache.unpin("upcoming")
        assert self.cache.get_entry("upcoming").pinned is False

    def test_evict_expired_skips_pinned(self):
        self.commit("a", 10, ttl=5)
        self.commit("b", 10, ttl=5)
        self.cache.pin("b")
        self.clock.advance(10)

        evicted = self.cache.evict_expired()

        assert evicted == ["a"]
        assert self.store.find("b") is not None

    def test_entries_without_ttl_never_expire(self):
        self.commit("forever", 10)
        self.clock.advance(10**6)

        assert self.cache.evict_expired() == []

    def test_verify_reports_corrupt_payload(self):
        committed = self.commit("a", 10)
        self.commit("b", 10)
        (self.store.blob_dir / committed.payload_ref).write_bytes(b"tampered")

        assert self.cache.verify() == ["a"]

    def test_verify_reports_missing_payload(self):
        committed = self.commit("a", 10)
        (self.store.blob_dir / committed.payload_ref).unlink()

        assert self.cache.verify() == ["a"]

    def test_refresh_from_store_tracks_external_changes(self):
        """Test that a rebuild happens only when the store changed."""
        payload = bytes(30)
        self.store.put(
            ContentItem(id="external", version=1, checksum=compute_checksum(payload)), payload
        )

        assert self.cache.refresh_from_store() is True
        assert self.cache.get_entry("external").size == 30
        assert self.cache.refresh_from_store() is False

        self.store.delete("external")
        assert self.cache.refresh_from_store() is True
        assert self.cache.get_entry("external") is None

    def test_refresh_shrinks_to_capacity(self):
        for name in ("a", "b", "c"):
            payload = bytes(50)
            self.store.put(
                ContentItem(id=name, version=1, checksum=compute_checksum(payload)), payload
            )

        self.cache.refresh_from_store(force=True)

        assert self.cache.usage <= 100
        assert self.store.count() == 2

    def test_forget_drops_entry(self):
        self.commit("a", 10)
        self.cache.forget("a")

        assert self.cache.get_entry("a") is None
        assert self.cache.usage == 0

    def test_pending_edit_never_evicted(self):
        """Test that an unacknowledged local edit is skipped by LRU eviction."""
        self.commit("edited", 40, pending_edit_base=1)
        self.commit("a", 40)

        self.commit("b", 40)

        assert self.evicted_ids() == ["a"]
        assert self.store.find("edited").has_pending_edit

    def test_capacity_exceeded_when_only_edits_remain(self):
        self.commit("edited", 70, pending_edit_base=1)

        with pytest.raises(CapacityExceeded):
            self.cache.reserve("big", 50)

        assert self.store.find("edited") is not None

    def test_evict_expired_skips_pending_edit(self):
        self.commit("edited", 10, ttl=5, pending_edit_base=1)
        self.commit("a", 10, ttl=5)
        self.clock.advance(10)

        assert self.cache.evict_expired() == ["a"]
        assert self.store.find("edited") is not None

    def test_acknowledged_edit_becomes_evictable(self):
        edited = self.commit("edited", 40, pending_edit_base=1)
        self.cache.admit(self.store.put(edited.evolve(pending_edit_base=None)))
        self.commit("a", 40)

        self.commit("b", 40)

        assert self.evicted_ids() == ["edited"]

    def test_refresh_picks_up_pending_edit(self):
        item = self.commit("a", 10)
        self.store.put(item.evolve(pending_edit_base=1))

        self.cache.refresh_from_store()

        assert self.cache.get_entry("a").pending_edit is True

    def test_verify_waits_for_concurrent_put(self):
        """Test that a put racing the integrity check does not look like corruption."""
        self.commit("a", 10)
        newer = ContentItem(id="a", version=2, checksum=compute_checksum(b"v2"))
        writer = threading.Thread(target=self.store.put, args=(newer, b"v2"))
        read_payload = self.store.read_payload

        def read_while_writing(item):
            writer.start()
            writer.join(timeout=0.2)
            return read_payload(item)

        with patch.object(self.store, "read_payload", side_effect=read_while_writing):
            corrupt = self.cache.verify()

        writer.join(timeout=5)
        assert corrupt == []
        assert self.store.get("a").version == 2
