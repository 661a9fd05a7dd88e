"""Tests for the Local Store."""

import shutil
import tempfile
import threading
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from tvbox_sync.sync.cache import compute_checksum
from tvbox_sync.sync.errors import NotFound, StorageFailure
from tvbox_sync.sync.models import ContentItem, Priority, SyncTask, TaskKind, TaskState, utcnow
from tvbox_sync.sync.store import LocalStore


def make_item(content_id="promo", version=1, payload=b"hello", **kwargs) -> ContentItem:
    return ContentItem(
        id=content_id, version=version, checksum=compute_checksum(payload), **kwargs
    )


class TestLocalStoreItems:
    """Tests for item persistence."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = LocalStore(Path(self.temp_dir))

    def teardown_method(self):
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_put_and_get(self):
        """Test that a committed item reads back with its payload."""
        now = utcnow()
        committed = self.store.put(
            make_item(priority=Priority.CRITICAL, ttl=60, last_verified=now), b"hello"
        )

        item = self.store.get("promo")

        assert item.version == 1
        assert item.size == 5
        assert item.priority == Priority.CRITICAL
        assert item.ttl == 60
        assert item.last_verified == now
        assert item.payload_ref == committed.payload_ref
        assert self.store.read_payload(item) == b"hello"

    def test_get_missing_raises_not_found(self):
        with pytest.raises(NotFound):
            self.store.get("missing")
        assert self.store.find("missing") is None

    def test_not_found_is_key_error(self):
        with pytest.raises(KeyError):
            self.store.get("missing")

    def test_update_replaces_payload_and_removes_old_blob(self):
        """Test that a new version gets a new payload reference."""
        first = self.store.put(make_item(version=1, payload=b"v1"), b"v1")
        second = self.store.put(make_item(version=2, payload=b"v2"), b"v2")

        assert first.payload_ref != second.payload_ref
        assert not (self.store.blob_dir / first.payload_ref).exists()
        assert self.store.read_payload(self.store.get("promo")) == b"v2"

    def test_metadata_update_keeps_payload(self):
        """Test that put without payload keeps the existing blob."""
        committed = self.store.put(make_item(), b"hello")
        self.store.put(committed.evolve(last_verified=utcnow()))

        item = self.store.get("promo")
        assert item.payload_ref == committed.payload_ref
        assert self.store.read_payload(item) == b"hello"

    def test_failed_commit_keeps_previous_item(self):
        """Test that a failed metadata commit leaves the old version readable."""
        self.store.put(make_item(version=1, payload=b"v1"), b"v1")
        blobs_before = set(p.name for p in self.store.blob_dir.iterdir())

        with patch.object(self.store, "_bump_counter", side_effect=StorageFailure("disk full")):
            with pytest.raises(StorageFailure):
                self.store.put(make_item(version=2, payload=b"v2"), b"v2")

        item = self.store.get("promo")
        assert item.version == 1
        assert self.store.read_payload(item) == b"v1"
        assert set(p.name for p in self.store.blob_dir.iterdir()) == blobs_before

    def test_delete(self):
        committed = self.store.put(make_item(), b"hello")

        assert self.store.delete("promo") is True
        assert self.store.find("promo") is None
        assert not (self.store.blob_dir / committed.payload_ref).exists()
        assert self.store.delete("promo") is False

    def test_enumerate_is_ordered_and_paged(self):
        """Test lazy enumeration across several pages."""
        for i in range(7):
            self.store.put(make_item(content_id=f"item-{i}"), b"x")

        ids = [item.id for item in self.store.enumerate(page_size=3)]

        assert ids == [f"item-{i}" for i in range(7)]

    def test_enumerate_resumes_after_id(self):
        for i in range(5):
            self.store.put(make_item(content_id=f"item-{i}"), b"x")

        ids = [item.id for item in self.store.enumerate(after="item-2", page_size=2)]

        assert ids == ["item-3", "item-4"]

    def test_enumerate_empty_store(self):
        assert list(self.store.enumerate()) == []

    def test_change_counter_increments_on_put_and_delete(self):
        start = self.store.change_counter
        self.store.put(make_item(), b"hello")
        self.store.delete("promo")
        self.store.delete("promo")

        assert self.store.change_counter == start + 2

    def test_known_versions_and_count(self):
        self.store.put(make_item(content_id="a", version=3), b"x")
        self.store.put(make_item(content_id="b", version=7), b"x")

        assert self.store.known_versions() == {"a": 3, "b": 7}
        assert self.store.count() == 2

    def test_pending_edit_marker_persists(self):
        self.store.put(make_item(pending_edit_base=4, version=4), b"edited")

        assert self.store.get("promo").has_pending_edit
        assert self.store.get("promo").pending_edit_base == 4

    def test_read_missing_payload_raises_storage_failure(self):
        committed = self.store.put(make_item(), b"hello")
        (self.store.blob_dir / committed.payload_ref).unlink()

        with pytest.raises(StorageFailure):
            self.store.read_payload(self.store.get("promo"))

    def test_collect_orphans(self):
        """Test that unreferenced blob files are removed at startup."""
        committed = self.store.put(make_item(), b"hello")
        (self.store.blob_dir / "stray.bin").write_bytes(b"junk")
        (self.store.blob_dir / ".tmp-abc").write_bytes(b"partial")

        removed = self.store.collect_orphans()

        assert removed == 2
        assert (self.store.blob_dir / committed.payload_ref).exists()

    def test_data_survives_reopen(self):
        self.store.put(make_item(), b"hello")
        self.store.close()

        reopened = LocalStore(Path(self.temp_dir))
        try:
            assert reopened.read_payload(reopened.get("promo")) == b"hello"
        finally:
            reopened.close()

    def test_concurrent_writes_to_distinct_ids(self):
        """Test that writers of different ids do not interfere."""
        errors = []

        def writer(n):
            try:
                for v in range(1, 6):
                    payload = f"{n}-{v}".encode()
                    self.store.put(make_item(f"item-{n}", v, payload), payload)
            except Exception as e:  # pragma: no cover - surfaced below
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert self.store.known_versions() == {f"item-{n}": 5 for n in range(4)}


class TestLocalStoreQueue:
    """Tests for persisted queue records."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = LocalStore(Path(self.temp_dir))

    def teardown_method(self):
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_queue_entry_roundtrip(self):
        task = SyncTask(
            kind=TaskKind.FETCH_ITEM,
            content_id="promo",
            priority=Priority.CRITICAL,
            target_version=4,
            expected_checksum="abc",
        )
        self.store.put_queue_entry(task)

        (loaded,) = self.store.list_queue()

        assert loaded.id == task.id
        assert loaded.kind == TaskKind.FETCH_ITEM
        assert loaded.priority == Priority.CRITICAL
        assert loaded.target_version == 4
        assert loaded.state == TaskState.QUEUED

    def test_update_and_delete_entry(self):
        task = SyncTask(kind=TaskKind.PURGE_ITEM, content_id="old")
        self.store.put_queue_entry(task)
        task.state = TaskState.SUCCEEDED
        self.store.put_queue_entry(task)

        assert self.store.list_queue()[0].state == TaskState.SUCCEEDED
        assert self.store.delete_queue_entry(task.id) is True
        assert self.store.list_queue() == []

    def test_list_queue_oldest_first(self):
        now = utcnow()
        later = SyncTask(kind=TaskKind.PURGE_ITEM, content_id="b", enqueued_at=now)
        earlier = SyncTask(
            kind=TaskKind.PURGE_ITEM, content_id="a", enqueued_at=now - timedelta(minutes=1)
        )
        self.store.put_queue_entry(later)
        self.store.put_queue_entry(earlier)

        assert [t.content_id for t in self.store.list_queue()] == ["a", "b"]
