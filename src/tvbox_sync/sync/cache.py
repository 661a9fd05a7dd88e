"""Cache Manager - capacity, TTL and integrity bookkeeping over the Local Store.

Entries carry eviction metadata only; payload bytes stay in the Local Store.
Evicting an entry deletes the item from the store and emits an ``evicted``
change event.
"""

import hashlib
import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional

from .errors import CapacityExceeded, NotFound, StorageFailure
from .events import ChangeFeed
from .models import ContentItem, Priority, utcnow
from .store import LocalStore

logger = logging.getLogger(__name__)


def compute_checksum(payload: bytes) -> str:
    """Content hash used for manifests, headers and integrity sweeps."""
    return hashlib.sha256(payload).hexdigest()


@dataclass
class CacheEntry:
    """Eviction metadata for one cached content item."""

    content_id: str
    version: int
    size: int
    priority: Priority = Priority.NORMAL
    expires_at: Optional[datetime] = None
    last_access: datetime = field(default_factory=utcnow)
    access_seq: int = 0
    access_count: int = 0
    pinned: bool = False
    pending_edit: bool = False  # local edit not yet acknowledged by the server

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class CacheManager:
    """TTL/LRU eviction over the Local Store with pinning."""

    def __init__(
        self,
        store: LocalStore,
        capacity_bytes: int,
        feed: Optional[ChangeFeed] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the cache manager.

        Args:
            store: Local Store holding the payloads
            capacity_bytes: Maximum total size of cached items
            feed: Change feed notified of evictions
            clock: Source of the current time
        """
        self.store = store
        self.capacity = capacity_bytes
        self.feed = feed
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._reservations: dict[str, int] = {}
        self._pinned: set[str] = set()
        self._seq = itertools.count(1)
        self._seen_counter: Optional[int] = None
        self._lock = threading.RLock()

    @property
    def usage(self) -> int:
        """Bytes accounted for by entries and outstanding reservations."""
        with self._lock:
            return self._used()

    def entries(self) -> list[CacheEntry]:
        with self._lock:
            return list(self._entries.values())

    def get_entry(self, content_id: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(content_id)

    # Admission

    def reserve(self, content_id: str, size: int) -> None:
        """Make room for an incoming payload before it is committed.

        The reservation counts against capacity and keeps the id out of
        eviction candidates until ``admit`` or ``release``.

        Raises:
            CapacityExceeded: If room cannot be made without touching pinned entries
        """
        with self._lock:
            self._make_room(content_id, size)
            self._reservations[content_id] = size

    def release(self, content_id: str) -> None:
        """Drop a reservation that will not be admitted."""
        with self._lock:
            self._reservations.pop(content_id, None)

    def admit(self, item: ContentItem, size_hint: Optional[int] = None) -> CacheEntry:
        """Record a committed item, evicting others as needed.

        Raises:
            CapacityExceeded: If capacity cannot be restored without evicting
                a pinned entry; nothing is evicted in that case
        """
        size = size_hint if size_hint is not None else item.size
        with self._lock:
            reserved = self._reservations.pop(item.id, None)
            if reserved is None or size > reserved:
                try:
                    self._make_room(item.id, size)
                except CapacityExceeded:
                    if reserved is not None:
                        self._reservations[item.id] = reserved
                    raise

            previous = self._entries.get(item.id)
            entry = CacheEntry(
                content_id=item.id,
                version=item.version,
                size=size,
                priority=item.priority,
                expires_at=item.expires_at,
                last_access=self._clock(),
                access_seq=next(self._seq),
                access_count=previous.access_count if previous else 0,
                pinned=item.id in self._pinned,
                pending_edit=item.has_pending_edit,
            )
            self._entries[item.id] = entry
            logger.debug(
                f"Admitted {item.id} v{item.version} ({size} bytes, "
                f"usage {self._used()}/{self.capacity})"
            )
            return entry

    def forget(self, content_id: str) -> None:
        """Drop metadata for an item removed from the store by someone else."""
        with self._lock:
            self._entries.pop(content_id, None)
            self._reservations.pop(content_id, None)

    # Access and pinning

    def touch(self, content_id: str) -> None:
        """Update recency when the presentation layer reads an item."""
        with self._lock:
            entry = self._entries.get(content_id)
            if entry is None:
                return
            entry.last_access = self._clock()
            entry.access_seq = next(self._seq)
            entry.access_count += 1

    def pin(self, content_id: str) -> None:
        """Protect content scheduled for display from eviction.

        Pins survive re-admission and may be placed before the item arrives.
        """
        with self._lock:
            self._pinned.add(content_id)
            entry = self._entries.get(content_id)
            if entry:
                entry.pinned = True

    def unpin(self, content_id: str) -> None:
        with self._lock:
            self._pinned.discard(content_id)
            entry = self._entries.get(content_id)
            if entry:
                entry.pinned = False

    def is_pinned(self, content_id: str) -> bool:
        with self._lock:
            return content_id in self._pinned

    # Sweeps

    def evict_expired(self, now: Optional[datetime] = None) -> list[str]:
        """Remove TTL-expired entries regardless of capacity.

        Pinned entries and entries holding an unacknowledged local edit stay.

        Returns:
            Evicted content ids, oldest expiry first
        """
        now = now or self._clock()
        with self._lock:
            expired = sorted(
                (
                    e
                    for e in self._entries.values()
                    if e.is_expired(now) and self._evictable(e)
                ),
                key=lambda e: e.expires_at,
            )
            for entry in expired:
                self._evict(entry)
        if expired:
            logger.info(f"Evicted {len(expired)} expired items")
        return [e.content_id for e in expired]

    def verify(self, content_ids: Optional[Iterable[str]] = None) -> list[str]:
        """Recompute payload checksums against committed metadata.

        Returns:
            Ids whose payload is missing or does not match its checksum
        """
        if content_ids is None:
            content_ids = [e.content_id for e in self.entries()]

        corrupt = []
        for content_id in content_ids:
            try:
                # put() unlinks the previous blob once the new one is committed
                with self.store.item_lock(content_id):
                    item = self.store.get(content_id)
                    actual = compute_checksum(self.store.read_payload(item))
            except NotFound:
                self.forget(content_id)
                continue
            except StorageFailure as e:
                logger.warning(f"Integrity check could not read {content_id}: {e}")
                corrupt.append(content_id)
                continue
            if actual != item.checksum:
                logger.warning(
                    f"Integrity check failed for {content_id} v{item.version}: "
                    f"stored {item.checksum[:12]}, actual {actual[:12]}"
                )
                corrupt.append(content_id)
        return corrupt

    def refresh_from_store(self, force: bool = False) -> bool:
        """Rebuild entry metadata if the store changed since the last refresh.

        Access statistics and pins are kept. Entries without a backing item
        are dropped; if the store holds more than capacity, unpinned entries
        are evicted until it fits.

        Returns:
            True if a rebuild happened
        """
        counter = self.store.change_counter
        if not force and counter == self._seen_counter:
            return False

        items = {item.id: item for item in self.store.enumerate()}
        with self._lock:
            for content_id in list(self._entries):
                if content_id not in items and content_id not in self._reservations:
                    del self._entries[content_id]

            for item in items.values():
                entry = self._entries.get(item.id)
                if entry is None:
                    self._entries[item.id] = CacheEntry(
                        content_id=item.id,
                        version=item.version,
                        size=item.size,
                        priority=item.priority,
                        expires_at=item.expires_at,
                        last_access=self._clock(),
                        access_seq=next(self._seq),
                        pinned=item.id in self._pinned,
                        pending_edit=item.has_pending_edit,
                    )
                else:
                    entry.version = item.version
                    entry.size = item.size
                    entry.priority = item.priority
                    entry.expires_at = item.expires_at
                    entry.pending_edit = item.has_pending_edit

            overflow = self._used() - self.capacity
            if overflow > 0:
                victims, freed = self._plan_eviction(None, overflow)
                for entry in victims:
                    self._evict(entry)
                if freed < overflow:
                    logger.warning(
                        f"Cache over capacity by {overflow - freed} bytes; "
                        f"remaining entries are pinned or hold local edits"
                    )
            self._seen_counter = counter
        return True

    # Internals

    def _used(self) -> int:
        total = sum(
            e.size for e in self._entries.values() if e.content_id not in self._reservations
        )
        return total + sum(self._reservations.values())

    def _evictable(self, entry: CacheEntry) -> bool:
        return (
            entry.content_id not in self._pinned
            and entry.content_id not in self._reservations
            and not entry.pending_edit
        )

    def _make_room(self, content_id: str, size: int) -> None:
        """Evict enough entries for ``size`` bytes under ``content_id``."""
        current = self._reservations.get(content_id)
        if current is None:
            entry = self._entries.get(content_id)
            current = entry.size if entry else 0
        needed = self._used() - current + size - self.capacity
        if needed <= 0:
            return

        victims, freed = self._plan_eviction(content_id, needed)
        if freed < needed:
            raise CapacityExceeded(content_id, needed, freed)
        for entry in victims:
            self._evict(entry)

    def _plan_eviction(
        self, exclude_id: Optional[str], needed: int
    ) -> tuple[list[CacheEntry], int]:
        """Choose victims: expired first (oldest expiry), then least recently used."""
        now = self._clock()
        candidates = [
            e
            for e in self._entries.values()
            if e.content_id != exclude_id and self._evictable(e)
        ]
        expired = sorted(
            (e for e in candidates if e.is_expired(now)), key=lambda e: e.expires_at
        )
        fresh = sorted(
            (e for e in candidates if not e.is_expired(now)),
            key=lambda e: e.access_seq,
        )

        victims = []
        freed = 0
        for entry in expired + fresh:
            if freed >= needed:
                break
            victims.append(entry)
            freed += entry.size
        return victims, freed

    def _evict(self, entry: CacheEntry) -> None:
        self.store.delete(entry.content_id)
        self._entries.pop(entry.content_id, None)
        logger.info(f"Evicted {entry.content_id} v{entry.version} ({entry.size} bytes)")
        if self.feed:
            self.feed.evicted(entry.content_id, entry.version)
