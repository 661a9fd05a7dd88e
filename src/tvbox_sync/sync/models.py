"""Data model shared by the sync engine components."""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from typing import Any, Optional

from .errors import ProtocolFailure

__all__ = [
    "Priority",
    "TaskKind",
    "TaskState",
    "ConnectionState",
    "ChangeAction",
    "ContentItem",
    "ManifestEntry",
    "SyncTask",
    "ChangeEvent",
    "ErrorEvent",
    "MANIFEST_ID",
    "utcnow",
]

# Content id used by fetch-manifest tasks; at most one manifest fetch runs at a time.
MANIFEST_ID = "*manifest*"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Priority(IntEnum):
    """Task and content priority. Lower value runs first."""

    CRITICAL = 0
    NORMAL = 1
    BACKGROUND = 2

    @classmethod
    def parse(cls, value: Any) -> "Priority":
        """Parse a server-side priority ('critical', 'normal', ...) or int."""
        if isinstance(value, Priority):
            return value
        if value is None:
            return cls.NORMAL
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                raise ProtocolFailure(f"Unknown priority: {value!r}") from None
        try:
            return cls[str(value).upper()]
        except KeyError:
            raise ProtocolFailure(f"Unknown priority: {value!r}") from None


class TaskKind(str, Enum):
    FETCH_MANIFEST = "fetch_manifest"
    FETCH_ITEM = "fetch_item"
    APPLY_ITEM = "apply_item"
    PURGE_ITEM = "purge_item"

    @property
    def network_bound(self) -> bool:
        return self is not TaskKind.PURGE_ITEM


class TaskState(str, Enum):
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.SUCCEEDED, TaskState.FAILED, TaskState.DEAD_LETTERED)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ChangeAction(str, Enum):
    APPLIED = "applied"
    EVICTED = "evicted"


@dataclass
class ContentItem:
    """A unit of remotely-authored content held in the Local Store."""

    id: str
    version: int
    checksum: str
    payload_ref: Optional[str] = None
    size: int = 0
    priority: Priority = Priority.NORMAL
    ttl: Optional[float] = None  # seconds; None never expires
    last_verified: Optional[datetime] = None
    # Base version of an optimistic local edit not yet acknowledged by the server
    pending_edit_base: Optional[int] = None

    @property
    def has_pending_edit(self) -> bool:
        return self.pending_edit_base is not None

    @property
    def expires_at(self) -> Optional[datetime]:
        if not self.ttl or self.last_verified is None:
            return None
        return self.last_verified + timedelta(seconds=self.ttl)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expires = self.expires_at
        if expires is None:
            return False
        return (now or utcnow()) >= expires

    def evolve(self, **changes: Any) -> "ContentItem":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    @classmethod
    def from_row(cls, row) -> "ContentItem":
        """Create from a ``content_items`` database row."""
        last_verified = row["last_verified"]
        return cls(
            id=row["id"],
            version=row["version"],
            checksum=row["checksum"],
            payload_ref=row["payload_ref"],
            size=row["size"],
            priority=Priority(row["priority"]),
            ttl=row["ttl"],
            last_verified=datetime.fromisoformat(last_verified) if last_verified else None,
            pending_edit_base=row["pending_edit_base"],
        )


@dataclass(frozen=True)
class ManifestEntry:
    """One row of the remote content listing."""

    id: str
    version: int
    checksum: str
    size: int = 0
    priority: Priority = Priority.NORMAL
    ttl: Optional[float] = None

    @classmethod
    def from_dict(cls, content_id: str, data: Any) -> "ManifestEntry":
        """Create from a manifest mapping value.

        Raises:
            ProtocolFailure: If the entry is missing required fields
        """
        if not isinstance(data, dict):
            raise ProtocolFailure(f"Manifest entry for {content_id} is not an object")
        try:
            version = int(data["version"])
            checksum = str(data["checksum"])
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolFailure(f"Invalid manifest entry for {content_id}: {e}") from e
        ttl = data.get("ttl")
        return cls(
            id=content_id,
            version=version,
            checksum=checksum,
            size=int(data.get("size") or 0),
            priority=Priority.parse(data.get("priority")),
            ttl=float(ttl) if ttl is not None else None,
        )


@dataclass
class SyncTask:
    """A unit of work in the Sync Queue."""

    kind: TaskKind
    content_id: str
    priority: Priority = Priority.NORMAL
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: TaskState = TaskState.QUEUED
    attempts: int = 0
    next_eligible_at: datetime = field(default_factory=utcnow)
    enqueued_at: datetime = field(default_factory=utcnow)
    target_version: Optional[int] = None
    expected_checksum: Optional[str] = None
    last_error: Optional[str] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def manifest(cls, priority: Priority = Priority.NORMAL) -> "SyncTask":
        return cls(kind=TaskKind.FETCH_MANIFEST, content_id=MANIFEST_ID, priority=priority)

    @property
    def network_bound(self) -> bool:
        return self.kind.network_bound

    def to_record(self) -> dict:
        """Serialize for the Local Store queue table."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "content_id": self.content_id,
            "priority": int(self.priority),
            "state": self.state.value,
            "attempts": self.attempts,
            "next_eligible_at": self.next_eligible_at.isoformat(),
            "enqueued_at": self.enqueued_at.isoformat(),
            "target_version": self.target_version,
            "expected_checksum": self.expected_checksum,
            "last_error": self.last_error,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_record(cls, record: dict) -> "SyncTask":
        finished_at = record.get("finished_at")
        return cls(
            id=record["id"],
            kind=TaskKind(record["kind"]),
            content_id=record["content_id"],
            priority=Priority(record["priority"]),
            state=TaskState(record["state"]),
            attempts=record.get("attempts", 0),
            next_eligible_at=datetime.fromisoformat(record["next_eligible_at"]),
            enqueued_at=datetime.fromisoformat(record["enqueued_at"]),
            target_version=record.get("target_version"),
            expected_checksum=record.get("expected_checksum"),
            last_error=record.get("last_error"),
            finished_at=datetime.fromisoformat(finished_at) if finished_at else None,
        )


@dataclass(frozen=True)
class ChangeEvent:
    """Emitted for every committed or evicted content item."""

    content_id: str
    new_version: int
    action: ChangeAction

    def to_dict(self) -> dict:
        return {
            "contentId": self.content_id,
            "newVersion": self.new_version,
            "action": self.action.value,
        }


@dataclass(frozen=True)
class ErrorEvent:
    """Persistent error surfaced when a task is dead-lettered or fails hard."""

    task_id: str
    content_id: str
    kind: TaskKind
    error: str
    state: TaskState = TaskState.DEAD_LETTERED
