"""Sync module - keeps the on-device content store in step with the backend."""

from .cache import CacheEntry, CacheManager, compute_checksum
from .conflict import Decision, Resolution, resolve
from .connectivity import ConnectionStatus, ConnectivityMonitor
from .events import ChangeFeed
from .http_client import ContentClient, FetchedPayload
from .listener import UpdateListener
from .models import (
    ChangeAction,
    ChangeEvent,
    ConnectionState,
    ContentItem,
    ErrorEvent,
    ManifestEntry,
    Priority,
    SyncTask,
    TaskKind,
    TaskState,
)
from .orchestrator import SyncOrchestrator, SyncStats
from .protocols import ContentClientProtocol, ReachabilityProbe
from .queue import SyncQueue
from .retry import RetryConfig, calculate_delay
from .store import LocalStore

__all__ = [
    "CacheEntry",
    "CacheManager",
    "compute_checksum",
    "Decision",
    "Resolution",
    "resolve",
    "ConnectionStatus",
    "ConnectivityMonitor",
    "ChangeFeed",
    "ContentClient",
    "FetchedPayload",
    "UpdateListener",
    "ChangeAction",
    "ChangeEvent",
    "ConnectionState",
    "ContentItem",
    "ErrorEvent",
    "ManifestEntry",
    "Priority",
    "SyncTask",
    "TaskKind",
    "TaskState",
    "SyncOrchestrator",
    "SyncStats",
    "ContentClientProtocol",
    "ReachabilityProbe",
    "SyncQueue",
    "RetryConfig",
    "calculate_delay",
    "LocalStore",
]
