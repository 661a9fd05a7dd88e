"""Protocol types for orchestrator dependencies.

Defines the interfaces the engine requires from its network collaborators,
so tests can substitute in-memory fakes.
"""

from typing import Optional, Protocol, runtime_checkable

from .http_client import FetchedPayload
from .models import ManifestEntry


@runtime_checkable
class ReachabilityProbe(Protocol):
    """Anything the Connectivity Monitor can probe."""

    def is_reachable(self) -> bool: ...


@runtime_checkable
class ContentClientProtocol(ReachabilityProbe, Protocol):
    """Interface for reading and writing content on the backend."""

    def fetch_manifest(self) -> dict[str, ManifestEntry]: ...

    def fetch_item(
        self, content_id: str, version: int, expected_checksum: Optional[str] = None
    ) -> FetchedPayload: ...

    def push_edit(self, content_id: str, base_version: int, payload: bytes) -> int: ...
