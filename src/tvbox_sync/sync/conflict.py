"""Conflict Resolver - decides between the local and remote version of an item.

Resolution is keyed by version number, never wall-clock time, so clock skew
between the box and the backend cannot flip a decision. Payloads are opaque;
no field-level merge is attempted.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    KEEP_LOCAL = "keep_local"
    TAKE_REMOTE = "take_remote"
    # Reserved for structured config with field-level timestamps; never returned
    MERGE = "merge"


class Versioned(Protocol):
    id: str
    version: int
    checksum: str


@dataclass(frozen=True)
class Resolution:
    decision: Decision
    integrity_warning: bool = False
    reason: str = ""


def resolve(local: Optional[Versioned], remote: Versioned) -> Resolution:
    """Compare the locally committed item against a remote candidate.

    Rules, first match wins:
      1. Nothing local: take remote.
      2. Local has an unacknowledged edit based on version B and the remote
         has not advanced past B: keep local until the next sync confirms.
      3. Remote version is newer: take remote.
      4. Same version, different checksum: take remote and flag integrity.
      5. Otherwise (same content, or remote is older): keep local.
    """
    if local is None:
        return Resolution(Decision.TAKE_REMOTE, reason="not present locally")

    pending_base = getattr(local, "pending_edit_base", None)
    if pending_base is not None and remote.version <= pending_base:
        return Resolution(Decision.KEEP_LOCAL, reason="local edit awaiting acknowledgement")

    if remote.version > local.version:
        return Resolution(Decision.TAKE_REMOTE, reason="remote version is newer")

    if remote.version == local.version and remote.checksum != local.checksum:
        logger.warning(
            f"Checksum divergence for {remote.id} at v{remote.version}: "
            f"local {local.checksum[:12]} != remote {remote.checksum[:12]}"
        )
        return Resolution(
            Decision.TAKE_REMOTE,
            integrity_warning=True,
            reason="same version with different checksum",
        )

    if remote.version == local.version:
        return Resolution(Decision.KEEP_LOCAL, reason="already up to date")
    return Resolution(Decision.KEEP_LOCAL, reason="remote version is older")
