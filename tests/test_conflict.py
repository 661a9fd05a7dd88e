"""Tests for the Conflict Resolver."""

from tvbox_sync.sync.conflict import Decision, resolve
from tvbox_sync.sync.models import ContentItem, ManifestEntry


def local(version, checksum="aaa", pending_edit_base=None):
    return ContentItem(
        id="promo", version=version, checksum=checksum, pending_edit_base=pending_edit_base
    )


def remote(version, checksum="aaa"):
    return ManifestEntry(id="promo", version=version, checksum=checksum)


class TestResolve:
    """Tests for version-keyed resolution."""

    def test_nothing_local_takes_remote(self):
        assert resolve(None, remote(1)).decision == Decision.TAKE_REMOTE

    def test_newer_remote_wins(self):
        result = resolve(local(3), remote(4, "bbb"))

        assert result.decision == Decision.TAKE_REMOTE
        assert result.integrity_warning is False

    def test_older_remote_keeps_local(self):
        assert resolve(local(5), remote(4, "bbb")).decision == Decision.KEEP_LOCAL

    def test_same_version_same_checksum_keeps_local(self):
        result = resolve(local(5), remote(5))

        assert result.decision == Decision.KEEP_LOCAL
        assert result.integrity_warning is False

    def test_same_version_different_checksum_flags_integrity(self):
        """Test that divergent content at one version takes the remote copy."""
        result = resolve(local(5, "aaa"), remote(5, "bbb"))

        assert result.decision == Decision.TAKE_REMOTE
        assert result.integrity_warning is True

    def test_pending_edit_protected_until_server_moves_past_base(self):
        """Test that an unacknowledged edit survives notices at or below its base."""
        edited = local(5, "edited", pending_edit_base=5)

        assert resolve(edited, remote(5, "original")).decision == Decision.KEEP_LOCAL
        assert resolve(edited, remote(4, "older")).decision == Decision.KEEP_LOCAL
        assert resolve(edited, remote(6, "newer")).decision == Decision.TAKE_REMOTE

    def test_merge_never_returned(self):
        cases = [
            (None, remote(1)),
            (local(1), remote(2)),
            (local(2), remote(1)),
            (local(2, "x"), remote(2, "y")),
            (local(2, pending_edit_base=2), remote(2, "y")),
        ]
        for loc, rem in cases:
            assert resolve(loc, rem).decision != Decision.MERGE

    def test_decision_ignores_argument_identity(self):
        """Test that the decision depends only on versions and checksums."""
        first = resolve(local(3), remote(4, "bbb"))
        second = resolve(local(3), remote(4, "bbb"))

        assert first == second
