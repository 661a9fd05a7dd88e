"""Content API client - manifest, item download and edit upload."""

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import requests

from .. import __version__
from .cache import compute_checksum
from .errors import (
    AuthFailure,
    EditRejected,
    IntegrityFailure,
    NetworkFailure,
    ProtocolFailure,
)
from .models import ManifestEntry

__all__ = [
    "ContentClient",
    "FetchedPayload",
    "CHECKSUM_HEADER",
    "VERSION_HEADER",
    "TTL_HEADER",
]

logger = logging.getLogger(__name__)

CHECKSUM_HEADER = "X-Content-Checksum"
VERSION_HEADER = "X-Content-Version"
BASE_VERSION_HEADER = "X-Base-Version"
TTL_HEADER = "X-Content-TTL"


@dataclass
class FetchedPayload:
    """A downloaded, checksum-verified payload."""

    content_id: str
    version: int
    checksum: str
    data: bytes
    ttl: Optional[float] = None

    @property
    def size(self) -> int:
        return len(self.data)


class ContentClient:
    """HTTP client for the content backend.

    Handles:
    - Session management
    - Device authentication headers
    - Error classification (transient vs. protocol vs. auth)

    Retries are not done here: a failed call fails its SyncTask, which
    re-enters the queue with backoff.
    """

    USER_AGENT = f"TVBox-Sync/{__version__}"

    def __init__(
        self,
        api_url: str,
        token: Optional[str] = None,
        device_id: Optional[str] = None,
        timeout: float = 30,
        probe_timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        """Initialize content client.

        Args:
            api_url: Content API base URL
            token: API token for authentication
            device_id: Device ID from provisioning
            timeout: Deadline in seconds for every request
            probe_timeout: Deadline for the health probe
            session: Optional requests session (for dependency injection/testing)
        """
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.device_id = device_id
        self.timeout = timeout
        self.probe_timeout = probe_timeout
        self._session = session or requests.Session()
        self._owns_session = session is None

    def _get_headers(self) -> dict:
        """Get request headers with authentication."""
        headers = {"User-Agent": self.USER_AGENT}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if self.device_id:
            headers["X-Device-ID"] = self.device_id
        return headers

    def _send(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        """Send a request and classify failures.

        Raises:
            AuthFailure: For 401/403 responses
            NetworkFailure: For connection errors, timeouts, 429 and 5xx
            ProtocolFailure: For other non-success responses
        """
        if self._session is None:
            raise NetworkFailure("Client is closed")

        url = f"{self.api_url}/{endpoint.lstrip('/')}"
        headers = self._get_headers()
        headers.update(kwargs.pop("headers", {}))
        timeout = kwargs.pop("timeout", self.timeout)

        try:
            response = self._session.request(
                method, url, headers=headers, timeout=timeout, **kwargs
            )
        except requests.exceptions.Timeout as e:
            raise NetworkFailure(f"Request timed out: {method} {endpoint}") from e
        except requests.exceptions.ConnectionError as e:
            raise NetworkFailure(f"Cannot connect to content API: {e}") from e
        except requests.exceptions.RequestException as e:
            raise NetworkFailure(f"Request failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise AuthFailure(f"Device not authorized ({status})")
        if status == 429 or status >= 500:
            raise NetworkFailure(f"Server error: {status}")
        if status >= 400:
            detail = ""
            try:
                detail = response.json().get("message", "")
            except (ValueError, AttributeError):
                pass
            raise ProtocolFailure(
                f"API error ({status}) on {endpoint}: {detail or response.reason}", status=status
            )
        return response

    def _json(self, response: requests.Response, what: str):
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolFailure(f"Malformed {what} response: {e}") from e

    def fetch_manifest(self) -> dict[str, ManifestEntry]:
        """Fetch the remote content listing.

        Returns:
            Mapping of content id to ManifestEntry

        Raises:
            ProtocolFailure: If the listing is not a mapping of valid entries
        """
        data = self._json(self._send("GET", "manifest"), "manifest")
        if not isinstance(data, dict):
            raise ProtocolFailure("Manifest is not an object")
        manifest = {
            content_id: ManifestEntry.from_dict(content_id, entry)
            for content_id, entry in data.items()
        }
        logger.debug(f"Fetched manifest with {len(manifest)} items")
        return manifest

    def fetch_item(
        self, content_id: str, version: int, expected_checksum: Optional[str] = None
    ) -> FetchedPayload:
        """Download one item version and verify its checksum.

        Args:
            content_id: Item to download
            version: Version to request
            expected_checksum: Checksum announced by the manifest, if known

        Raises:
            IntegrityFailure: If the computed checksum differs from the
                declared header or the manifest checksum
            ProtocolFailure: If the checksum header is missing
        """
        response = self._send(
            "GET", f"items/{quote(content_id, safe='')}", params={"version": version}
        )
        declared = response.headers.get(CHECKSUM_HEADER)
        if not declared:
            raise ProtocolFailure(f"Missing {CHECKSUM_HEADER} for {content_id}")

        served_version = response.headers.get(VERSION_HEADER)
        try:
            served_version = int(served_version) if served_version else version
        except ValueError as e:
            raise ProtocolFailure(f"Invalid {VERSION_HEADER}: {served_version!r}") from e

        ttl = response.headers.get(TTL_HEADER)
        try:
            ttl = float(ttl) if ttl else None
        except ValueError as e:
            raise ProtocolFailure(f"Invalid {TTL_HEADER}: {ttl!r}") from e

        data = response.content
        actual = compute_checksum(data)
        if actual != declared.lower():
            raise IntegrityFailure(content_id, declared, actual)
        if expected_checksum and served_version == version and actual != expected_checksum:
            raise IntegrityFailure(content_id, expected_checksum, actual)

        return FetchedPayload(
            content_id=content_id,
            version=served_version,
            checksum=actual,
            data=data,
            ttl=ttl,
        )

    def push_edit(self, content_id: str, base_version: int, payload: bytes) -> int:
        """Upload a local edit made on top of ``base_version``.

        Returns:
            The version assigned by the server

        Raises:
            EditRejected: If the server's copy moved past the base version (409)
        """
        headers = {
            "Content-Type": "application/octet-stream",
            CHECKSUM_HEADER: compute_checksum(payload),
            BASE_VERSION_HEADER: str(base_version),
        }
        try:
            response = self._send(
                "PUT", f"items/{quote(content_id, safe='')}", data=payload, headers=headers
            )
        except ProtocolFailure as e:
            if e.status == 409:
                raise EditRejected(f"Edit of {content_id} rejected: {e}") from e
            raise

        data = self._json(response, "edit")
        try:
            return int(data["version"])
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolFailure(f"Edit acknowledgement without version: {data!r}") from e

    def fetch_device_config(self) -> dict:
        """Fetch server-pushed tuning for this device.

        Raises:
            ProtocolFailure: If the response is not an object
        """
        data = self._json(self._send("GET", "config"), "config")
        if not isinstance(data, dict):
            raise ProtocolFailure("Device config is not an object")
        return data

    def is_reachable(self) -> bool:
        """Check if the content API answers its health endpoint."""
        try:
            self._send("GET", "health", timeout=self.probe_timeout)
            return True
        except (NetworkFailure, ProtocolFailure, AuthFailure):
            return False

    def close(self) -> None:
        """Close the session if we own it."""
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None

    def __enter__(self) -> "ContentClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
