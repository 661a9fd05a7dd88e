"""Update Listener - real-time invalidation channel.

Keeps a WebSocket subscription open and turns invalidation notices into
critical fetch-item tasks. Missed notices are not replayed: every successful
(re)connect enqueues a full manifest sync instead.
"""

import json
import logging
import threading
from typing import Any, Callable, Optional

from websockets.exceptions import WebSocketException
from websockets.sync.client import connect as ws_connect

from .connectivity import ConnectionStatus, ConnectivityMonitor
from .errors import ProtocolFailure, SyncError
from .models import ConnectionState, Priority, SyncTask, TaskKind
from .queue import SyncQueue
from .retry import RetryConfig, calculate_delay
from .store import LocalStore

logger = logging.getLogger(__name__)


def parse_notice(raw: Any) -> Optional[tuple[str, int]]:
    """Parse an inbound channel message.

    Returns:
        (content_id, version) for invalidation notices, None for keepalives

    Raises:
        ProtocolFailure: If the message is malformed
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolFailure(f"Channel message is not UTF-8: {e}") from e
    try:
        message = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolFailure(f"Channel message is not JSON: {e}") from e
    if not isinstance(message, dict):
        raise ProtocolFailure("Channel message is not an object")

    if message.get("type") in ("ping", "pong", "subscribed"):
        return None

    content_id = message.get("contentId")
    version = message.get("version")
    if not isinstance(content_id, str) or not content_id:
        raise ProtocolFailure(f"Invalidation without contentId: {message!r}")
    if isinstance(version, bool) or not isinstance(version, int):
        raise ProtocolFailure(f"Invalidation for {content_id} without integer version")
    return content_id, version


class UpdateListener:
    """Maintains the backend subscription in a background thread."""

    def __init__(
        self,
        url: str,
        store: LocalStore,
        queue: SyncQueue,
        status: ConnectionStatus,
        monitor: Optional[ConnectivityMonitor] = None,
        device_id: Optional[str] = None,
        token: Optional[str] = None,
        retry_config: Optional[RetryConfig] = None,
        open_timeout: float = 10.0,
        recv_timeout: float = 1.0,
        connect: Callable[..., Any] = ws_connect,
    ):
        """Initialize the listener.

        Args:
            url: WebSocket URL of the real-time channel
            store: Local Store consulted for known versions
            queue: Sync Queue receiving fetch tasks
            status: ConnectionStatus updated on connect/disconnect
            monitor: Asked to re-probe when the channel drops
            device_id: Identifies this box in the subscribe message
            token: API token sent as a bearer header
            retry_config: Reconnect backoff (same policy as task retries)
            open_timeout: Deadline for the opening handshake
            recv_timeout: Poll interval for checking the stop flag
            connect: WebSocket connect function (injectable for tests)
        """
        self.url = url
        self.store = store
        self.queue = queue
        self.status = status
        self.monitor = monitor
        self.device_id = device_id
        self.token = token
        self.retry_config = retry_config or RetryConfig()
        self.open_timeout = open_timeout
        self.recv_timeout = recv_timeout
        self._connect = connect
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._ws = None
        self._ws_lock = threading.Lock()
        self._established = False
        self.status.subscribe(self._on_state_change)

    def handle_message(self, raw: Any) -> Optional[SyncTask]:
        """Enqueue a fetch for a notice newer than the local copy.

        Duplicate and out-of-order notices are ignored because the decision
        compares version numbers, not arrival order.

        Returns:
            The queued task, or None if the notice was ignored

        Raises:
            ProtocolFailure: If the message is malformed
        """
        notice = parse_notice(raw)
        if notice is None:
            return None
        content_id, version = notice

        local = self.store.find(content_id)
        if local is not None and version <= local.version:
            logger.debug(
                f"Ignoring notice for {content_id} v{version} (have v{local.version})"
            )
            return None

        logger.info(f"Invalidation: {content_id} v{version}")
        return self.queue.enqueue(
            SyncTask(
                kind=TaskKind.FETCH_ITEM,
                content_id=content_id,
                priority=Priority.CRITICAL,
                target_version=version,
            )
        )

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="update-listener", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._close_socket()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run(self) -> None:
        """Subscribe, listen, and reconnect with backoff until stopped."""
        attempt = 0
        while not self._stop.is_set():
            self._established = False
            try:
                self._session()
            except (OSError, TimeoutError, WebSocketException) as e:
                logger.warning(f"Update channel error: {e}")
            except SyncError as e:
                logger.warning(f"Update channel dropped: {e}")
            finally:
                self._close_socket()

            if self.status.state == ConnectionState.CONNECTING:
                self.status.set(ConnectionState.DISCONNECTED)
            if self._stop.is_set():
                break
            if self.monitor:
                self.monitor.request_check()

            if self._established:
                attempt = 0
            delay = calculate_delay(attempt, self.retry_config)
            attempt += 1
            logger.info(f"Reconnecting update channel in {delay:.1f}s")
            self._stop.wait(delay)

    def _session(self) -> None:
        """Run one connection until it drops or the listener stops."""
        if self.status.state == ConnectionState.DISCONNECTED:
            self.status.set(ConnectionState.CONNECTING)

        headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
        ws = self._connect(self.url, additional_headers=headers, open_timeout=self.open_timeout)
        with self._ws_lock:
            self._ws = ws
        if self._stop.is_set():
            return

        ws.send(json.dumps({"type": "subscribe", "deviceId": self.device_id}))
        self._established = True
        self.status.set(ConnectionState.CONNECTED)
        logger.info(f"Subscribed to update channel {self.url}")

        # Reconcile anything missed while the channel was down
        self.queue.enqueue(SyncTask.manifest(Priority.NORMAL))

        while not self._stop.is_set():
            try:
                raw = ws.recv(timeout=self.recv_timeout)
            except TimeoutError:
                continue
            logger.debug(f"Channel message: {raw!r}")
            self.handle_message(raw)

    def _close_socket(self) -> None:
        with self._ws_lock:
            ws, self._ws = self._ws, None
        if ws is not None:
            try:
                ws.close()
            except (OSError, WebSocketException) as e:
                logger.debug(f"Error closing update channel: {e}")

    def _on_state_change(self, previous: ConnectionState, current: ConnectionState) -> None:
        if current == ConnectionState.DISCONNECTED:
            self._close_socket()
