"""Connectivity Monitor - backend reachability and the ConnectionState value.

``ConnectionStatus`` is the single, explicitly passed holder of the
process-wide ConnectionState. Only the monitor and the Update Listener
write to it; the orchestrator reads it and subscribes to transitions.
"""

import logging
import threading
from typing import Callable, Optional

from .models import ConnectionState
from .retry import NetworkReachabilityCache

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectionState, ConnectionState], None]


class ConnectionStatus:
    """Thread-safe holder of the current ConnectionState."""

    def __init__(self, initial: ConnectionState = ConnectionState.DISCONNECTED):
        self._state = initial
        self._cond = threading.Condition()
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> ConnectionState:
        with self._cond:
            return self._state

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def set(self, state: ConnectionState) -> bool:
        """Transition to ``state``.

        Returns:
            True if the state changed
        """
        with self._cond:
            previous = self._state
            if previous == state:
                return False
            self._state = state
            self._cond.notify_all()
            listeners = list(self._listeners)

        logger.info(f"Connection state: {previous.value} -> {state.value}")
        for listener in listeners:
            try:
                listener(previous, state)
            except Exception:
                logger.exception("Connection state listener failed")
        return True

    def subscribe(self, listener: StateListener) -> None:
        """Call ``listener(previous, current)`` on every transition."""
        with self._cond:
            self._listeners.append(listener)

    def wait_for(
        self, predicate: Callable[[ConnectionState], bool], timeout: Optional[float] = None
    ) -> bool:
        """Block until ``predicate(state)`` holds or ``timeout`` elapses."""
        with self._cond:
            return self._cond.wait_for(lambda: predicate(self._state), timeout)


class ConnectivityMonitor:
    """Background prober that drives ConnectionStatus from API reachability.

    A successful probe moves the state to Connected; a failed one to
    Disconnected. ``check_now`` lets the Update Listener request an
    immediate probe when its channel drops.
    """

    CACHE_KEY = "content_api"

    def __init__(
        self,
        client,
        status: ConnectionStatus,
        check_interval: float = 30.0,
        reachability_ttl: float = 5.0,
    ):
        """Initialize the monitor.

        Args:
            client: Object with ``is_reachable() -> bool``
            status: ConnectionStatus to drive
            check_interval: Seconds between background probes
            reachability_ttl: Seconds a probe result is reused
        """
        self.client = client
        self.status = status
        self.check_interval = check_interval
        self._cache = NetworkReachabilityCache(ttl_seconds=reachability_ttl)
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def check_now(self, use_cache: bool = False) -> bool:
        """Probe the backend and update ConnectionStatus.

        Returns:
            True if the backend is reachable
        """
        reachable = self._cache.get(self.CACHE_KEY) if use_cache else None
        if reachable is None:
            reachable = bool(self.client.is_reachable())
            self._cache.set(self.CACHE_KEY, reachable)

        if reachable:
            self.status.set(ConnectionState.CONNECTED)
        else:
            self.status.set(ConnectionState.DISCONNECTED)
        return reachable

    def request_check(self) -> None:
        """Ask the background thread to probe without waiting for the interval."""
        self._cache.invalidate(self.CACHE_KEY)
        self._wake.set()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="connectivity-monitor", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self) -> None:
        logger.debug("Connectivity monitor started")
        while not self._stop.is_set():
            try:
                self.check_now()
            except Exception:
                logger.exception("Connectivity probe failed")
                self.status.set(ConnectionState.DISCONNECTED)
            self._wake.wait(self.check_interval)
            self._wake.clear()
        logger.debug("Connectivity monitor stopped")
