"""Backoff policy shared by the Sync Queue and the Update Listener."""

import random
import time
from dataclasses import dataclass
from typing import Optional


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 6
    base_delay: float = 2.0  # seconds
    max_delay: float = 300.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True  # Spread retries of many boxes hitting one backend
    jitter_low: float = 0.8
    jitter_high: float = 1.2


def calculate_delay(attempt: int, config: Optional[RetryConfig] = None) -> float:
    """Calculate delay for a retry attempt with exponential backoff.

    delay = base_delay * exponential_base ** attempt * jitter, capped at
    max_delay. The cap is applied after jitter, so for a base of 2 and the
    default jitter band the delay never decreases as attempts grow.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    if config is None:
        config = RetryConfig()

    try:
        delay = config.base_delay * (config.exponential_base ** attempt)
    except OverflowError:
        return config.max_delay

    if config.jitter:
        delay *= random.uniform(config.jitter_low, config.jitter_high)

    return max(0.0, min(delay, config.max_delay))


class NetworkReachabilityCache:
    """Caches network reachability status to avoid excessive checks."""

    def __init__(self, ttl_seconds: float = 30.0):
        """Initialize cache.

        Args:
            ttl_seconds: How long to cache reachability status
        """
        self.ttl = ttl_seconds
        self._cache: dict[str, tuple[bool, float]] = {}

    def get(self, key: str) -> Optional[bool]:
        """Get cached reachability status, or None if expired/missing."""
        if key not in self._cache:
            return None

        status, timestamp = self._cache[key]
        if time.monotonic() - timestamp > self.ttl:
            del self._cache[key]
            return None

        return status

    def set(self, key: str, status: bool) -> None:
        self._cache[key] = (status, time.monotonic())

    def invalidate(self, key: Optional[str] = None) -> None:
        """Invalidate cache.

        Args:
            key: Specific key to invalidate, or None for all
        """
        if key:
            self._cache.pop(key, None)
        else:
            self._cache.clear()
