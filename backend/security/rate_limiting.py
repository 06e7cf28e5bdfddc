"""
Rate Limiting for CodeDrop
Fixed-window counter per actor for mutating deployment operations
"""

import logging
import math
import threading
import time
from typing import Dict, Tuple

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    In-memory fixed-window rate limiter.

    Each key gets max_requests per window_seconds; the window starts with
    the key's first request and the count resets once it has elapsed.
    State is per process, so several workers each enforce their own limit.
    """
    def __init__(self, max_requests: int = 10, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clients: Dict[str, Dict[str, float]] = {}  # key -> {"count", "window_start"}
        self._lock = threading.Lock()
        self._last_cleanup = time.time()

    def configure(self, max_requests: int, window_seconds: int):
        """Apply new limits; running windows keep their counts"""
        with self._lock:
            self.max_requests = max_requests
            self.window_seconds = window_seconds

    def _cleanup_old_entries(self, current_time: float):
        """Drop expired windows to prevent memory leaks"""
        expired = [key for key, data in self.clients.items()
                   if current_time - data["window_start"] >= self.window_seconds]
        for key in expired:
            del self.clients[key]

    def is_allowed(self, key: str) -> Tuple[bool, int]:
        """
        Count one request for key.

        Returns:
            (allowed, retry_after) - retry_after is the number of seconds
            until the window resets, 0 when allowed
        """
        current_time = time.time()

        with self._lock:
            # Cleanup expired windows periodically (every 5 minutes)
            if current_time - self._last_cleanup >= 300:
                self._cleanup_old_entries(current_time)
                self._last_cleanup = current_time

            data = self.clients.get(key)
            if data is None or current_time - data["window_start"] >= self.window_seconds:
                data = {"count": 0, "window_start": current_time}
                self.clients[key] = data

            if data["count"] >= self.max_requests:
                retry_after = max(1, math.ceil(data["window_start"] + self.window_seconds - current_time))
                logger.warning(f"Rate limit exceeded for {key}: {data['count']} requests in window")
                return False, retry_after

            data["count"] += 1
            return True, 0

    def reset(self, key: str = None):
        with self._lock:
            if key is None:
                self.clients.clear()
            else:
                self.clients.pop(key, None)

    def get_stats(self) -> dict:
        """Get rate limiter statistics"""
        with self._lock:
            return {
                "active_clients": len(self.clients),
                "max_requests": self.max_requests,
                "window_seconds": self.window_seconds,
            }
