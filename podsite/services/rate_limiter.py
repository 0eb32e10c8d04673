"""In-process rate limiting for public endpoints.

This is a fixed-window counter, not a sliding window or token bucket. A client
can get up to twice the limit through by bursting at the end of one window and
the start of the next. Counts are kept per process: with several server
instances the effective limit is ``max_requests * instances``. Swap in a
shared counter behind the same ``admit``/``check`` interface if a global limit
is needed.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from ..logging import get_logger

logger = get_logger(__name__)

# Sweep expired entries once this many keys are tracked
DEFAULT_MAX_KEYS = 10_000

@dataclass
class RateLimitEntry:
    """Request count for one key within its current window."""
    count: int
    reset_at: float

class RateLimiter:
    """Fixed-window request counter keyed by client identity."""

    def __init__(self,
                 max_requests: int = 10,
                 window_ms: int = 60_000,
                 clock: Callable[[], float] = time.monotonic,
                 max_keys: int = DEFAULT_MAX_KEYS):
        """
        Initialize the limiter.

        Args:
            max_requests: Default budget per window for ``admit``.
            window_ms: Default window length in milliseconds for ``admit``.
            clock: Returns the current time in seconds.
            max_keys: Tracked-key count above which expired entries are swept.
        """
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.clock = clock
        self.max_keys = max_keys
        self.entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self.entries)

    def admit(self, key: str) -> bool:
        """Check a key against the limiter's own budget."""
        return self.check(key, self.max_requests, self.window_ms)

    def check(self, key: str, max_requests: int, window_ms: int) -> bool:
        """
        Record a request for ``key`` and decide whether to allow it.

        Returns:
            bool: True if the request is within the limit, False if it should
                be rejected. Rejections do not count against the window.
        """
        with self._lock:
            now = self.clock()

            if len(self.entries) > self.max_keys:
                self._sweep(now)

            entry = self.entries.get(key)
            if entry is None or now >= entry.reset_at:
                self.entries[key] = RateLimitEntry(count=1, reset_at=now + window_ms / 1000.0)
                return True

            if entry.count >= max_requests:
                logger.debug("rate_limit_exceeded", key=key, count=entry.count)
                return False

            entry.count += 1
            return True

    def _sweep(self, now: float) -> None:
        expired = [key for key, entry in self.entries.items() if now >= entry.reset_at]
        for key in expired:
            del self.entries[key]
        logger.info("rate_limit_sweep", removed=len(expired), remaining=len(self.entries))

    def reset(self) -> None:
        """Forget every tracked key."""
        with self._lock:
            self.entries.clear()

_default_limiter: Optional[RateLimiter] = None
_default_lock = threading.Lock()

def get_default_limiter() -> RateLimiter:
    """The process-wide limiter used by ``check_rate_limit``."""
    global _default_limiter
    with _default_lock:
        if _default_limiter is None:
            _default_limiter = RateLimiter()
        return _default_limiter

def reset_default_limiter(limiter: Optional[RateLimiter] = None) -> None:
    """Replace (or clear) the process-wide limiter."""
    global _default_limiter
    with _default_lock:
        _default_limiter = limiter

def check_rate_limit(key: str, max_requests: int, window_ms: int) -> bool:
    """Check a key against the process-wide limiter."""
    return get_default_limiter().check(key, max_requests, window_ms)

def get_client_ip(headers: Mapping[str, str], fallback: str = "unknown") -> str:
    """Best-effort client address from proxy headers."""
    forwarded = headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return fallback
