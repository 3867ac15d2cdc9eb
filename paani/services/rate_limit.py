# paani/services/rate_limit.py
# In-memory per-key rate limiting for request creation (absorbs double taps in the UI).

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from paani.core.errors import RateLimitExceeded

log = logging.getLogger(__name__)


@dataclass
class _Window:
    count: int
    reset_at: float


class WindowRateLimiter:
    """
    At most `max_requests` hits per key inside `window_seconds`. Windows are fixed:
    one opens at the first hit after the previous one expired.
    State lives only for the process lifetime; call evict_expired() periodically.
    """

    def __init__(
        self,
        max_requests: int = 1,
        window_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def __len__(self) -> int:
        return len(self._windows)

    def hit(self, key: str) -> None:
        """Count one attempt for `key`; raises RateLimitExceeded when over the limit."""
        now = self._clock()
        w = self._windows.get(key)
        if w is None or now >= w.reset_at:
            self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
            return
        if w.count >= self.max_requests:
            retry_after = max(0.0, w.reset_at - now)
            log.info('rate_limited key="%s" retry_after=%.1f', key, retry_after)
            raise RateLimitExceeded(key, retry_after)
        w.count += 1

    def reset(self, key: str) -> None:
        self._windows.pop(key, None)

    def evict_expired(self) -> int:
        now = self._clock()
        expired = [k for k, w in self._windows.items() if now >= w.reset_at]
        for k in expired:
            del self._windows[k]
        if expired:
            log.debug("rate_limit evicted=%s", len(expired))
        return len(expired)
