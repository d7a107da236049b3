"""Fixed-window request quota for on-demand callers.

Each caller gets ``requests_per_window`` analyses per window; windows are
aligned to multiples of ``window_seconds`` on the clock, so every caller's
window resets at the same instants.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

from .errors import QuotaExceeded

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaConfig:
    requests_per_window: int
    window_seconds: float = 60.0


@dataclass
class _Window:
    index: int
    used: int = 0


class QuotaLimiter:
    """Thread-safe per-caller fixed-window counter."""

    def __init__(self, config: QuotaConfig, *, clock: Callable[[], float] = time.time) -> None:
        if config.requests_per_window <= 0 or config.window_seconds <= 0:
            raise ValueError("quota requests and window must be positive")
        self.config = config
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def _window_index(self, now: float) -> int:
        return int(math.floor(now / self.config.window_seconds))

    def acquire(self, caller_id: str, cost: int = 1) -> int:
        """Charge *cost* requests to *caller_id*; return how many remain.

        Raises ``QuotaExceeded`` (nothing charged) when the window is full.
        """
        now = self._clock()
        idx = self._window_index(now)
        with self._lock:
            win = self._windows.get(caller_id)
            if win is None or win.index != idx:
                win = _Window(index=idx)
                self._windows[caller_id] = win
                self._evict(idx)
            if win.used + cost > self.config.requests_per_window:
                retry_after = (idx + 1) * self.config.window_seconds - now
                logger.warning("Quota exceeded for %s (%d/%d)", caller_id, win.used, self.config.requests_per_window)
                raise QuotaExceeded(caller_id, retry_after_s=max(0.0, retry_after))
            win.used += cost
            return self.config.requests_per_window - win.used

    def remaining(self, caller_id: str) -> int:
        idx = self._window_index(self._clock())
        with self._lock:
            win = self._windows.get(caller_id)
            used = win.used if win is not None and win.index == idx else 0
        return self.config.requests_per_window - used

    def _evict(self, idx: int) -> None:
        stale = [k for k, w in self._windows.items() if w.index < idx]
        for k in stale:
            del self._windows[k]
