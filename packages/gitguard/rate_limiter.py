"""
Rate Limiter - sliding-window counters per (category, scope)

An operation is admitted when fewer than `ceiling` admitted events fall
inside (now - window, now] for its (category, scope). An event exactly one
window old has expired, which makes retry_at an admissible instant. Eviction is lazy:
each check first drops timestamps older than the window, so memory is
bounded by ceiling x active keys, never by elapsed time.

A denial never waits. It reports when the oldest in-window entry expires,
which is the earliest moment a retry can be admitted.
"""

from bisect import insort
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Deque, Dict, Mapping, Optional, Tuple
import logging

from .locks import KeyedLocks

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"


@dataclass
class RateWindow:
    """Admitted-event timestamps for one (category, scope)."""
    category: str
    scope: str
    events: Deque[datetime] = field(default_factory=deque)

    def evict(self, now: datetime, window: timedelta):
        """Drop timestamps that are a full window old or older."""
        cutoff = now - window
        while self.events and self.events[0] <= cutoff:
            self.events.popleft()

    def add(self, at: datetime):
        """Record an admitted event, keeping timestamps in order."""
        insort(self.events, at)


@dataclass(frozen=True)
class RateCheck:
    """Result of one admission check."""
    category: str
    scope: str
    admitted: bool
    count: int  # in-window events before this check was recorded
    ceiling: Optional[int]
    retry_at: Optional[datetime] = None

    @property
    def limit_id(self) -> str:
        return f"rate_limit.{self.category}"

    def retry_after(self, now: datetime) -> float:
        """Seconds until a retry can be admitted (0.0 when admitted)."""
        if self.admitted or self.retry_at is None:
            return 0.0
        return max((self.retry_at - now).total_seconds(), 0.0)


class RateLimiter:
    """
    Keyed store of RateWindows.

    Owned by a Guard instance, so two Guards never share counters.
    Categories without a configured ceiling are always admitted.
    """

    def __init__(self, ceilings: Mapping[str, int], window: timedelta = timedelta(seconds=60)):
        """
        Initialize rate limiter.

        Args:
            ceilings: Max admitted events per window, by category
            window: Sliding window length (default: 60 seconds)
        """
        self.ceilings = dict(ceilings)
        self.window = window
        self._windows: Dict[Tuple[str, str], RateWindow] = {}
        self._locks = KeyedLocks()

    def admit(self, category: str, scope: str, now: datetime) -> RateCheck:
        """Check (without recording) whether one more event fits the window."""
        with self._locks.hold((category, scope)):
            return self._check(category, scope, now)

    def record(self, category: str, scope: str, now: datetime):
        """Record an admitted event. Call only after admit() said yes."""
        with self._locks.hold((category, scope)):
            self._window(category, scope).add(now)

    def acquire(self, category: str, scope: str, now: datetime) -> RateCheck:
        """admit() and, if admitted, record() as one step under the key's lock."""
        with self._locks.hold((category, scope)):
            check = self._check(category, scope, now)
            if check.admitted:
                self._window(category, scope).add(now)
            else:
                logger.warning(
                    f"Rate limit hit for {category}/{scope}: "
                    f"{check.count}/{check.ceiling} in window, retry at {check.retry_at.isoformat()}"
                )
            return check

    def count(self, category: str, scope: str, now: datetime) -> int:
        """In-window event count for a key."""
        with self._locks.hold((category, scope)):
            window = self._windows.get((category, scope))
            if window is None:
                return 0
            window.evict(now, self.window)
            return len(window.events)

    def _window(self, category: str, scope: str) -> RateWindow:
        key = (category, scope)
        window = self._windows.get(key)
        if window is None:
            window = RateWindow(category=category, scope=scope)
            self._windows[key] = window
        return window

    def _check(self, category: str, scope: str, now: datetime) -> RateCheck:
        ceiling = self.ceilings.get(category)
        window = self._window(category, scope)
        window.evict(now, self.window)
        count = len(window.events)

        if ceiling is None or count < ceiling:
            return RateCheck(category=category, scope=scope, admitted=True, count=count, ceiling=ceiling)

        return RateCheck(
            category=category,
            scope=scope,
            admitted=False,
            count=count,
            ceiling=ceiling,
            retry_at=window.events[0] + self.window,
        )
