"""
Per-identity sliding-window rate limiter.

Each identity owns a deque of request instants covering the trailing hour.
`admit` prunes, checks the per-minute then per-hour ceiling, and on success
records the instant as a reservation, all under the identity's lock, so two
simultaneous requests can never both take the last slot. `release` hands a
reservation back when the request could not be served (remote generation
failed), so upstream outages do not eat into a user's quota.
"""
import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional

from backend.services.runtime import log_event

logger = logging.getLogger("rate_limiter")

MINUTE_S = 60.0
HOUR_S = 3600.0


@dataclass(frozen=True)
class RateDecision:
    allowed:             bool
    retry_after_seconds: Optional[int] = None
    scope:               Optional[str] = None     # minute | hour when denied
    stamp:               Optional[float] = None   # reservation handle when allowed


class _Window:
    __slots__ = ("lock", "stamps", "dead")

    def __init__(self):
        self.lock = threading.Lock()
        self.stamps: Deque[float] = deque()
        self.dead = False


class RateLimiter:
    """Thread-safe per-identity admission control.

    Windows left empty after the hour horizon are dropped by `sweep`, which
    `admit` runs every `sweep_interval_s`, so the map tracks active identities
    only.
    """

    def __init__(
        self,
        per_minute: int = 20,
        per_hour: int = 200,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval_s: float = 300.0,
    ):
        if per_minute < 1 or per_hour < 1:
            raise ValueError("rate ceilings must be positive")
        self.per_minute = int(per_minute)
        self.per_hour = int(per_hour)
        self.sweep_interval_s = float(sweep_interval_s)
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    @staticmethod
    def _key(identity: Any) -> str:
        return str(identity)

    def _window(self, identity: Any) -> _Window:
        key = self._key(identity)
        with self._lock:
            win = self._windows.get(key)
            if win is None:
                win = self._windows[key] = _Window()
            return win

    @staticmethod
    def _prune(stamps: Deque[float], now: float) -> None:
        horizon = now - HOUR_S
        while stamps and stamps[0] <= horizon:
            stamps.popleft()

    @staticmethod
    def _retry_after(oldest: float, span: float, now: float) -> int:
        return max(1, math.ceil(oldest + span - now))

    def sweep(self) -> int:
        """Drop identities with no requests inside the hour. Returns how many went."""
        removed = 0
        with self._lock:
            now = self._clock()
            self._last_sweep = now
            for key, win in list(self._windows.items()):
                with win.lock:
                    self._prune(win.stamps, now)
                    if win.stamps:
                        continue
                    win.dead = True
                del self._windows[key]
                removed += 1
        if removed:
            log_event(logger, logging.DEBUG, "rate_windows_swept", removed=removed, active=len(self._windows))
        return removed

    def admit(self, identity: Any) -> RateDecision:
        if self._clock() - self._last_sweep >= self.sweep_interval_s:
            self.sweep()

        while True:
            win = self._window(identity)
            with win.lock:
                if win.dead:
                    continue  # swept between lookup and lock; fetch a fresh window
                now = self._clock()
                stamps = win.stamps
                self._prune(stamps, now)

                minute_floor = now - MINUTE_S
                in_minute = [t for t in stamps if t > minute_floor]
                if len(in_minute) >= self.per_minute:
                    decision = RateDecision(False, self._retry_after(in_minute[0], MINUTE_S, now), "minute")
                elif len(stamps) >= self.per_hour:
                    decision = RateDecision(False, self._retry_after(stamps[0], HOUR_S, now), "hour")
                else:
                    stamps.append(now)
                    return RateDecision(True, stamp=now)
            break

        log_event(
            logger, logging.INFO, "rate_limited",
            scope=decision.scope, retry_after_s=decision.retry_after_seconds,
        )
        return decision

    def release(self, identity: Any, stamp: Optional[float]) -> bool:
        """Remove a reservation made by `admit`. Returns False if it was already gone."""
        if stamp is None:
            return False
        with self._lock:
            win = self._windows.get(self._key(identity))
        if win is None:
            return False
        with win.lock:
            try:
                win.stamps.remove(stamp)
            except ValueError:
                return False
        return True

    def counts(self, identity: Any) -> Dict[str, int]:
        """Current minute/hour usage for an identity."""
        win = self._window(identity)
        with win.lock:
            now = self._clock()
            self._prune(win.stamps, now)
            minute_floor = now - MINUTE_S
            return {
                "minute": sum(1 for t in win.stamps if t > minute_floor),
                "hour": len(win.stamps),
            }

    def reset(self, identity: Any = None) -> None:
        with self._lock:
            if identity is None:
                self._windows.clear()
            else:
                self._windows.pop(self._key(identity), None)
