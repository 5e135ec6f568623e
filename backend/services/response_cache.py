"""
Short-TTL response cache: (identity, normalized prompt) -> validated query.

Lookups re-check age, so an entry is never served after its TTL even when the
sweep has not run yet. The sweep is a daemon thread owned by the cache and
driven through start()/stop().
"""
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from backend.services.models import GeneratedQuery
from backend.services.runtime import log_event

logger = logging.getLogger("response_cache")

_WHITESPACE = re.compile(r"\s+")

CacheKey = Tuple[str, str]


def normalize_prompt(prompt: str) -> str:
    return _WHITESPACE.sub(" ", (prompt or "").lower()).strip()


@dataclass(frozen=True)
class CacheEntry:
    query:      GeneratedQuery
    created_at: float


class ResponseCache:
    """Thread-safe TTL cache with a periodic background sweep."""

    def __init__(
        self,
        ttl_seconds: float = 600,
        sweep_interval_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if sweep_interval_seconds <= 0 or sweep_interval_seconds > ttl_seconds:
            raise ValueError("sweep interval must be positive and no longer than the TTL")
        self.ttl = float(ttl_seconds)
        self.sweep_interval = float(sweep_interval_seconds)
        self._clock = clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @staticmethod
    def make_key(identity: Any, prompt: str) -> CacheKey:
        return str(identity), normalize_prompt(prompt)

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at >= self.ttl

    def get(self, identity: Any, prompt: str) -> Optional[GeneratedQuery]:
        key = self.make_key(identity, prompt)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._expired(entry, self._clock()):
                del self._entries[key]
                return None
            return entry.query

    def put(self, identity: Any, prompt: str, query: GeneratedQuery) -> None:
        key = self.make_key(identity, prompt)
        entry = CacheEntry(query=query, created_at=self._clock())
        with self._lock:
            self._entries[key] = entry

    def sweep(self) -> int:
        """Delete every expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, v in self._entries.items() if self._expired(v, now)]
            for k in expired:
                del self._entries[k]
        if expired:
            log_event(logger, logging.DEBUG, "cache_sweep", removed=len(expired), remaining=len(self))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # -- background sweep lifecycle -------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("cache_sweep_failed")

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name="response-cache-sweep", daemon=True)
            self._thread.start()
        logger.info("cache sweep started (ttl=%ss, interval=%ss)", self.ttl, self.sweep_interval)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
            self._stop.set()
        if thread is not None:
            thread.join(timeout)
            logger.info("cache sweep stopped")
