from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from common.utils import log_event

DEFAULT_TTL_SECONDS = 60.0
DEFAULT_SWEEP_INTERVAL_SECONDS = 300.0
LOGGER = logging.getLogger("gatekeeper.token_cache")


@dataclass(frozen=True)
class CacheEntry:
    token: str
    expires_at: float


class TokenCache:
    """Remembers successfully validated bearer tokens for a fixed TTL.

    Only successes are stored. Entries are dropped lazily when a lookup finds
    them expired, and eagerly by ``sweep``, which ``set`` also runs once per
    sweep interval so rotating tokens cannot grow the map without bound.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        *,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive.")
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, token: object) -> bool:
        return isinstance(token, str) and self.get(token) is not None

    def get(self, token: str) -> CacheEntry | None:
        now = self._clock()
        with self._lock:
            expires_at = self._entries.get(token)
            if expires_at is None:
                return None
            if expires_at <= now:
                del self._entries[token]
                return None
            return CacheEntry(token=token, expires_at=expires_at)

    def set(self, token: str, ttl_seconds: float | None = None) -> CacheEntry:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        now = self._clock()
        expires_at = now + ttl
        with self._lock:
            self._entries[token] = expires_at
        if now - self._last_sweep >= self.sweep_interval_seconds:
            self.sweep()
        return CacheEntry(token=token, expires_at=expires_at)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [token for token, expires_at in self._entries.items() if expires_at <= now]
            for token in expired:
                del self._entries[token]
            remaining = len(self._entries)
            self._last_sweep = now
        if expired:
            LOGGER.debug(log_event("token_cache_sweep", removed=len(expired), remaining=remaining))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


async def sweep_forever(cache: TokenCache, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        cache.sweep()
