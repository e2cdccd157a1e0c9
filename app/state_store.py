"""
In-Process State Stores
=======================
The only mutable state shared between concurrent webhook requests:

- CooldownStore: user_id -> last accepted check-in time, used to drop
  rapid duplicate check-ins (default window 30 seconds).
- TTLCache: small expiring key/value map (sheet-name resolution, etc.).

Both are plain instances created at startup and injected where needed, so
tests get a fresh store per case. State is per-process and is lost on
restart; running several instances means each has its own cooldown map.
"""
import asyncio
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 30.0


@dataclass(frozen=True)
class CooldownResult:
    suppressed: bool
    remaining_seconds: int = 0
    previous: Optional[float] = None


def check_cooldown(
    user_id: str,
    now: float,
    last_seen: Mapping[str, float],
    window: float = DEFAULT_COOLDOWN_SECONDS,
) -> CooldownResult:
    """
    Decide whether a check-in at `now` (epoch seconds) falls inside the
    user's cooldown window. Pure: recording the attempt is the caller's job.
    """
    previous = last_seen.get(user_id)
    if previous is None:
        return CooldownResult(suppressed=False)

    elapsed = now - previous
    if elapsed < window:
        remaining_ms = (window - elapsed) * 1000
        return CooldownResult(
            suppressed=True,
            remaining_seconds=math.ceil(round(remaining_ms) / 1000),
            previous=previous,
        )
    return CooldownResult(suppressed=False, previous=previous)


class CooldownStore:
    """
    Per-user cooldown map with atomic check-and-record.

    try_acquire() records the attempt only when it is not suppressed, so a
    blocked retry never extends the window. If the action then fails,
    release() puts the previous timestamp back.
    """

    def __init__(self, window: float = DEFAULT_COOLDOWN_SECONDS, clock: Callable[[], float] = time.time):
        self.window = float(window)
        self._clock = clock
        self._last_seen: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def try_acquire(self, user_id: str, now: Optional[float] = None) -> CooldownResult:
        async with self._lock:
            moment = self._clock() if now is None else now
            result = check_cooldown(user_id, moment, self._last_seen, self.window)
            if not result.suppressed:
                self._last_seen[user_id] = moment
            else:
                logger.info(f"Cooldown active for {user_id}: {result.remaining_seconds}s remaining")
            return result

    async def release(self, user_id: str, previous: Optional[float]) -> None:
        async with self._lock:
            if previous is None:
                self._last_seen.pop(user_id, None)
            else:
                self._last_seen[user_id] = previous

    def last_seen(self, user_id: str) -> Optional[float]:
        return self._last_seen.get(user_id)

    def clear(self) -> None:
        self._last_seen.clear()


class TTLCache:
    """Thread-safe in-memory cache with per-entry expiry."""

    def __init__(self, ttl: float = 300, max_entries: int = 256, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        # {key: {"value": Any, "expires_at": float, "created_at": float}}
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            if self._clock() >= entry["expires_at"]:
                del self._entries[key]
                logger.debug(f"Cache EXPIRED: {key}")
                return None
            logger.debug(f"Cache HIT: {key}")
            return entry["value"]

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        now = self._clock()
        with self._lock:
            if len(self._entries) >= self.max_entries:
                self._evict(now)
            self._entries[key] = {
                "value": value,
                "expires_at": now + (self.ttl if ttl is None else ttl),
                "created_at": now,
            }

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _evict(self, now: float) -> None:
        """Drop expired entries, then the oldest fifth if still full."""
        expired = [k for k, v in self._entries.items() if now >= v["expires_at"]]
        for k in expired:
            del self._entries[k]
        if len(self._entries) >= self.max_entries:
            oldest = sorted(self._entries, key=lambda k: self._entries[k]["created_at"])
            for k in oldest[: max(1, len(oldest) // 5)]:
                del self._entries[k]
