"""Process-local result cache and single-flight request deduplication."""
import asyncio
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from listing_search.service_interfaces import CacheServiceInterface

# Configure logging
logger = logging.getLogger(__name__)

T = TypeVar("T")


class ResultCache(CacheServiceInterface):
    """In-memory TTL cache with a size bound.

    When full, the oldest inserted entry is evicted first. Failures inside the
    cache are logged and reported as a miss; callers never see cache errors.
    """

    def __init__(
        self,
        default_ttl: float = 60.0,
        max_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the cache.

        Args:
            default_ttl: Time-To-Live in seconds for entries set without one
            max_size: Maximum number of entries held at once
            clock: Monotonic time source (injectable for tests)
        """
        self.default_ttl = default_ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.sets = 0
        self.evictions = 0

    async def get(self, key: str) -> Optional[Any]:
        """Get a value, or None when missing or expired."""
        try:
            with self._lock:
                entry = self._entries.get(key)
                if entry is None:
                    self.misses += 1
                    return None
                value, expires_at = entry
                if expires_at <= self._clock():
                    del self._entries[key]
                    self.misses += 1
                    return None
                self.hits += 1
                return value
        except Exception as e:
            logger.error(f"Cache error getting key {key}: {str(e)}")
            return None

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        if ttl is None:
            ttl = self.default_ttl
        try:
            with self._lock:
                self._entries.pop(key, None)
                while len(self._entries) >= self.max_size:
                    oldest = next(iter(self._entries))
                    del self._entries[oldest]
                    self.evictions += 1
                self._entries[key] = (value, self._clock() + ttl)
                self.sets += 1
            return True
        except Exception as e:
            logger.error(f"Cache error setting key {key}: {str(e)}")
            return False

    async def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    async def flush(self) -> bool:
        with self._lock:
            self._entries.clear()
        logger.info("Result cache flushed")
        return True

    def cleanup(self) -> int:
        """Drop expired entries, returning how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.info(f"Cleaned up {len(expired)} expired cache keys")
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
                "sets": self.sets,
                "evictions": self.evictions,
                "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
            }


class RequestDeduplicator:
    """Collapses concurrent identical computations into one (single flight).

    The first caller for a key starts the computation as a task owned by the
    deduplicator; every caller, the first included, awaits it through
    ``asyncio.shield`` and receives the same result or exception. A cancelled
    caller stops waiting without cancelling the shared work. The key is
    released as soon as the task settles.
    """

    def __init__(self):
        self._in_flight: Dict[str, asyncio.Task] = {}
        self.collapsed = 0

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled():
            # Mark as retrieved even when every caller has gone away
            task.exception()

    async def run(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        # No await between lookup and insert, so this is atomic on the loop
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._in_flight[key] = task
            task.add_done_callback(lambda done, key=key: self._release(key, done))
        else:
            self.collapsed += 1
            logger.debug(f"Joining in-flight request {key}")

        return await asyncio.shield(task)
