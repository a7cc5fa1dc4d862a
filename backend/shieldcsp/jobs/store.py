# shieldcsp/jobs/store.py
"""
Queue store backends for the scan JobQueue.

The queue only needs sorted-set and list primitives:

    zadd / zrevrange / zrangebyscore / zrem / zcard   (priority, delayed, processing)
    lpush / lrange / llen                             (failed)
    claim_next                                        (atomic pop + claim)

Backends:
    RedisQueueStore   redis-py client, claim_next is a server-side Lua script
    MemoryQueueStore  in-process dicts behind a lock (dev / tests)

Stores are explicitly constructed and passed in. Lifecycle is open() → use →
close(); nothing here is a module-level singleton.

Usage:
    store = build_queue_store(app.config)
    store.open()
    ...
    store.close()
"""

from __future__ import annotations

import functools
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Mapping, Optional

import redis
from redis import Redis

from shieldcsp.errors import QueueUnavailableError

logger = logging.getLogger(__name__)

# Pop the highest-scored member of KEYS[1] and move it into KEYS[2] with
# score ARGV[1], as a single server-side step.
CLAIM_SCRIPT = """
local members = redis.call('ZREVRANGE', KEYS[1], 0, 0)
if #members == 0 then
    return false
end
redis.call('ZREM', KEYS[1], members[1])
redis.call('ZADD', KEYS[2], ARGV[1], members[1])
return members[1]
"""


class QueueStore(ABC):
    """Sorted-set + list primitives the JobQueue is written against."""

    name: str = "abstract"

    def open(self) -> None:
        """Acquire connections. Raises QueueUnavailableError if unreachable."""

    def close(self) -> None:
        """Release connections. Safe to call twice."""

    @abstractmethod
    def ping(self) -> bool: ...

    # ── sorted sets ──

    @abstractmethod
    def zadd(self, key: str, member: str, score: float) -> None: ...

    @abstractmethod
    def zrevrange(self, key: str, start: int, stop: int) -> List[str]:
        """Members by rank, highest score first. `stop` is inclusive, -1 = last."""

    @abstractmethod
    def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[str]:
        """Members with min_score <= score <= max_score, lowest first."""

    @abstractmethod
    def zrem(self, key: str, member: str) -> int: ...

    @abstractmethod
    def zcard(self, key: str) -> int: ...

    @abstractmethod
    def claim_next(self, source: str, dest: str, claim_score: float) -> Optional[str]:
        """
        Atomically remove the highest-scored member of `source` and add it to
        `dest` with `claim_score`. Returns the member, or None if `source`
        is empty.
        """

    # ── lists ──

    @abstractmethod
    def lpush(self, key: str, value: str) -> int: ...

    @abstractmethod
    def lrange(self, key: str, start: int, stop: int) -> List[str]: ...

    @abstractmethod
    def llen(self, key: str) -> int: ...


# ─────────────────────────────────────────────────────────────
# Redis
# ─────────────────────────────────────────────────────────────

def _translate_redis_errors(fn):
    """Connection-level redis failures surface as QueueUnavailableError."""

    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs):
        try:
            return fn(self, *args, **kwargs)
        except (redis.ConnectionError, redis.TimeoutError) as e:
            raise QueueUnavailableError(f"Queue store unreachable: {e}") from e
    return wrapper


class RedisQueueStore(QueueStore):

    name = "redis"

    def __init__(
        self,
        url: str,
        client: Optional[Redis] = None,
        socket_timeout: float = 2,
        max_connections: int = 10,
    ):
        self.url = url
        self.socket_timeout = socket_timeout
        self.max_connections = max_connections
        self._client: Optional[Redis] = client
        self._claim = None

    @property
    def client(self) -> Redis:
        if self._client is None:
            raise QueueUnavailableError("Queue store is not open")
        return self._client

    def open(self) -> None:
        if self._client is None:
            self._client = Redis.from_url(
                self.url,
                decode_responses=True,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                max_connections=self.max_connections,
            )
        self._claim = self._client.register_script(CLAIM_SCRIPT)

        if not self.ping():
            self.close()
            raise QueueUnavailableError(f"Queue store unreachable at {self._redacted_url()}")

        logger.info(f"Redis queue store connected: {self._redacted_url()}")

    def close(self) -> None:
        if self._client is None:
            return
        try:
            self._client.close()
        except redis.RedisError as e:
            logger.warning(f"Error closing Redis queue store: {e}")
        finally:
            self._client = None
            self._claim = None

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except (redis.RedisError, QueueUnavailableError) as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    def _redacted_url(self) -> str:
        # Drop credentials before logging
        if "@" in self.url:
            scheme, _, rest = self.url.partition("://")
            return f"{scheme}://***@{rest.split('@', 1)[1]}"
        return self.url

    @_translate_redis_errors
    def zadd(self, key: str, member: str, score: float) -> None:
        self.client.zadd(key, {member: score})

    @_translate_redis_errors
    def zrevrange(self, key: str, start: int, stop: int) -> List[str]:
        return list(self.client.zrevrange(key, start, stop))

    @_translate_redis_errors
    def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[str]:
        return list(self.client.zrangebyscore(key, min_score, max_score))

    @_translate_redis_errors
    def zrem(self, key: str, member: str) -> int:
        return int(self.client.zrem(key, member))

    @_translate_redis_errors
    def zcard(self, key: str) -> int:
        return int(self.client.zcard(key))

    @_translate_redis_errors
    def claim_next(self, source: str, dest: str, claim_score: float) -> Optional[str]:
        if self._claim is None:
            raise QueueUnavailableError("Queue store is not open")
        member = self._claim(keys=[source, dest], args=[claim_score])
        return member or None

    @_translate_redis_errors
    def lpush(self, key: str, value: str) -> int:
        return int(self.client.lpush(key, value))

    @_translate_redis_errors
    def lrange(self, key: str, start: int, stop: int) -> List[str]:
        return list(self.client.lrange(key, start, stop))

    @_translate_redis_errors
    def llen(self, key: str) -> int:
        return int(self.client.llen(key))


# ─────────────────────────────────────────────────────────────
# In-memory
# ─────────────────────────────────────────────────────────────

def _rank_slice(items: List[str], start: int, stop: int) -> List[str]:
    """Redis-style inclusive range with negative indexes."""
    n = len(items)
    if start < 0:
        start = max(n + start, 0)
    if stop < 0:
        stop = n + stop
    if start >= n or start > stop:
        return []
    return items[start:stop + 1]


class MemoryQueueStore(QueueStore):
    """
    Single-process store. Ordering mirrors Redis: equal scores fall back to
    lexicographic member order (reversed for zrevrange).
    """

    name = "memory"

    def __init__(self):
        self._lock = threading.RLock()
        self._zsets: Dict[str, Dict[str, float]] = {}
        self._lists: Dict[str, List[str]] = {}

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        with self._lock:
            self._zsets.clear()
            self._lists.clear()

    def _sorted(self, key: str, reverse: bool = False) -> List[str]:
        zset = self._zsets.get(key, {})
        return [
            member for member, _ in
            sorted(zset.items(), key=lambda kv: (kv[1], kv[0]), reverse=reverse)
        ]

    def zadd(self, key: str, member: str, score: float) -> None:
        with self._lock:
            self._zsets.setdefault(key, {})[member] = float(score)

    def zrevrange(self, key: str, start: int, stop: int) -> List[str]:
        with self._lock:
            return _rank_slice(self._sorted(key, reverse=True), start, stop)

    def zrangebyscore(self, key: str, min_score: float, max_score: float) -> List[str]:
        with self._lock:
            zset = self._zsets.get(key, {})
            return [m for m in self._sorted(key) if min_score <= zset[m] <= max_score]

    def zrem(self, key: str, member: str) -> int:
        with self._lock:
            zset = self._zsets.get(key)
            if zset is None or member not in zset:
                return 0
            del zset[member]
            return 1

    def zcard(self, key: str) -> int:
        with self._lock:
            return len(self._zsets.get(key, {}))

    def claim_next(self, source: str, dest: str, claim_score: float) -> Optional[str]:
        with self._lock:
            members = self._sorted(source, reverse=True)
            if not members:
                return None
            member = members[0]
            del self._zsets[source][member]
            self._zsets.setdefault(dest, {})[member] = float(claim_score)
            return member

    def lpush(self, key: str, value: str) -> int:
        with self._lock:
            items = self._lists.setdefault(key, [])
            items.insert(0, value)
            return len(items)

    def lrange(self, key: str, start: int, stop: int) -> List[str]:
        with self._lock:
            return _rank_slice(list(self._lists.get(key, [])), start, stop)

    def llen(self, key: str) -> int:
        with self._lock:
            return len(self._lists.get(key, []))


def build_queue_store(config: Mapping) -> Optional[QueueStore]:
    """
    Pick a backend from app config. Returns None when the redis backend is
    selected but REDIS_URL is unset, so enqueue paths can fail fast.
    """
    backend = (config.get("QUEUE_BACKEND") or "redis").lower()

    if backend == "memory":
        return MemoryQueueStore()

    if backend != "redis":
        raise ValueError(f"Unknown QUEUE_BACKEND '{backend}' (expected 'redis' or 'memory')")

    url = config.get("REDIS_URL")
    if not url:
        logger.warning("REDIS_URL not set; scan queue disabled, scans run synchronously only")
        return None

    return RedisQueueStore(url)
