import json
import logging
import math
import threading
import time
from typing import Protocol

from cachetools import TLRUCache
import redis
from redis.backoff import NoBackoff
from redis.retry import Retry

from catalog.errors import DependencyUnavailableError


logger = logging.getLogger(__name__)


class Cache(Protocol):
    def get(self, key: str) -> object | None: ...

    def set(self, key: str, value: object, ttl_seconds: int | None = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def delete_prefix(self, prefix: str) -> int: ...

    def incr(self, key: str, ttl_seconds: int | None = None) -> int: ...

    def read_counter(self, key: str, ttl_seconds: int | None = None) -> int: ...

    def ping(self) -> bool: ...


def _encode(value: object) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _decode(key: str, raw: str | None) -> object | None:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("discarding undecodable cache entry", extra={"cache_key": key})
        return None


def _counter_value(raw: object) -> int:
    try:
        return int(raw or 0)
    except (TypeError, ValueError):
        return 0


class RedisCache:
    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str, *, timeout_seconds: float) -> "RedisCache":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
            # No client-side retries.
            retry=Retry(NoBackoff(), 0),
        )
        return cls(client)

    def get(self, key: str) -> object | None:
        try:
            raw = self.client.get(key)
        except redis.RedisError as exc:
            raise DependencyUnavailableError(f"redis get failed: {exc}") from exc
        return _decode(key, raw)

    def set(self, key: str, value: object, ttl_seconds: int | None = None) -> None:
        try:
            if ttl_seconds:
                self.client.setex(key, ttl_seconds, _encode(value))
            else:
                self.client.set(key, _encode(value))
        except redis.RedisError as exc:
            raise DependencyUnavailableError(f"redis set failed: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as exc:
            raise DependencyUnavailableError(f"redis delete failed: {exc}") from exc

    def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        batch: list[str] = []
        try:
            for key in self.client.scan_iter(match=f"{prefix}*", count=500):
                batch.append(key)
                if len(batch) >= 500:
                    deleted += self.client.delete(*batch)
                    batch = []
            if batch:
                deleted += self.client.delete(*batch)
        except redis.RedisError as exc:
            raise DependencyUnavailableError(f"redis prefix delete failed: {exc}") from exc
        return deleted

    def incr(self, key: str, ttl_seconds: int | None = None) -> int:
        try:
            if not ttl_seconds:
                return int(self.client.incr(key))
            with self.client.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, ttl_seconds)
                value, _ = pipe.execute()
            return int(value)
        except redis.RedisError as exc:
            raise DependencyUnavailableError(f"redis incr failed: {exc}") from exc

    def read_counter(self, key: str, ttl_seconds: int | None = None) -> int:
        try:
            if ttl_seconds:
                raw = self.client.getex(key, ex=ttl_seconds)
            else:
                raw = self.client.get(key)
        except redis.RedisError as exc:
            raise DependencyUnavailableError(f"redis counter read failed: {exc}") from exc
        return _counter_value(raw)

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as exc:
            logger.warning("redis ping failed", extra={"error": str(exc)})
            return False


def _expires_at(key: str, value: tuple[float, object], now: float) -> float:
    return now + value[0]


class MemoryCache:
    """In-process cache with per-entry TTLs, used for local runs and tests."""

    def __init__(self, maxsize: int = 10_000, timer=time.monotonic) -> None:
        self._entries: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_expires_at, timer=timer)
        # Counters are never evicted for size, only when their TTL lapses.
        self._counters: TLRUCache = TLRUCache(maxsize=math.inf, ttu=_expires_at, timer=timer)
        self._lock = threading.Lock()

    def get(self, key: str) -> object | None:
        with self._lock:
            entry = self._entries.get(key)
        return _decode(key, entry[1]) if entry else None

    def set(self, key: str, value: object, ttl_seconds: int | None = None) -> None:
        ttl = float(ttl_seconds) if ttl_seconds else math.inf
        with self._lock:
            self._entries[key] = (ttl, _encode(value))

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._counters.pop(key, None)

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [key for key in list(self._entries.keys()) if key.startswith(prefix)]
            for key in keys:
                self._entries.pop(key, None)
            return len(keys)

    def incr(self, key: str, ttl_seconds: int | None = None) -> int:
        ttl = float(ttl_seconds) if ttl_seconds else math.inf
        with self._lock:
            _, value = self._counters.get(key, (ttl, 0))
            self._counters[key] = (ttl, value + 1)
            return value + 1

    def read_counter(self, key: str, ttl_seconds: int | None = None) -> int:
        with self._lock:
            entry = self._counters.get(key)
            if entry is None:
                return 0
            if ttl_seconds:
                # Reassigning restarts the expiry clock.
                self._counters[key] = (float(ttl_seconds), entry[1])
            return entry[1]

    def ping(self) -> bool:
        return True
