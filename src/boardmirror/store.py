"""
Cache stores -- where the mirror lives.

The engine needs a small slice of Redis: hashes, a string ledger with
atomic append and get-and-replace, set-if-absent, and key scans.

Redis: the real thing, shared between processes via redis.asyncio.
Memory: an in-process stand-in with the same semantics, for tests and
single-process setups.
"""

from __future__ import annotations

import fnmatch
import logging
from abc import ABC, abstractmethod
from typing import Optional

logger = logging.getLogger("boardmirror.store")


class CacheStore(ABC):
    """Abstract key-value store used by the mirror engine."""

    @abstractmethod
    async def hget(self, key: str, field: str) -> Optional[str]:
        """Read one field of a hash, or None if absent."""

    @abstractmethod
    async def hset(self, key: str, field: str, value: str) -> None:
        """Write one field of a hash."""

    @abstractmethod
    async def hdel(self, key: str, field: str) -> None:
        """Delete one field of a hash."""

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, str]:
        """Read a whole hash. Empty dict if the key does not exist."""

    @abstractmethod
    async def hexists(self, key: str, field: str) -> bool:
        """Check whether a hash field exists."""

    @abstractmethod
    async def hincrby(self, key: str, field: str, amount: int) -> int:
        """Atomically add to an integer hash field. Returns the new value."""

    @abstractmethod
    async def keys(self, pattern: str) -> list[str]:
        """List keys matching a glob pattern."""

    @abstractmethod
    async def setnx(self, key: str, value: str) -> bool:
        """Set a key only if absent. True if this call set it."""

    @abstractmethod
    async def getset(self, key: str, value: str) -> Optional[str]:
        """Atomically replace a string key, returning the old value."""

    @abstractmethod
    async def append(self, key: str, value: str) -> int:
        """Atomically append to a string key. Returns the new length."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key of any type."""

    async def close(self) -> None:
        """Release connections held by the store."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable store name."""


class MemoryStore(CacheStore):
    """In-process store.

    Every method completes without awaiting, so each call is atomic
    with respect to other coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._hashes: dict[str, dict[str, str]] = {}
        self._strings: dict[str, str] = {}

    @property
    def name(self) -> str:
        return "memory"

    async def hget(self, key: str, field: str) -> Optional[str]:
        return self._hashes.get(key, {}).get(field)

    async def hset(self, key: str, field: str, value: str) -> None:
        self._hashes.setdefault(key, {})[field] = value

    async def hdel(self, key: str, field: str) -> None:
        fields = self._hashes.get(key)
        if fields is not None:
            fields.pop(field, None)
            if not fields:
                del self._hashes[key]

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self._hashes.get(key, {}))

    async def hexists(self, key: str, field: str) -> bool:
        return field in self._hashes.get(key, {})

    async def hincrby(self, key: str, field: str, amount: int) -> int:
        fields = self._hashes.setdefault(key, {})
        try:
            current = int(fields.get(field, "0"))
        except ValueError as exc:
            raise ValueError(f"hash value is not an integer: {key} {field}") from exc
        fields[field] = str(current + amount)
        return current + amount

    async def keys(self, pattern: str) -> list[str]:
        names = list(self._hashes) + list(self._strings)
        return [k for k in names if fnmatch.fnmatchcase(k, pattern)]

    async def setnx(self, key: str, value: str) -> bool:
        if key in self._strings:
            return False
        self._strings[key] = value
        return True

    async def getset(self, key: str, value: str) -> Optional[str]:
        old = self._strings.get(key)
        self._strings[key] = value
        return old

    async def append(self, key: str, value: str) -> int:
        self._strings[key] = self._strings.get(key, "") + value
        return len(self._strings[key])

    async def delete(self, key: str) -> None:
        self._hashes.pop(key, None)
        self._strings.pop(key, None)


class RedisStore(CacheStore):
    """Redis-backed store, safe to share between processes.

    Args:
        url: Redis connection URL (redis://host:port/db).
    """

    def __init__(self, url: str) -> None:
        import redis.asyncio as aioredis

        self.url = url
        self._redis = aioredis.from_url(url, decode_responses=True)

    @property
    def name(self) -> str:
        return "redis"

    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self._redis.hget(key, field)

    async def hset(self, key: str, field: str, value: str) -> None:
        await self._redis.hset(key, field, value)

    async def hdel(self, key: str, field: str) -> None:
        await self._redis.hdel(key, field)

    async def hgetall(self, key: str) -> dict[str, str]:
        return await self._redis.hgetall(key)

    async def hexists(self, key: str, field: str) -> bool:
        return bool(await self._redis.hexists(key, field))

    async def hincrby(self, key: str, field: str, amount: int) -> int:
        return await self._redis.hincrby(key, field, amount)

    async def keys(self, pattern: str) -> list[str]:
        return [key async for key in self._redis.scan_iter(match=pattern)]

    async def setnx(self, key: str, value: str) -> bool:
        return bool(await self._redis.setnx(key, value))

    async def getset(self, key: str, value: str) -> Optional[str]:
        return await self._redis.getset(key, value)

    async def append(self, key: str, value: str) -> int:
        return await self._redis.append(key, value)

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def close(self) -> None:
        await self._redis.aclose()


def create_store(url: str) -> CacheStore:
    """Factory function to create the store named by a URL.

    Args:
        url: ``memory://`` for the in-process store, otherwise a Redis URL.

    Returns:
        Instantiated CacheStore.

    Raises:
        ValueError: If the URL scheme is not supported.
    """
    scheme = url.split("://", 1)[0].lower()
    if scheme == "memory":
        return MemoryStore()
    if scheme in ("redis", "rediss", "unix"):
        logger.info("Using Redis store at %s", url.split("@")[-1])
        return RedisStore(url)
    raise ValueError(f"Unsupported store URL: {url}")
