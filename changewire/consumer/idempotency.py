"""Idempotency stores for consumer-side de-duplication of republished events."""

from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from typing import Any


def _import_redis() -> Any:
    """Import redis.asyncio lazily so the client is only needed for the redis backend."""
    try:
        import redis.asyncio as redis_asyncio
    except ImportError as exc:
        raise RuntimeError("Redis idempotency store requires redis. Install with: pip install redis") from exc
    return redis_asyncio


class IdempotencyStore(ABC):
    """Abstract idempotency store used by the dispatcher handlers."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return whether key already exists and has not expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None:
        """Store value with TTL in seconds."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Get stored value when key exists and has not expired."""

    async def close(self) -> None:
        """Release any client resources held by the store."""


class RedisIdempotencyStore(IdempotencyStore):
    """Store over any asyncio Redis-compatible client (``exists``/``set``/``get``).

    Values are stored as JSON so dict markers survive the round trip; the key
    TTL is the de-duplication window, so entries expire server-side.
    """

    def __init__(self, client: Any, *, key_prefix: str = "changewire:idempotency:", owns_client: bool = False) -> None:
        self._client = client
        self._key_prefix = key_prefix
        self._owns_client = owns_client

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisIdempotencyStore:
        """Build a store with its own client; the connection pool opens on first command."""
        client = _import_redis().from_url(url, decode_responses=True)
        return cls(client, owns_client=True, **kwargs)

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def exists(self, key: str) -> bool:
        return bool(await self._client.exists(self._key(key)))

    async def set(self, key: str, value: Any, ttl: int) -> None:
        await self._client.set(self._key(key), json.dumps(value, default=str), ex=max(1, int(ttl)))

    async def get(self, key: str) -> Any | None:
        raw = await self._client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class InMemoryIdempotencyStore(IdempotencyStore):
    """Process-local store; duplicates across restarts are not detected."""

    def __init__(self, clock: Any = time.time) -> None:
        self._items: dict[str, tuple[Any, float]] = {}
        self._clock = clock

    def _purge_expired(self, key: str) -> None:
        item = self._items.get(key)
        if item is None:
            return
        _, expires_at = item
        if self._clock() >= expires_at:
            self._items.pop(key, None)

    async def exists(self, key: str) -> bool:
        self._purge_expired(key)
        return key in self._items

    async def set(self, key: str, value: Any, ttl: int) -> None:
        self._items[key] = (value, self._clock() + max(1, int(ttl)))

    async def get(self, key: str) -> Any | None:
        self._purge_expired(key)
        item = self._items.get(key)
        if item is None:
            return None
        return item[0]

    def __len__(self) -> int:
        return len(self._items)
