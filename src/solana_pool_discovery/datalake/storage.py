"""Key/value backends for the persistent cache tier."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

import redis.asyncio as aioredis

from ..config.settings import CacheConfig
from ..monitoring.logger import get_logger


class KeyValueStore(Protocol):
    """Minimal async KV operations the tiered cache relies on."""

    name: str

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def aclose(self) -> None:
        ...


@dataclass(slots=True)
class _Entry:
    value: str
    expires_at: Optional[float]


class InMemoryKeyValueStore:
    """Process-local store with TTL support for tests and unconfigured deployments."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._data: Dict[str, _Entry] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return entry.value

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = None if ttl_seconds is None else self._clock() + ttl_seconds
        self._data[key] = _Entry(value=value, expires_at=expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def aclose(self) -> None:
        self._data.clear()


class RedisKeyValueStore:
    """Networked store backed by Redis; values expire server-side via ``EX``."""

    name = "redis"

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str, *, timeout: float = 2.0) -> "RedisKeyValueStore":
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client)

    async def get(self, key: str) -> Optional[str]:
        value = await self._client.get(key)
        if value is None:
            return None
        return value if isinstance(value, str) else value.decode("utf-8")

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await self._client.set(key, value, ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def aclose(self) -> None:
        await self._client.aclose()


def create_store(config: CacheConfig) -> KeyValueStore:
    """Select the persistent backend once at startup from configuration."""

    logger = get_logger(__name__)
    if config.redis_url:
        logger.info("Using Redis cache store")
        return RedisKeyValueStore.from_url(config.redis_url, timeout=config.store_timeout)
    logger.info("No Redis URL configured; using in-memory cache store")
    return InMemoryKeyValueStore()


__all__ = ["InMemoryKeyValueStore", "KeyValueStore", "RedisKeyValueStore", "create_store"]
