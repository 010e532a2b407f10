"""Tiered cache: persistent store first, bounded in-memory copy as fallback."""

from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

from cachetools import LRUCache

from ..config.settings import CacheConfig, get_app_config
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS, MetricsRegistry
from .schemas import CacheEntry, CacheStats, PoolSet, TokenMetadata, VerificationResult
from .storage import KeyValueStore

BatchFetcher = Callable[[List[str]], Awaitable[Mapping[str, Any]]]


@dataclass(slots=True, frozen=True)
class CacheTier:
    name: str
    ttl_seconds: float


class TieredCache:
    """Read-through/write-through cache over an optional key/value store.

    Store failures are logged and never surfaced; the in-memory copy is
    always written so it is at least as fresh as the last local write.
    Expired entries read as misses and are only replaced by the next write.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        *,
        key_prefix: str = "pools:usd1",
        memory_max_entries: int = 10_000,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._store = store
        self._prefix = key_prefix
        self._memory: LRUCache[str, CacheEntry[Any]] = LRUCache(maxsize=memory_max_entries)
        self._clock = clock
        self._metrics = metrics or METRICS
        self._logger = get_logger(__name__)

    @property
    def storage_name(self) -> str:
        return getattr(self._store, "name", "memory") if self._store is not None else "memory"

    def now(self) -> float:
        return self._clock()

    def _key(self, tier: CacheTier, key: str) -> str:
        return f"{self._prefix}:{tier.name}:{key}"

    def _memory_entry(self, tier: CacheTier, full_key: str, now: float) -> Optional[CacheEntry[Any]]:
        entry = self._memory.get(full_key)
        if entry is not None and now - entry.timestamp < tier.ttl_seconds:
            return entry
        return None

    async def _store_entry(self, tier: CacheTier, full_key: str, now: float) -> Optional[CacheEntry[Any]]:
        if self._store is None:
            return None
        try:
            raw = await self._store.get(full_key)
        except Exception as exc:  # noqa: BLE001 - store errors degrade to memory
            self._metrics.increment("cache.store_errors")
            self._logger.debug("Cache store read failed for %s: %s", full_key, exc)
            return None
        if not raw:
            return None
        try:
            entry = CacheEntry.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            self._logger.debug("Ignoring malformed cache payload for %s: %s", full_key, exc)
            return None
        if now - entry.timestamp < tier.ttl_seconds:
            self._memory[full_key] = entry
            return entry
        return None

    async def get_entry(self, tier: CacheTier, key: str) -> Optional[CacheEntry[Any]]:
        full_key = self._key(tier, key)
        now = self._clock()
        entry = await self._store_entry(tier, full_key, now)
        if entry is None:
            entry = self._memory_entry(tier, full_key, now)
        self._metrics.increment(f"cache.{tier.name}.{'hit' if entry is not None else 'miss'}")
        return entry

    async def get(self, tier: CacheTier, key: str) -> Optional[Any]:
        """Return the cached value, or ``None`` on a miss."""

        entry = await self.get_entry(tier, key)
        return entry.data if entry is not None else None

    async def set(self, tier: CacheTier, key: str, value: Any) -> None:
        full_key = self._key(tier, key)
        entry: CacheEntry[Any] = CacheEntry(data=value, timestamp=self._clock(), ttl_seconds=tier.ttl_seconds)
        self._memory[full_key] = entry
        if self._store is None:
            return
        try:
            await self._store.set(
                full_key,
                json.dumps(entry.to_dict(), default=str),
                ttl_seconds=max(1, math.ceil(tier.ttl_seconds)),
            )
        except Exception as exc:  # noqa: BLE001 - store errors degrade to memory
            self._metrics.increment("cache.store_errors")
            self._logger.debug("Cache store write failed for %s: %s", full_key, exc)

    async def get_many(
        self,
        tier: CacheTier,
        keys: Iterable[str],
        fetch: Optional[BatchFetcher] = None,
        *,
        max_batch: int = 50,
    ) -> Dict[str, Any]:
        """Serve what memory already holds and look up at most ``max_batch`` others."""

        now = self._clock()
        results: Dict[str, Any] = {}
        uncached: List[str] = []
        for key in dict.fromkeys(keys):
            entry = self._memory_entry(tier, self._key(tier, key), now)
            if entry is not None:
                results[key] = entry.data
            else:
                uncached.append(key)

        pending: List[str] = []
        for key in uncached[:max_batch]:
            entry = await self._store_entry(tier, self._key(tier, key), now)
            if entry is not None:
                results[key] = entry.data
            else:
                pending.append(key)

        if pending and fetch is not None:
            fetched = await fetch(pending)
            for key, value in fetched.items():
                if value is None:
                    continue
                await self.set(tier, key, value)
                results[key] = value
        return results

    def memory_count(self, tier: Optional[CacheTier] = None) -> int:
        if tier is None:
            return len(self._memory)
        prefix = f"{self._prefix}:{tier.name}:"
        return sum(1 for key in list(self._memory.keys()) if key.startswith(prefix))

    async def clear(self) -> None:
        keys = list(self._memory.keys())
        self._memory.clear()
        if self._store is None:
            return
        for key in keys:
            try:
                await self._store.delete(key)
            except Exception as exc:  # noqa: BLE001 - store errors degrade to memory
                self._logger.debug("Cache store delete failed for %s: %s", key, exc)


POOL_LIST_KEY = "list"
ENRICHED_TOKENS_KEY = "list"
WHITELIST_KEY = "mints"


class DiscoveryCache:
    """Typed accessors for every cache tier the pipeline uses."""

    def __init__(self, cache: TieredCache, config: Optional[CacheConfig] = None) -> None:
        cfg = config or get_app_config().cache
        self._cache = cache
        self._max_batch = cfg.max_batch_fetch
        self.pool_list = CacheTier("pool-list", cfg.pool_list_ttl_seconds)
        self.token_metadata = CacheTier("token-metadata", cfg.token_metadata_ttl_seconds)
        self.enriched_tokens = CacheTier("enriched-tokens", cfg.enriched_tokens_ttl_seconds)
        self.whitelist = CacheTier("provenance-whitelist", cfg.whitelist_ttl_seconds)
        self.verification = CacheTier("verification", cfg.verification_ttl_seconds)

    @property
    def tiers(self) -> Tuple[CacheTier, ...]:
        return (self.pool_list, self.token_metadata, self.enriched_tokens, self.whitelist, self.verification)

    @property
    def backend(self) -> TieredCache:
        return self._cache

    async def get_pools(self) -> Optional[PoolSet]:
        payload = await self._cache.get(self.pool_list, POOL_LIST_KEY)
        return PoolSet.from_dict(payload) if payload else None

    async def set_pools(self, pool_set: PoolSet) -> None:
        # One key holds the whole set so readers never see a partial pass.
        await self._cache.set(self.pool_list, POOL_LIST_KEY, pool_set.to_dict())

    async def get_token_metadata(self, mint: str) -> Optional[TokenMetadata]:
        payload = await self._cache.get(self.token_metadata, mint)
        return TokenMetadata.from_dict(payload) if payload else None

    async def set_token_metadata(self, metadata: TokenMetadata) -> None:
        await self._cache.set(self.token_metadata, metadata.mint, metadata.to_dict())

    async def get_token_metadata_batch(
        self,
        mints: Sequence[str],
        fetch: Optional[Callable[[List[str]], Awaitable[Mapping[str, TokenMetadata]]]] = None,
    ) -> Dict[str, TokenMetadata]:
        fetch_payloads: Optional[Callable[[List[str]], Awaitable[Dict[str, Any]]]] = None
        if fetch is not None:
            load = fetch

            async def fetch_payloads(keys: List[str]) -> Dict[str, Any]:
                fetched = await load(keys)
                return {mint: metadata.to_dict() for mint, metadata in fetched.items()}

        payloads = await self._cache.get_many(
            self.token_metadata,
            mints,
            fetch_payloads,
            max_batch=self._max_batch,
        )
        return {mint: TokenMetadata.from_dict(payload) for mint, payload in payloads.items()}

    async def get_enriched_tokens(self) -> Optional[Dict[str, Any]]:
        entry = await self._cache.get_entry(self.enriched_tokens, ENRICHED_TOKENS_KEY)
        if entry is None:
            return None
        return {"tokens": entry.data, "timestamp": entry.timestamp}

    async def set_enriched_tokens(self, tokens: List[Dict[str, Any]]) -> None:
        await self._cache.set(self.enriched_tokens, ENRICHED_TOKENS_KEY, tokens)

    async def get_whitelist(self) -> Optional[Tuple[frozenset[str], float]]:
        entry = await self._cache.get_entry(self.whitelist, WHITELIST_KEY)
        if entry is None:
            return None
        return frozenset(entry.data), entry.timestamp

    async def set_whitelist(self, mints: Iterable[str]) -> None:
        await self._cache.set(self.whitelist, WHITELIST_KEY, sorted(set(mints)))

    async def get_verification(self, mint: str) -> Optional[VerificationResult]:
        payload = await self._cache.get(self.verification, mint)
        return VerificationResult.from_dict(payload) if payload else None

    async def set_verification(self, mint: str, result: VerificationResult) -> None:
        await self._cache.set(self.verification, mint, result.to_dict())

    async def stats(self) -> CacheStats:
        entry = await self._cache.get_entry(self.pool_list, POOL_LIST_KEY)
        now = self._cache.now()
        return CacheStats(
            storage=self._cache.storage_name,
            pool_cache_hit=entry is not None,
            pool_cache_age_seconds=entry.age(now) if entry is not None else None,
            pool_count=len(entry.data.get("pools", [])) if entry is not None else 0,
            memory_entries=self._cache.memory_count(),
            tiers={tier.name: self._cache.memory_count(tier) for tier in self.tiers},
        )

    async def clear(self) -> None:
        await self._cache.clear()


__all__ = ["CacheTier", "DiscoveryCache", "TieredCache"]
