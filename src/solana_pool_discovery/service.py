"""Service context wiring discovery, caching, and provenance for consumers."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence

from .config.settings import AppConfig, get_app_config
from .datalake.cache import DiscoveryCache, TieredCache
from .datalake.schemas import (
    CacheStats,
    PoolCandidate,
    PoolSet,
    RetryQueueResult,
    TokenMetadata,
    VerificationResult,
    WhitelistStatus,
)
from .datalake.storage import KeyValueStore, create_store
from .execution.rpc_manager import RPCEndpointManager
from .execution.solana_client import SolanaRPCClient
from .ingestion.allowlist import DuneAllowListClient
from .ingestion.helius import HeliusHistoryClient
from .ingestion.pool_discovery import PoolDiscoveryEngine
from .ingestion.provenance import TokenProvenanceVerifier
from .ingestion.token_metadata import TokenMetadataFetcher
from .monitoring import bootstrap_observability
from .monitoring.logger import get_logger
from .monitoring.metrics import MetricsRegistry


class PoolDiscoveryService:
    """Owns one set of collaborators and exposes the consumer operations.

    Build it with :meth:`from_config` in production; tests inject fakes
    through the constructor.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        cache: DiscoveryCache,
        rpc_client: SolanaRPCClient,
        discovery: PoolDiscoveryEngine,
        metadata: TokenMetadataFetcher,
        verifier: TokenProvenanceVerifier,
        metrics: MetricsRegistry,
        store: Optional[KeyValueStore] = None,
        closeables: Sequence[Any] = (),
    ) -> None:
        self.config = config
        self.cache = cache
        self.rpc_client = rpc_client
        self.discovery = discovery
        self.metadata = metadata
        self.verifier = verifier
        self.metrics = metrics
        self._store = store
        self._closeables = list(closeables)
        self._logger = get_logger(__name__)

    @classmethod
    def from_config(cls, config: Optional[AppConfig] = None) -> "PoolDiscoveryService":
        app_config = config or get_app_config()
        metrics = bootstrap_observability(app_config)
        store = create_store(app_config.cache)
        cache = DiscoveryCache(
            TieredCache(
                store,
                key_prefix=app_config.cache.key_prefix,
                memory_max_entries=app_config.cache.memory_max_entries,
                metrics=metrics,
            ),
            app_config.cache,
        )
        manager = RPCEndpointManager.from_config(app_config.rpc, metrics=metrics)
        rpc_client = SolanaRPCClient(manager, app_config.rpc, metrics=metrics)
        allow_list_client = DuneAllowListClient(app_config.provenance)
        history_client = HeliusHistoryClient(app_config.provenance)
        return cls(
            config=app_config,
            cache=cache,
            rpc_client=rpc_client,
            discovery=PoolDiscoveryEngine(rpc_client, cache, app_config.discovery, metrics=metrics),
            metadata=TokenMetadataFetcher(rpc_client, cache, app_config.discovery, metrics=metrics),
            verifier=TokenProvenanceVerifier(
                cache, allow_list_client, history_client, app_config.provenance, metrics=metrics
            ),
            metrics=metrics,
            store=store,
            closeables=(allow_list_client, history_client),
        )

    async def discover_pools(self) -> PoolSet:
        return await self.discovery.discover_pools()

    async def verify_tokens(self, mints: Iterable[str]) -> frozenset[str]:
        """Return the subset of ``mints`` with verified launch provenance."""

        return await self.verifier.verify_batch(await self._candidates(mints))

    async def verify_token_results(self, mints: Iterable[str]) -> Dict[str, VerificationResult]:
        return await self.verifier.verify_batch_results(await self._candidates(mints))

    async def _candidates(self, mints: Iterable[str]) -> List[PoolCandidate]:
        pool_set = await self.cache.get_pools()
        candidates: List[PoolCandidate] = []
        for mint in mints:
            pool = pool_set.pool_for_mint(mint) if pool_set is not None else None
            candidates.append(PoolCandidate(mint=mint, pool_address=pool.pool_address if pool else None))
        return candidates

    async def get_cached_pools(self) -> Optional[PoolSet]:
        return await self.cache.get_pools()

    async def get_cached_token_metadata(self, mint: str) -> Optional[TokenMetadata]:
        return await self.cache.get_token_metadata(mint)

    async def get_token_metadata(self, mints: Sequence[str]) -> Dict[str, TokenMetadata]:
        return await self.metadata.get_metadata(mints)

    async def get_pool_vault_balances(self, token_vault: str, stable_vault: str) -> Optional[Dict[str, float]]:
        return await self.discovery.get_pool_vault_balances(token_vault, stable_vault)

    async def get_cached_enriched_tokens(self) -> Optional[Dict[str, Any]]:
        return await self.cache.get_enriched_tokens()

    async def set_cached_enriched_tokens(self, tokens: List[Dict[str, Any]]) -> None:
        await self.cache.set_enriched_tokens(tokens)

    def get_whitelist_status(self) -> WhitelistStatus:
        return self.verifier.whitelist_status()

    def get_retry_queue_status(self) -> Dict[str, Any]:
        return self.verifier.retry_queue_status()

    async def process_retry_queue(self) -> RetryQueueResult:
        return await self.verifier.process_retry_queue()

    def rpc_health(self) -> Dict[str, Dict[str, object]]:
        return self.rpc_client.manager.health_status()

    async def cache_stats(self) -> CacheStats:
        return await self.cache.stats()

    async def clear_caches(self) -> None:
        await self.cache.clear()
        self.verifier.clear()
        self._logger.info("Cleared all caches")

    def metrics_snapshot(self) -> Dict[str, object]:
        return self.metrics.snapshot()

    def metrics_prometheus(self) -> str:
        return self.metrics.export_prometheus()

    async def aclose(self) -> None:
        await self.rpc_client.aclose()
        for closeable in self._closeables:
            await closeable.aclose()
        if self._store is not None:
            await self._store.aclose()

    async def __aenter__(self) -> "PoolDiscoveryService":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


__all__ = ["PoolDiscoveryService"]
