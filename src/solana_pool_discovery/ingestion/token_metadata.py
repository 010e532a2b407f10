"""Mint account metadata fetched in bulk and cached per mint."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..config.settings import DiscoveryConfig, get_app_config
from ..datalake.cache import DiscoveryCache
from ..datalake.schemas import TokenMetadata
from ..execution.solana_client import SolanaRPCClient
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS, MetricsRegistry


def parse_mint_account(mint: str, account: Optional[Mapping[str, Any]]) -> Optional[TokenMetadata]:
    """Build metadata from a ``jsonParsed`` mint account, or ``None`` if it is not a mint."""

    if not account:
        return None
    data = account.get("data")
    if not isinstance(data, Mapping):
        return None
    parsed = data.get("parsed")
    if not isinstance(parsed, Mapping) or parsed.get("type") != "mint":
        return None
    info = parsed.get("info", {})
    decimals = int(info.get("decimals", 9))
    raw_supply = int(info.get("supply", 0) or 0)
    return TokenMetadata(
        mint=mint,
        decimals=decimals,
        supply=raw_supply / (10**decimals),
        mint_authority=info.get("mintAuthority"),
        freeze_authority=info.get("freezeAuthority"),
    )


class TokenMetadataFetcher:
    def __init__(
        self,
        client: SolanaRPCClient,
        cache: DiscoveryCache,
        config: Optional[DiscoveryConfig] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._client = client
        self._cache = cache
        self._config = config or get_app_config().discovery
        self._metrics = metrics or METRICS
        self._logger = get_logger(__name__)

    async def _fetch(self, mints: List[str]) -> Dict[str, TokenMetadata]:
        results: Dict[str, TokenMetadata] = {}
        chunk_size = self._config.metadata_chunk_size
        for start in range(0, len(mints), chunk_size):
            chunk = mints[start : start + chunk_size]
            try:
                response = await self._client.call("getMultipleAccounts", [chunk, {"encoding": "jsonParsed"}])
                accounts = response["value"]
            except Exception as exc:  # noqa: BLE001 - one bad chunk must not drop the rest
                self._metrics.increment("metadata.batch_errors")
                self._logger.warning("Metadata batch of %d mints failed: %s", len(chunk), exc)
                continue
            for mint, account in zip(chunk, accounts):
                metadata = parse_mint_account(mint, account)
                if metadata is not None:
                    results[mint] = metadata
        self._metrics.increment("metadata.fetched", len(results))
        return results

    async def get_metadata(self, mints: Sequence[str]) -> Dict[str, TokenMetadata]:
        """Return metadata for ``mints``; uncached mints beyond the batch bound wait for a later call."""

        return await self._cache.get_token_metadata_batch(list(mints), self._fetch)


__all__ = ["TokenMetadataFetcher", "parse_mint_account"]
