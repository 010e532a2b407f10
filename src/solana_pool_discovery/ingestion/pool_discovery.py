"""Scan the CPMM program for pools that pair the stable mint with any token."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional, Tuple

from ..config.settings import DiscoveryConfig, get_app_config
from ..datalake.cache import DiscoveryCache
from ..datalake.schemas import DiscoveredPool, PoolSet
from ..errors import DiscoveryError, RPCResponseError
from ..execution.solana_client import SolanaRPCClient
from ..monitoring.logger import correlation_scope, get_logger
from ..monitoring.metrics import METRICS, MetricsRegistry
from ..utils.constants import CPMM_TOKEN_MINT_0_OFFSET, CPMM_TOKEN_MINT_1_OFFSET
from .codec import decode_account_data, parse_pool_account


class PoolDiscoveryEngine:
    """Runs the two slot scans concurrently and publishes one deduplicated pool set."""

    def __init__(
        self,
        client: SolanaRPCClient,
        cache: DiscoveryCache,
        config: Optional[DiscoveryConfig] = None,
        *,
        clock=time.time,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._client = client
        self._cache = cache
        self._config = config or get_app_config().discovery
        self._clock = clock
        self._metrics = metrics or METRICS
        self._logger = get_logger(__name__)

    def _scan_params(self, offset: int) -> List[Any]:
        return [
            self._config.program_id,
            {
                "encoding": "base64",
                "filters": [
                    {"dataSize": self._config.account_size},
                    {"memcmp": {"offset": offset, "bytes": self._config.stable_mint}},
                ],
            },
        ]

    async def _scan(self, stable_in_slot0: bool) -> List[DiscoveredPool]:
        offset = CPMM_TOKEN_MINT_0_OFFSET if stable_in_slot0 else CPMM_TOKEN_MINT_1_OFFSET
        result = await self._client.call("getProgramAccounts", self._scan_params(offset))
        if not isinstance(result, list):
            raise RPCResponseError(f"getProgramAccounts returned {type(result).__name__}, expected list")

        pools: List[DiscoveredPool] = []
        skipped = 0
        for account in result:
            try:
                pubkey, data = decode_account_data(account)
            except (KeyError, IndexError, TypeError, ValueError) as exc:
                self._logger.warning("Skipping undecodable program account: %s", exc)
                skipped += 1
                continue
            pool = parse_pool_account(pubkey, data, stable_in_slot0)
            if pool is None or pool.token_mint == self._config.stable_mint:
                skipped += 1
                continue
            pools.append(pool)
        if skipped:
            self._metrics.increment("discovery.skipped_records", skipped)
        self._logger.debug(
            "Slot %d scan returned %d accounts, %d pools", 0 if stable_in_slot0 else 1, len(result), len(pools)
        )
        return pools

    async def discover_pools(self) -> PoolSet:
        """Run one discovery pass and replace the cached pool set.

        Raises ``DiscoveryError`` only when both scans fail; a single failed
        scan is logged and the other scan's pools are returned.
        """

        with correlation_scope() as correlation_id:
            started = time.perf_counter()
            self._logger.info("Starting pool discovery pass %s", correlation_id)
            outcomes = await asyncio.gather(self._scan(True), self._scan(False), return_exceptions=True)

            collected: List[DiscoveredPool] = []
            errors: List[Tuple[int, Exception]] = []
            for slot, outcome in enumerate(outcomes):
                if isinstance(outcome, Exception):
                    errors.append((slot, outcome))
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    collected.extend(outcome)

            if len(errors) == len(outcomes):
                self._metrics.increment("discovery.failures")
                raise DiscoveryError("Both pool scans failed") from errors[-1][1]
            for slot, error in errors:
                self._metrics.increment("discovery.partial_failures")
                self._logger.warning("Slot %d scan failed, continuing with partial results: %s", slot, error)

            pool_set = self._deduplicate(collected)
            await self._cache.set_pools(pool_set)

            self._metrics.gauge("discovery.pool_count", len(pool_set.pools))
            self._metrics.gauge("discovery.token_count", len(pool_set.token_mints))
            self._metrics.observe("discovery.duration_seconds", time.perf_counter() - started)
            self._logger.info(
                "Discovered %d pools across %d tokens", len(pool_set.pools), len(pool_set.token_mints)
            )
            return pool_set

    def _deduplicate(self, pools: List[DiscoveredPool]) -> PoolSet:
        by_address: Dict[str, DiscoveredPool] = {}
        for pool in pools:
            by_address.setdefault(pool.pool_address, pool)
        unique = list(by_address.values())
        token_mints = list(dict.fromkeys(pool.token_mint for pool in unique))
        return PoolSet(pools=unique, token_mints=token_mints, discovered_at=self._clock())

    async def get_pool_vault_balances(self, token_vault: str, stable_vault: str) -> Optional[Dict[str, float]]:
        """Return UI amounts held by both vaults, or ``None`` when they cannot be read."""

        try:
            result = await self._client.call(
                "getMultipleAccounts", [[token_vault, stable_vault], {"encoding": "jsonParsed"}]
            )
            accounts = result["value"]
            return {
                "token": _ui_amount(accounts[0]),
                "stable": _ui_amount(accounts[1]),
            }
        except Exception as exc:  # noqa: BLE001 - balances are best-effort
            self._logger.warning("Failed to fetch vault balances for %s/%s: %s", token_vault, stable_vault, exc)
            return None


def _ui_amount(account: Optional[Dict[str, Any]]) -> float:
    if not account:
        raise ValueError("vault account missing")
    amount = account["data"]["parsed"]["info"]["tokenAmount"]
    ui_amount = amount.get("uiAmount")
    if ui_amount is None:
        return int(amount["amount"]) / (10 ** int(amount.get("decimals", 0)))
    return float(ui_amount)


__all__ = ["PoolDiscoveryEngine"]
