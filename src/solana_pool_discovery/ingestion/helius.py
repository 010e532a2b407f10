"""Helius enhanced-transactions client used by the provenance heuristics."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from ..config.settings import ProvenanceConfig, get_app_config
from ..errors import HistoryFetchError
from ..monitoring.logger import get_logger

DEFAULT_HEADERS = {"User-Agent": "solana-pool-discovery/1.0"}


class HeliusHistoryClient:
    def __init__(
        self,
        config: Optional[ProvenanceConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config = config or get_app_config().provenance
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(headers=DEFAULT_HEADERS)
        self._logger = get_logger(__name__)

    @property
    def configured(self) -> bool:
        return bool(self._config.helius_api_key)

    async def fetch_transactions(self, address: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Return the most recent parsed transactions touching ``address``.

        Raises ``HistoryFetchError`` for missing credentials, transport failures,
        non-success statuses, and payloads that are not a list.
        """

        if not self.configured:
            raise HistoryFetchError("Helius API key not configured")

        base = str(self._config.helius_api_url).rstrip("/")
        try:
            response = await self._http.get(
                f"{base}/addresses/{address}/transactions",
                params={
                    "api-key": self._config.helius_api_key,
                    "limit": limit or self._config.history_window,
                },
                timeout=self._config.http_timeout,
            )
        except httpx.HTTPError as exc:
            raise HistoryFetchError(f"History request for {address} failed: {exc}") from exc

        if response.status_code >= 400:
            raise HistoryFetchError(
                f"History request for {address} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise HistoryFetchError(f"History response for {address} is not JSON") from exc
        if not isinstance(payload, list):
            raise HistoryFetchError(f"History response for {address} is not a list")
        return payload

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


__all__ = ["HeliusHistoryClient"]
