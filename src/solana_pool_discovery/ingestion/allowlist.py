"""Dune query-results client for the launch platform allow-list."""

from __future__ import annotations

from typing import Any, Dict, Optional, Set

import httpx
from tenacity import RetryError, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config.settings import ProvenanceConfig, get_app_config
from ..errors import AllowListUnavailableError
from ..monitoring.logger import get_logger

DEFAULT_HEADERS = {"User-Agent": "solana-pool-discovery/1.0"}


class DuneAllowListClient:
    """Pages through a saved query whose rows carry one ``token_mint`` each."""

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
        return bool(self._config.dune_api_key and self._config.dune_query_id)

    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=10),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(httpx.TransportError),
    )
    async def _get_page(self, offset: int) -> Dict[str, Any]:
        base = str(self._config.dune_base_url).rstrip("/")
        response = await self._http.get(
            f"{base}/query/{self._config.dune_query_id}/results",
            params={"limit": self._config.dune_page_limit, "offset": offset},
            headers={"X-Dune-API-Key": self._config.dune_api_key or ""},
            timeout=self._config.http_timeout,
        )
        response.raise_for_status()
        return response.json()

    async def fetch_mints(self) -> Set[str]:
        """Return every mint in the query result; raises ``AllowListUnavailableError``."""

        if not self.configured:
            raise AllowListUnavailableError("Dune API key or query id not configured")

        mints: Set[str] = set()
        offset = 0
        for _ in range(self._config.dune_max_pages):
            try:
                payload = await self._get_page(offset)
            except (RetryError, httpx.HTTPError, ValueError) as exc:
                raise AllowListUnavailableError(f"Dune query results unavailable: {exc}") from exc

            rows = (payload.get("result") or {}).get("rows") or []
            for row in rows:
                mint = row.get("token_mint") if isinstance(row, dict) else None
                if mint:
                    mints.add(str(mint))

            next_offset = payload.get("next_offset")
            if len(rows) < self._config.dune_page_limit or next_offset is None:
                break
            offset = int(next_offset)
        else:
            self._logger.warning("Allow-list truncated after %d pages", self._config.dune_max_pages)

        self._logger.info("Loaded %d allow-listed mints from Dune", len(mints))
        return mints

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


__all__ = ["DuneAllowListClient"]
