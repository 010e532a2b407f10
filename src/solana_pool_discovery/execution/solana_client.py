"""Async Solana JSON-RPC client routed through the endpoint manager."""

from __future__ import annotations

import itertools
from typing import Any, List, Optional

import httpx

from ..config.settings import RPCConfig, get_app_config
from ..errors import RPCResponseError, RPCTransportError
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS, MetricsRegistry
from .rpc_manager import RPCEndpointManager

DEFAULT_HEADERS = {"Content-Type": "application/json", "User-Agent": "solana-pool-discovery/1.0"}


class SolanaRPCClient:
    """Issues JSON-RPC requests with per-call timeouts and provider failover."""

    def __init__(
        self,
        manager: RPCEndpointManager,
        config: Optional[RPCConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._config = config or get_app_config().rpc
        self._manager = manager
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(headers=DEFAULT_HEADERS)
        self._timeout = httpx.Timeout(self._config.request_timeout)
        self._ids = itertools.count(1)
        self._metrics = metrics or METRICS
        self._logger = get_logger(__name__)

    @property
    def manager(self) -> RPCEndpointManager:
        return self._manager

    async def request(self, url: str, method: str, params: List[Any]) -> Any:
        """Send one request to ``url`` and return its ``result`` member."""

        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        response = await self._http.post(url, json=payload, timeout=self._timeout)
        if response.status_code >= 400:
            raise RPCTransportError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )
        body = response.json()
        error = body.get("error") if isinstance(body, dict) else None
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            raise RPCResponseError(f"RPC error: {message}", code=code)
        if not isinstance(body, dict) or "result" not in body:
            raise RPCResponseError("RPC response missing result")
        return body["result"]

    async def call(self, method: str, params: List[Any], *, max_retries: Optional[int] = None) -> Any:
        """Run ``method`` against the provider pool, failing over between endpoints."""

        async def _attempt(url: str, endpoint_name: str) -> Any:
            self._logger.debug("Calling %s on %s", method, endpoint_name)
            self._metrics.increment(f"rpc.method.{method}")
            return await self.request(url, method, params)

        return await self._manager.execute_with_fallback(_attempt, max_retries)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()


__all__ = ["SolanaRPCClient"]
