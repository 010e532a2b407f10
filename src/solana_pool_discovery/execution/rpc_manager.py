"""Weighted, health-tracked selection across upstream JSON-RPC providers."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, TypeVar

from ..config.settings import ProviderEndpoint, RPCConfig
from ..errors import RPCExhaustedError
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS, MetricsRegistry

T = TypeVar("T")

EndpointCall = Callable[[str, str], Awaitable[T]]


@dataclass(slots=True)
class RPCEndpoint:
    name: str
    url: str
    weight: int
    healthy: bool = True
    last_error_time: float = 0.0
    error_count: int = 0
    request_count: int = 0


class RPCEndpointManager:
    """Chooses an endpoint per call and fails over to other providers on error.

    The first attempt of a call uses weighted random selection; any further
    attempt walks the remaining healthy endpoints in configured order, so a
    single call never retries the same provider.
    """

    def __init__(
        self,
        endpoints: Iterable[ProviderEndpoint | RPCEndpoint],
        *,
        backoff_base_seconds: float = 30.0,
        backoff_cap_seconds: float = 300.0,
        default_max_retries: int = 3,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._endpoints: List[RPCEndpoint] = []
        seen: Set[str] = set()
        for endpoint in endpoints:
            if endpoint.name in seen or not endpoint.url:
                continue
            if endpoint.weight <= 0:
                raise ValueError(f"Endpoint {endpoint.name} must have a positive weight")
            seen.add(endpoint.name)
            self._endpoints.append(RPCEndpoint(name=endpoint.name, url=endpoint.url, weight=endpoint.weight))
        if not self._endpoints:
            raise ValueError("At least one RPC endpoint is required")
        self._backoff_base = backoff_base_seconds
        self._backoff_cap = backoff_cap_seconds
        self._default_max_retries = default_max_retries
        self._clock = clock
        self._rng = rng or random.Random()
        self._metrics = metrics or METRICS
        self._logger = get_logger(__name__)
        self._logger.info(
            "RPC manager initialised with %d endpoints: %s",
            len(self._endpoints),
            ", ".join(endpoint.name for endpoint in self._endpoints),
        )

    @classmethod
    def from_config(
        cls,
        config: RPCConfig,
        *,
        metrics: Optional[MetricsRegistry] = None,
    ) -> "RPCEndpointManager":
        return cls(
            config.provider_endpoints(),
            backoff_base_seconds=config.backoff_base_seconds,
            backoff_cap_seconds=config.backoff_cap_seconds,
            default_max_retries=config.max_retries,
            metrics=metrics,
        )

    @property
    def endpoints(self) -> List[RPCEndpoint]:
        return list(self._endpoints)

    def _backoff_window(self, endpoint: RPCEndpoint) -> float:
        exponent = max(endpoint.error_count - 1, 0)
        return min(self._backoff_base * (2 ** exponent), self._backoff_cap)

    def _is_healthy(self, endpoint: RPCEndpoint) -> bool:
        if endpoint.healthy:
            return True
        if self._clock() - endpoint.last_error_time > self._backoff_window(endpoint):
            endpoint.healthy = True
            return True
        return False

    def _find(self, name: str) -> Optional[RPCEndpoint]:
        for endpoint in self._endpoints:
            if endpoint.name == name:
                return endpoint
        return None

    def select_endpoint(self) -> RPCEndpoint:
        """Weighted random choice among healthy endpoints."""

        available = [endpoint for endpoint in self._endpoints if self._is_healthy(endpoint)]
        if not available:
            self._logger.warning("All RPC endpoints unhealthy; resetting health table")
            for endpoint in self._endpoints:
                endpoint.healthy = True
                endpoint.error_count = 0
            available = list(self._endpoints)

        total_weight = sum(endpoint.weight for endpoint in available)
        remainder = self._rng.random() * total_weight
        for endpoint in available:
            remainder -= endpoint.weight
            if remainder <= 0:
                return endpoint
        return available[-1]

    def mark_success(self, name: str) -> None:
        endpoint = self._find(name)
        if endpoint is None:
            return
        endpoint.healthy = True
        endpoint.error_count = 0
        endpoint.request_count += 1
        self._metrics.increment(f"rpc.{name}.success")

    def mark_error(self, name: str, error: Optional[BaseException] = None) -> None:
        endpoint = self._find(name)
        if endpoint is None:
            return
        endpoint.healthy = False
        endpoint.last_error_time = self._clock()
        endpoint.error_count += 1
        self._metrics.increment(f"rpc.{name}.error")
        self._logger.warning(
            "%s error (count: %d): %s",
            name,
            endpoint.error_count,
            error if error is not None else "unknown error",
        )

    def _next_untried(self, tried: Set[str]) -> Optional[RPCEndpoint]:
        for endpoint in self._endpoints:
            if endpoint.name not in tried and self._is_healthy(endpoint):
                return endpoint
        return None

    async def execute_with_fallback(self, fn: EndpointCall[T], max_retries: Optional[int] = None) -> T:
        """Run ``fn(url, name)`` against up to ``max_retries`` distinct endpoints.

        Returns the first successful result. Raises the last error observed
        once no untried healthy endpoint remains or the attempt budget is spent.
        """

        budget = self._default_max_retries if max_retries is None else max_retries
        tried: Set[str] = set()
        last_error: Optional[BaseException] = None

        for attempt in range(budget):
            endpoint = self.select_endpoint() if attempt == 0 else self._next_untried(tried)
            if endpoint is None:
                break
            tried.add(endpoint.name)
            try:
                result = await fn(endpoint.url, endpoint.name)
            except Exception as exc:  # noqa: BLE001 - every failure feeds the health table
                last_error = exc
                self.mark_error(endpoint.name, exc)
                continue
            self.mark_success(endpoint.name)
            return result

        if last_error is not None:
            raise last_error
        raise RPCExhaustedError("All RPC endpoints failed")

    def health_status(self) -> Dict[str, Dict[str, object]]:
        return {
            endpoint.name: {
                "healthy": self._is_healthy(endpoint),
                "weight": endpoint.weight,
                "error_count": endpoint.error_count,
                "request_count": endpoint.request_count,
            }
            for endpoint in self._endpoints
        }


__all__ = ["RPCEndpoint", "RPCEndpointManager"]
