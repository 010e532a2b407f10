"""Launch platform provenance: allow-list membership with an on-chain history fallback."""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from solders.pubkey import Pubkey

from ..config.settings import ProvenanceConfig, get_app_config
from ..datalake.cache import DiscoveryCache
from ..datalake.schemas import (
    Confidence,
    PoolCandidate,
    RetryQueueEntry,
    RetryQueueResult,
    VerificationResult,
    VerificationSource,
    WhitelistStatus,
)
from ..errors import AllowListUnavailableError, HistoryFetchError
from ..monitoring.logger import correlation_scope, get_logger
from ..monitoring.metrics import METRICS, MetricsRegistry
from .allowlist import DuneAllowListClient
from .helius import HeliusHistoryClient

UNRESOLVED = VerificationResult(is_verified=False, confidence=Confidence.LOW, source=VerificationSource.UNKNOWN)


@dataclass(slots=True, frozen=True)
class LaunchPlatform:
    """On-chain identifiers that mark a token as launched on the platform."""

    launchlab_program: str
    platform_config: str
    graduate_program: str

    @classmethod
    def from_config(cls, config: ProvenanceConfig) -> "LaunchPlatform":
        return cls(
            launchlab_program=config.launchlab_program,
            platform_config=config.platform_config,
            graduate_program=config.graduate_program,
        )

    @property
    def programs(self) -> frozenset[str]:
        return frozenset({self.launchlab_program, self.graduate_program})

    @property
    def identifiers(self) -> frozenset[str]:
        return frozenset({self.launchlab_program, self.graduate_program, self.platform_config})


def _instructions(transaction: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    return [ix for ix in transaction.get("instructions") or [] if isinstance(ix, Mapping)]


def _inner_programs(instruction: Mapping[str, Any]) -> Iterable[str]:
    for inner in instruction.get("innerInstructions") or []:
        if isinstance(inner, Mapping):
            yield str(inner.get("programId", ""))


def token_history_matches(transactions: Sequence[Mapping[str, Any]], platform: LaunchPlatform) -> bool:
    """True when a mint's history shows a platform launch or graduation.

    A top-level LaunchLab instruction only counts when it carries the platform
    config account; the graduate program counts on its own. Either program in
    an inner instruction counts.
    """

    for transaction in transactions:
        for ix in _instructions(transaction):
            program_id = ix.get("programId")
            if program_id == platform.launchlab_program and platform.platform_config in (ix.get("accounts") or []):
                return True
            if program_id == platform.graduate_program:
                return True
            if any(program in platform.programs for program in _inner_programs(ix)):
                return True
    return False


def pool_history_matches(transactions: Sequence[Mapping[str, Any]], platform: LaunchPlatform) -> bool:
    """True when a pool account's history involves any platform identifier."""

    for transaction in transactions:
        for ix in _instructions(transaction):
            if ix.get("programId") in platform.programs:
                return True
            if any(program in platform.programs for program in _inner_programs(ix)):
                return True
        for account in transaction.get("accountData") or []:
            if isinstance(account, Mapping) and account.get("account") in platform.identifiers:
                return True
    return False


class TokenProvenanceVerifier:
    """Decides per mint whether it originated from the launch platform.

    Never reports a token as verified without positive evidence: an
    unavailable allow-list and an inconclusive history both resolve to
    not verified.
    """

    def __init__(
        self,
        cache: DiscoveryCache,
        allow_list_client: DuneAllowListClient,
        history_client: HeliusHistoryClient,
        config: Optional[ProvenanceConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._config = config or get_app_config().provenance
        self._cache = cache
        self._allow_list_client = allow_list_client
        self._history = history_client
        self._platform = LaunchPlatform.from_config(self._config)
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics or METRICS
        self._logger = get_logger(__name__)

        self._allow_list: Optional[frozenset[str]] = None
        self._allow_list_loaded_at = 0.0
        self._allow_list_source = "none"
        self._allow_list_stale = False
        self._retry_queue: "OrderedDict[str, RetryQueueEntry]" = OrderedDict()

    # -- allow-list -----------------------------------------------------------------

    def _snapshot_fresh(self) -> bool:
        if self._allow_list is None or self._allow_list_stale:
            return False
        return self._clock() - self._allow_list_loaded_at < self._cache.whitelist.ttl_seconds

    async def fetch_allow_list(self, *, force: bool = False) -> frozenset[str]:
        """Return the allow-list, preferring the in-process snapshot and then the cache.

        When the upstream is unavailable the last snapshot is returned and
        flagged stale; with no snapshot the result is empty.
        """

        if not force:
            if self._snapshot_fresh():
                return self._allow_list  # type: ignore[return-value]
            cached = await self._cache.get_whitelist()
            if cached is not None:
                mints, stored_at = cached
                self._set_snapshot(mints, stored_at, "cache")
                return mints

        try:
            fetched = await self._allow_list_client.fetch_mints()
        except AllowListUnavailableError as exc:
            self._metrics.increment("provenance.allow_list_failures")
            self._logger.warning("Allow-list unavailable: %s", exc)
            if self._allow_list is not None:
                self._allow_list_stale = True
                return self._allow_list
            return frozenset()

        mints = frozenset(fetched)
        self._set_snapshot(mints, self._clock(), "dune")
        await self._cache.set_whitelist(mints)
        return mints

    def _set_snapshot(self, mints: frozenset[str], loaded_at: float, source: str) -> None:
        self._allow_list = mints
        self._allow_list_loaded_at = loaded_at
        self._allow_list_source = source
        self._allow_list_stale = False
        self._metrics.gauge("provenance.allow_list_size", len(mints))

    async def refresh_allow_list(self) -> frozenset[str]:
        return await self.fetch_allow_list(force=True)

    def whitelist_status(self) -> WhitelistStatus:
        if self._allow_list is None:
            return WhitelistStatus(loaded=False, token_count=0, source="none", age_seconds=0.0, is_stale=True)
        age = max(0.0, self._clock() - self._allow_list_loaded_at)
        return WhitelistStatus(
            loaded=True,
            token_count=len(self._allow_list),
            source=self._allow_list_source,
            age_seconds=age,
            is_stale=self._allow_list_stale or age >= self._cache.whitelist.ttl_seconds,
        )

    # -- single mint ------------------------------------------------------------------

    def _is_valid_address(self, value: Optional[str]) -> bool:
        if not value or len(value) < self._config.min_address_length:
            return False
        try:
            Pubkey.from_string(value)
        except ValueError:
            return False
        return True

    async def _cached(self, mint: str) -> Optional[VerificationResult]:
        cached = await self._cache.get_verification(mint)
        if cached is None:
            return None
        self._metrics.increment("provenance.cache_hits")
        return VerificationResult(
            is_verified=cached.is_verified, confidence=cached.confidence, source=VerificationSource.CACHE
        )

    async def _store(self, mint: str, result: VerificationResult) -> VerificationResult:
        await self._cache.set_verification(mint, result)
        self._metrics.increment("provenance.verified" if result.is_verified else "provenance.rejected")
        return result

    async def verify_token(self, mint: str) -> VerificationResult:
        """Verify one mint against the allow-list, falling back to token history."""

        if not self._is_valid_address(mint):
            return UNRESOLVED
        cached = await self._cached(mint)
        if cached is not None:
            return cached

        allow_list = await self.fetch_allow_list()
        listed = mint in allow_list
        # Absence only counts against a fresh snapshot.
        if listed or (allow_list and self._snapshot_fresh()):
            return await self._store(
                mint,
                VerificationResult(is_verified=listed, confidence=Confidence.HIGH, source=VerificationSource.ALLOW_LIST),
            )

        try:
            transactions = await self._history.fetch_transactions(mint, self._config.history_window)
        except HistoryFetchError as exc:
            self._logger.warning("Token history for %s unavailable: %s", mint, exc)
            self._enqueue_retry(PoolCandidate(mint=mint))
            return UNRESOLVED
        matched = token_history_matches(transactions, self._platform)
        return await self._store(
            mint,
            VerificationResult(
                is_verified=matched,
                confidence=Confidence.HIGH if matched else Confidence.MEDIUM,
                source=VerificationSource.TOKEN_HISTORY,
            ),
        )

    # -- batches ----------------------------------------------------------------------

    async def _check_history(
        self,
        address: str,
        matcher: Callable[[Sequence[Mapping[str, Any]], LaunchPlatform], bool],
    ) -> bool:
        transactions = await self._history.fetch_transactions(address, self._config.history_window)
        return matcher(transactions, self._platform)

    async def _resolve_with_history(self, candidate: PoolCandidate) -> Optional[VerificationResult]:
        """Run the token and pool checks concurrently; ``None`` when neither could decide."""

        checks = [self._check_history(candidate.mint, token_history_matches)]
        if self._is_valid_address(candidate.pool_address):
            checks.append(self._check_history(str(candidate.pool_address), pool_history_matches))
        outcomes = await asyncio.gather(*checks, return_exceptions=True)

        failed = False
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, HistoryFetchError):
                failed = True
                self._logger.debug("History check failed for %s: %s", candidate.mint, outcome)
            elif isinstance(outcome, BaseException):
                raise outcome
            elif outcome:
                source = VerificationSource.TOKEN_HISTORY if index == 0 else VerificationSource.POOL_HISTORY
                return VerificationResult(is_verified=True, confidence=Confidence.HIGH, source=source)
        if failed:
            return None
        return VerificationResult(
            is_verified=False, confidence=Confidence.MEDIUM, source=VerificationSource.TOKEN_HISTORY
        )

    async def _verify_candidate(self, candidate: PoolCandidate, allow_list: frozenset[str]) -> VerificationResult:
        cached = await self._cached(candidate.mint)
        if cached is not None:
            return cached
        if candidate.mint in allow_list:
            return await self._store(
                candidate.mint,
                VerificationResult(is_verified=True, confidence=Confidence.HIGH, source=VerificationSource.ALLOW_LIST),
            )
        result = await self._resolve_with_history(candidate)
        if result is None:
            self._enqueue_retry(candidate)
            return UNRESOLVED
        return await self._store(candidate.mint, result)

    async def _run_batches(self, items: Sequence[Any], worker: Callable[[Any], Awaitable[Any]]) -> List[Any]:
        results: List[Any] = []
        size = self._config.batch_size
        for index, start in enumerate(range(0, len(items), size)):
            if index:
                await self._sleep(self._config.batch_delay_seconds)
            self._metrics.increment("provenance.batches")
            results.extend(await asyncio.gather(*(worker(item) for item in items[start : start + size])))
        return results

    async def verify_batch(self, candidates: Iterable[PoolCandidate]) -> frozenset[str]:
        """Return only the mints with positive provenance evidence."""

        results = await self.verify_batch_results(candidates)
        return frozenset(mint for mint, result in results.items() if result.is_verified)

    async def verify_batch_results(self, candidates: Iterable[PoolCandidate]) -> Dict[str, VerificationResult]:
        """Verify candidates in rate-limited batches; malformed mints are skipped."""

        unique: "OrderedDict[str, PoolCandidate]" = OrderedDict()
        for candidate in candidates:
            if not self._is_valid_address(candidate.mint):
                self._logger.debug("Skipping malformed mint %r", candidate.mint)
                continue
            unique.setdefault(candidate.mint, candidate)

        with correlation_scope() as correlation_id:
            self._logger.info("Verifying %d mints (%s)", len(unique), correlation_id)
            allow_list = await self.fetch_allow_list()
            pending = list(unique.values())

            async def _worker(candidate: PoolCandidate) -> VerificationResult:
                return await self._verify_candidate(candidate, allow_list)

            results = await self._run_batches(pending, _worker)
            verified = dict(zip((candidate.mint for candidate in pending), results))
            self._logger.info(
                "Verified %d of %d mints, %d queued for retry",
                sum(1 for result in verified.values() if result.is_verified),
                len(verified),
                len(self._retry_queue),
            )
            return verified

    # -- retry queue ------------------------------------------------------------------

    def _enqueue_retry(self, candidate: PoolCandidate) -> None:
        if candidate.mint in self._retry_queue:
            return
        if len(self._retry_queue) >= self._config.retry_queue_max_size:
            self._metrics.increment("provenance.retry_queue_dropped")
            self._logger.warning("Retry queue full; dropping %s", candidate.mint)
            return
        self._retry_queue[candidate.mint] = RetryQueueEntry(mint=candidate.mint, pool_address=candidate.pool_address)
        self._metrics.gauge("provenance.retry_queue_size", len(self._retry_queue))

    async def process_retry_queue(self) -> RetryQueueResult:
        """Retry queued mints once each; give up on entries that reach the attempt limit."""

        entries = list(self._retry_queue.values())
        verified = 0

        async def _retry(entry: RetryQueueEntry) -> Optional[VerificationResult]:
            entry.attempts += 1
            entry.last_attempt_time = self._clock()
            result = await self._resolve_with_history(PoolCandidate(mint=entry.mint, pool_address=entry.pool_address))
            if result is not None:
                self._retry_queue.pop(entry.mint, None)
                return await self._store(entry.mint, result)
            if entry.attempts >= self._config.retry_max_attempts:
                self._retry_queue.pop(entry.mint, None)
                self._logger.info("Giving up on %s after %d attempts", entry.mint, entry.attempts)
                return await self._store(entry.mint, UNRESOLVED)
            return None

        for result in await self._run_batches(entries, _retry):
            if result is not None and result.is_verified:
                verified += 1
        self._metrics.gauge("provenance.retry_queue_size", len(self._retry_queue))
        return RetryQueueResult(processed=len(entries), verified=verified, remaining=len(self._retry_queue))

    def retry_queue_status(self) -> Dict[str, Any]:
        return {
            "size": len(self._retry_queue),
            "max_size": self._config.retry_queue_max_size,
            "max_attempts": self._config.retry_max_attempts,
            "entries": [asdict(entry) for entry in self._retry_queue.values()],
        }

    def clear(self) -> None:
        self._allow_list = None
        self._allow_list_loaded_at = 0.0
        self._allow_list_source = "none"
        self._allow_list_stale = False
        self._retry_queue.clear()


__all__ = [
    "LaunchPlatform",
    "TokenProvenanceVerifier",
    "pool_history_matches",
    "token_history_matches",
]
