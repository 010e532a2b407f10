from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Set

import pytest

from solana_pool_discovery.config.settings import CacheConfig, ProvenanceConfig
from solana_pool_discovery.datalake.cache import DiscoveryCache, TieredCache
from solana_pool_discovery.datalake.schemas import Confidence, PoolCandidate, VerificationSource
from solana_pool_discovery.errors import AllowListUnavailableError, HistoryFetchError
from solana_pool_discovery.ingestion.provenance import (
    LaunchPlatform,
    TokenProvenanceVerifier,
    pool_history_matches,
    token_history_matches,
)
from solana_pool_discovery.utils.constants import (
    BONKFUN_GRADUATE_PROGRAM,
    BONKFUN_PLATFORM_CONFIG,
    LAUNCHLAB_PROGRAM,
    RAYDIUM_CPMM_PROGRAM,
)

PLATFORM = LaunchPlatform(
    launchlab_program=LAUNCHLAB_PROGRAM,
    platform_config=BONKFUN_PLATFORM_CONFIG,
    graduate_program=BONKFUN_GRADUATE_PROGRAM,
)
SYSTEM_PROGRAM = "11111111111111111111111111111111"


class FakeAllowList:
    def __init__(self, mints: Optional[Set[str]] = None, error: Optional[Exception] = None) -> None:
        self.mints = mints or set()
        self.error = error
        self.calls = 0

    async def fetch_mints(self) -> Set[str]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return set(self.mints)


class FakeHistory:
    def __init__(self, histories: Optional[Dict[str, Any]] = None, default: Any = None) -> None:
        self.histories = histories or {}
        self.default = [] if default is None else default
        self.calls: List[str] = []

    async def fetch_transactions(self, address: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        self.calls.append(address)
        outcome = self.histories.get(address, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _launch_tx() -> Dict[str, Any]:
    return {"instructions": [{"programId": LAUNCHLAB_PROGRAM, "accounts": [BONKFUN_PLATFORM_CONFIG, "x"]}]}


def _plain_tx() -> Dict[str, Any]:
    return {"instructions": [{"programId": SYSTEM_PROGRAM, "accounts": [], "innerInstructions": []}]}


def _verifier(allow_list, history, clock, metrics, **overrides) -> tuple[TokenProvenanceVerifier, DiscoveryCache, RecordingSleep]:
    cache = DiscoveryCache(TieredCache(None, clock=clock, metrics=metrics), CacheConfig())
    sleep = RecordingSleep()
    config = ProvenanceConfig(batch_delay_seconds=0.25, **overrides)
    verifier = TokenProvenanceVerifier(cache, allow_list, history, config, clock=clock, sleep=sleep, metrics=metrics)
    return verifier, cache, sleep


def test_token_history_requires_platform_config_for_launchlab() -> None:
    assert token_history_matches([_launch_tx()], PLATFORM)
    bare_launch = {"instructions": [{"programId": LAUNCHLAB_PROGRAM, "accounts": ["someone-else"]}]}
    assert not token_history_matches([bare_launch], PLATFORM)
    graduate = {"instructions": [{"programId": BONKFUN_GRADUATE_PROGRAM, "accounts": []}]}
    assert token_history_matches([graduate], PLATFORM)
    inner = {
        "instructions": [
            {"programId": RAYDIUM_CPMM_PROGRAM, "innerInstructions": [{"programId": LAUNCHLAB_PROGRAM}]}
        ]
    }
    assert token_history_matches([inner], PLATFORM)
    assert not token_history_matches([_plain_tx()], PLATFORM)
    assert not token_history_matches([], PLATFORM)


def test_pool_history_accepts_any_platform_identifier() -> None:
    bare_launch = {"instructions": [{"programId": LAUNCHLAB_PROGRAM, "accounts": []}]}
    assert pool_history_matches([bare_launch], PLATFORM)
    account_only = {"instructions": [], "accountData": [{"account": BONKFUN_PLATFORM_CONFIG}]}
    assert pool_history_matches([account_only], PLATFORM)
    assert not token_history_matches([account_only], PLATFORM)
    assert not pool_history_matches([_plain_tx(), {"accountData": [{"account": SYSTEM_PROGRAM}]}], PLATFORM)


def test_allow_list_membership_decides_with_high_confidence(new_key, clock, metrics) -> None:
    listed, unlisted = new_key(), new_key()
    history = FakeHistory()
    verifier, _, _ = _verifier(FakeAllowList({listed}), history, clock, metrics)

    async def _exercise():
        return await verifier.verify_token(listed), await verifier.verify_token(unlisted)

    hit, miss = asyncio.run(_exercise())

    assert (hit.is_verified, hit.confidence, hit.source) == (True, Confidence.HIGH, VerificationSource.ALLOW_LIST)
    assert (miss.is_verified, miss.confidence, miss.source) == (False, Confidence.HIGH, VerificationSource.ALLOW_LIST)
    assert history.calls == []


def test_verify_token_falls_back_to_history_when_list_unavailable(new_key, clock, metrics) -> None:
    launched, plain = new_key(), new_key()
    history = FakeHistory({launched: [_launch_tx()], plain: [_plain_tx()]})
    verifier, _, _ = _verifier(FakeAllowList(error=AllowListUnavailableError("no key")), history, clock, metrics)

    async def _exercise():
        return await verifier.verify_token(launched), await verifier.verify_token(plain)

    positive, negative = asyncio.run(_exercise())

    assert positive.is_verified and positive.confidence is Confidence.HIGH
    assert positive.source is VerificationSource.TOKEN_HISTORY
    assert not negative.is_verified and negative.confidence is Confidence.MEDIUM


def test_verify_token_fails_closed_and_does_not_cache_errors(new_key, clock, metrics) -> None:
    mint = new_key()
    history = FakeHistory(default=HistoryFetchError("rate limited", status_code=429))
    verifier, cache, _ = _verifier(FakeAllowList(error=AllowListUnavailableError("down")), history, clock, metrics)

    result = asyncio.run(verifier.verify_token(mint))

    assert not result.is_verified
    assert result.confidence is Confidence.LOW
    assert result.source is VerificationSource.UNKNOWN
    assert asyncio.run(cache.get_verification(mint)) is None
    assert [entry["mint"] for entry in verifier.retry_queue_status()["entries"]] == [mint]


def test_cached_results_are_served_with_cache_source(new_key, clock, metrics) -> None:
    mint = new_key()
    allow_list = FakeAllowList({mint})
    verifier, _, _ = _verifier(allow_list, FakeHistory(), clock, metrics)

    async def _exercise():
        await verifier.verify_token(mint)
        return await verifier.verify_token(mint)

    second = asyncio.run(_exercise())
    assert second.is_verified and second.source is VerificationSource.CACHE
    assert allow_list.calls == 1


def test_batch_runs_in_rate_limited_batches(new_key, clock, metrics) -> None:
    candidates = [PoolCandidate(mint=new_key(), pool_address=new_key()) for _ in range(12)]
    verifier, _, sleep = _verifier(FakeAllowList(), FakeHistory(), clock, metrics)

    results = asyncio.run(verifier.verify_batch_results(candidates))

    assert len(results) == 12
    assert metrics.get("provenance.batches") == 3
    assert sleep.delays == [0.25, 0.25]
    assert not any(result.is_verified for result in results.values())


def test_batch_ors_token_and_pool_checks(new_key, clock, metrics) -> None:
    by_pool = PoolCandidate(mint=new_key(), pool_address=new_key())
    by_token = PoolCandidate(mint=new_key(), pool_address=new_key())
    neither = PoolCandidate(mint=new_key(), pool_address=new_key())
    history = FakeHistory(
        {
            by_pool.pool_address: [{"accountData": [{"account": BONKFUN_GRADUATE_PROGRAM}]}],
            by_token.mint: [_launch_tx()],
        }
    )
    verifier, cache, _ = _verifier(FakeAllowList(), history, clock, metrics)

    results = asyncio.run(verifier.verify_batch_results([by_pool, by_token, neither]))

    assert results[by_pool.mint].is_verified
    assert results[by_pool.mint].source is VerificationSource.POOL_HISTORY
    assert results[by_token.mint].is_verified
    assert results[by_token.mint].source is VerificationSource.TOKEN_HISTORY
    assert not results[neither.mint].is_verified
    assert results[neither.mint].confidence is Confidence.MEDIUM
    cached = asyncio.run(cache.get_verification(neither.mint))
    assert cached is not None and not cached.is_verified
    assert verifier.retry_queue_status()["size"] == 0


def test_batch_allow_list_hits_skip_history(new_key, clock, metrics) -> None:
    listed = PoolCandidate(mint=new_key(), pool_address=new_key())
    history = FakeHistory()
    verifier, _, _ = _verifier(FakeAllowList({listed.mint}), history, clock, metrics)

    results = asyncio.run(verifier.verify_batch_results([listed]))

    assert results[listed.mint].source is VerificationSource.ALLOW_LIST
    assert history.calls == []


def test_batch_skips_malformed_addresses(new_key, clock, metrics) -> None:
    good = PoolCandidate(mint=new_key())
    verifier, _, _ = _verifier(FakeAllowList(), FakeHistory(), clock, metrics)

    results = asyncio.run(
        verifier.verify_batch_results([good, PoolCandidate(mint="short"), PoolCandidate(mint="0" * 44)])
    )

    assert list(results) == [good.mint]


def test_upstream_errors_go_to_retry_queue_not_negative_cache(new_key, clock, metrics) -> None:
    candidate = PoolCandidate(mint=new_key(), pool_address=new_key())
    history = FakeHistory(default=HistoryFetchError("timeout"))
    verifier, cache, _ = _verifier(FakeAllowList(), history, clock, metrics)

    results = asyncio.run(verifier.verify_batch_results([candidate]))

    assert not results[candidate.mint].is_verified
    assert results[candidate.mint].confidence is Confidence.LOW
    assert asyncio.run(cache.get_verification(candidate.mint)) is None
    status = verifier.retry_queue_status()
    assert status["size"] == 1
    assert status["entries"][0]["mint"] == candidate.mint
    assert status["entries"][0]["attempts"] == 0


def test_retry_queue_resolves_entries_once_history_recovers(new_key, clock, metrics) -> None:
    candidate = PoolCandidate(mint=new_key(), pool_address=new_key())
    history = FakeHistory({candidate.mint: HistoryFetchError("down"), candidate.pool_address: HistoryFetchError("down")})
    verifier, cache, _ = _verifier(FakeAllowList(), history, clock, metrics)

    asyncio.run(verifier.verify_batch([candidate]))
    history.histories = {candidate.mint: [_launch_tx()]}
    outcome = asyncio.run(verifier.process_retry_queue())

    assert (outcome.processed, outcome.verified, outcome.remaining) == (1, 1, 0)
    cached = asyncio.run(cache.get_verification(candidate.mint))
    assert cached is not None and cached.is_verified


def test_retry_queue_gives_up_after_max_attempts(new_key, clock, metrics) -> None:
    candidate = PoolCandidate(mint=new_key())
    history = FakeHistory(default=HistoryFetchError("down"))
    verifier, cache, _ = _verifier(FakeAllowList(), history, clock, metrics, retry_max_attempts=3)

    asyncio.run(verifier.verify_batch([candidate]))
    remaining = [asyncio.run(verifier.process_retry_queue()).remaining for _ in range(3)]

    assert remaining == [1, 1, 0]
    cached = asyncio.run(cache.get_verification(candidate.mint))
    assert cached is not None
    assert not cached.is_verified and cached.confidence is Confidence.LOW


def test_retry_queue_is_bounded(new_key, clock, metrics) -> None:
    candidates = [PoolCandidate(mint=new_key()) for _ in range(4)]
    history = FakeHistory(default=HistoryFetchError("down"))
    verifier, _, _ = _verifier(FakeAllowList(), history, clock, metrics, retry_queue_max_size=2)

    asyncio.run(verifier.verify_batch(candidates))

    assert verifier.retry_queue_status()["size"] == 2
    assert metrics.get("provenance.retry_queue_dropped") == 2


def test_allow_list_outage_keeps_stale_snapshot(new_key, clock, metrics) -> None:
    mint = new_key()
    allow_list = FakeAllowList({mint})
    verifier, _, _ = _verifier(allow_list, FakeHistory(), clock, metrics)

    assert asyncio.run(verifier.fetch_allow_list()) == frozenset({mint})
    status = verifier.whitelist_status()
    assert status.loaded and status.source == "dune" and not status.is_stale

    allow_list.error = AllowListUnavailableError("down")
    assert asyncio.run(verifier.refresh_allow_list()) == frozenset({mint})
    assert verifier.whitelist_status().is_stale


def test_allow_list_served_from_cache_without_refetch(new_key, clock, metrics) -> None:
    mint = new_key()
    allow_list = FakeAllowList({mint})
    verifier, cache, _ = _verifier(allow_list, FakeHistory(), clock, metrics)
    asyncio.run(cache.set_whitelist([mint]))

    assert asyncio.run(verifier.fetch_allow_list()) == frozenset({mint})
    assert allow_list.calls == 0
    assert verifier.whitelist_status().source == "cache"


def test_nothing_is_verified_when_every_source_fails(new_key, clock, metrics) -> None:
    candidates = [PoolCandidate(mint=new_key(), pool_address=new_key()) for _ in range(6)]
    history = FakeHistory(default=HistoryFetchError("down"))
    verifier, _, _ = _verifier(FakeAllowList(error=AllowListUnavailableError("down")), history, clock, metrics)

    batch = asyncio.run(verifier.verify_batch_results(candidates))
    single = asyncio.run(verifier.verify_token(candidates[0].mint))

    assert not any(result.is_verified for result in batch.values())
    assert not single.is_verified
    assert verifier.whitelist_status().loaded is False


@pytest.mark.parametrize("mint", ["", "abc", "0OIl" * 11])
def test_verify_token_rejects_malformed_mints(mint: str, clock, metrics) -> None:
    history = FakeHistory()
    verifier, _, _ = _verifier(FakeAllowList(), history, clock, metrics)
    result = asyncio.run(verifier.verify_token(mint))
    assert not result.is_verified
    assert history.calls == []


def test_verify_batch_returns_only_verified_mints(new_key, clock, metrics) -> None:
    launched = PoolCandidate(mint=new_key(), pool_address=new_key())
    plain = PoolCandidate(mint=new_key(), pool_address=new_key())
    erroring = PoolCandidate(mint=new_key())
    history = FakeHistory({launched.mint: [_launch_tx()], erroring.mint: HistoryFetchError("down")})
    verifier, _, _ = _verifier(FakeAllowList(), history, clock, metrics)

    verified = asyncio.run(verifier.verify_batch([launched, plain, erroring]))

    assert verified == frozenset({launched.mint})
    assert plain.mint not in verified
    assert erroring.mint not in verified


def test_stale_allow_list_absence_falls_back_to_history(new_key, clock, metrics) -> None:
    old, fresh = new_key(), new_key()
    allow_list = FakeAllowList({old})
    history = FakeHistory({fresh: [_launch_tx()]})
    verifier, _, _ = _verifier(allow_list, history, clock, metrics)

    asyncio.run(verifier.fetch_allow_list())
    clock.advance(7 * 60 * 60)
    allow_list.error = AllowListUnavailableError("down")

    result = asyncio.run(verifier.verify_token(fresh))

    assert verifier.whitelist_status().is_stale
    assert result.is_verified
    assert result.source is VerificationSource.TOKEN_HISTORY
    assert history.calls == [fresh]


def test_stale_allow_list_miss_is_not_cached_when_history_fails(new_key, clock, metrics) -> None:
    old, fresh = new_key(), new_key()
    allow_list = FakeAllowList({old})
    verifier, cache, _ = _verifier(allow_list, FakeHistory(default=HistoryFetchError("429")), clock, metrics)

    asyncio.run(verifier.fetch_allow_list())
    clock.advance(7 * 60 * 60)
    allow_list.error = AllowListUnavailableError("down")

    result = asyncio.run(verifier.verify_token(fresh))
    listed = asyncio.run(verifier.verify_token(old))

    assert (result.is_verified, result.confidence, result.source) == (
        False,
        Confidence.LOW,
        VerificationSource.UNKNOWN,
    )
    assert asyncio.run(cache.get_verification(fresh)) is None
    assert verifier.retry_queue_status()["size"] == 1
    assert listed.is_verified and listed.source is VerificationSource.ALLOW_LIST
