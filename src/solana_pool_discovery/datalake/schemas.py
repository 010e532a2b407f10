"""Data models shared by discovery, caching, and provenance checks."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class DiscoveredPool:
    """A CPMM pool pairing the stable mint against one other token."""

    pool_address: str
    token_mint: str
    token_vault: str
    stable_vault: str
    lp_mint: str
    pool_creator: str
    amm_config: str
    open_time: Optional[int]
    stable_is_primary_slot: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DiscoveredPool":
        return cls(
            pool_address=str(payload["pool_address"]),
            token_mint=str(payload["token_mint"]),
            token_vault=str(payload["token_vault"]),
            stable_vault=str(payload["stable_vault"]),
            lp_mint=str(payload["lp_mint"]),
            pool_creator=str(payload["pool_creator"]),
            amm_config=str(payload.get("amm_config", "")),
            open_time=payload.get("open_time"),
            stable_is_primary_slot=bool(payload["stable_is_primary_slot"]),
        )


@dataclass(slots=True)
class PoolSet:
    """Output of one discovery pass."""

    pools: List[DiscoveredPool]
    token_mints: List[str]
    discovered_at: float

    def pool_for_mint(self, mint: str) -> Optional[DiscoveredPool]:
        for pool in self.pools:
            if pool.token_mint == mint:
                return pool
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pools": [pool.to_dict() for pool in self.pools],
            "token_mints": list(self.token_mints),
            "discovered_at": self.discovered_at,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PoolSet":
        return cls(
            pools=[DiscoveredPool.from_dict(item) for item in payload.get("pools", [])],
            token_mints=[str(mint) for mint in payload.get("token_mints", [])],
            discovered_at=float(payload.get("discovered_at", 0.0)),
        )


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    """A cached value stamped with its write time and tier TTL."""

    data: T
    timestamp: float
    ttl_seconds: float

    def is_valid(self, now: float) -> bool:
        return now - self.timestamp < self.ttl_seconds

    def age(self, now: float) -> float:
        return max(0.0, now - self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {"data": self.data, "timestamp": self.timestamp, "ttl_seconds": self.ttl_seconds}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CacheEntry[Any]":
        return cls(
            data=payload["data"],
            timestamp=float(payload["timestamp"]),
            ttl_seconds=float(payload["ttl_seconds"]),
        )


@dataclass(slots=True)
class TokenMetadata:
    """Mint account facts read from chain."""

    mint: str
    decimals: int = 9
    supply: float = 0.0
    mint_authority: Optional[str] = None
    freeze_authority: Optional[str] = None
    symbol: Optional[str] = None
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "TokenMetadata":
        return cls(
            mint=str(payload["mint"]),
            decimals=int(payload.get("decimals", 9)),
            supply=float(payload.get("supply", 0.0)),
            mint_authority=payload.get("mint_authority"),
            freeze_authority=payload.get("freeze_authority"),
            symbol=payload.get("symbol"),
            name=payload.get("name"),
        )


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class VerificationSource(str, Enum):
    """Which check produced a verification result."""

    ALLOW_LIST = "allow-list"
    TOKEN_HISTORY = "token-history"
    POOL_HISTORY = "pool-history"
    CACHE = "cache"
    UNKNOWN = "unknown"


@dataclass(slots=True, frozen=True)
class VerificationResult:
    is_verified: bool
    confidence: Confidence
    source: VerificationSource

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_verified": self.is_verified,
            "confidence": self.confidence.value,
            "source": self.source.value,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "VerificationResult":
        return cls(
            is_verified=bool(payload["is_verified"]),
            confidence=Confidence(payload["confidence"]),
            source=VerificationSource(payload["source"]),
        )


@dataclass(slots=True)
class RetryQueueEntry:
    """A mint whose provenance could not be resolved yet."""

    mint: str
    pool_address: Optional[str]
    attempts: int = 0
    last_attempt_time: float = 0.0


@dataclass(slots=True, frozen=True)
class PoolCandidate:
    """Input row for batch verification."""

    mint: str
    pool_address: Optional[str] = None


@dataclass(slots=True, frozen=True)
class RetryQueueResult:
    processed: int
    verified: int
    remaining: int


@dataclass(slots=True)
class WhitelistStatus:
    loaded: bool
    token_count: int
    source: str
    age_seconds: float
    is_stale: bool


@dataclass(slots=True)
class CacheStats:
    storage: str
    pool_cache_hit: bool
    pool_cache_age_seconds: Optional[float]
    pool_count: int
    memory_entries: int
    tiers: Dict[str, int] = field(default_factory=dict)


__all__ = [
    "CacheEntry",
    "CacheStats",
    "Confidence",
    "DiscoveredPool",
    "PoolCandidate",
    "PoolSet",
    "RetryQueueEntry",
    "RetryQueueResult",
    "TokenMetadata",
    "VerificationResult",
    "VerificationSource",
    "WhitelistStatus",
]
