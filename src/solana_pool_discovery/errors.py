"""Exception hierarchy for discovery and provenance checks."""

from __future__ import annotations

from typing import Optional


class PoolDiscoveryError(Exception):
    """Base class for every error raised by this package."""


class RPCError(PoolDiscoveryError):
    """An upstream JSON-RPC call failed."""


class RPCTransportError(RPCError):
    """The provider answered with a non-success HTTP status."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RPCResponseError(RPCError):
    """The provider answered with a JSON-RPC ``error`` member."""

    def __init__(self, message: str, *, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class RPCExhaustedError(RPCError):
    """No endpoint was left to try."""


class DiscoveryError(PoolDiscoveryError):
    """Both account scans failed."""


class AllowListUnavailableError(PoolDiscoveryError):
    """The authoritative allow-list could not be fetched."""


class HistoryFetchError(PoolDiscoveryError):
    """Transaction history for an address could not be fetched."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


__all__ = [
    "AllowListUnavailableError",
    "DiscoveryError",
    "HistoryFetchError",
    "PoolDiscoveryError",
    "RPCError",
    "RPCExhaustedError",
    "RPCResponseError",
    "RPCTransportError",
]
