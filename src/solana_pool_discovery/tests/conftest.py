from __future__ import annotations

import base64
import struct
from typing import Callable, Dict, Optional

import pytest
from solders.pubkey import Pubkey

from solana_pool_discovery.monitoring.metrics import MetricsRegistry
from solana_pool_discovery.utils.constants import (
    CPMM_AMM_CONFIG_OFFSET,
    CPMM_LP_MINT_OFFSET,
    CPMM_OPEN_TIME_OFFSET,
    CPMM_POOL_ACCOUNT_SIZE,
    CPMM_POOL_CREATOR_OFFSET,
    CPMM_TOKEN_MINT_0_OFFSET,
    CPMM_TOKEN_MINT_1_OFFSET,
    CPMM_TOKEN_VAULT_0_OFFSET,
    CPMM_TOKEN_VAULT_1_OFFSET,
)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def new_key() -> Callable[[], str]:
    return lambda: str(Pubkey.new_unique())


def _write_key(buffer: bytearray, offset: int, key: str) -> None:
    buffer[offset : offset + 32] = bytes(Pubkey.from_string(key))


@pytest.fixture
def build_pool_account(new_key) -> Callable[..., bytes]:
    def _build(
        mint_0: str,
        mint_1: str,
        *,
        vault_0: Optional[str] = None,
        vault_1: Optional[str] = None,
        lp_mint: Optional[str] = None,
        creator: Optional[str] = None,
        amm_config: Optional[str] = None,
        open_time_seconds: int = 1_710_000_000,
        size: int = CPMM_POOL_ACCOUNT_SIZE,
    ) -> bytes:
        buffer = bytearray(max(size, CPMM_POOL_ACCOUNT_SIZE))
        _write_key(buffer, CPMM_AMM_CONFIG_OFFSET, amm_config or new_key())
        _write_key(buffer, CPMM_POOL_CREATOR_OFFSET, creator or new_key())
        _write_key(buffer, CPMM_TOKEN_MINT_0_OFFSET, mint_0)
        _write_key(buffer, CPMM_TOKEN_MINT_1_OFFSET, mint_1)
        _write_key(buffer, CPMM_TOKEN_VAULT_0_OFFSET, vault_0 or new_key())
        _write_key(buffer, CPMM_TOKEN_VAULT_1_OFFSET, vault_1 or new_key())
        _write_key(buffer, CPMM_LP_MINT_OFFSET, lp_mint or new_key())
        struct.pack_into("<Q", buffer, CPMM_OPEN_TIME_OFFSET, open_time_seconds)
        return bytes(buffer[:size])

    return _build


@pytest.fixture
def rpc_account() -> Callable[[str, bytes], Dict[str, object]]:
    """Wrap raw bytes the way ``getProgramAccounts`` returns them with base64 encoding."""

    def _wrap(pubkey: str, data: bytes) -> Dict[str, object]:
        return {
            "pubkey": pubkey,
            "account": {
                "data": [base64.b64encode(data).decode("ascii"), "base64"],
                "executable": False,
                "lamports": 2_039_280,
                "owner": "CPMMoo8L3F4NbTegBCKVNunggL7H1ZpdTHKxQB5qKP1C",
            },
        }

    return _wrap
