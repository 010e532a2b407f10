"""Base58 codec and Raydium CPMM pool account decoding."""

from __future__ import annotations

import base64
import struct
from typing import Any, Mapping, Optional

from ..datalake.schemas import DiscoveredPool
from ..monitoring.logger import get_logger
from ..utils.constants import (
    CPMM_AMM_CONFIG_OFFSET,
    CPMM_LP_MINT_OFFSET,
    CPMM_OPEN_TIME_OFFSET,
    CPMM_POOL_ACCOUNT_SIZE,
    CPMM_POOL_CREATOR_OFFSET,
    CPMM_TOKEN_MINT_0_OFFSET,
    CPMM_TOKEN_MINT_1_OFFSET,
    CPMM_TOKEN_VAULT_0_OFFSET,
    CPMM_TOKEN_VAULT_1_OFFSET,
    MAX_OPEN_TIME_MS,
    MIN_OPEN_TIME_MS,
    PUBKEY_LENGTH,
)

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_BASE58_INDEX = {char: index for index, char in enumerate(BASE58_ALPHABET)}

_logger = get_logger(__name__)


def base58_encode(data: bytes) -> str:
    """Encode bytes as base58, keeping leading zero bytes as leading ``1`` characters."""

    zeros = 0
    for byte in data:
        if byte != 0:
            break
        zeros += 1

    # Little-endian base58 digits of the big-endian input number.
    digits: list[int] = []
    for byte in data:
        carry = byte
        for i, digit in enumerate(digits):
            carry += digit << 8
            digits[i] = carry % 58
            carry //= 58
        while carry > 0:
            digits.append(carry % 58)
            carry //= 58

    return BASE58_ALPHABET[0] * zeros + "".join(BASE58_ALPHABET[d] for d in reversed(digits))


def base58_decode(text: str) -> bytes:
    """Decode a base58 string; raises ``ValueError`` on characters outside the alphabet."""

    # Little-endian bytes of the number accumulated so far.
    accumulator: list[int] = []
    for char in text:
        carry = _BASE58_INDEX.get(char)
        if carry is None:
            raise ValueError(f"Invalid base58 character: {char!r}")
        for i, byte in enumerate(accumulator):
            carry += byte * 58
            accumulator[i] = carry & 0xFF
            carry >>= 8
        while carry > 0:
            accumulator.append(carry & 0xFF)
            carry >>= 8

    zeros = 0
    for char in text:
        if char != BASE58_ALPHABET[0]:
            break
        zeros += 1

    return bytes(zeros) + bytes(reversed(accumulator))


def _read_pubkey(data: bytes, offset: int) -> str:
    return base58_encode(data[offset : offset + PUBKEY_LENGTH])


def _read_open_time(data: bytes) -> Optional[int]:
    (seconds,) = struct.unpack_from("<Q", data, CPMM_OPEN_TIME_OFFSET)
    open_time_ms = seconds * 1000
    if open_time_ms < MIN_OPEN_TIME_MS or open_time_ms > MAX_OPEN_TIME_MS:
        return None
    return open_time_ms


def parse_pool_account(pubkey: str, data: bytes, stable_in_slot0: bool) -> Optional[DiscoveredPool]:
    """Decode a CPMM pool state account.

    ``stable_in_slot0`` says which mint slot the scan matched against the stable
    mint; the opposite slot becomes the pool's token side. Returns ``None`` for
    buffers shorter than the pool layout and for any decoding failure.
    """

    if len(data) < CPMM_POOL_ACCOUNT_SIZE:
        _logger.debug(
            "Skipping %s: account is %d bytes, expected %d", pubkey, len(data), CPMM_POOL_ACCOUNT_SIZE
        )
        return None

    try:
        mint_0 = _read_pubkey(data, CPMM_TOKEN_MINT_0_OFFSET)
        mint_1 = _read_pubkey(data, CPMM_TOKEN_MINT_1_OFFSET)
        vault_0 = _read_pubkey(data, CPMM_TOKEN_VAULT_0_OFFSET)
        vault_1 = _read_pubkey(data, CPMM_TOKEN_VAULT_1_OFFSET)
        return DiscoveredPool(
            pool_address=pubkey,
            token_mint=mint_1 if stable_in_slot0 else mint_0,
            token_vault=vault_1 if stable_in_slot0 else vault_0,
            stable_vault=vault_0 if stable_in_slot0 else vault_1,
            lp_mint=_read_pubkey(data, CPMM_LP_MINT_OFFSET),
            pool_creator=_read_pubkey(data, CPMM_POOL_CREATOR_OFFSET),
            amm_config=_read_pubkey(data, CPMM_AMM_CONFIG_OFFSET),
            open_time=_read_open_time(data),
            stable_is_primary_slot=stable_in_slot0,
        )
    except Exception as exc:  # noqa: BLE001 - a bad record must not abort the scan
        _logger.warning("Failed to parse pool account %s: %s", pubkey, exc)
        return None


def decode_account_data(account: Mapping[str, Any]) -> tuple[str, bytes]:
    """Return ``(pubkey, raw bytes)`` from a base64-encoded ``getProgramAccounts`` entry."""

    pubkey = str(account["pubkey"])
    payload = account["account"]["data"]
    if isinstance(payload, (list, tuple)):
        encoded, encoding = payload[0], payload[1] if len(payload) > 1 else "base64"
    else:
        encoded, encoding = payload, "base64"
    if encoding != "base64":
        raise ValueError(f"Unsupported account encoding {encoding!r} for {pubkey}")
    return pubkey, base64.b64decode(encoded, validate=True)


__all__ = [
    "BASE58_ALPHABET",
    "base58_decode",
    "base58_encode",
    "decode_account_data",
    "parse_pool_account",
]
