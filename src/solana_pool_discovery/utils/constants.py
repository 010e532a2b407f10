"""Shared constants for pool discovery and provenance checks."""

PUBLIC_RPC_URL = "https://api.mainnet-beta.solana.com"

# Stable mint anchoring every pool of interest.
USD1_MINT = "USD1ttGY1N17NEEHLmELoaybftRBUSErhqYiQzvEmuB"

RAYDIUM_CPMM_PROGRAM = "CPMMoo8L3F4NbTegBCKVNunggL7H1ZpdTHKxQB5qKP1C"

# Launch platform identifiers. LaunchLab creates tokens; the graduate program
# migrates them into CPMM pools; the platform config marks BonkFun launches.
LAUNCHLAB_PROGRAM = "LanMV9sAd7wArD4vJFi2qDdfnVhFxYSUg6eADduJ3uj"
BONKFUN_PLATFORM_CONFIG = "FfYek5vEz23cMkWsdJwG2oa6EphsvXSHrGpdALN4g6W1"
BONKFUN_GRADUATE_PROGRAM = "boop8hVGQGqehUK2iVEMEnMrL5RbjywRzHKBmBE7ry4"

# Raydium CPMM pool state layout (byte offsets).
CPMM_POOL_ACCOUNT_SIZE = 637
CPMM_AMM_CONFIG_OFFSET = 8
CPMM_POOL_CREATOR_OFFSET = 40
CPMM_TOKEN_MINT_0_OFFSET = 72
CPMM_TOKEN_MINT_1_OFFSET = 104
CPMM_TOKEN_VAULT_0_OFFSET = 136
CPMM_TOKEN_VAULT_1_OFFSET = 168
CPMM_LP_MINT_OFFSET = 200
CPMM_OPEN_TIME_OFFSET = 272
PUBKEY_LENGTH = 32

# Sane open-time window in epoch milliseconds (Sep 2020 .. May 2033).
MIN_OPEN_TIME_MS = 1_600_000_000_000
MAX_OPEN_TIME_MS = 2_000_000_000_000

__all__ = [
    "PUBLIC_RPC_URL",
    "USD1_MINT",
    "RAYDIUM_CPMM_PROGRAM",
    "LAUNCHLAB_PROGRAM",
    "BONKFUN_PLATFORM_CONFIG",
    "BONKFUN_GRADUATE_PROGRAM",
    "CPMM_POOL_ACCOUNT_SIZE",
    "CPMM_AMM_CONFIG_OFFSET",
    "CPMM_POOL_CREATOR_OFFSET",
    "CPMM_TOKEN_MINT_0_OFFSET",
    "CPMM_TOKEN_MINT_1_OFFSET",
    "CPMM_TOKEN_VAULT_0_OFFSET",
    "CPMM_TOKEN_VAULT_1_OFFSET",
    "CPMM_LP_MINT_OFFSET",
    "CPMM_OPEN_TIME_OFFSET",
    "PUBKEY_LENGTH",
    "MIN_OPEN_TIME_MS",
    "MAX_OPEN_TIME_MS",
]
