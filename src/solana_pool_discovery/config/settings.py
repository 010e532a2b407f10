"""Configuration management for pool discovery and provenance checks."""

from __future__ import annotations

import os
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, cast

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from solders.pubkey import Pubkey

from ..utils.constants import (
    BONKFUN_GRADUATE_PROGRAM,
    BONKFUN_PLATFORM_CONFIG,
    CPMM_POOL_ACCOUNT_SIZE,
    LAUNCHLAB_PROGRAM,
    PUBLIC_RPC_URL,
    RAYDIUM_CPMM_PROGRAM,
    USD1_MINT,
)

DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "APP_CONFIG_FILE"
PROFILE_ENV_VAR = "DISCOVERY_PROFILE"
DEFAULT_PROFILE = "default"


def _resolve_config_path() -> Path:
    env_value = os.getenv(CONFIG_FILE_ENV_VAR)
    if env_value:
        candidate = Path(env_value)
        if not candidate.is_absolute():
            candidate = Path.cwd() / candidate
        return candidate
    return Path.cwd() / DEFAULT_CONFIG_FILE


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {**base}
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(cast(Dict[str, Any], result[key]), value)
        else:
            result[key] = value
    return result


def _select_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    if not data:
        return {}
    base_section = cast(Dict[str, Any], data.get(DEFAULT_PROFILE, {}))
    requested = (os.getenv(PROFILE_ENV_VAR) or DEFAULT_PROFILE).lower()
    if requested != DEFAULT_PROFILE and requested in data:
        return _deep_merge(base_section, cast(Dict[str, Any], data[requested]))
    if base_section:
        return base_section
    return data


def _load_toml_config() -> Tuple[Dict[str, Any], Optional[Path]]:
    path = _resolve_config_path()
    if not path.exists():
        return {}, None
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    if not isinstance(payload, dict):
        return {}, path
    merged = _select_profile(payload)
    if not isinstance(merged, dict):
        return {}, path
    return dict(merged), path


def _validate_pubkey(value: str) -> str:
    # Raises ValueError on malformed keys, which pydantic reports as a validation error.
    Pubkey.from_string(value)
    return value


class ProviderEndpoint(BaseModel):
    """A single upstream JSON-RPC provider."""

    name: str
    url: str
    weight: int = Field(default=1, ge=1)


class RPCConfig(BaseModel):
    """Upstream JSON-RPC providers and failover tuning."""

    public_url: AnyHttpUrl = Field(default=PUBLIC_RPC_URL)
    helius_api_key: Optional[str] = None
    alchemy_api_key: Optional[str] = None
    chainstack_api_key: Optional[str] = None
    quicknode_url: Optional[str] = None
    request_timeout: float = Field(default=30.0, ge=1.0, le=120.0)
    max_retries: int = Field(default=3, ge=1, le=10)
    backoff_base_seconds: float = Field(default=30.0, ge=0.0)
    backoff_cap_seconds: float = Field(default=300.0, ge=0.0)

    def provider_endpoints(self) -> List[ProviderEndpoint]:
        """Return configured providers in priority order, skipping missing credentials."""

        endpoints: List[ProviderEndpoint] = []
        if self.helius_api_key:
            endpoints.append(
                ProviderEndpoint(
                    name="helius",
                    url=f"https://mainnet.helius-rpc.com/?api-key={self.helius_api_key.strip()}",
                    weight=4,
                )
            )
        if self.alchemy_api_key:
            endpoints.append(
                ProviderEndpoint(
                    name="alchemy",
                    url=f"https://solana-mainnet.g.alchemy.com/v2/{self.alchemy_api_key.strip()}",
                    weight=3,
                )
            )
        if self.chainstack_api_key:
            endpoints.append(
                ProviderEndpoint(
                    name="chainstack",
                    url=f"https://solana-mainnet.core.chainstack.com/{self.chainstack_api_key.strip()}",
                    weight=2,
                )
            )
        if self.quicknode_url:
            endpoints.append(ProviderEndpoint(name="quicknode", url=self.quicknode_url.strip(), weight=2))
        endpoints.append(ProviderEndpoint(name="public", url=str(self.public_url), weight=1))
        return endpoints


class DiscoveryConfig(BaseModel):
    """Which program and stable mint the account scans target."""

    program_id: str = Field(default=RAYDIUM_CPMM_PROGRAM)
    stable_mint: str = Field(default=USD1_MINT)
    account_size: int = Field(default=CPMM_POOL_ACCOUNT_SIZE, ge=1)
    metadata_chunk_size: int = Field(default=100, ge=1, le=100)

    @field_validator("program_id", "stable_mint")
    @classmethod
    def _check_pubkey(cls, value: str) -> str:
        return _validate_pubkey(value)


class CacheConfig(BaseModel):
    """Cache tiers and the optional persistent store."""

    redis_url: Optional[str] = None
    key_prefix: str = Field(default="pools:usd1")
    pool_list_ttl_seconds: float = Field(default=5 * 60, gt=0)
    token_metadata_ttl_seconds: float = Field(default=60 * 60, gt=0)
    enriched_tokens_ttl_seconds: float = Field(default=30, gt=0)
    whitelist_ttl_seconds: float = Field(default=6 * 60 * 60, gt=0)
    verification_ttl_seconds: float = Field(default=24 * 60 * 60, gt=0)
    memory_max_entries: int = Field(default=10_000, ge=16)
    max_batch_fetch: int = Field(default=50, ge=1)
    store_timeout: float = Field(default=2.0, gt=0)


class ProvenanceConfig(BaseModel):
    """Allow-list source, history heuristics, and batch pacing."""

    dune_api_key: Optional[str] = None
    dune_base_url: AnyHttpUrl = Field(default="https://api.dune.com/api/v1")
    dune_query_id: Optional[int] = Field(default=None, ge=1)
    dune_page_limit: int = Field(default=1_000, ge=1, le=32_000)
    dune_max_pages: int = Field(default=50, ge=1)
    helius_api_key: Optional[str] = None
    helius_api_url: AnyHttpUrl = Field(default="https://api.helius.xyz/v0")
    history_window: int = Field(default=5, ge=1, le=100)
    http_timeout: float = Field(default=10.0, ge=1.0, le=60.0)
    launchlab_program: str = Field(default=LAUNCHLAB_PROGRAM)
    platform_config: str = Field(default=BONKFUN_PLATFORM_CONFIG)
    graduate_program: str = Field(default=BONKFUN_GRADUATE_PROGRAM)
    batch_size: int = Field(default=5, ge=1, le=50)
    batch_delay_seconds: float = Field(default=0.5, ge=0.0)
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_queue_max_size: int = Field(default=500, ge=1)
    min_address_length: int = Field(default=32, ge=1)

    @field_validator("launchlab_program", "platform_config", "graduate_program")
    @classmethod
    def _check_pubkey(cls, value: str) -> str:
        return _validate_pubkey(value)


class MonitoringConfig(BaseModel):
    """Logging configuration."""

    log_level: str = Field(default="INFO")


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    rpc: RPCConfig = Field(default_factory=RPCConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    provenance: ProvenanceConfig = Field(default_factory=ProvenanceConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    config_file: Optional[Path] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def file_settings(_: Optional[BaseSettings] = None) -> Dict[str, Any]:
            payload, path = _load_toml_config()
            if path is not None:
                payload.setdefault("config_file", str(path))
            return payload

        # Ensure runtime environment variables win over static config file defaults.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_settings,
            file_secret_settings,
        )

    @model_validator(mode="after")
    def _apply_provider_credentials(self) -> "AppConfig":
        helius_key = os.getenv("HELIUS_API_KEY")
        if helius_key:
            self.rpc.helius_api_key = self.rpc.helius_api_key or helius_key.strip()
            self.provenance.helius_api_key = self.provenance.helius_api_key or helius_key.strip()
        for env_name, attr in (
            ("ALCHEMY_API_KEY", "alchemy_api_key"),
            ("CHAINSTACK_API_KEY", "chainstack_api_key"),
            ("QUICKNODE_URL", "quicknode_url"),
        ):
            value = os.getenv(env_name)
            if value and not getattr(self.rpc, attr):
                setattr(self.rpc, attr, value.strip())
        dune_key = os.getenv("DUNE_API_KEY")
        if dune_key and not self.provenance.dune_api_key:
            self.provenance.dune_api_key = dune_key.strip()
        if not self.cache.redis_url:
            redis_url = os.getenv("REDIS_URL") or os.getenv("KV_URL")
            if redis_url:
                self.cache.redis_url = redis_url.strip()
        return self


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Create a cached application configuration object."""

    return AppConfig()


__all__ = [
    "AppConfig",
    "CacheConfig",
    "DiscoveryConfig",
    "MonitoringConfig",
    "ProvenanceConfig",
    "ProviderEndpoint",
    "RPCConfig",
    "get_app_config",
]
