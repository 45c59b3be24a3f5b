"""
Application settings.

One frozen Settings dataclass built from environment variables (and the
optional .env file) with defaults for everything. Jobs, chain adapters and
the API server take the values they need from get_settings().
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache

from backend_payrail.config.env import (
    env_float,
    env_int,
    env_str,
    get_database_url,
    get_evm_rpc_url,
    get_solana_network,
    get_solana_rpc_url,
)

DEFAULT_FINALITY_THRESHOLD = 32
DEFAULT_EVM_FINALITY_THRESHOLD = 12

EVM_CHAINS = ("ethereum", "base", "polygon")
SUPPORTED_CHAINS = ("solana",) + EVM_CHAINS


def _evm_rpc_urls() -> dict[str, str]:
    return {chain: get_evm_rpc_url(chain) for chain in EVM_CHAINS}


@dataclass(frozen=True)
class Settings:
    """Runtime configuration. Build with Settings.from_env() or get_settings()."""

    database_url: str = "sqlite:///payrail.db"
    solana_network: str = "devnet"
    solana_rpc_url: str = "https://api.devnet.solana.com"
    evm_rpc_urls: dict[str, str] = field(default_factory=dict)
    rpc_timeout_sec: float = 15.0
    rpc_max_retries: int = 3

    finality_threshold: int = DEFAULT_FINALITY_THRESHOLD
    evm_finality_threshold: int = DEFAULT_EVM_FINALITY_THRESHOLD
    recent_transfers_limit: int = 20

    monitor_interval_sec: float = 30.0
    finalizer_interval_sec: float = 60.0
    dispatcher_interval_sec: float = 15.0
    payout_reconciler_interval_sec: float = 30.0
    expiry_interval_sec: float = 300.0

    webhook_timeout_sec: float = 10.0
    webhook_batch_size: int = 50
    webhook_max_attempts: int = 5

    payout_confirmation_timeout_sec: float = 60.0
    intent_default_ttl_minutes: int = 30

    api_host: str = "0.0.0.0"
    api_port: int = 8000
    run_jobs_in_api: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=get_database_url(),
            solana_network=get_solana_network(),
            solana_rpc_url=get_solana_rpc_url(),
            evm_rpc_urls=_evm_rpc_urls(),
            rpc_timeout_sec=env_float("RPC_TIMEOUT_SEC", 15.0),
            rpc_max_retries=env_int("RPC_MAX_RETRIES", 3),
            finality_threshold=env_int("FINALITY_THRESHOLD", DEFAULT_FINALITY_THRESHOLD),
            evm_finality_threshold=env_int("EVM_FINALITY_THRESHOLD", DEFAULT_EVM_FINALITY_THRESHOLD),
            recent_transfers_limit=env_int("RECENT_TRANSFERS_LIMIT", 20),
            monitor_interval_sec=env_float("MONITOR_INTERVAL_SEC", 30.0),
            finalizer_interval_sec=env_float("FINALIZER_INTERVAL_SEC", 60.0),
            dispatcher_interval_sec=env_float("DISPATCHER_INTERVAL_SEC", 15.0),
            payout_reconciler_interval_sec=env_float("PAYOUT_RECONCILER_INTERVAL_SEC", 30.0),
            expiry_interval_sec=env_float("EXPIRY_INTERVAL_SEC", 300.0),
            webhook_timeout_sec=env_float("WEBHOOK_TIMEOUT_SEC", 10.0),
            webhook_batch_size=env_int("WEBHOOK_BATCH_SIZE", 50),
            webhook_max_attempts=env_int("WEBHOOK_MAX_ATTEMPTS", 5),
            payout_confirmation_timeout_sec=env_float("PAYOUT_CONFIRMATION_TIMEOUT_SEC", 60.0),
            intent_default_ttl_minutes=env_int("INTENT_DEFAULT_TTL_MINUTES", 30),
            api_host=env_str("API_HOST", "0.0.0.0"),
            api_port=env_int("API_PORT", 8000),
            run_jobs_in_api=env_str("RUN_JOBS_IN_API", "1").lower() in ("1", "true", "yes", "on"),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings (cached)."""
    return Settings.from_env()


def reset_settings_cache() -> None:
    """Drop cached settings so the next get_settings() re-reads the env. Tests only."""
    get_settings.cache_clear()
