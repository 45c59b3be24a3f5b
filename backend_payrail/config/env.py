"""
Environment variable loading for Payrail.

- SOLANA_NETWORK: devnet | mainnet (default: devnet)
- SOLANA_RPC_URL: RPC endpoint; HELIUS_API_KEY builds one when unset
- ETHEREUM_RPC_URL / BASE_RPC_URL / POLYGON_RPC_URL: EVM endpoints
- DATABASE_URL: SQLAlchemy URL (default: sqlite file in the working dir)
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# Project root: config is backend_payrail/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_BACKEND_DIR = _CONFIG_DIR.parent
_ROOT = _BACKEND_DIR.parent
_ENV_PATH = _ROOT / ".env"

DEVNET_RPC_URL = "https://api.devnet.solana.com"
MAINNET_RPC_URL = "https://api.mainnet-beta.solana.com"
HELIUS_MAINNET_URL_TEMPLATE = "https://mainnet.helius-rpc.com/?api-key={key}"
HELIUS_DEVNET_URL_TEMPLATE = "https://devnet.helius-rpc.com/?api-key={key}"

DEFAULT_EVM_RPC_URLS = {
    "ethereum": "https://eth.llamarpc.com",
    "base": "https://mainnet.base.org",
    "polygon": "https://polygon-rpc.com",
}

DEFAULT_DATABASE_URL = "sqlite:///payrail.db"

_loaded = False


def load_payrail_env() -> None:
    """Load .env from project root once. Existing env vars win."""
    global _loaded
    if _loaded:
        return
    if _ENV_PATH.exists():
        load_dotenv(_ENV_PATH, override=False)
    _loaded = True


def env_str(name: str, default: str = "") -> str:
    load_payrail_env()
    return (os.getenv(name) or default).strip()


def env_int(name: str, default: int) -> int:
    raw = env_str(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


def env_float(name: str, default: float) -> float:
    raw = env_str(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def get_solana_network() -> str:
    """
    Return SOLANA_NETWORK from env: devnet | mainnet.
    Default: devnet.
    """
    raw = env_str("SOLANA_NETWORK", "devnet").lower()
    if raw in ("mainnet", "mainnet-beta"):
        return "mainnet"
    return "devnet"


def get_solana_rpc_url() -> str:
    """
    Resolve Solana RPC URL from env.
    Order: SOLANA_RPC_URL > HELIUS_API_KEY (network-specific) > public default.
    """
    url = env_str("SOLANA_RPC_URL")
    if url:
        return url
    network = get_solana_network()
    key = env_str("HELIUS_API_KEY")
    if key:
        template = HELIUS_DEVNET_URL_TEMPLATE if network == "devnet" else HELIUS_MAINNET_URL_TEMPLATE
        return template.format(key=key)
    return DEVNET_RPC_URL if network == "devnet" else MAINNET_RPC_URL


def get_evm_rpc_url(chain: str) -> str:
    """Return <CHAIN>_RPC_URL for an EVM chain, or its public default."""
    return env_str(f"{chain.upper()}_RPC_URL", DEFAULT_EVM_RPC_URLS.get(chain, ""))


def get_database_url() -> str:
    """DATABASE_URL if set; otherwise SQLite at PAYRAIL_DB_PATH or payrail.db."""
    url = env_str("DATABASE_URL")
    if url:
        return url
    path = env_str("PAYRAIL_DB_PATH")
    if path:
        return f"sqlite:///{path}"
    return DEFAULT_DATABASE_URL


def mask_rpc_url(url: str) -> str:
    """Hide API keys embedded in RPC URLs before logging them."""
    if "api-key=" in url:
        return url.split("api-key=")[0] + "api-key=***"
    return url
