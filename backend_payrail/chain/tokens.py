"""
Stablecoin registry: mint / contract address and decimals per chain and network.
"""

from __future__ import annotations

from dataclasses import dataclass

from backend_payrail.core.exceptions import UnsupportedChain, UnsupportedCurrency
from backend_payrail.core.money import SUPPORTED_CURRENCIES

@dataclass(frozen=True)
class TokenInfo:
    chain: str
    currency: str
    address: str
    decimals: int = 6


_TOKENS: dict[tuple[str, str, str], str] = {
    ("solana", "mainnet", "USDC"): "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    ("solana", "mainnet", "USDT"): "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
    ("solana", "devnet", "USDC"): "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU",
    ("solana", "devnet", "USDT"): "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
    ("ethereum", "mainnet", "USDC"): "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
    ("ethereum", "mainnet", "USDT"): "0xdAC17F958D2ee523a2206206994597C13D831ec7",
    ("base", "mainnet", "USDC"): "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    ("polygon", "mainnet", "USDC"): "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174",
    ("polygon", "mainnet", "USDT"): "0xc2132D05D31c914a87C6611C10748AEb04B58e8F",
}

# EVM chain ids for typed call parameters
EVM_CHAIN_IDS = {"ethereum": 1, "base": 8453, "polygon": 137}


def get_token(chain: str, currency: str, network: str = "mainnet") -> TokenInfo:
    """
    Resolve the token for (chain, currency). EVM chains only have mainnet
    entries; the Solana network selects mainnet or devnet mints.
    """
    currency = (currency or "").upper()
    if currency not in SUPPORTED_CURRENCIES:
        raise UnsupportedCurrency(f"unsupported currency {currency!r}", currency=currency)
    net = network if chain == "solana" else "mainnet"
    address = _TOKENS.get((chain, net, currency))
    if address is None:
        raise UnsupportedChain(
            f"{currency} is not supported on {chain}", chain=chain, currency=currency
        )
    return TokenInfo(chain=chain, currency=currency, address=address)
