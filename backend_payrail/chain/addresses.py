"""Address validation per chain family."""

from __future__ import annotations

from solders.pubkey import Pubkey
from web3 import Web3

from backend_payrail.config.settings import EVM_CHAINS
from backend_payrail.core.exceptions import InvalidDestination, UnsupportedChain


def canonical_address(chain: str, address: str) -> str:
    """Base58 pubkey for Solana, checksum address for EVM chains; InvalidDestination otherwise."""
    address = (address or "").strip()
    if not address:
        raise InvalidDestination("address must be non-empty", chain=chain)
    if chain == "solana":
        try:
            return str(Pubkey.from_string(address))
        except ValueError as e:
            raise InvalidDestination(f"invalid Solana address: {address!r}", address=address) from e
    if chain in EVM_CHAINS:
        if not Web3.is_address(address):
            raise InvalidDestination(f"invalid {chain} address: {address!r}", address=address)
        return Web3.to_checksum_address(address)
    raise UnsupportedChain(f"unsupported chain {chain!r}", chain=chain)
