"""
Chain adapters: read incoming token transfers and confirmation depth,
build unsigned outgoing transfers and relay externally signed ones.
"""

from backend_payrail.chain.base import ChainAdapter
from backend_payrail.chain.models import Transfer, TransferStatus, UnsignedTransaction
from backend_payrail.chain.registry import ChainRegistry, build_registry, normalize_chain

__all__ = [
    "ChainAdapter",
    "ChainRegistry",
    "Transfer",
    "TransferStatus",
    "UnsignedTransaction",
    "build_registry",
    "normalize_chain",
]
