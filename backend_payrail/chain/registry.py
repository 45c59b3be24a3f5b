"""
Chain registry: chain name -> adapter. Built once from Settings.
"""

from __future__ import annotations

from typing import Iterable

from backend_payrail.chain.base import ChainAdapter
from backend_payrail.config.settings import EVM_CHAINS, SUPPORTED_CHAINS, Settings
from backend_payrail.core.exceptions import UnsupportedChain
from backend_payrail.payrail_logging import get_logger

logger = get_logger(__name__)


class ChainRegistry:
    def __init__(self, adapters: Iterable[ChainAdapter] = (), network: str = "devnet") -> None:
        self.network = network
        self._adapters: dict[str, ChainAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ChainAdapter) -> None:
        self._adapters[adapter.chain] = adapter

    def get(self, chain: str) -> ChainAdapter:
        chain = (chain or "").strip().lower()
        adapter = self._adapters.get(chain)
        if adapter is None:
            raise UnsupportedChain(f"unsupported chain {chain!r}", chain=chain, supported=sorted(self._adapters))
        return adapter

    def chains(self) -> list[str]:
        return sorted(self._adapters)

    def close(self) -> None:
        for adapter in self._adapters.values():
            adapter.close()


def normalize_chain(chain: str | None) -> str:
    value = (chain or "solana").strip().lower()
    if value not in SUPPORTED_CHAINS:
        raise UnsupportedChain(f"unsupported chain {value!r}", chain=value, supported=list(SUPPORTED_CHAINS))
    return value


def build_registry(settings: Settings) -> ChainRegistry:
    """Solana always; EVM chains that have an RPC URL configured."""
    from backend_payrail.chain.evm import EvmAdapter
    from backend_payrail.chain.solana import SolanaAdapter

    registry = ChainRegistry(network=settings.solana_network)
    registry.register(
        SolanaAdapter(
            settings.solana_rpc_url,
            network=settings.solana_network,
            timeout_sec=settings.rpc_timeout_sec,
            max_retries=settings.rpc_max_retries,
        )
    )
    for chain in EVM_CHAINS:
        url = settings.evm_rpc_urls.get(chain, "")
        if not url:
            continue
        registry.register(
            EvmAdapter(
                chain,
                url,
                timeout_sec=settings.rpc_timeout_sec,
                finality_threshold=settings.evm_finality_threshold,
            )
        )
    logger.info("chain_registry_built", chains=registry.chains(), solana_network=settings.solana_network)
    return registry
