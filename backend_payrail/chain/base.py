"""
Chain adapter interface.

Read side (settlement): recent_transfers, transfer_status.
Write side (payouts): build an unsigned transfer, check a signed one
against it, broadcast it and wait for a minimal confirmation. Adapters
never hold keys; signing always happens outside this service.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal

from backend_payrail.chain.models import Transfer, TransferStatus, UnsignedTransaction


class ChainAdapter(ABC):
    """One adapter per chain. Implementations raise ChainUnavailable on transport errors."""

    chain: str = ""
    # Signer window for unsigned transactions built by this adapter
    unsigned_ttl_sec: int = 0

    @abstractmethod
    def recent_transfers(
        self,
        address: str,
        limit: int = 20,
        token_id: str | None = None,
    ) -> list[Transfer]:
        """Token transfers into address, newest first, at most limit transactions scanned."""

    @abstractmethod
    def transfer_status(self, signature: str) -> TransferStatus:
        """Confirmation state; SignatureNotFound if the signature does not resolve."""

    @abstractmethod
    def validate_address(self, address: str) -> str:
        """Return the canonical address or raise InvalidDestination."""

    @abstractmethod
    def build_unsigned_transfer(
        self,
        *,
        source: str,
        destination: str,
        currency: str,
        amount: Decimal,
    ) -> UnsignedTransaction:
        """Unsigned token transfer of amount (whole units) from source to destination."""

    @abstractmethod
    def verify_signed_transaction(self, unsigned: UnsignedTransaction, signed: str, source: str) -> None:
        """Raise InvalidSignedTransaction unless signed is the issued transfer signed by source."""

    @abstractmethod
    def transaction_signature(self, signed: str) -> str:
        """Signature / hash the signed transaction will have on chain, computed locally."""

    @abstractmethod
    def broadcast(self, signed: str) -> str:
        """
        Submit a signed transaction; return its signature / hash.

        TransactionRejected when the node refuses it, ChainUnavailable when
        the outcome is unknown (the node may still have accepted it).
        """

    @abstractmethod
    def wait_for_confirmation(self, signature: str, timeout_sec: float) -> TransferStatus | None:
        """Poll until minimally confirmed or failed; None if unknown when the timeout hits."""

    def close(self) -> None:
        """Release network resources."""
