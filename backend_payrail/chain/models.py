"""
Chain-agnostic transfer types returned by the chain adapters.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from backend_payrail.core.exceptions import InvalidSignedTransaction


@dataclass(frozen=True)
class Transfer:
    """
    One token transfer observed on chain.

    to_address is the wallet owner when the chain uses token accounts
    (Solana); to_token_account keeps the raw destination account.
    """

    signature: str
    from_address: str | None
    to_address: str | None
    token_id: str | None
    raw_amount: int
    decimals: int
    observed_at: int | None = None
    to_token_account: str | None = None
    slot: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "token_id": self.token_id,
            "raw_amount": self.raw_amount,
            "decimals": self.decimals,
            "observed_at": self.observed_at,
            "to_token_account": self.to_token_account,
            "slot": self.slot,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Transfer":
        return cls(
            signature=data["signature"],
            from_address=data.get("from_address"),
            to_address=data.get("to_address"),
            token_id=data.get("token_id"),
            raw_amount=int(data["raw_amount"]),
            decimals=int(data.get("decimals", 6)),
            observed_at=data.get("observed_at"),
            to_token_account=data.get("to_token_account"),
            slot=data.get("slot"),
        )


@dataclass(frozen=True)
class TransferStatus:
    """Confirmation state of a signature. err is None for successful transactions."""

    confirmations: int
    finalized: bool
    err: Any = None

    def is_final(self, threshold: int) -> bool:
        return self.err is None and (self.finalized or self.confirmations >= threshold)


# Encodings of the unsigned transaction handed to the external signer
ENCODING_SOLANA_BASE64 = "base64"
ENCODING_EVM_CALL = "evm-call"


@dataclass(frozen=True)
class UnsignedTransaction:
    """
    Tagged unsigned transaction: Solana carries a base64 serialized legacy
    transaction, EVM chains carry typed call parameters (to, from, data,
    value, chainId).
    """

    chain: str
    encoding: str
    payload: Any

    def to_dict(self) -> dict[str, Any]:
        return {"chain": self.chain, "encoding": self.encoding, "payload": self.payload}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | None) -> "UnsignedTransaction":
        if not raw:
            raise InvalidSignedTransaction("payout has no unsigned transaction")
        data = json.loads(raw)
        return cls(chain=data["chain"], encoding=data["encoding"], payload=data["payload"])
