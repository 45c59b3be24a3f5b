"""
EVM adapter (ethereum, base, polygon) — ERC-20 transfers via web3.

Read: Transfer event logs into an address over a recent block window,
receipt depth for confirmations. Write: typed call parameters for
transfer(address,uint256), signer recovery on the raw signed transaction,
send_raw_transaction and wait_for_transaction_receipt.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from eth_abi import encode as abi_encode
from eth_account import Account
from eth_account.typed_transactions import TypedTransaction
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3RPCError

from backend_payrail.chain.addresses import canonical_address
from backend_payrail.chain.base import ChainAdapter
from backend_payrail.chain.models import (
    ENCODING_EVM_CALL,
    Transfer,
    TransferStatus,
    UnsignedTransaction,
)
from backend_payrail.chain.tokens import EVM_CHAIN_IDS, get_token
from backend_payrail.config.settings import DEFAULT_EVM_FINALITY_THRESHOLD
from backend_payrail.core.exceptions import (
    ChainUnavailable,
    InvalidSignedTransaction,
    SignatureNotFound,
    TransactionRejected,
)
from backend_payrail.core.money import to_base_units
from backend_payrail.payrail_logging import get_logger

logger = get_logger(__name__)

EVM_UNSIGNED_TTL_SEC = 1800
# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
# bytes4(keccak256("transfer(address,uint256)"))
TRANSFER_SELECTOR = "a9059cbb"
LOG_SCAN_BLOCKS = 5000


def _hex(value: Any) -> str:
    """HexBytes / bytes / str -> 0x-prefixed lowercase hex."""
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return "0x" + bytes(value).hex()


def _topic_address(topic: Any) -> str:
    raw = bytes.fromhex(_hex(topic)[2:])
    return Web3.to_checksum_address("0x" + raw[-20:].hex())


def _address_topic(address: str) -> str:
    return "0x" + "0" * 24 + address.lower()[2:]


def encode_transfer_call(recipient: str, amount_units: int) -> str:
    return "0x" + TRANSFER_SELECTOR + abi_encode(["address", "uint256"], [recipient, amount_units]).hex()


def _decode_raw(signed: str) -> bytes:
    value = (signed or "").strip()
    if value.startswith("0x"):
        value = value[2:]
    try:
        return bytes.fromhex(value)
    except ValueError as e:
        raise InvalidSignedTransaction("signed transaction must be 0x hex") from e


def _matches_call(decoded: dict[str, Any], payload: dict[str, Any]) -> bool:
    to = decoded.get("to")
    if not to:
        return False
    return (
        _hex(to).lower() == str(payload["to"]).lower()
        and _hex(decoded.get("data") or b"").lower() == str(payload["data"]).lower()
        and int(decoded.get("value") or 0) == 0
        and int(decoded.get("chainId") or -1) == int(payload["chainId"])
    )


class EvmAdapter(ChainAdapter):
    unsigned_ttl_sec = EVM_UNSIGNED_TTL_SEC

    def __init__(
        self,
        chain: str,
        rpc_url: str = "",
        *,
        web3: Web3 | None = None,
        timeout_sec: float = 15.0,
        finality_threshold: int = DEFAULT_EVM_FINALITY_THRESHOLD,
        log_scan_blocks: int = LOG_SCAN_BLOCKS,
    ) -> None:
        if chain not in EVM_CHAIN_IDS:
            raise ValueError(f"not an EVM chain: {chain}")
        self.chain = chain
        self.chain_id = EVM_CHAIN_IDS[chain]
        self.finality_threshold = finality_threshold
        self.log_scan_blocks = log_scan_blocks
        if web3 is None:
            if not rpc_url.strip():
                raise ValueError("rpc_url must be non-empty")
            web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_sec}))
        self.w3 = web3

    def _call(self, what: str, fn: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except (TransactionNotFound, TimeExhausted):
            raise
        except Exception as e:
            logger.error("evm_rpc_error", chain=self.chain, call=what, error=str(e))
            raise ChainUnavailable(f"{self.chain} RPC {what} failed: {e}", chain=self.chain) from e

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def recent_transfers(
        self,
        address: str,
        limit: int = 20,
        token_id: str | None = None,
    ) -> list[Transfer]:
        recipient = self.validate_address(address)
        head = self._call("block_number", lambda: self.w3.eth.block_number)
        filter_params: dict[str, Any] = {
            "fromBlock": max(0, head - self.log_scan_blocks),
            "toBlock": head,
            "topics": [TRANSFER_TOPIC, None, _address_topic(recipient)],
        }
        if token_id:
            filter_params["address"] = Web3.to_checksum_address(token_id)
        logs = self._call("get_logs", self.w3.eth.get_logs, filter_params)

        transfers: list[Transfer] = []
        for entry in reversed(list(logs)):
            topics = entry["topics"]
            if len(topics) < 3:
                continue
            transfers.append(
                Transfer(
                    signature=_hex(entry["transactionHash"]),
                    from_address=_topic_address(topics[1]),
                    to_address=_topic_address(topics[2]),
                    token_id=Web3.to_checksum_address(entry["address"]),
                    raw_amount=int.from_bytes(bytes.fromhex(_hex(entry["data"])[2:] or "0"), "big"),
                    decimals=6,
                    slot=int(entry["blockNumber"]),
                )
            )
            if len(transfers) >= limit:
                break
        return transfers

    def transfer_status(self, signature: str) -> TransferStatus:
        try:
            receipt = self._call("get_transaction_receipt", self.w3.eth.get_transaction_receipt, signature)
        except TransactionNotFound as e:
            raise SignatureNotFound("transaction not found", chain=self.chain, signature=signature) from e
        head = self._call("block_number", lambda: self.w3.eth.block_number)
        return self._receipt_status(receipt, head)

    def _receipt_status(self, receipt: Any, head: int) -> TransferStatus:
        confirmations = max(0, head - int(receipt["blockNumber"]) + 1)
        err = None if int(receipt["status"]) == 1 else "execution reverted"
        return TransferStatus(
            confirmations=confirmations,
            finalized=confirmations >= self.finality_threshold,
            err=err,
        )

    # -------------------------------------------------------------------------
    # Write
    # -------------------------------------------------------------------------

    def validate_address(self, address: str) -> str:
        return canonical_address(self.chain, address)

    def build_unsigned_transfer(
        self,
        *,
        source: str,
        destination: str,
        currency: str,
        amount: Decimal,
    ) -> UnsignedTransaction:
        token = get_token(self.chain, currency)
        recipient = self.validate_address(destination)
        payload = {
            "to": Web3.to_checksum_address(token.address),
            "from": self.validate_address(source),
            "data": encode_transfer_call(recipient, to_base_units(amount, token.decimals)),
            "value": "0x0",
            "chainId": self.chain_id,
        }
        logger.info(
            "evm_unsigned_transfer_built",
            chain=self.chain,
            source=source,
            destination=recipient,
            currency=currency,
            amount=str(amount),
        )
        return UnsignedTransaction(chain=self.chain, encoding=ENCODING_EVM_CALL, payload=payload)

    def verify_signed_transaction(self, unsigned: UnsignedTransaction, signed: str, source: str) -> None:
        """Typed (EIP-2718) transactions only: the call must be the issued one and the signer the source."""
        raw = _decode_raw(signed)
        if not raw or raw[0] > 0x7F:
            raise InvalidSignedTransaction("only typed (EIP-1559 / EIP-2930) transactions are accepted")
        try:
            decoded = TypedTransaction.from_bytes(HexBytes(raw)).as_dict()
            sender = Account.recover_transaction(raw)
        except Exception as e:
            raise InvalidSignedTransaction(f"cannot decode signed transaction: {e}") from e
        if not _matches_call(decoded, unsigned.payload):
            raise InvalidSignedTransaction("signed transaction does not match the issued transaction")
        if sender.lower() != source.lower():
            raise InvalidSignedTransaction(
                "signed transaction is not from the source wallet", sender=sender, source=source
            )

    def transaction_signature(self, signed: str) -> str:
        raw = _decode_raw(signed)
        if not raw:
            raise InvalidSignedTransaction("signed transaction is empty")
        return _hex(Web3.keccak(raw))

    def broadcast(self, signed: str) -> str:
        try:
            tx_hash = self.w3.eth.send_raw_transaction(signed)
        except (Web3RPCError, ValueError) as e:
            # JSON-RPC error response: nonce too low, underpriced, reverted in simulation ...
            logger.warning("evm_transaction_rejected", chain=self.chain, error=str(e))
            raise TransactionRejected(f"{self.chain} rejected the transaction: {e}", chain=self.chain) from e
        except Exception as e:
            logger.error("evm_rpc_error", chain=self.chain, call="send_raw_transaction", error=str(e))
            raise ChainUnavailable(f"{self.chain} RPC send_raw_transaction failed: {e}", chain=self.chain) from e
        signature = _hex(tx_hash)
        logger.info("evm_transaction_sent", chain=self.chain, signature=signature)
        return signature

    def wait_for_confirmation(self, signature: str, timeout_sec: float) -> TransferStatus | None:
        try:
            receipt = self._call(
                "wait_for_transaction_receipt",
                self.w3.eth.wait_for_transaction_receipt,
                signature,
                timeout=timeout_sec,
            )
        except TimeExhausted:
            logger.warning("evm_confirmation_timeout", chain=self.chain, signature=signature)
            return None
        head = self._call("block_number", lambda: self.w3.eth.block_number)
        return self._receipt_status(receipt, head)
