"""
Solana adapter — JSON-RPC over httpx plus unsigned SPL transfer building.

Read: getSignaturesForAddress + getTransaction(jsonParsed) for incoming
token transfers, getSignatureStatuses for confirmation depth.
Write: builds an unsigned legacy transaction (idempotent ATA creation +
transferChecked) with a recent blockhash and the source wallet as fee
payer, checks the externally signed copy, and relays it with sendTransaction.
"""

from __future__ import annotations

import base64
import itertools
import time
from decimal import Decimal
from typing import Any, Callable

import base58
import httpx
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import Transaction
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import (
    TransferCheckedParams,
    get_associated_token_address,
    transfer_checked,
)

from backend_payrail.chain.addresses import canonical_address
from backend_payrail.chain.base import ChainAdapter
from backend_payrail.chain.models import (
    ENCODING_SOLANA_BASE64,
    Transfer,
    TransferStatus,
    UnsignedTransaction,
)
from backend_payrail.chain.solana_parser import parse_token_transfers
from backend_payrail.chain.tokens import get_token
from backend_payrail.config.env import mask_rpc_url
from backend_payrail.core.exceptions import (
    ChainUnavailable,
    InvalidDestination,
    InvalidSignedTransaction,
    SignatureNotFound,
    TransactionRejected,
)
from backend_payrail.core.money import to_base_units
from backend_payrail.payrail_logging import get_logger

logger = get_logger(__name__)

SOLANA_UNSIGNED_TTL_SEC = 120
# Rooted signatures report confirmations=null; treat them as max lockout depth
FINALIZED_CONFIRMATIONS = 32
CONFIRM_POLL_INTERVAL_SEC = 2.0

# Associated Token Account program instruction: CreateIdempotent
_ATA_CREATE_IDEMPOTENT = bytes([1])

_request_ids = itertools.count(1)


def _build_rpc_body(method: str, params: list[Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": next(_request_ids), "method": method, "params": params}


def _parse_pubkey(address: str) -> Pubkey:
    try:
        return Pubkey.from_string((address or "").strip())
    except ValueError as e:
        raise InvalidDestination(f"invalid Solana address: {address!r}", address=address) from e


def decode_transaction_blob(blob: str) -> bytes:
    """Signed transactions arrive base64 encoded; base58 is accepted as well."""
    blob = (blob or "").strip()
    try:
        return base64.b64decode(blob, validate=True)
    except ValueError:
        pass
    try:
        return base58.b58decode(blob)
    except ValueError as e:
        raise InvalidSignedTransaction("signed transaction is neither base64 nor base58") from e


class SolanaAdapter(ChainAdapter):
    chain = "solana"
    unsigned_ttl_sec = SOLANA_UNSIGNED_TTL_SEC

    def __init__(
        self,
        rpc_url: str,
        *,
        network: str = "devnet",
        timeout_sec: float = 15.0,
        max_retries: int = 3,
        min_retry_delay_sec: float = 0.5,
        max_retry_delay_sec: float = 8.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not rpc_url.strip():
            raise ValueError("rpc_url must be non-empty")
        self._rpc_url = rpc_url.rstrip("/")
        self.network = network
        self._max_retries = max(1, max_retries)
        self._min_retry_delay = min_retry_delay_sec
        self._max_retry_delay = max_retry_delay_sec
        self._sleep = sleep
        self._client = httpx.Client(timeout=httpx.Timeout(timeout_sec), transport=transport)

    def close(self) -> None:
        self._client.close()

    # -------------------------------------------------------------------------
    # JSON-RPC
    # -------------------------------------------------------------------------

    def _rpc(self, method: str, params: list[Any], *, reject_on_error: bool = False) -> Any:
        """
        POST one JSON-RPC call with exponential backoff; ChainUnavailable when exhausted.

        With reject_on_error a JSON-RPC error response is final and raises
        TransactionRejected without retrying; only transport errors are retried.
        """
        delay = self._min_retry_delay
        last_error: str = ""
        for attempt in range(self._max_retries):
            try:
                resp = self._client.post(self._rpc_url, json=_build_rpc_body(method, params))
                resp.raise_for_status()
                data = resp.json()
                if data.get("error"):
                    last_error = str(data["error"])
                    if reject_on_error:
                        logger.warning("solana_rpc_rejected", method=method, error=last_error)
                        raise TransactionRejected(f"Solana RPC {method} rejected: {last_error}", chain=self.chain)
                else:
                    return data.get("result")
            except (httpx.HTTPError, ValueError) as e:
                last_error = str(e)
            logger.warning(
                "solana_rpc_retry",
                method=method,
                attempt=attempt + 1,
                max_retries=self._max_retries,
                error=last_error,
            )
            if attempt + 1 < self._max_retries:
                self._sleep(delay)
                delay = min(delay * 2, self._max_retry_delay)
        logger.error("solana_rpc_unavailable", method=method, rpc_url=mask_rpc_url(self._rpc_url), error=last_error)
        raise ChainUnavailable(f"Solana RPC {method} failed: {last_error}", chain=self.chain, method=method)

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def _signatures_for(self, address: str, limit: int) -> list[str]:
        result = self._rpc(
            "getSignaturesForAddress",
            [address, {"limit": limit, "commitment": "confirmed"}],
        )
        out: list[str] = []
        for item in result or []:
            if not isinstance(item, dict) or item.get("err") is not None:
                continue
            sig = item.get("signature")
            if sig:
                out.append(str(sig))
        return out

    def fetch_transaction(self, signature: str) -> dict[str, Any] | None:
        return self._rpc(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    def recent_transfers(
        self,
        address: str,
        limit: int = 20,
        token_id: str | None = None,
    ) -> list[Transfer]:
        owner = _parse_pubkey(address)
        scanned = [address]
        if token_id:
            ata = str(get_associated_token_address(owner, Pubkey.from_string(token_id)))
            scanned.append(ata)

        signatures: list[str] = []
        for target in scanned:
            for sig in self._signatures_for(target, limit):
                if sig not in signatures:
                    signatures.append(sig)

        transfers: list[Transfer] = []
        for sig in signatures:
            tx = self.fetch_transaction(sig)
            for transfer in parse_token_transfers(tx, sig):
                if transfer.to_address == address or transfer.to_token_account in scanned:
                    transfers.append(transfer)
        logger.debug(
            "solana_recent_transfers",
            address=address,
            signatures=len(signatures),
            transfers=len(transfers),
        )
        return transfers

    def _signature_status(self, signature: str) -> dict[str, Any] | None:
        result = self._rpc(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        values = (result or {}).get("value") or [None]
        return values[0]

    @staticmethod
    def _to_status(value: dict[str, Any]) -> TransferStatus:
        finalized = value.get("confirmationStatus") == "finalized"
        confirmations = value.get("confirmations")
        if confirmations is None:
            confirmations = FINALIZED_CONFIRMATIONS if finalized else 0
        return TransferStatus(confirmations=int(confirmations), finalized=finalized, err=value.get("err"))

    def transfer_status(self, signature: str) -> TransferStatus:
        value = self._signature_status(signature)
        if value is None:
            raise SignatureNotFound("signature not found", chain=self.chain, signature=signature)
        return self._to_status(value)

    # -------------------------------------------------------------------------
    # Write
    # -------------------------------------------------------------------------

    def validate_address(self, address: str) -> str:
        return canonical_address(self.chain, address)

    def latest_blockhash(self) -> Hash:
        result = self._rpc("getLatestBlockhash", [{"commitment": "finalized"}])
        try:
            return Hash.from_string(result["value"]["blockhash"])
        except (KeyError, TypeError, ValueError) as e:
            raise ChainUnavailable("malformed getLatestBlockhash response", chain=self.chain) from e

    def build_unsigned_transfer(
        self,
        *,
        source: str,
        destination: str,
        currency: str,
        amount: Decimal,
    ) -> UnsignedTransaction:
        token = get_token(self.chain, currency, self.network)
        owner = _parse_pubkey(source)
        recipient = _parse_pubkey(destination)
        mint = Pubkey.from_string(token.address)
        source_ata = get_associated_token_address(owner, mint)
        dest_ata = get_associated_token_address(recipient, mint)

        create_dest_ata = Instruction(
            program_id=ASSOCIATED_TOKEN_PROGRAM_ID,
            data=_ATA_CREATE_IDEMPOTENT,
            accounts=[
                AccountMeta(pubkey=owner, is_signer=True, is_writable=True),
                AccountMeta(pubkey=dest_ata, is_signer=False, is_writable=True),
                AccountMeta(pubkey=recipient, is_signer=False, is_writable=False),
                AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
                AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
                AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )
        transfer_ix = transfer_checked(
            TransferCheckedParams(
                program_id=TOKEN_PROGRAM_ID,
                source=source_ata,
                mint=mint,
                dest=dest_ata,
                owner=owner,
                amount=to_base_units(amount, token.decimals),
                decimals=token.decimals,
            )
        )
        message = Message.new_with_blockhash(
            [create_dest_ata, transfer_ix], owner, self.latest_blockhash()
        )
        tx = Transaction.new_unsigned(message)
        payload = base64.b64encode(bytes(tx)).decode("ascii")
        logger.info(
            "solana_unsigned_transfer_built",
            source=source,
            destination=destination,
            currency=currency,
            amount=str(amount),
        )
        return UnsignedTransaction(chain=self.chain, encoding=ENCODING_SOLANA_BASE64, payload=payload)

    def verify_signed_transaction(self, unsigned: UnsignedTransaction, signed: str, source: str) -> None:
        try:
            signed_tx = Transaction.from_bytes(decode_transaction_blob(signed))
            issued_tx = Transaction.from_bytes(base64.b64decode(unsigned.payload))
        except ValueError as e:
            raise InvalidSignedTransaction(f"cannot decode transaction: {e}") from e

        message_bytes = bytes(signed_tx.message)
        if message_bytes != bytes(issued_tx.message):
            raise InvalidSignedTransaction("signed transaction does not match the issued transaction")
        keys = signed_tx.message.account_keys
        if not keys or str(keys[0]) != source:
            raise InvalidSignedTransaction("fee payer is not the source wallet", source=source)
        required = signed_tx.message.header.num_required_signatures
        signatures = signed_tx.signatures
        if len(signatures) < required:
            raise InvalidSignedTransaction("transaction is missing signatures")
        for idx in range(required):
            if not signatures[idx].verify(keys[idx], message_bytes):
                raise InvalidSignedTransaction("invalid signature", signer=str(keys[idx]))

    def transaction_signature(self, signed: str) -> str:
        try:
            tx = Transaction.from_bytes(decode_transaction_blob(signed))
        except ValueError as e:
            raise InvalidSignedTransaction(f"cannot decode transaction: {e}") from e
        if not tx.signatures:
            raise InvalidSignedTransaction("transaction carries no signature")
        return str(tx.signatures[0])

    def broadcast(self, signed: str) -> str:
        raw = decode_transaction_blob(signed)
        result = self._rpc(
            "sendTransaction",
            [
                base64.b64encode(raw).decode("ascii"),
                {"encoding": "base64", "preflightCommitment": "confirmed"},
            ],
            reject_on_error=True,
        )
        if not result:
            raise ChainUnavailable("sendTransaction returned no signature", chain=self.chain)
        logger.info("solana_transaction_sent", signature=str(result))
        return str(result)

    def wait_for_confirmation(self, signature: str, timeout_sec: float) -> TransferStatus | None:
        deadline = time.monotonic() + timeout_sec
        while True:
            value = self._signature_status(signature)
            if value is not None:
                if value.get("err") is not None:
                    return self._to_status(value)
                if value.get("confirmationStatus") in ("confirmed", "finalized"):
                    return self._to_status(value)
            if time.monotonic() >= deadline:
                logger.warning("solana_confirmation_timeout", signature=signature, timeout_sec=timeout_sec)
                return None
            self._sleep(CONFIRM_POLL_INTERVAL_SEC)
