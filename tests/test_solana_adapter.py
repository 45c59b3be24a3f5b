"""
Pytest tests for the Solana adapter and jsonParsed transfer parser.

JSON-RPC is served by httpx.MockTransport; no Solana RPC is contacted.
"""

from __future__ import annotations

import base64
import json
from decimal import Decimal

import httpx
import pytest
from conftest import CUSTOMER_WALLET, SETTLEMENT_WALLET, USDC_DEVNET_MINT
from solders.hash import Hash
from solders.keypair import Keypair
from solders.transaction import Transaction

from backend_payrail.chain.solana import SolanaAdapter
from backend_payrail.chain.solana_parser import parse_token_transfers
from backend_payrail.core.exceptions import (
    ChainUnavailable,
    InvalidSignedTransaction,
    SignatureNotFound,
    TransactionRejected,
)

SOURCE_ATA = "3Nn2ZkDpxQ6ZAJUmXjFxLthVvAavj1jvuYuvSuPvVbKz"
DEST_ATA = "BEmVqnFY5ztGJ9xs9ky3kTgPcuMa5WRrPUNBS8aotpkN"


def _parsed_tx(signature="sigA", amount="100400000", err=None):
    """jsonParsed getTransaction result with one transferChecked into SETTLEMENT_WALLET's ATA."""
    return {
        "slot": 123,
        "blockTime": 1_700_000_000,
        "meta": {
            "err": err,
            "preTokenBalances": [
                {
                    "accountIndex": 1,
                    "mint": USDC_DEVNET_MINT,
                    "owner": CUSTOMER_WALLET,
                    "uiTokenAmount": {"amount": "500000000", "decimals": 6},
                },
            ],
            "postTokenBalances": [
                {
                    "accountIndex": 2,
                    "mint": USDC_DEVNET_MINT,
                    "owner": SETTLEMENT_WALLET,
                    "uiTokenAmount": {"amount": amount, "decimals": 6},
                },
            ],
            "innerInstructions": [],
        },
        "transaction": {
            "signatures": [signature],
            "message": {
                "accountKeys": [
                    {"pubkey": CUSTOMER_WALLET, "signer": True},
                    {"pubkey": SOURCE_ATA, "signer": False},
                    {"pubkey": DEST_ATA, "signer": False},
                    {"pubkey": USDC_DEVNET_MINT, "signer": False},
                ],
                "instructions": [
                    {
                        "program": "spl-token",
                        "parsed": {
                            "type": "transferChecked",
                            "info": {
                                "source": SOURCE_ATA,
                                "destination": DEST_ATA,
                                "mint": USDC_DEVNET_MINT,
                                "authority": CUSTOMER_WALLET,
                                "tokenAmount": {"amount": amount, "decimals": 6},
                            },
                        },
                    },
                    {"program": "system", "parsed": {"type": "transfer", "info": {"lamports": 5000}}},
                ],
            },
        },
    }


class RpcStub:
    """Routes JSON-RPC methods to canned results and records calls."""

    def __init__(self, results: dict):
        self.results = results
        self.calls: list[tuple[str, list]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method, params = body["method"], body["params"]
        self.calls.append((method, params))
        result = self.results.get(method)
        if callable(result):
            result = result(params)
        if isinstance(result, Exception):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"message": str(result)}})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


def _adapter(stub: RpcStub, **kwargs) -> SolanaAdapter:
    return SolanaAdapter(
        "https://rpc.test",
        network="devnet",
        max_retries=kwargs.pop("max_retries", 2),
        transport=httpx.MockTransport(stub),
        sleep=lambda _: None,
        **kwargs,
    )


# --- Parser ---


def test_parser_resolves_owner_and_mint():
    """Token accounts map back to wallet owners through the token balances."""
    transfers = parse_token_transfers(_parsed_tx())
    assert len(transfers) == 1
    transfer = transfers[0]
    assert transfer.signature == "sigA"
    assert transfer.to_address == SETTLEMENT_WALLET
    assert transfer.to_token_account == DEST_ATA
    assert transfer.from_address == CUSTOMER_WALLET
    assert transfer.token_id == USDC_DEVNET_MINT
    assert transfer.raw_amount == 100_400_000
    assert transfer.decimals == 6
    assert transfer.slot == 123


def test_parser_skips_failed_and_empty():
    assert parse_token_transfers(_parsed_tx(err={"InstructionError": [0, "x"]})) == []
    assert parse_token_transfers(None) == []


# --- Read ---


def test_recent_transfers_filters_to_address():
    """Signatures from wallet and ATA are merged; only transfers into the wallet are returned."""
    stub = RpcStub(
        {
            "getSignaturesForAddress": [
                {"signature": "sigA", "err": None},
                {"signature": "sigFailed", "err": {"x": 1}},
            ],
            "getTransaction": lambda params: _parsed_tx(signature=params[0]),
        }
    )
    transfers = _adapter(stub).recent_transfers(SETTLEMENT_WALLET, limit=10, token_id=USDC_DEVNET_MINT)
    assert [t.signature for t in transfers] == ["sigA"]
    methods = [m for m, _ in stub.calls]
    assert methods.count("getSignaturesForAddress") == 2
    assert methods.count("getTransaction") == 1


def test_transfer_status_mapping():
    """Finalized with null confirmations counts as final; unknown signatures raise."""
    stub = RpcStub(
        {
            "getSignatureStatuses": lambda params: {
                "value": [
                    {"confirmations": None, "confirmationStatus": "finalized", "err": None}
                    if params[0][0] == "sigFinal"
                    else None
                ]
            }
        }
    )
    adapter = _adapter(stub)
    status = adapter.transfer_status("sigFinal")
    assert status.finalized is True
    assert status.confirmations == 32
    assert status.is_final(32)
    assert stub.calls[0][1][1] == {"searchTransactionHistory": True}
    with pytest.raises(SignatureNotFound):
        adapter.transfer_status("sigMissing")


def test_rpc_errors_exhaust_retries():
    """Persistent RPC errors surface as ChainUnavailable after max_retries attempts."""
    stub = RpcStub({"getSignatureStatuses": RuntimeError("node is behind")})
    with pytest.raises(ChainUnavailable):
        _adapter(stub, max_retries=3).transfer_status("sigA")
    assert len(stub.calls) == 3


# --- Write ---


def test_unsigned_transfer_sign_verify_broadcast():
    """The issued transaction, signed by the source key, verifies and is relayed as base64."""
    owner = Keypair()
    blockhash = Hash.new_unique()
    stub = RpcStub(
        {
            "getLatestBlockhash": {"value": {"blockhash": str(blockhash), "lastValidBlockHeight": 1}},
            "sendTransaction": "5igSent",
        }
    )
    adapter = _adapter(stub)
    unsigned = adapter.build_unsigned_transfer(
        source=str(owner.pubkey()),
        destination=CUSTOMER_WALLET,
        currency="USDC",
        amount=Decimal("99"),
    )
    assert unsigned.chain == "solana"
    assert unsigned.encoding == "base64"

    tx = Transaction.from_bytes(base64.b64decode(unsigned.payload))
    assert tx.message.account_keys[0] == owner.pubkey()
    assert len(tx.message.instructions) == 2
    tx.sign([owner], tx.message.recent_blockhash)
    signed = base64.b64encode(bytes(tx)).decode("ascii")

    adapter.verify_signed_transaction(unsigned, signed, str(owner.pubkey()))
    with pytest.raises(InvalidSignedTransaction):
        adapter.verify_signed_transaction(unsigned, signed, CUSTOMER_WALLET)
    with pytest.raises(InvalidSignedTransaction):
        adapter.verify_signed_transaction(unsigned, unsigned.payload, str(owner.pubkey()))

    assert adapter.transaction_signature(signed) == str(tx.signatures[0])
    assert adapter.broadcast(signed) == "5igSent"
    method, params = stub.calls[-1]
    assert method == "sendTransaction"
    assert params[0] == signed
    assert params[1]["encoding"] == "base64"


def test_tampered_transaction_is_rejected():
    """A signed transaction for a different amount does not match the issued one."""
    owner = Keypair()
    stub = RpcStub({"getLatestBlockhash": {"value": {"blockhash": str(Hash.new_unique())}}})
    adapter = _adapter(stub)
    issued = adapter.build_unsigned_transfer(
        source=str(owner.pubkey()), destination=CUSTOMER_WALLET, currency="USDC", amount=Decimal("99")
    )
    other = adapter.build_unsigned_transfer(
        source=str(owner.pubkey()), destination=CUSTOMER_WALLET, currency="USDC", amount=Decimal("990")
    )
    tx = Transaction.from_bytes(base64.b64decode(other.payload))
    tx.sign([owner], tx.message.recent_blockhash)
    with pytest.raises(InvalidSignedTransaction):
        adapter.verify_signed_transaction(issued, base64.b64encode(bytes(tx)).decode("ascii"), str(owner.pubkey()))


def test_wait_for_confirmation_times_out():
    """Without a confirmed status before the deadline the result is unknown (None)."""
    stub = RpcStub({"getSignatureStatuses": {"value": [None]}})
    assert _adapter(stub).wait_for_confirmation("sigA", timeout_sec=0) is None


def test_send_rejection_is_final():
    """A sendTransaction error response (preflight failure) is not retried."""
    owner = Keypair()
    stub = RpcStub(
        {
            "getLatestBlockhash": {"value": {"blockhash": str(Hash.new_unique())}},
            "sendTransaction": RuntimeError("Transaction simulation failed: insufficient funds"),
        }
    )
    adapter = _adapter(stub, max_retries=3)
    unsigned = adapter.build_unsigned_transfer(
        source=str(owner.pubkey()), destination=CUSTOMER_WALLET, currency="USDC", amount=Decimal("5")
    )
    tx = Transaction.from_bytes(base64.b64decode(unsigned.payload))
    tx.sign([owner], tx.message.recent_blockhash)
    with pytest.raises(TransactionRejected):
        adapter.broadcast(base64.b64encode(bytes(tx)).decode("ascii"))
    assert [m for m, _ in stub.calls].count("sendTransaction") == 1
