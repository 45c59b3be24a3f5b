"""
Pytest tests for signed payout submission and the payout reconciler.

The balance must only move once the chain confirms the transfer: expired,
rejected or failed submissions leave it untouched.
"""

from __future__ import annotations

import pytest
from conftest import CUSTOMER_WALLET, NOW, balance_of, fund, webhook_events

from backend_payrail.api_server.db_merchants import list_transactions
from backend_payrail.chain.models import TransferStatus
from backend_payrail.core.exceptions import (
    InsufficientBalance,
    InvalidSignedTransaction,
    InvalidState,
    TransactionExpired,
    TransactionRejected,
)
from backend_payrail.payouts.finalizer import (
    DROPPED_GRACE_SEC,
    run_payout_reconciler_tick,
    submit_signed_payout,
)
from backend_payrail.payouts.orchestrator import create_payout, get_payout, run_payout_expiry_tick


@pytest.fixture
def awaiting(store, registry, merchant, settlement_wallet):
    """A 100 USDC payout awaiting signature on a 500 USDC balance."""
    fund(store, merchant["id"], "500")
    payout = create_payout(
        store,
        registry,
        merchant["id"],
        "100",
        "USDC",
        destination_address=CUSTOMER_WALLET,
        chain="solana",
        now_ts=NOW,
    )
    assert payout["status"] == "awaiting_signature"
    return payout


def _submit(store, registry, merchant, payout, signed="signed:tx1", now_ts=NOW + 30):
    return submit_signed_payout(
        store, registry, merchant["id"], payout["id"], signed, now_ts=now_ts, confirmation_timeout_sec=0
    )


def test_confirmed_payout_completes_and_debits(store, registry, merchant, awaiting, fake_solana):
    """Confirmation debits the gross amount, records the net transfer and emits payout.completed."""
    result = _submit(store, registry, merchant, awaiting)
    assert result["status"] == "completed"
    assert result["tx_signature"] == "sig-tx1"
    assert result["completed_at"] == NOW + 30
    assert fake_solana.broadcasted == ["sig-tx1"]

    balance = balance_of(store, merchant["id"])
    assert balance["total"] == "400"
    assert balance["onchain"] == "400"

    payout_txs = [t for t in list_transactions(store, merchant["id"]) if t["type"] == "payout"]
    assert len(payout_txs) == 1
    assert payout_txs[0]["amount"] == "99"
    assert payout_txs[0]["tx_hash"] == "sig-tx1"
    assert payout_txs[0]["metadata"]["payout_id"] == awaiting["id"]

    events = webhook_events(store, merchant["id"], "payout.completed")
    assert len(events) == 1
    assert events[0]["payload"]["amount"] == "100"
    assert events[0]["payload"]["net_amount"] == "99"
    assert events[0]["payload"]["tx_signature"] == "sig-tx1"
    assert events[0]["resource_type"] == "payout"
    assert events[0]["resource_id"] == awaiting["id"]


def test_expired_submission_leaves_balance_unchanged(store, registry, merchant, awaiting, fake_solana):
    """Past transaction_expires_at the payout expires and nothing is broadcast."""
    with pytest.raises(TransactionExpired):
        _submit(store, registry, merchant, awaiting, now_ts=awaiting["transaction_expires_at"] + 1)
    assert get_payout(store, merchant["id"], awaiting["id"])["status"] == "expired"
    assert fake_solana.broadcasted == []
    assert balance_of(store, merchant["id"])["total"] == "500"


def test_invalid_signature_keeps_payout_awaiting(store, registry, merchant, awaiting, fake_solana):
    """A transaction that fails verification is refused without a state change."""
    with pytest.raises(InvalidSignedTransaction):
        _submit(store, registry, merchant, awaiting, signed="garbage")
    assert get_payout(store, merchant["id"], awaiting["id"])["status"] == "awaiting_signature"
    assert fake_solana.broadcasted == []


def test_balance_rechecked_before_broadcast(store, registry, merchant, awaiting, fake_solana):
    """If the balance dropped below the payout since creation, the payout fails unbroadcast."""
    fund(store, merchant["id"], "-450")
    with pytest.raises(InsufficientBalance):
        _submit(store, registry, merchant, awaiting)
    payout = get_payout(store, merchant["id"], awaiting["id"])
    assert payout["status"] == "failed"
    assert fake_solana.broadcasted == []
    assert balance_of(store, merchant["id"])["total"] == "50"


def test_rejected_broadcast_fails_payout(store, registry, merchant, awaiting, fake_solana):
    """A node that refuses the transaction fails the payout, keeps the balance and emits payout.failed."""
    fake_solana.broadcast_error = TransactionRejected("Transaction simulation failed", chain="solana")
    result = _submit(store, registry, merchant, awaiting)
    assert result["status"] == "failed"
    assert "broadcast failed" in result["error_message"]
    assert balance_of(store, merchant["id"])["total"] == "500"
    assert len(webhook_events(store, merchant["id"], "payout.failed")) == 1
    assert webhook_events(store, merchant["id"], "payout.completed") == []


def test_broadcast_timeout_stays_processing_until_reconciled(
    store, registry, merchant, awaiting, fake_solana, unavailable
):
    """A send with an unknown outcome keeps the payout processing; once the chain has it, it completes."""
    fake_solana.broadcast_error = unavailable
    result = _submit(store, registry, merchant, awaiting)
    assert result["status"] == "processing"
    assert result["tx_signature"] == "sig-tx1"
    assert webhook_events(store, merchant["id"], "payout.failed") == []
    assert balance_of(store, merchant["id"])["total"] == "500"

    fake_solana.statuses["sig-tx1"] = TransferStatus(confirmations=32, finalized=True)
    assert run_payout_reconciler_tick(store, registry, now_ts=NOW + 60).completed == 1
    payout = get_payout(store, merchant["id"], awaiting["id"])
    assert payout["status"] == "completed"
    assert payout["tx_signature"] == "sig-tx1"
    assert balance_of(store, merchant["id"])["total"] == "400"


def test_broadcast_timeout_never_landed_is_failed_later(store, registry, merchant, awaiting, fake_solana, unavailable):
    """If the unknown send never reached the chain, the dropped-transaction window fails it."""
    fake_solana.broadcast_error = unavailable
    _submit(store, registry, merchant, awaiting)
    expires_at = awaiting["transaction_expires_at"]
    assert run_payout_reconciler_tick(store, registry, now_ts=expires_at + DROPPED_GRACE_SEC + 1).failed == 1
    assert get_payout(store, merchant["id"], awaiting["id"])["status"] == "failed"
    assert balance_of(store, merchant["id"])["total"] == "500"


def test_submit_after_expiry_sweep_is_expired(store, registry, merchant, awaiting, fake_solana):
    """Once the sweep has expired the payout, a late submission still reports TransactionExpired."""
    late = awaiting["transaction_expires_at"] + 5
    assert run_payout_expiry_tick(store, now_ts=late) == 1
    with pytest.raises(TransactionExpired):
        _submit(store, registry, merchant, awaiting, now_ts=late)
    assert get_payout(store, merchant["id"], awaiting["id"])["status"] == "expired"
    assert fake_solana.broadcasted == []


def test_submit_requires_awaiting_signature(store, registry, merchant, awaiting):
    """A completed payout cannot be submitted again."""
    _submit(store, registry, merchant, awaiting)
    with pytest.raises(InvalidState):
        _submit(store, registry, merchant, awaiting, signed="signed:tx2")
    assert balance_of(store, merchant["id"])["total"] == "400"


def test_timeout_then_reconciler_completes(store, registry, merchant, awaiting, fake_solana):
    """No confirmation in time: processing with the signature; the reconciler completes it once."""
    fake_solana.confirmation = None
    result = _submit(store, registry, merchant, awaiting)
    assert result["status"] == "processing"
    assert result["tx_signature"] == "sig-tx1"
    assert balance_of(store, merchant["id"])["total"] == "500"

    # Still unknown to the RPC: nothing happens yet
    assert run_payout_reconciler_tick(store, registry, now_ts=NOW + 60).checked == 1
    assert get_payout(store, merchant["id"], awaiting["id"])["status"] == "processing"

    fake_solana.statuses["sig-tx1"] = TransferStatus(confirmations=3, finalized=False)
    assert run_payout_reconciler_tick(store, registry, now_ts=NOW + 90).completed == 1
    assert run_payout_reconciler_tick(store, registry, now_ts=NOW + 120).checked == 0

    assert get_payout(store, merchant["id"], awaiting["id"])["status"] == "completed"
    assert balance_of(store, merchant["id"])["total"] == "400"
    assert len(webhook_events(store, merchant["id"], "payout.completed")) == 1


def test_reconciler_fails_onchain_error(store, registry, merchant, awaiting, fake_solana):
    """A transaction that landed with an error fails the payout without a debit."""
    fake_solana.confirmation = None
    _submit(store, registry, merchant, awaiting)
    fake_solana.statuses["sig-tx1"] = TransferStatus(confirmations=1, finalized=False, err={"InstructionError": [1, "x"]})

    assert run_payout_reconciler_tick(store, registry, now_ts=NOW + 90).failed == 1
    assert get_payout(store, merchant["id"], awaiting["id"])["status"] == "failed"
    assert balance_of(store, merchant["id"])["total"] == "500"


def test_reconciler_fails_dropped_solana_transaction(store, registry, merchant, awaiting, fake_solana):
    """A Solana signature still unknown well after its blockhash window is treated as dropped."""
    fake_solana.confirmation = None
    _submit(store, registry, merchant, awaiting)
    expires_at = awaiting["transaction_expires_at"]

    assert run_payout_reconciler_tick(store, registry, now_ts=expires_at + DROPPED_GRACE_SEC).failed == 0
    assert run_payout_reconciler_tick(store, registry, now_ts=expires_at + DROPPED_GRACE_SEC + 1).failed == 1
    assert get_payout(store, merchant["id"], awaiting["id"])["status"] == "failed"
    assert balance_of(store, merchant["id"])["total"] == "500"
