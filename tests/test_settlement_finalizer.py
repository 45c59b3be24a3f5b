"""
Pytest tests for the settlement finalizer: finality threshold, exactly-once
balance credit, deposit ledger record and payment.succeeded webhook.
"""

from __future__ import annotations

from conftest import NOW, SETTLEMENT_WALLET, balance_of, make_transfer, webhook_events

from backend_payrail.api_server.db_merchants import list_transactions
from backend_payrail.chain.models import TransferStatus
from backend_payrail.settlement.finalizer import run_finalizer_tick, settle_intent
from backend_payrail.settlement.intents import create_intent, get_intent
from backend_payrail.settlement.monitor import run_monitor_tick


def _claimed_intent(store, merchant, fake_solana, registry, amount="100", signature="sigA"):
    intent = create_intent(store, merchant["id"], amount, "USDC", "solana", network="devnet", now_ts=NOW)
    fake_solana.transfers[SETTLEMENT_WALLET] = [make_transfer(signature, "100.4")]
    assert run_monitor_tick(store, registry, now_ts=NOW + 10).claimed == 1
    return intent


def test_not_final_only_records_confirmations(store, merchant, settlement_wallet, fake_solana, registry):
    """Below the threshold the intent stays processing with the latest depth; no credit."""
    intent = _claimed_intent(store, merchant, fake_solana, registry)
    fake_solana.statuses["sigA"] = TransferStatus(confirmations=5, finalized=False)

    result = run_finalizer_tick(store, registry, now_ts=NOW + 20, finality_threshold=32)
    assert (result.checked, result.settled, result.pending) == (1, 0, 1)
    current = get_intent(store, merchant["id"], intent["id"])
    assert current["status"] == "processing"
    assert current["confirmations"] == 5
    assert balance_of(store, merchant["id"]) is None
    assert webhook_events(store, merchant["id"]) == []


def test_final_transfer_settles_intent(store, merchant, settlement_wallet, fake_solana, registry):
    """Finalized: succeeded, balance credited with the intent amount, deposit record, webhook."""
    intent = _claimed_intent(store, merchant, fake_solana, registry)
    fake_solana.statuses["sigA"] = TransferStatus(confirmations=32, finalized=True)

    result = run_finalizer_tick(store, registry, now_ts=NOW + 60)
    assert result.settled == 1
    settled = get_intent(store, merchant["id"], intent["id"])
    assert settled["status"] == "succeeded"
    assert settled["confirmed_at"] == NOW + 60

    balance = balance_of(store, merchant["id"])
    assert balance["total"] == "100"
    assert balance["onchain"] == "100"
    assert balance["offchain"] == "0"

    txs = list_transactions(store, merchant["id"])
    assert len(txs) == 1
    assert txs[0]["type"] == "deposit"
    assert txs[0]["reference_id"] == intent["id"]
    assert txs[0]["tx_hash"] == "sigA"

    events = webhook_events(store, merchant["id"], "payment.succeeded")
    assert len(events) == 1
    assert events[0]["payload"] == {
        "id": intent["id"],
        "amount": "100",
        "currency": "USDC",
        "status": "succeeded",
        "tx_signature": "sigA",
        "confirmed_at": NOW + 60,
    }
    assert (events[0]["resource_type"], events[0]["resource_id"]) == ("payment_intent", intent["id"])


def test_settlement_is_exactly_once(store, merchant, settlement_wallet, fake_solana, registry):
    """Replaying the finalizer (or settle_intent) never credits twice."""
    intent = _claimed_intent(store, merchant, fake_solana, registry)
    status = TransferStatus(confirmations=40, finalized=False)
    fake_solana.statuses["sigA"] = status

    assert run_finalizer_tick(store, registry, now_ts=NOW + 60).settled == 1
    assert run_finalizer_tick(store, registry, now_ts=NOW + 120).checked == 0
    assert settle_intent(store, intent["id"], status, NOW + 130) is False

    assert balance_of(store, merchant["id"])["total"] == "100"
    assert len(list_transactions(store, merchant["id"])) == 1
    assert len(webhook_events(store, merchant["id"], "payment.succeeded")) == 1


def test_credits_accumulate(store, merchant, settlement_wallet, fake_solana, registry):
    """Two settled intents add up on the same balance row."""
    create_intent(store, merchant["id"], "100", "USDC", "solana", network="devnet", now_ts=NOW)
    create_intent(store, merchant["id"], "40", "USDC", "solana", network="devnet", now_ts=NOW + 1)
    fake_solana.transfers[SETTLEMENT_WALLET] = [make_transfer("sigA", "100"), make_transfer("sigB", "40")]
    assert run_monitor_tick(store, registry, now_ts=NOW + 10).claimed == 2
    fake_solana.statuses["sigA"] = TransferStatus(confirmations=32, finalized=True)
    fake_solana.statuses["sigB"] = TransferStatus(confirmations=32, finalized=True)

    assert run_finalizer_tick(store, registry, now_ts=NOW + 60).settled == 2
    assert balance_of(store, merchant["id"])["total"] == "140"


def test_failed_transfer_is_not_credited(store, merchant, settlement_wallet, fake_solana, registry):
    """A transfer that errored on chain is logged and never credited."""
    intent = _claimed_intent(store, merchant, fake_solana, registry)
    fake_solana.statuses["sigA"] = TransferStatus(confirmations=32, finalized=True, err={"InstructionError": [0, "x"]})

    result = run_finalizer_tick(store, registry, now_ts=NOW + 60)
    assert result.settled == 0
    assert result.errors == 1
    assert get_intent(store, merchant["id"], intent["id"])["status"] == "processing"
    assert balance_of(store, merchant["id"]) is None


def test_failed_transfer_is_recorded_once(store, merchant, settlement_wallet, fake_solana, registry):
    """The on-chain error is stored on the intent and later ticks stop polling it."""
    intent = _claimed_intent(store, merchant, fake_solana, registry)
    fake_solana.statuses["sigA"] = TransferStatus(confirmations=1, finalized=False, err={"InstructionError": [0, "x"]})

    first = run_finalizer_tick(store, registry, now_ts=NOW + 60)
    assert first.errors == 1
    row = get_intent(store, merchant["id"], intent["id"])
    assert row["status"] == "processing"
    assert "InstructionError" in row["chain_error"]

    second = run_finalizer_tick(store, registry, now_ts=NOW + 120)
    assert second.checked == 0
    assert second.errors == 0
    assert balance_of(store, merchant["id"]) is None


def test_unknown_signature_is_retried(store, merchant, settlement_wallet, fake_solana, registry):
    """A signature the RPC does not know yet is an error for this tick only."""
    intent = _claimed_intent(store, merchant, fake_solana, registry)
    result = run_finalizer_tick(store, registry, now_ts=NOW + 60)
    assert result.errors == 1
    assert get_intent(store, merchant["id"], intent["id"])["status"] == "processing"
