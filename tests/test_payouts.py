"""
Pytest tests for the payout orchestrator: validation, fees, approval flow,
unsigned transaction generation, cancellation and signing-window expiry.
"""

from __future__ import annotations

import pytest
from conftest import CUSTOMER_WALLET, NOW, SETTLEMENT_WALLET, fund, mark_verified, webhook_events

from backend_payrail.core.exceptions import (
    InsufficientBalance,
    InvalidAmount,
    InvalidDestination,
    InvalidState,
    MissingReason,
    NoVerifiedSourceWallet,
    PermissionDenied,
)
from backend_payrail.database.models import WalletPurpose
from backend_payrail.payouts.destinations import create_destination
from backend_payrail.payouts.orchestrator import (
    Actor,
    approve_payout,
    cancel_payout,
    create_payout,
    generate_unsigned_transaction,
    get_payout,
    list_approvals,
    reject_payout,
    run_payout_expiry_tick,
)
from backend_payrail.wallets.ownership import register_wallet

OWNER = Actor(id="user_owner", role="owner")
MEMBER = Actor(id="user_member", role="member")


def _payout(store, registry, merchant, amount, **kwargs):
    kwargs.setdefault("destination_address", CUSTOMER_WALLET)
    kwargs.setdefault("chain", "solana")
    kwargs.setdefault("now_ts", NOW)
    return create_payout(store, registry, merchant["id"], amount, "USDC", **kwargs)


# --- Create ---


def test_small_payout_is_auto_approved_and_generated(store, registry, merchant, settlement_wallet, fake_solana):
    """100 USDC: fee 1, net 99, auto-approved and immediately awaiting signature."""
    fund(store, merchant["id"], "500")
    payout = _payout(store, registry, merchant, "100")
    assert payout["fee_amount"] == "1"
    assert payout["net_amount"] == "99"
    assert payout["requires_approval"] is False
    assert payout["approved_by"] == "system"
    assert payout["status"] == "awaiting_signature"
    assert payout["source_wallet_address"] == SETTLEMENT_WALLET
    assert payout["transaction_expires_at"] == NOW + fake_solana.unsigned_ttl_sec
    assert fake_solana.built == [
        {"source": SETTLEMENT_WALLET, "destination": CUSTOMER_WALLET, "currency": "USDC", "amount": "99"}
    ]


def test_payout_stays_approved_without_source_wallet(store, registry, merchant):
    """No verified wallet: the payout is approved but no transaction is built yet."""
    fund(store, merchant["id"], "500")
    payout = _payout(store, registry, merchant, "100")
    assert payout["status"] == "approved"
    assert payout["unsigned_transaction"] is None
    with pytest.raises(NoVerifiedSourceWallet):
        generate_unsigned_transaction(store, registry, merchant["id"], payout["id"], now_ts=NOW)


def test_payout_validation(store, registry, merchant, settlement_wallet):
    """Minimum amount, balance and destination are enforced at creation."""
    fund(store, merchant["id"], "50")
    with pytest.raises(InvalidAmount):
        _payout(store, registry, merchant, "9.99")
    with pytest.raises(InsufficientBalance):
        _payout(store, registry, merchant, "51")
    with pytest.raises(InvalidDestination):
        _payout(store, registry, merchant, "20", destination_address="not-a-wallet")
    with pytest.raises(InvalidDestination):
        _payout(store, registry, merchant, "20", destination_address=None)


def test_large_payout_requires_approval(store, registry, merchant, settlement_wallet, fake_solana):
    """1500 USDC: fee 7.5, net 1492.5, pending until an owner approves."""
    fund(store, merchant["id"], "2000")
    payout = _payout(store, registry, merchant, "1500")
    assert payout["status"] == "pending"
    assert payout["requires_approval"] is True
    assert payout["fee_amount"] == "7.5"
    assert payout["net_amount"] == "1492.5"
    assert fake_solana.built == []


# --- Approval ---


def test_member_cannot_approve(store, registry, merchant, settlement_wallet):
    """Only owner/admin roles decide on payouts."""
    fund(store, merchant["id"], "2000")
    payout = _payout(store, registry, merchant, "1500")
    with pytest.raises(PermissionDenied):
        approve_payout(store, registry, merchant["id"], payout["id"], MEMBER, now_ts=NOW + 1)
    with pytest.raises(PermissionDenied):
        approve_payout(store, registry, merchant["id"], payout["id"], None, now_ts=NOW + 1)
    assert get_payout(store, merchant["id"], payout["id"])["status"] == "pending"


def test_owner_approves_and_transaction_is_generated(store, registry, merchant, settlement_wallet):
    """Approval records the actor and moves straight on to awaiting_signature."""
    fund(store, merchant["id"], "2000")
    payout = _payout(store, registry, merchant, "1500")
    approved = approve_payout(store, registry, merchant["id"], payout["id"], OWNER, notes="ok", now_ts=NOW + 5)
    assert approved["approved_by"] == OWNER.id
    assert approved["approved_at"] == NOW + 5
    assert approved["status"] == "awaiting_signature"

    approvals = list_approvals(store, merchant["id"], payout["id"])
    assert [(a["action"], a["actor_id"]) for a in approvals] == [("approved", OWNER.id)]

    with pytest.raises(InvalidState):
        approve_payout(store, registry, merchant["id"], payout["id"], OWNER, now_ts=NOW + 6)


def test_reject_requires_reason(store, registry, merchant, settlement_wallet):
    """Rejection needs a reason, records it and emits payout.rejected."""
    fund(store, merchant["id"], "2000")
    payout = _payout(store, registry, merchant, "1500")
    admin = Actor(id="user_admin", role="admin")
    with pytest.raises(MissingReason):
        reject_payout(store, merchant["id"], payout["id"], admin, "  ", now_ts=NOW + 1)

    rejected = reject_payout(store, merchant["id"], payout["id"], admin, "unknown recipient", now_ts=NOW + 2)
    assert rejected["status"] == "rejected"
    assert rejected["error_message"] == "unknown recipient"

    events = webhook_events(store, merchant["id"], "payout.rejected")
    assert len(events) == 1
    assert events[0]["payload"] == {
        "payout_id": payout["id"],
        "amount": "1500",
        "currency": "USDC",
        "reason": "unknown recipient",
    }
    with pytest.raises(InvalidState):
        approve_payout(store, registry, merchant["id"], payout["id"], admin, now_ts=NOW + 3)


# --- Cancel / expiry ---


def test_cancel_only_before_signing(store, registry, merchant, settlement_wallet):
    """Pending payouts cancel; payouts awaiting a signature do not."""
    fund(store, merchant["id"], "2000")
    pending = _payout(store, registry, merchant, "1500")
    assert cancel_payout(store, merchant["id"], pending["id"], now_ts=NOW + 1)["status"] == "cancelled"

    awaiting = _payout(store, registry, merchant, "100")
    assert awaiting["status"] == "awaiting_signature"
    with pytest.raises(InvalidState):
        cancel_payout(store, merchant["id"], awaiting["id"], now_ts=NOW + 1)


def test_signing_window_expires_and_can_be_regenerated(store, registry, merchant, settlement_wallet, fake_solana):
    """awaiting_signature past its window expires; generating again restarts it."""
    fund(store, merchant["id"], "500")
    payout = _payout(store, registry, merchant, "100")
    expires_at = payout["transaction_expires_at"]

    assert run_payout_expiry_tick(store, now_ts=expires_at) == 0
    assert run_payout_expiry_tick(store, now_ts=expires_at + 1) == 1
    assert get_payout(store, merchant["id"], payout["id"])["status"] == "expired"

    regenerated = generate_unsigned_transaction(store, registry, merchant["id"], payout["id"], now_ts=NOW + 500)
    assert regenerated["expires_at"] == NOW + 500 + fake_solana.unsigned_ttl_sec
    assert regenerated["amount"] == "99"
    assert regenerated["source_wallet"] == SETTLEMENT_WALLET
    assert get_payout(store, merchant["id"], payout["id"])["status"] == "awaiting_signature"


def test_generate_rejected_for_wrong_state(store, registry, merchant, settlement_wallet):
    """Only approved or expired payouts get a fresh transaction."""
    fund(store, merchant["id"], "2000")
    payout = _payout(store, registry, merchant, "1500")
    with pytest.raises(InvalidState):
        generate_unsigned_transaction(store, registry, merchant["id"], payout["id"], now_ts=NOW)


# --- Destinations ---


def test_saved_destination_needs_proven_wallet(store, registry, merchant, settlement_wallet):
    """A destination linked to an unproven wallet is refused until the proof passes."""
    fund(store, merchant["id"], "500")
    wallet = register_wallet(
        store, merchant["id"], CUSTOMER_WALLET, "solana", WalletPurpose.DESTINATION, now_ts=NOW
    )
    dest = create_destination(store, merchant["id"], CUSTOMER_WALLET, "solana", "Vendor", wallet["id"], now_ts=NOW)
    with pytest.raises(InvalidDestination):
        _payout(store, registry, merchant, "100", destination_address=None, destination_id=dest["id"])

    mark_verified(store, wallet["id"])
    payout = _payout(store, registry, merchant, "100", destination_address=None, destination_id=dest["id"])
    assert payout["destination_id"] == dest["id"]
    assert payout["destination_address"] == CUSTOMER_WALLET


def test_unknown_destination_id(store, registry, merchant, settlement_wallet):
    fund(store, merchant["id"], "500")
    with pytest.raises(InvalidDestination):
        _payout(store, registry, merchant, "100", destination_address=None, destination_id="missing")
