"""
SQLAlchemy models for the Payrail ledger.

Every row is owned by a merchant (merchant_id). Amounts are Numeric(38, 6)
read back as Decimal; timestamps are Unix seconds.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

from backend_payrail.core.money import format_amount

Base = declarative_base()

Amount = Numeric(38, 6, asdecimal=True)

DEFAULT_WEBHOOK_MAX_ATTEMPTS = 5


def new_id() -> str:
    return str(uuid.uuid4())


class IntentStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PayoutStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    AWAITING_SIGNATURE = "awaiting_signature"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class WebhookStatus:
    PENDING = "pending"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    FAILED = "failed"


class WalletPurpose:
    SETTLEMENT = "settlement"
    DESTINATION = "destination"


def _loads(raw: str | None) -> Any:
    if not raw:
        return None
    return json.loads(raw)


# -----------------------------------------------------------------------------
# Merchants and wallets
# -----------------------------------------------------------------------------


class Merchant(Base):
    __tablename__ = "merchants"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(256), nullable=False)
    webhook_url = Column(String(1024), nullable=True)
    webhook_secret = Column(String(256), nullable=True)
    created_at = Column(Integer, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "webhook_url": self.webhook_url,
            "created_at": self.created_at,
        }


class Wallet(Base):
    """
    Merchant-registered wallet. Settlement wallets receive payments and sign
    payouts; destination wallets are customer payout targets. Either kind
    becomes usable only after its ownership proof verifies.
    """

    __tablename__ = "wallets"
    __table_args__ = (
        UniqueConstraint("merchant_id", "chain", "address", name="uq_wallet_merchant_chain_address"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    address = Column(String(128), nullable=False, index=True)
    chain = Column(String(32), nullable=False)
    purpose = Column(String(32), nullable=False, default=WalletPurpose.SETTLEMENT)
    label = Column(String(256), nullable=True)
    proof_nonce = Column(String(64), nullable=True)
    proof_nonce_expires_at = Column(Integer, nullable=True)
    proof_verified = Column(Boolean, nullable=False, default=False)
    proof_signature = Column(String(256), nullable=True)
    verified_at = Column(Integer, nullable=True)
    created_at = Column(Integer, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "merchant_id": self.merchant_id,
            "address": self.address,
            "chain": self.chain,
            "purpose": self.purpose,
            "label": self.label,
            "proof_verified": bool(self.proof_verified),
            "verified_at": self.verified_at,
            "created_at": self.created_at,
        }


class PayoutDestination(Base):
    """Saved payout destination. wallet_id links it to an ownership-proven wallet."""

    __tablename__ = "payout_destinations"

    id = Column(String(36), primary_key=True, default=new_id)
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    address = Column(String(128), nullable=False)
    chain = Column(String(32), nullable=False)
    label = Column(String(256), nullable=True)
    type = Column(String(32), nullable=False, default="wallet")
    wallet_id = Column(String(36), ForeignKey("wallets.id"), nullable=True)
    created_at = Column(Integer, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "address": self.address,
            "chain": self.chain,
            "label": self.label,
            "type": self.type,
            "wallet_id": self.wallet_id,
            "created_at": self.created_at,
        }


# -----------------------------------------------------------------------------
# Payment intents and balances
# -----------------------------------------------------------------------------


class PaymentIntent(Base):
    __tablename__ = "payment_intents"
    __table_args__ = (
        Index("ix_payment_intents_status_expires", "status", "expires_at"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    amount = Column(Amount, nullable=False)
    currency = Column(String(8), nullable=False)
    chain = Column(String(32), nullable=False, default="solana")
    payment_address = Column(String(128), nullable=False, index=True)
    expected_token_mint = Column(String(128), nullable=False)
    status = Column(String(32), nullable=False, default=IntentStatus.PENDING, index=True)
    # One on-chain transfer settles at most one intent
    tx_signature = Column(String(128), nullable=True, unique=True)
    confirmations = Column(Integer, nullable=False, default=0)
    # Set when the claimed transfer failed on chain; the finalizer stops polling it
    chain_error = Column(String(512), nullable=True)
    description = Column(String(512), nullable=True)
    metadata_json = Column("metadata", Text, nullable=True)
    expires_at = Column(Integer, nullable=False)
    confirmed_at = Column(Integer, nullable=True)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "merchant_id": self.merchant_id,
            "amount": format_amount(self.amount),
            "currency": self.currency,
            "chain": self.chain,
            "payment_address": self.payment_address,
            "expected_token_mint": self.expected_token_mint,
            "status": self.status,
            "tx_signature": self.tx_signature,
            "confirmations": self.confirmations,
            "chain_error": self.chain_error,
            "description": self.description,
            "metadata": _loads(self.metadata_json),
            "expires_at": self.expires_at,
            "confirmed_at": self.confirmed_at,
            "created_at": self.created_at,
        }


class Balance(Base):
    """Per (merchant, currency) running totals. total == onchain + offchain."""

    __tablename__ = "balances"
    __table_args__ = (
        UniqueConstraint("merchant_id", "currency", name="uq_balance_merchant_currency"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    currency = Column(String(8), nullable=False)
    total = Column(Amount, nullable=False, default=0)
    onchain = Column(Amount, nullable=False, default=0)
    offchain = Column(Amount, nullable=False, default=0)
    updated_at = Column(Integer, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "currency": self.currency,
            "total": format_amount(self.total),
            "onchain": format_amount(self.onchain),
            "offchain": format_amount(self.offchain),
            "updated_at": self.updated_at,
        }


# -----------------------------------------------------------------------------
# Payouts
# -----------------------------------------------------------------------------


class Payout(Base):
    __tablename__ = "payouts"

    id = Column(String(36), primary_key=True, default=new_id)
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    amount = Column(Amount, nullable=False)
    fee_amount = Column(Amount, nullable=False)
    net_amount = Column(Amount, nullable=False)
    currency = Column(String(8), nullable=False)
    chain = Column(String(32), nullable=False)
    destination_address = Column(String(128), nullable=False)
    destination_id = Column(String(36), ForeignKey("payout_destinations.id"), nullable=True)
    destination_type = Column(String(32), nullable=False, default="wallet")
    status = Column(String(32), nullable=False, default=PayoutStatus.PENDING, index=True)
    requires_approval = Column(Boolean, nullable=False, default=False)
    notes = Column(String(1024), nullable=True)
    approved_by = Column(String(128), nullable=True)
    approved_at = Column(Integer, nullable=True)
    unsigned_transaction = Column(Text, nullable=True)
    source_wallet_address = Column(String(128), nullable=True)
    transaction_expires_at = Column(Integer, nullable=True)
    tx_signature = Column(String(128), nullable=True, unique=True)
    error_message = Column(String(1024), nullable=True)
    signed_at = Column(Integer, nullable=True)
    processed_at = Column(Integer, nullable=True)
    completed_at = Column(Integer, nullable=True)
    failed_at = Column(Integer, nullable=True)
    created_at = Column(Integer, nullable=False)
    updated_at = Column(Integer, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "merchant_id": self.merchant_id,
            "amount": format_amount(self.amount),
            "fee_amount": format_amount(self.fee_amount),
            "net_amount": format_amount(self.net_amount),
            "currency": self.currency,
            "chain": self.chain,
            "destination_address": self.destination_address,
            "destination_id": self.destination_id,
            "destination_type": self.destination_type,
            "status": self.status,
            "requires_approval": bool(self.requires_approval),
            "notes": self.notes,
            "approved_by": self.approved_by,
            "approved_at": self.approved_at,
            "unsigned_transaction": _loads(self.unsigned_transaction),
            "source_wallet_address": self.source_wallet_address,
            "transaction_expires_at": self.transaction_expires_at,
            "tx_signature": self.tx_signature,
            "error_message": self.error_message,
            "signed_at": self.signed_at,
            "completed_at": self.completed_at,
            "failed_at": self.failed_at,
            "created_at": self.created_at,
        }


class PayoutApproval(Base):
    """Append-only audit trail of approval decisions."""

    __tablename__ = "payout_approvals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payout_id = Column(String(36), ForeignKey("payouts.id"), nullable=False, index=True)
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False)
    actor_id = Column(String(128), nullable=False)
    action = Column(String(16), nullable=False)
    notes = Column(String(1024), nullable=True)
    created_at = Column(Integer, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "payout_id": self.payout_id,
            "actor_id": self.actor_id,
            "action": self.action,
            "notes": self.notes,
            "created_at": self.created_at,
        }


# -----------------------------------------------------------------------------
# Ledger records and webhook outbox
# -----------------------------------------------------------------------------


class LedgerTransaction(Base):
    """
    Ledger record per balance movement: one deposit per settled intent,
    one payout per completed payout (enforced by the unique reference).
    """

    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("type", "reference_type", "reference_id", name="uq_transaction_reference"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    type = Column(String(16), nullable=False)
    status = Column(String(32), nullable=False)
    amount = Column(Amount, nullable=False)
    currency = Column(String(8), nullable=False)
    chain = Column(String(32), nullable=True)
    tx_hash = Column(String(128), nullable=True, index=True)
    from_address = Column(String(128), nullable=True)
    to_address = Column(String(128), nullable=True)
    reference_type = Column(String(32), nullable=False)
    reference_id = Column(String(36), nullable=False)
    metadata_json = Column("metadata", Text, nullable=True)
    created_at = Column(Integer, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "amount": format_amount(self.amount),
            "currency": self.currency,
            "chain": self.chain,
            "tx_hash": self.tx_hash,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "metadata": _loads(self.metadata_json),
            "created_at": self.created_at,
        }


class WebhookEvent(Base):
    """Outbox row. payload holds the exact JSON text that is signed and POSTed."""

    __tablename__ = "webhook_events"
    __table_args__ = (
        Index("ix_webhook_events_due", "status", "next_retry_at"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    resource_type = Column(String(32), nullable=False)
    resource_id = Column(String(36), nullable=False, index=True)
    payload = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default=WebhookStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=DEFAULT_WEBHOOK_MAX_ATTEMPTS)
    next_retry_at = Column(Integer, nullable=False)
    last_attempt_at = Column(Integer, nullable=True)
    delivered_at = Column(Integer, nullable=True)
    response_status_code = Column(Integer, nullable=True)
    response_body = Column(String(1000), nullable=True)
    error_message = Column(String(1024), nullable=True)
    created_at = Column(Integer, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "payload": _loads(self.payload),
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "next_retry_at": self.next_retry_at,
            "last_attempt_at": self.last_attempt_at,
            "delivered_at": self.delivered_at,
            "response_status_code": self.response_status_code,
            "error_message": self.error_message,
            "created_at": self.created_at,
        }
