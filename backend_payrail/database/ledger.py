"""
Ledger operations that run inside a caller's session.

Balance movements, ledger records and webhook outbox rows are written in
the same transaction as the status transition that causes them, so either
all of them commit or none do.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend_payrail.config import get_settings
from backend_payrail.core.exceptions import NoVerifiedSourceWallet, ResourceNotFound
from backend_payrail.database.models import (
    Balance,
    LedgerTransaction,
    Merchant,
    Wallet,
    WalletPurpose,
    WebhookEvent,
    WebhookStatus,
)
from backend_payrail.payrail_logging import get_logger

logger = get_logger(__name__)

ZERO = Decimal("0")


def get_owned(session: Session, model: Any, merchant_id: str, row_id: str, *, for_update: bool = False) -> Any:
    """Fetch a row by id scoped to its merchant; ResourceNotFound otherwise."""
    stmt = select(model).where(model.id == row_id, model.merchant_id == merchant_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = session.execute(stmt).scalar_one_or_none()
    if row is None:
        raise ResourceNotFound(
            f"{model.__tablename__[:-1]} not found", resource=model.__tablename__, id=row_id
        )
    return row


def get_merchant(session: Session, merchant_id: str) -> Merchant:
    merchant = session.get(Merchant, merchant_id)
    if merchant is None:
        raise ResourceNotFound("merchant not found", resource="merchants", id=merchant_id)
    return merchant


def get_balance(session: Session, merchant_id: str, currency: str) -> Balance | None:
    return session.execute(
        select(Balance).where(Balance.merchant_id == merchant_id, Balance.currency == currency)
    ).scalar_one_or_none()


def adjust_balance(
    session: Session,
    merchant_id: str,
    currency: str,
    delta: Decimal,
    now: int,
) -> None:
    """
    Add delta (negative for debits) to total and onchain for (merchant, currency).

    Atomic increment in SQL; the row is created on first credit. A concurrent
    first insert loses on the unique constraint and falls back to the update.
    """
    stmt = (
        update(Balance)
        .where(Balance.merchant_id == merchant_id, Balance.currency == currency)
        .values(
            total=Balance.total + delta,
            onchain=Balance.onchain + delta,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if session.execute(stmt).rowcount == 1:
        return
    try:
        with session.begin_nested():
            session.add(
                Balance(
                    merchant_id=merchant_id,
                    currency=currency,
                    total=delta,
                    onchain=delta,
                    offchain=ZERO,
                    updated_at=now,
                )
            )
    except IntegrityError:
        if session.execute(stmt).rowcount != 1:
            raise


def record_transaction(
    session: Session,
    *,
    merchant_id: str,
    type: str,
    status: str,
    amount: Decimal,
    currency: str,
    reference_type: str,
    reference_id: str,
    now: int,
    chain: str | None = None,
    tx_hash: str | None = None,
    from_address: str | None = None,
    to_address: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> LedgerTransaction:
    row = LedgerTransaction(
        merchant_id=merchant_id,
        type=type,
        status=status,
        amount=amount,
        currency=currency,
        chain=chain,
        tx_hash=tx_hash,
        from_address=from_address,
        to_address=to_address,
        reference_type=reference_type,
        reference_id=reference_id,
        metadata_json=json.dumps(metadata, sort_keys=True) if metadata else None,
        created_at=now,
    )
    session.add(row)
    session.flush()
    return row


def serialize_payload(payload: dict[str, Any]) -> str:
    """Canonical JSON text: these exact bytes are signed and delivered."""
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


def enqueue_webhook(
    session: Session,
    merchant_id: str,
    event_type: str,
    payload: dict[str, Any],
    now: int,
    *,
    resource_type: str,
    resource_id: str,
    max_attempts: int | None = None,
) -> WebhookEvent:
    event = WebhookEvent(
        merchant_id=merchant_id,
        event_type=event_type,
        resource_type=resource_type,
        resource_id=resource_id,
        payload=serialize_payload(payload),
        status=WebhookStatus.PENDING,
        attempts=0,
        max_attempts=max_attempts if max_attempts is not None else get_settings().webhook_max_attempts,
        next_retry_at=now,
        created_at=now,
    )
    session.add(event)
    session.flush()
    logger.info(
        "webhook_event_enqueued",
        merchant_id=merchant_id,
        event_id=event.id,
        event_type=event_type,
        resource_type=resource_type,
        resource_id=resource_id,
    )
    return event


def get_verified_wallet(
    session: Session,
    merchant_id: str,
    chain: str,
    purpose: str = WalletPurpose.SETTLEMENT,
) -> Wallet:
    """Earliest-verified wallet for (merchant, chain, purpose); NoVerifiedSourceWallet if none."""
    wallet = session.execute(
        select(Wallet)
        .where(
            Wallet.merchant_id == merchant_id,
            Wallet.chain == chain,
            Wallet.purpose == purpose,
            Wallet.proof_verified.is_(True),
        )
        .order_by(Wallet.verified_at.asc(), Wallet.created_at.asc())
        .limit(1)
    ).scalar_one_or_none()
    if wallet is None:
        raise NoVerifiedSourceWallet(
            f"no ownership-verified {chain} wallet for this merchant",
            merchant_id=merchant_id,
            chain=chain,
        )
    return wallet
