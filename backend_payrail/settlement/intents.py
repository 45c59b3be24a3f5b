"""
Payment intents: create, read, cancel, and the expiry sweep.
"""

from __future__ import annotations

import json
from typing import Any

from sqlalchemy import select

from backend_payrail.chain.addresses import canonical_address
from backend_payrail.chain.registry import normalize_chain
from backend_payrail.chain.tokens import get_token
from backend_payrail.config import get_settings
from backend_payrail.core.clock import now_ts as _now
from backend_payrail.core.exceptions import InvalidAmount, InvalidState, NoVerifiedSourceWallet
from backend_payrail.core.money import to_decimal
from backend_payrail.database.ledger import get_merchant, get_owned, get_verified_wallet
from backend_payrail.database.models import IntentStatus, PaymentIntent, Wallet, WalletPurpose
from backend_payrail.database.store import LedgerStore, compare_and_set
from backend_payrail.payrail_logging import bind_merchant, get_logger

logger = get_logger(__name__)

MAX_EXPIRES_IN_MINUTES = 24 * 60


def _resolve_payment_address(session: Any, merchant_id: str, chain: str, requested: str | None) -> str:
    if not requested:
        return get_verified_wallet(session, merchant_id, chain).address
    address = canonical_address(chain, requested)
    wallet = session.execute(
        select(Wallet).where(
            Wallet.merchant_id == merchant_id,
            Wallet.chain == chain,
            Wallet.address == address,
            Wallet.purpose == WalletPurpose.SETTLEMENT,
            Wallet.proof_verified.is_(True),
        )
    ).scalar_one_or_none()
    if wallet is None:
        raise NoVerifiedSourceWallet(
            "payment address is not an ownership-verified settlement wallet",
            address=address,
            chain=chain,
        )
    return address


def create_intent(
    store: LedgerStore,
    merchant_id: str,
    amount: Any,
    currency: str = "USDC",
    chain: str = "solana",
    *,
    payment_address: str | None = None,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
    expires_in_minutes: int | None = None,
    network: str | None = None,
    now_ts: int | None = None,
) -> dict[str, Any]:
    """Create a pending request-for-payment on the merchant's verified settlement wallet."""
    value = to_decimal(amount)
    if value <= 0:
        raise InvalidAmount("amount must be greater than 0", amount=str(value))
    chain = normalize_chain(chain)
    settings = get_settings()
    token = get_token(chain, currency, network or settings.solana_network)
    minutes = settings.intent_default_ttl_minutes if expires_in_minutes is None else int(expires_in_minutes)
    if not 1 <= minutes <= MAX_EXPIRES_IN_MINUTES:
        raise InvalidAmount(
            f"expires_in_minutes must be between 1 and {MAX_EXPIRES_IN_MINUTES}",
            field="expires_in_minutes",
        )
    now = _now(now_ts)
    with store.session_scope() as session:
        get_merchant(session, merchant_id)
        address = _resolve_payment_address(session, merchant_id, chain, payment_address)
        intent = PaymentIntent(
            merchant_id=merchant_id,
            amount=value,
            currency=token.currency,
            chain=chain,
            payment_address=address,
            expected_token_mint=token.address,
            status=IntentStatus.PENDING,
            confirmations=0,
            description=description,
            metadata_json=json.dumps(metadata, sort_keys=True) if metadata else None,
            expires_at=now + minutes * 60,
            created_at=now,
            updated_at=now,
        )
        session.add(intent)
        session.flush()
        result = intent.to_dict()
    bind_merchant(merchant_id, __name__).info(
        "payment_intent_created",
        intent_id=result["id"],
        amount=result["amount"],
        currency=result["currency"],
        chain=chain,
    )
    return result


def get_intent(store: LedgerStore, merchant_id: str, intent_id: str) -> dict[str, Any]:
    with store.session_scope() as session:
        return get_owned(session, PaymentIntent, merchant_id, intent_id).to_dict()


def list_intents(
    store: LedgerStore,
    merchant_id: str,
    status: str | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    stmt = select(PaymentIntent).where(PaymentIntent.merchant_id == merchant_id)
    if status:
        stmt = stmt.where(PaymentIntent.status == status)
    stmt = stmt.order_by(PaymentIntent.created_at.desc()).limit(limit)
    with store.session_scope() as session:
        return [row.to_dict() for row in session.execute(stmt).scalars()]


def cancel_intent(
    store: LedgerStore,
    merchant_id: str,
    intent_id: str,
    now_ts: int | None = None,
) -> dict[str, Any]:
    """pending -> cancelled. Once a transfer is claimed the intent can no longer be cancelled."""
    now = _now(now_ts)
    with store.session_scope() as session:
        intent = get_owned(session, PaymentIntent, merchant_id, intent_id)
        won = compare_and_set(
            session,
            PaymentIntent,
            intent_id,
            expected_status=IntentStatus.PENDING,
            values={"status": IntentStatus.CANCELLED, "updated_at": now},
            conditions=[PaymentIntent.tx_signature.is_(None)],
        )
        if not won:
            session.refresh(intent)
            raise InvalidState(
                f"cannot cancel a {intent.status} payment intent",
                current_status=intent.status,
                intent_id=intent_id,
            )
        session.refresh(intent)
        result = intent.to_dict()
    logger.info("payment_intent_cancelled", merchant_id=merchant_id, intent_id=intent_id)
    return result


def run_intent_expiry_tick(store: LedgerStore, now_ts: int | None = None, limit: int = 500) -> int:
    """Mark unpaid pending intents past expires_at as expired. Returns how many moved."""
    now = _now(now_ts)
    expired = 0
    with store.session_scope() as session:
        ids = session.execute(
            select(PaymentIntent.id)
            .where(
                PaymentIntent.status == IntentStatus.PENDING,
                PaymentIntent.tx_signature.is_(None),
                PaymentIntent.expires_at <= now,
            )
            .limit(limit)
        ).scalars().all()
        for intent_id in ids:
            if compare_and_set(
                session,
                PaymentIntent,
                intent_id,
                expected_status=IntentStatus.PENDING,
                values={"status": IntentStatus.EXPIRED, "updated_at": now},
                conditions=[PaymentIntent.tx_signature.is_(None)],
            ):
                expired += 1
    if expired:
        logger.info("payment_intents_expired", count=expired)
    return expired
