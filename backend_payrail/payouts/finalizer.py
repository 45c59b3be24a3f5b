"""
Payout finalizer — accept the externally signed transaction, broadcast it,
and debit the balance only after the chain confirms it.

Once a payout is processing the transaction may already be on chain, so
nothing cancels it. The signature is computed locally and recorded before
the broadcast; a send whose outcome is unknown (transport error) or a
confirmation that does not arrive in time leaves the payout processing, and
the reconciler tick settles it later (completed or failed). Only a node
that refuses the transaction outright fails the payout at submit time.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select

from backend_payrail.chain.models import TransferStatus, UnsignedTransaction
from backend_payrail.chain.registry import ChainRegistry
from backend_payrail.config import get_settings
from backend_payrail.core.clock import now_ts as _now
from backend_payrail.core.exceptions import (
    ChainUnavailable,
    InsufficientBalance,
    InvalidState,
    PayrailError,
    SignatureNotFound,
    TransactionExpired,
    TransactionRejected,
)
from backend_payrail.core.money import format_amount
from backend_payrail.database.ledger import (
    adjust_balance,
    enqueue_webhook,
    get_balance,
    get_owned,
    record_transaction,
)
from backend_payrail.database.models import Payout, PayoutStatus
from backend_payrail.database.store import LedgerStore, compare_and_set
from backend_payrail.payouts.orchestrator import get_payout
from backend_payrail.payrail_logging import bind_merchant, get_logger

logger = get_logger(__name__)

EVENT_PAYOUT_COMPLETED = "payout.completed"
EVENT_PAYOUT_FAILED = "payout.failed"
# A Solana signature still unknown this long after its blockhash window can never land
DROPPED_GRACE_SEC = 300


def _is_confirmed(status: TransferStatus) -> bool:
    return status.err is None and (status.finalized or status.confirmations >= 1)


def complete_payout(store: LedgerStore, payout_id: str, signature: str, now: int) -> bool:
    """processing -> completed with the gross debit, ledger record and webhook in one transaction."""
    with store.session_scope() as session:
        payout = session.get(Payout, payout_id)
        if payout is None:
            return False
        won = compare_and_set(
            session,
            Payout,
            payout_id,
            expected_status=PayoutStatus.PROCESSING,
            values={
                "status": PayoutStatus.COMPLETED,
                "tx_signature": signature,
                "completed_at": now,
                "updated_at": now,
            },
        )
        if not won:
            return False
        adjust_balance(session, payout.merchant_id, payout.currency, -payout.amount, now)
        record_transaction(
            session,
            merchant_id=payout.merchant_id,
            type="payout",
            status="completed",
            amount=payout.net_amount,
            currency=payout.currency,
            chain=payout.chain,
            tx_hash=signature,
            from_address=payout.source_wallet_address,
            to_address=payout.destination_address,
            reference_type="payout",
            reference_id=payout.id,
            metadata={"payout_id": payout.id, "fee_amount": format_amount(payout.fee_amount)},
            now=now,
        )
        enqueue_webhook(
            session,
            payout.merchant_id,
            EVENT_PAYOUT_COMPLETED,
            {
                "id": payout.id,
                "amount": format_amount(payout.amount),
                "net_amount": format_amount(payout.net_amount),
                "currency": payout.currency,
                "destination_address": payout.destination_address,
                "tx_signature": signature,
                "completed_at": now,
            },
            now,
            resource_type="payout",
            resource_id=payout.id,
        )
        balance = get_balance(session, payout.merchant_id, payout.currency)
        if balance is not None and balance.total < 0:
            logger.error(
                "payout_balance_overdrawn",
                merchant_id=payout.merchant_id,
                payout_id=payout_id,
                total=format_amount(balance.total),
            )
    logger.info("payout_completed", payout_id=payout_id, signature=signature)
    return True


def fail_payout(
    store: LedgerStore,
    payout_id: str,
    message: str,
    now: int,
    expected_status: str = PayoutStatus.PROCESSING,
) -> bool:
    with store.session_scope() as session:
        payout = session.get(Payout, payout_id)
        if payout is None:
            return False
        won = compare_and_set(
            session,
            Payout,
            payout_id,
            expected_status=expected_status,
            values={
                "status": PayoutStatus.FAILED,
                "error_message": message[:1024],
                "failed_at": now,
                "updated_at": now,
            },
        )
        if not won:
            return False
        enqueue_webhook(
            session,
            payout.merchant_id,
            EVENT_PAYOUT_FAILED,
            {
                "id": payout.id,
                "amount": format_amount(payout.amount),
                "currency": payout.currency,
                "error_message": message[:1024],
                "failed_at": now,
            },
            now,
            resource_type="payout",
            resource_id=payout.id,
        )
    logger.warning("payout_failed", payout_id=payout_id, error=message)
    return True


def submit_signed_payout(
    store: LedgerStore,
    registry: ChainRegistry,
    merchant_id: str,
    payout_id: str,
    signed_transaction: str,
    now_ts: int | None = None,
    confirmation_timeout_sec: float | None = None,
) -> dict[str, Any]:
    now = _now(now_ts)
    log = bind_merchant(merchant_id, __name__).bind(payout_id=payout_id)
    with store.session_scope() as session:
        payout = get_owned(session, Payout, merchant_id, payout_id)
        expires_at = payout.transaction_expires_at
        expired = payout.status == PayoutStatus.EXPIRED or (
            payout.status == PayoutStatus.AWAITING_SIGNATURE and expires_at is not None and now > expires_at
        )
        if not expired and payout.status != PayoutStatus.AWAITING_SIGNATURE:
            raise InvalidState(
                f"cannot submit a signed transaction for a {payout.status} payout",
                current_status=payout.status,
                payout_id=payout_id,
            )
        if expired and payout.status == PayoutStatus.AWAITING_SIGNATURE:
            compare_and_set(
                session,
                Payout,
                payout_id,
                expected_status=PayoutStatus.AWAITING_SIGNATURE,
                values={"status": PayoutStatus.EXPIRED, "updated_at": now},
            )
        chain, source = payout.chain, payout.source_wallet_address
        unsigned_raw, amount, currency = payout.unsigned_transaction, payout.amount, payout.currency
    if expired:
        log.info("payout_signature_expired", expires_at=expires_at)
        raise TransactionExpired(
            "signing window has expired; generate a new transaction",
            payout_id=payout_id,
            expires_at=expires_at,
        )

    adapter = registry.get(chain)
    adapter.verify_signed_transaction(UnsignedTransaction.from_json(unsigned_raw), signed_transaction, source)
    signature = adapter.transaction_signature(signed_transaction)

    with store.session_scope() as session:
        balance = get_balance(session, merchant_id, currency)
        available = balance.total if balance is not None else None
    if available is None or available < amount:
        fail_payout(store, payout_id, "insufficient balance at signing time", now, PayoutStatus.AWAITING_SIGNATURE)
        raise InsufficientBalance(
            "insufficient balance for payout",
            available=format_amount(available) if available is not None else "0",
            requested=format_amount(amount),
            currency=currency,
        )

    # Signature recorded before sending: an unknown broadcast outcome is settled by the reconciler
    with store.session_scope() as session:
        won = compare_and_set(
            session,
            Payout,
            payout_id,
            expected_status=PayoutStatus.AWAITING_SIGNATURE,
            values={
                "status": PayoutStatus.PROCESSING,
                "tx_signature": signature,
                "signed_at": now,
                "processed_at": now,
                "updated_at": now,
            },
        )
        if not won:
            current = get_owned(session, Payout, merchant_id, payout_id).status
            raise InvalidState(
                f"cannot submit a signed transaction for a {current} payout",
                current_status=current,
                payout_id=payout_id,
            )
    log.info("payout_processing", chain=chain, signature=signature)

    try:
        sent = adapter.broadcast(signed_transaction)
    except TransactionRejected as e:
        fail_payout(store, payout_id, f"broadcast failed: {e.message}", now)
        return get_payout(store, merchant_id, payout_id)
    except ChainUnavailable as e:
        log.warning("payout_broadcast_unknown", signature=signature, error=e.message)
        return get_payout(store, merchant_id, payout_id)

    if sent != signature:
        log.warning("payout_signature_mismatch", expected=signature, returned=sent)
        with store.session_scope() as session:
            compare_and_set(
                session,
                Payout,
                payout_id,
                expected_status=PayoutStatus.PROCESSING,
                values={"tx_signature": sent, "updated_at": now},
            )
        signature = sent

    timeout = (
        confirmation_timeout_sec
        if confirmation_timeout_sec is not None
        else get_settings().payout_confirmation_timeout_sec
    )
    try:
        status = adapter.wait_for_confirmation(signature, timeout)
    except ChainUnavailable as e:
        log.warning("payout_confirmation_unknown", signature=signature, error=e.message)
        status = None

    if status is None:
        log.info("payout_awaiting_confirmation", signature=signature)
    elif status.err is not None:
        fail_payout(store, payout_id, f"transaction failed on chain: {status.err}", now)
    elif _is_confirmed(status):
        complete_payout(store, payout_id, signature, now)
    return get_payout(store, merchant_id, payout_id)


@dataclass
class ReconcileResult:
    checked: int = 0
    completed: int = 0
    failed: int = 0
    errors: int = 0


def run_payout_reconciler_tick(
    store: LedgerStore,
    registry: ChainRegistry,
    now_ts: int | None = None,
    batch_size: int = 200,
) -> ReconcileResult:
    """Settle processing payouts whose broadcast outcome was not known at submit time."""
    now = _now(now_ts)
    result = ReconcileResult()
    with store.session_scope() as session:
        rows = session.execute(
            select(Payout.id, Payout.chain, Payout.tx_signature, Payout.transaction_expires_at)
            .where(Payout.status == PayoutStatus.PROCESSING, Payout.tx_signature.is_not(None))
            .order_by(Payout.updated_at.asc())
            .limit(batch_size)
        ).all()

    for payout_id, chain, signature, expires_at in rows:
        result.checked += 1
        try:
            status = registry.get(chain).transfer_status(signature)
        except SignatureNotFound:
            dropped = chain == "solana" and expires_at is not None and now > expires_at + DROPPED_GRACE_SEC
            if dropped and fail_payout(store, payout_id, "transaction dropped before confirmation", now):
                result.failed += 1
            continue
        except PayrailError as e:
            result.errors += 1
            logger.warning("payout_reconcile_error", payout_id=payout_id, code=e.code, error=e.message)
            continue

        if status.err is not None:
            if fail_payout(store, payout_id, f"transaction failed on chain: {status.err}", now):
                result.failed += 1
        elif _is_confirmed(status):
            if complete_payout(store, payout_id, signature, now):
                result.completed += 1

    logger.info(
        "payout_reconciler_tick",
        checked=result.checked,
        completed=result.completed,
        failed=result.failed,
        errors=result.errors,
    )
    return result
