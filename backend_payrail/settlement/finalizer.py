"""
Settlement finalizer — credit balances once claimed transfers are final.

For every processing intent, poll the chain for confirmation depth. A
final transfer settles the intent in one database transaction: the
conditional processing -> succeeded update, the balance credit, the
deposit ledger record and the payment.succeeded webhook. If the
conditional update matches nothing (another finalizer won), nothing else
is written, so a tick can be replayed without double crediting.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select

from backend_payrail.chain.models import TransferStatus
from backend_payrail.chain.registry import ChainRegistry
from backend_payrail.core.clock import now_ts as _now
from backend_payrail.core.exceptions import PayrailError
from backend_payrail.core.money import format_amount
from backend_payrail.database.ledger import adjust_balance, enqueue_webhook, record_transaction
from backend_payrail.database.models import IntentStatus, PaymentIntent
from backend_payrail.database.store import LedgerStore, compare_and_set
from backend_payrail.payrail_logging import get_logger

logger = get_logger(__name__)

EVENT_PAYMENT_SUCCEEDED = "payment.succeeded"
DEFAULT_FINALIZER_BATCH = 200


@dataclass
class FinalizerResult:
    checked: int = 0
    settled: int = 0
    pending: int = 0
    errors: int = 0


def settle_intent(store: LedgerStore, intent_id: str, status: TransferStatus, now: int) -> bool:
    """Atomically settle one processing intent. Returns False if it was not processing anymore."""
    with store.session_scope() as session:
        intent = session.get(PaymentIntent, intent_id)
        if intent is None:
            return False
        won = compare_and_set(
            session,
            PaymentIntent,
            intent_id,
            expected_status=IntentStatus.PROCESSING,
            values={
                "status": IntentStatus.SUCCEEDED,
                "confirmations": max(status.confirmations, intent.confirmations or 0),
                "confirmed_at": now,
                "updated_at": now,
            },
        )
        if not won:
            return False
        adjust_balance(session, intent.merchant_id, intent.currency, intent.amount, now)
        record_transaction(
            session,
            merchant_id=intent.merchant_id,
            type="deposit",
            status="settled_onchain",
            amount=intent.amount,
            currency=intent.currency,
            chain=intent.chain,
            tx_hash=intent.tx_signature,
            to_address=intent.payment_address,
            reference_type="payment_intent",
            reference_id=intent.id,
            now=now,
        )
        enqueue_webhook(
            session,
            intent.merchant_id,
            EVENT_PAYMENT_SUCCEEDED,
            {
                "id": intent.id,
                "amount": format_amount(intent.amount),
                "currency": intent.currency,
                "status": IntentStatus.SUCCEEDED,
                "tx_signature": intent.tx_signature,
                "confirmed_at": now,
            },
            now,
            resource_type="payment_intent",
            resource_id=intent.id,
        )
    return True


def _record_confirmations(store: LedgerStore, intent_id: str, confirmations: int, now: int) -> None:
    with store.session_scope() as session:
        compare_and_set(
            session,
            PaymentIntent,
            intent_id,
            expected_status=IntentStatus.PROCESSING,
            values={"confirmations": confirmations, "updated_at": now},
        )


def _record_chain_error(store: LedgerStore, intent_id: str, err: str, now: int) -> bool:
    with store.session_scope() as session:
        return compare_and_set(
            session,
            PaymentIntent,
            intent_id,
            expected_status=IntentStatus.PROCESSING,
            values={"chain_error": err[:512], "updated_at": now},
            conditions=[PaymentIntent.chain_error.is_(None)],
        )


def run_finalizer_tick(
    store: LedgerStore,
    registry: ChainRegistry,
    now_ts: int | None = None,
    *,
    finality_threshold: int = 32,
    batch_size: int = DEFAULT_FINALIZER_BATCH,
) -> FinalizerResult:
    now = _now(now_ts)
    result = FinalizerResult()
    with store.session_scope() as session:
        rows = session.execute(
            select(PaymentIntent.id, PaymentIntent.merchant_id, PaymentIntent.chain, PaymentIntent.tx_signature)
            .where(
                PaymentIntent.status == IntentStatus.PROCESSING,
                PaymentIntent.tx_signature.is_not(None),
                PaymentIntent.chain_error.is_(None),
            )
            .order_by(PaymentIntent.updated_at.asc())
            .limit(batch_size)
        ).all()

    for intent_id, merchant_id, chain, signature in rows:
        result.checked += 1
        try:
            status = registry.get(chain).transfer_status(signature)
        except PayrailError as e:
            result.errors += 1
            logger.warning(
                "settlement_finalizer_status_error",
                intent_id=intent_id,
                signature=signature,
                code=e.code,
                error=e.message,
            )
            continue

        if status.err is not None:
            result.errors += 1
            if _record_chain_error(store, intent_id, str(status.err), now):
                logger.error(
                    "settlement_transfer_failed_onchain",
                    merchant_id=merchant_id,
                    intent_id=intent_id,
                    signature=signature,
                    err=str(status.err),
                )
            continue

        if status.is_final(finality_threshold):
            if settle_intent(store, intent_id, status, now):
                result.settled += 1
                logger.info(
                    "settlement_intent_succeeded",
                    merchant_id=merchant_id,
                    intent_id=intent_id,
                    signature=signature,
                    confirmations=status.confirmations,
                )
            else:
                logger.info("settlement_intent_already_settled", intent_id=intent_id)
            continue

        result.pending += 1
        _record_confirmations(store, intent_id, status.confirmations, now)
        logger.debug(
            "settlement_intent_confirming",
            intent_id=intent_id,
            confirmations=status.confirmations,
            threshold=finality_threshold,
        )

    logger.info(
        "settlement_finalizer_tick",
        checked=result.checked,
        settled=result.settled,
        pending=result.pending,
        errors=result.errors,
    )
    return result
