"""
Settlement monitor — match on-chain transfers to pending payment intents.

Each tick scans pending, unexpired, unclaimed intents; fetches recent
transfers to each payment address (once per address and token per tick);
claims the first acceptable transfer with a conditional update that moves
the intent to processing. A transfer signature settles at most one intent.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from backend_payrail.chain.models import Transfer
from backend_payrail.chain.registry import ChainRegistry
from backend_payrail.core.clock import now_ts as _now
from backend_payrail.core.exceptions import PayrailError
from backend_payrail.core.money import within_tolerance
from backend_payrail.database.models import IntentStatus, PaymentIntent
from backend_payrail.database.store import LedgerStore, compare_and_set
from backend_payrail.payrail_logging import get_logger

logger = get_logger(__name__)

DEFAULT_MONITOR_BATCH = 200


@dataclass
class MonitorResult:
    scanned: int = 0
    claimed: int = 0
    errors: int = 0


def transfer_matches(
    transfer: Transfer,
    *,
    payment_address: str,
    expected_token_mint: str,
    amount: Decimal,
) -> bool:
    """Recipient, token and amount (+/- 1% in base units) must all agree."""
    if payment_address not in (transfer.to_address, transfer.to_token_account):
        return False
    if transfer.token_id != expected_token_mint:
        return False
    return within_tolerance(transfer.raw_amount, amount, transfer.decimals)


def _claimed_signatures(store: LedgerStore, signatures: list[str]) -> set[str]:
    if not signatures:
        return set()
    with store.session_scope() as session:
        rows = session.execute(
            select(PaymentIntent.tx_signature).where(PaymentIntent.tx_signature.in_(signatures))
        ).scalars()
        return set(rows)


def _claim(store: LedgerStore, intent_id: str, signature: str, now: int) -> bool:
    try:
        with store.session_scope() as session:
            return compare_and_set(
                session,
                PaymentIntent,
                intent_id,
                expected_status=IntentStatus.PENDING,
                values={
                    "status": IntentStatus.PROCESSING,
                    "tx_signature": signature,
                    "confirmations": 1,
                    "updated_at": now,
                },
                conditions=[PaymentIntent.tx_signature.is_(None)],
            )
    except IntegrityError:
        # Another intent claimed this signature concurrently
        logger.info("settlement_signature_already_claimed", intent_id=intent_id, signature=signature)
        return False


def run_monitor_tick(
    store: LedgerStore,
    registry: ChainRegistry,
    now_ts: int | None = None,
    *,
    transfers_limit: int = 20,
    batch_size: int = DEFAULT_MONITOR_BATCH,
) -> MonitorResult:
    now = _now(now_ts)
    result = MonitorResult()
    with store.session_scope() as session:
        intents = [
            (i.id, i.merchant_id, i.chain, i.payment_address, i.expected_token_mint, i.amount)
            for i in session.execute(
                select(PaymentIntent)
                .where(
                    PaymentIntent.status == IntentStatus.PENDING,
                    PaymentIntent.expires_at > now,
                    PaymentIntent.tx_signature.is_(None),
                )
                .order_by(PaymentIntent.created_at.asc())
                .limit(batch_size)
            ).scalars()
        ]

    cache: dict[tuple[str, str, str], list[Transfer]] = {}
    taken: set[str] = set()
    for intent_id, merchant_id, chain, address, mint, amount in intents:
        result.scanned += 1
        key = (chain, address, mint)
        try:
            if key not in cache:
                adapter = registry.get(chain)
                cache[key] = adapter.recent_transfers(address, limit=transfers_limit, token_id=mint)
                taken |= _claimed_signatures(store, [t.signature for t in cache[key]])
            candidates = [
                t
                for t in cache[key]
                if t.signature not in taken
                and transfer_matches(t, payment_address=address, expected_token_mint=mint, amount=amount)
            ]
        except PayrailError as e:
            result.errors += 1
            logger.warning(
                "settlement_monitor_intent_error",
                intent_id=intent_id,
                chain=chain,
                code=e.code,
                error=e.message,
            )
            continue

        for transfer in candidates:
            if _claim(store, intent_id, transfer.signature, now):
                taken.add(transfer.signature)
                result.claimed += 1
                logger.info(
                    "settlement_intent_claimed",
                    merchant_id=merchant_id,
                    intent_id=intent_id,
                    signature=transfer.signature,
                    raw_amount=transfer.raw_amount,
                )
                break
            # Lost the intent to a concurrent monitor, or the signature to another intent
            taken |= _claimed_signatures(store, [transfer.signature])
            with store.session_scope() as session:
                status = session.execute(
                    select(PaymentIntent.status).where(PaymentIntent.id == intent_id)
                ).scalar_one_or_none()
            if status != IntentStatus.PENDING:
                break

    logger.info(
        "settlement_monitor_tick",
        scanned=result.scanned,
        claimed=result.claimed,
        errors=result.errors,
    )
    return result
