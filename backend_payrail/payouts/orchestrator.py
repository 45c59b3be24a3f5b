"""
Payout orchestrator — request, approve / reject / cancel, and unsigned
transaction generation.

    pending -> approved | rejected | cancelled
    approved -> awaiting_signature | cancelled
    awaiting_signature -> processing (payout finalizer) | expired (sweep)
    expired -> awaiting_signature (re-generation only)

Every transition is a conditional update on the current status, so two
approvers or a sweep racing a signer cannot both win.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select

from backend_payrail.chain.registry import ChainRegistry
from backend_payrail.chain.tokens import get_token
from backend_payrail.core.clock import now_ts as _now
from backend_payrail.core.exceptions import (
    InsufficientBalance,
    InvalidAmount,
    InvalidState,
    MissingReason,
    PayrailError,
    PermissionDenied,
)
from backend_payrail.core.money import (
    PAYOUT_MINIMUM,
    format_amount,
    payout_fee,
    requires_approval,
    to_decimal,
)
from backend_payrail.database.ledger import (
    enqueue_webhook,
    get_balance,
    get_merchant,
    get_owned,
    get_verified_wallet,
)
from backend_payrail.database.models import Payout, PayoutApproval, PayoutStatus
from backend_payrail.database.store import LedgerStore, compare_and_set
from backend_payrail.payouts.destinations import resolve_destination
from backend_payrail.payrail_logging import bind_merchant, get_logger

logger = get_logger(__name__)

APPROVER_ROLES = frozenset({"owner", "admin"})
EVENT_PAYOUT_REJECTED = "payout.rejected"
SYSTEM_ACTOR_ID = "system"


@dataclass(frozen=True)
class Actor:
    """Caller identity as asserted by the (external) auth layer."""

    id: str
    role: str = "member"

    @property
    def can_approve(self) -> bool:
        return self.role in APPROVER_ROLES


def _require_approver(actor: Actor | None) -> Actor:
    if actor is None or not actor.can_approve:
        raise PermissionDenied(
            "only owners and admins can approve or reject payouts",
            role=actor.role if actor else None,
        )
    return actor


def _invalid_state(payout: Payout, action: str) -> InvalidState:
    return InvalidState(
        f"cannot {action} a {payout.status} payout",
        current_status=payout.status,
        payout_id=payout.id,
    )


# -----------------------------------------------------------------------------
# Reads
# -----------------------------------------------------------------------------


def get_payout(store: LedgerStore, merchant_id: str, payout_id: str) -> dict[str, Any]:
    with store.session_scope() as session:
        return get_owned(session, Payout, merchant_id, payout_id).to_dict()


def list_payouts(
    store: LedgerStore,
    merchant_id: str,
    status: str | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    stmt = select(Payout).where(Payout.merchant_id == merchant_id)
    if status:
        stmt = stmt.where(Payout.status == status)
    stmt = stmt.order_by(Payout.created_at.desc()).limit(limit)
    with store.session_scope() as session:
        return [p.to_dict() for p in session.execute(stmt).scalars()]


def list_approvals(store: LedgerStore, merchant_id: str, payout_id: str) -> list[dict[str, Any]]:
    with store.session_scope() as session:
        get_owned(session, Payout, merchant_id, payout_id)
        rows = session.execute(
            select(PayoutApproval)
            .where(PayoutApproval.payout_id == payout_id)
            .order_by(PayoutApproval.created_at.asc(), PayoutApproval.id.asc())
        ).scalars()
        return [a.to_dict() for a in rows]


# -----------------------------------------------------------------------------
# Create
# -----------------------------------------------------------------------------


def create_payout(
    store: LedgerStore,
    registry: ChainRegistry,
    merchant_id: str,
    amount: Any,
    currency: str = "USDC",
    *,
    destination_id: str | None = None,
    destination_address: str | None = None,
    chain: str | None = None,
    notes: str | None = None,
    actor: Actor | None = None,
    now_ts: int | None = None,
) -> dict[str, Any]:
    """
    Validate and record a payout request.

    Payouts above the approval threshold start pending; the rest start
    approved and immediately get an unsigned transaction if a verified
    source wallet exists (otherwise they stay approved for a later
    generate call). The balance check is advisory and repeated before
    broadcast.
    """
    value = to_decimal(amount)
    if value < PAYOUT_MINIMUM:
        raise InvalidAmount(
            f"minimum payout amount is {format_amount(PAYOUT_MINIMUM)}",
            amount=format_amount(value),
            minimum=format_amount(PAYOUT_MINIMUM),
        )
    now = _now(now_ts)
    log = bind_merchant(merchant_id, __name__)

    with store.session_scope() as session:
        get_merchant(session, merchant_id)
        payout_chain, address, dest_id = resolve_destination(
            session, merchant_id, destination_id, destination_address, chain
        )
        token = get_token(payout_chain, currency, registry.network)
        balance = get_balance(session, merchant_id, token.currency)
        available = balance.total if balance is not None else None
        if available is None or available < value:
            raise InsufficientBalance(
                "insufficient balance for payout",
                available=format_amount(available) if available is not None else "0",
                requested=format_amount(value),
                currency=token.currency,
            )

        fee = payout_fee(value)
        needs_approval = requires_approval(value)
        payout = Payout(
            merchant_id=merchant_id,
            amount=value,
            fee_amount=fee,
            net_amount=value - fee,
            currency=token.currency,
            chain=payout_chain,
            destination_address=address,
            destination_id=dest_id,
            destination_type="wallet",
            status=PayoutStatus.PENDING if needs_approval else PayoutStatus.APPROVED,
            requires_approval=needs_approval,
            notes=notes,
            approved_by=None if needs_approval else (actor.id if actor else SYSTEM_ACTOR_ID),
            approved_at=None if needs_approval else now,
            created_at=now,
            updated_at=now,
        )
        session.add(payout)
        session.flush()
        payout_id = payout.id

    log.info(
        "payout_created",
        payout_id=payout_id,
        amount=format_amount(value),
        fee=format_amount(fee),
        chain=payout_chain,
        requires_approval=needs_approval,
    )
    if not needs_approval:
        _try_generate(store, registry, merchant_id, payout_id, now)
    return get_payout(store, merchant_id, payout_id)


def _try_generate(store: LedgerStore, registry: ChainRegistry, merchant_id: str, payout_id: str, now: int) -> None:
    """Generation right after approval is best effort; the payout stays approved on failure."""
    try:
        generate_unsigned_transaction(store, registry, merchant_id, payout_id, now_ts=now)
    except PayrailError as e:
        logger.warning(
            "payout_generate_deferred",
            merchant_id=merchant_id,
            payout_id=payout_id,
            code=e.code,
            error=e.message,
        )


# -----------------------------------------------------------------------------
# Approval decisions
# -----------------------------------------------------------------------------


def approve_payout(
    store: LedgerStore,
    registry: ChainRegistry,
    merchant_id: str,
    payout_id: str,
    actor: Actor | None,
    notes: str | None = None,
    now_ts: int | None = None,
) -> dict[str, Any]:
    approver = _require_approver(actor)
    now = _now(now_ts)
    with store.session_scope() as session:
        payout = get_owned(session, Payout, merchant_id, payout_id)
        won = compare_and_set(
            session,
            Payout,
            payout_id,
            expected_status=PayoutStatus.PENDING,
            values={
                "status": PayoutStatus.APPROVED,
                "approved_by": approver.id,
                "approved_at": now,
                "updated_at": now,
            },
        )
        if not won:
            session.refresh(payout)
            raise _invalid_state(payout, "approve")
        session.add(
            PayoutApproval(
                payout_id=payout_id,
                merchant_id=merchant_id,
                actor_id=approver.id,
                action="approved",
                notes=notes,
                created_at=now,
            )
        )
    logger.info("payout_approved", merchant_id=merchant_id, payout_id=payout_id, actor_id=approver.id)
    _try_generate(store, registry, merchant_id, payout_id, now)
    return get_payout(store, merchant_id, payout_id)


def reject_payout(
    store: LedgerStore,
    merchant_id: str,
    payout_id: str,
    actor: Actor | None,
    reason: str | None,
    now_ts: int | None = None,
) -> dict[str, Any]:
    approver = _require_approver(actor)
    reason = (reason or "").strip()
    if not reason:
        raise MissingReason("a rejection reason is required", field="reason")
    now = _now(now_ts)
    with store.session_scope() as session:
        payout = get_owned(session, Payout, merchant_id, payout_id)
        won = compare_and_set(
            session,
            Payout,
            payout_id,
            expected_status=PayoutStatus.PENDING,
            values={
                "status": PayoutStatus.REJECTED,
                "error_message": reason,
                "updated_at": now,
            },
        )
        if not won:
            session.refresh(payout)
            raise _invalid_state(payout, "reject")
        session.add(
            PayoutApproval(
                payout_id=payout_id,
                merchant_id=merchant_id,
                actor_id=approver.id,
                action="rejected",
                notes=reason,
                created_at=now,
            )
        )
        enqueue_webhook(
            session,
            merchant_id,
            EVENT_PAYOUT_REJECTED,
            {
                "payout_id": payout_id,
                "amount": format_amount(payout.amount),
                "currency": payout.currency,
                "reason": reason,
            },
            now,
            resource_type="payout",
            resource_id=payout_id,
        )
    logger.info("payout_rejected", merchant_id=merchant_id, payout_id=payout_id, actor_id=approver.id)
    return get_payout(store, merchant_id, payout_id)


def cancel_payout(
    store: LedgerStore,
    merchant_id: str,
    payout_id: str,
    now_ts: int | None = None,
) -> dict[str, Any]:
    """Cancel before anything is broadcast: only pending or approved payouts."""
    now = _now(now_ts)
    with store.session_scope() as session:
        payout = get_owned(session, Payout, merchant_id, payout_id)
        won = compare_and_set(
            session,
            Payout,
            payout_id,
            expected_status=(PayoutStatus.PENDING, PayoutStatus.APPROVED),
            values={"status": PayoutStatus.CANCELLED, "updated_at": now},
        )
        if not won:
            session.refresh(payout)
            raise _invalid_state(payout, "cancel")
    logger.info("payout_cancelled", merchant_id=merchant_id, payout_id=payout_id)
    return get_payout(store, merchant_id, payout_id)


# -----------------------------------------------------------------------------
# Unsigned transaction
# -----------------------------------------------------------------------------


def generate_unsigned_transaction(
    store: LedgerStore,
    registry: ChainRegistry,
    merchant_id: str,
    payout_id: str,
    now_ts: int | None = None,
) -> dict[str, Any]:
    """
    Build the unsigned transfer of net_amount from the merchant's verified
    wallet and hand it to the signer. Allowed from approved, and from
    expired to restart a payout whose signing window lapsed.
    """
    now = _now(now_ts)
    allowed = (PayoutStatus.APPROVED, PayoutStatus.EXPIRED)
    with store.session_scope() as session:
        payout = get_owned(session, Payout, merchant_id, payout_id)
        if payout.status not in allowed:
            raise _invalid_state(payout, "generate a transaction for")
        source = get_verified_wallet(session, merchant_id, payout.chain).address
        chain, destination = payout.chain, payout.destination_address
        currency, net_amount = payout.currency, payout.net_amount

    adapter = registry.get(chain)
    unsigned = adapter.build_unsigned_transfer(
        source=source, destination=destination, currency=currency, amount=net_amount
    )
    expires_at = now + adapter.unsigned_ttl_sec

    with store.session_scope() as session:
        won = compare_and_set(
            session,
            Payout,
            payout_id,
            expected_status=allowed,
            values={
                "status": PayoutStatus.AWAITING_SIGNATURE,
                "unsigned_transaction": unsigned.to_json(),
                "source_wallet_address": source,
                "transaction_expires_at": expires_at,
                "error_message": None,
                "updated_at": now,
            },
            conditions=[Payout.merchant_id == merchant_id],
        )
        if not won:
            payout = get_owned(session, Payout, merchant_id, payout_id)
            raise _invalid_state(payout, "generate a transaction for")

    logger.info(
        "payout_awaiting_signature",
        merchant_id=merchant_id,
        payout_id=payout_id,
        chain=chain,
        expires_at=expires_at,
    )
    return {
        "payout_id": payout_id,
        "chain": chain,
        "unsigned_transaction": unsigned.to_dict(),
        "source_wallet": source,
        "destination": destination,
        "amount": format_amount(net_amount),
        "currency": currency,
        "expires_at": expires_at,
    }


def run_payout_expiry_tick(store: LedgerStore, now_ts: int | None = None, limit: int = 500) -> int:
    """awaiting_signature past transaction_expires_at -> expired."""
    now = _now(now_ts)
    expired = 0
    with store.session_scope() as session:
        ids = session.execute(
            select(Payout.id)
            .where(
                Payout.status == PayoutStatus.AWAITING_SIGNATURE,
                Payout.transaction_expires_at < now,
            )
            .limit(limit)
        ).scalars().all()
        for payout_id in ids:
            if compare_and_set(
                session,
                Payout,
                payout_id,
                expected_status=PayoutStatus.AWAITING_SIGNATURE,
                values={"status": PayoutStatus.EXPIRED, "updated_at": now},
                conditions=[Payout.transaction_expires_at < now],
            ):
                expired += 1
    if expired:
        logger.info("payouts_expired", count=expired)
    return expired
