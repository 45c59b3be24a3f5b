"""
Saved payout destinations and destination resolution for new payouts.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend_payrail.chain.addresses import canonical_address
from backend_payrail.chain.registry import normalize_chain
from backend_payrail.core.clock import now_ts as _now
from backend_payrail.core.exceptions import InvalidDestination, ResourceNotFound
from backend_payrail.database.ledger import get_merchant, get_owned
from backend_payrail.database.models import PayoutDestination, Wallet
from backend_payrail.database.store import LedgerStore
from backend_payrail.payrail_logging import get_logger

logger = get_logger(__name__)


def create_destination(
    store: LedgerStore,
    merchant_id: str,
    address: str,
    chain: str = "solana",
    label: str | None = None,
    wallet_id: str | None = None,
    now_ts: int | None = None,
) -> dict[str, Any]:
    chain = normalize_chain(chain)
    address = canonical_address(chain, address)
    with store.session_scope() as session:
        get_merchant(session, merchant_id)
        if wallet_id:
            wallet = get_owned(session, Wallet, merchant_id, wallet_id)
            if wallet.address != address or wallet.chain != chain:
                raise InvalidDestination("linked wallet does not match destination address", wallet_id=wallet_id)
        dest = PayoutDestination(
            merchant_id=merchant_id,
            address=address,
            chain=chain,
            label=label,
            type="wallet",
            wallet_id=wallet_id,
            created_at=_now(now_ts),
        )
        session.add(dest)
        session.flush()
        result = dest.to_dict()
    logger.info("payout_destination_created", merchant_id=merchant_id, destination_id=result["id"], chain=chain)
    return result


def list_destinations(store: LedgerStore, merchant_id: str) -> list[dict[str, Any]]:
    with store.session_scope() as session:
        rows = session.execute(
            select(PayoutDestination)
            .where(PayoutDestination.merchant_id == merchant_id)
            .order_by(PayoutDestination.created_at.asc())
        ).scalars()
        return [d.to_dict() for d in rows]


def resolve_destination(
    session: Session,
    merchant_id: str,
    destination_id: str | None,
    destination_address: str | None,
    chain: str | None,
) -> tuple[str, str, str | None]:
    """
    Return (chain, address, destination_id). A saved destination wins and
    brings its own chain; it must belong to the merchant, and a linked
    wallet must have passed its ownership proof.
    """
    if destination_id:
        try:
            dest = get_owned(session, PayoutDestination, merchant_id, destination_id)
        except ResourceNotFound as e:
            raise InvalidDestination("unknown payout destination", destination_id=destination_id) from e
        if dest.wallet_id:
            wallet = session.get(Wallet, dest.wallet_id)
            if wallet is None or not wallet.proof_verified:
                raise InvalidDestination(
                    "destination wallet ownership has not been proven",
                    destination_id=destination_id,
                )
        return dest.chain, dest.address, dest.id
    if destination_address:
        resolved_chain = normalize_chain(chain)
        return resolved_chain, canonical_address(resolved_chain, destination_address), None
    raise InvalidDestination("either destination_id or destination_address is required")
