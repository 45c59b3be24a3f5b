"""
Merchant records, webhook endpoint settings and read-only ledger views
(balances, ledger transactions, webhook events) for the API.
"""

from __future__ import annotations

import secrets
from typing import Any

from sqlalchemy import select

from backend_payrail.core.clock import now_ts as _now
from backend_payrail.core.exceptions import ValidationError
from backend_payrail.database.ledger import get_merchant
from backend_payrail.database.models import Balance, LedgerTransaction, Merchant, WebhookEvent
from backend_payrail.database.store import LedgerStore
from backend_payrail.payrail_logging import get_logger

logger = get_logger(__name__)


def _validate_webhook_url(url: str | None) -> str | None:
    url = (url or "").strip()
    if not url:
        return None
    if not url.startswith(("https://", "http://")):
        raise ValidationError("webhook_url must be an http(s) URL", field="webhook_url")
    return url


def create_merchant(
    store: LedgerStore,
    name: str,
    webhook_url: str | None = None,
    webhook_secret: str | None = None,
    merchant_id: str | None = None,
    now_ts: int | None = None,
) -> dict[str, Any]:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name must be non-empty", field="name")
    secret = webhook_secret or secrets.token_hex(32)
    with store.session_scope() as session:
        merchant = Merchant(
            name=name,
            webhook_url=_validate_webhook_url(webhook_url),
            webhook_secret=secret,
            created_at=_now(now_ts),
        )
        if merchant_id:
            merchant.id = merchant_id
        session.add(merchant)
        session.flush()
        result = merchant.to_dict()
    result["webhook_secret"] = secret
    logger.info("merchant_created", merchant_id=result["id"])
    return result


def update_webhook(
    store: LedgerStore,
    merchant_id: str,
    webhook_url: str | None,
    rotate_secret: bool = False,
) -> dict[str, Any]:
    with store.session_scope() as session:
        merchant = get_merchant(session, merchant_id)
        merchant.webhook_url = _validate_webhook_url(webhook_url)
        if rotate_secret or not merchant.webhook_secret:
            merchant.webhook_secret = secrets.token_hex(32)
        result = merchant.to_dict()
        result["webhook_secret"] = merchant.webhook_secret
    logger.info("merchant_webhook_updated", merchant_id=merchant_id, rotated=rotate_secret)
    return result


def get_merchant_info(store: LedgerStore, merchant_id: str) -> dict[str, Any]:
    with store.session_scope() as session:
        return get_merchant(session, merchant_id).to_dict()


def list_balances(store: LedgerStore, merchant_id: str) -> list[dict[str, Any]]:
    with store.session_scope() as session:
        rows = session.execute(
            select(Balance).where(Balance.merchant_id == merchant_id).order_by(Balance.currency)
        ).scalars()
        return [b.to_dict() for b in rows]


def list_transactions(store: LedgerStore, merchant_id: str, limit: int = 100) -> list[dict[str, Any]]:
    with store.session_scope() as session:
        rows = session.execute(
            select(LedgerTransaction)
            .where(LedgerTransaction.merchant_id == merchant_id)
            .order_by(LedgerTransaction.created_at.desc())
            .limit(limit)
        ).scalars()
        return [t.to_dict() for t in rows]


def list_webhook_events(store: LedgerStore, merchant_id: str, limit: int = 100) -> list[dict[str, Any]]:
    with store.session_scope() as session:
        rows = session.execute(
            select(WebhookEvent)
            .where(WebhookEvent.merchant_id == merchant_id)
            .order_by(WebhookEvent.created_at.desc())
            .limit(limit)
        ).scalars()
        return [e.to_dict() for e in rows]
