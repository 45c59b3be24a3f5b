"""
Webhook dispatcher — deliver outbox events to merchant endpoints.

Each tick picks due events (pending or retrying, next_retry_at <= now,
attempts below the row's max_attempts), claims each one by pushing next_retry_at forward
with a conditional update, POSTs the stored JSON body signed with
HMAC-SHA256, and records the outcome. Failures back off along a fixed
schedule; the event fails for good once attempts reach the cap.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

import httpx
from sqlalchemy import select

from backend_payrail.core.clock import now_ts as _now
from backend_payrail.database.models import Merchant, WebhookEvent, WebhookStatus
from backend_payrail.database.store import LedgerStore, compare_and_set
from backend_payrail.payrail_logging import get_logger

logger = get_logger(__name__)

# Delay before retry n (1-based) is BACKOFF_SCHEDULE_SEC[n - 1], capped at the last entry
BACKOFF_SCHEDULE_SEC = (60, 300, 900, 3600, 21600)
DEFAULT_BATCH_SIZE = 50
DEFAULT_TIMEOUT_SEC = 10.0
CLAIM_LEASE_SEC = 120
RESPONSE_BODY_LIMIT = 1000

SIGNATURE_HEADER = "X-Signature"
TIMESTAMP_HEADER = "X-Timestamp"
EVENT_ID_HEADER = "X-Event-Id"
EVENT_TYPE_HEADER = "X-Event-Type"


def backoff_delay(attempts: int) -> int:
    """Seconds to wait after the attempts-th failed delivery."""
    index = min(max(attempts, 1) - 1, len(BACKOFF_SCHEDULE_SEC) - 1)
    return BACKOFF_SCHEDULE_SEC[index]


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Receiver-side check of the X-Signature header."""
    return hmac.compare_digest(sign_payload(secret, body), (signature or "").strip().lower())


@dataclass
class DispatchResult:
    selected: int = 0
    delivered: int = 0
    retrying: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass
class _Claimed:
    id: str
    event_type: str
    payload: str
    attempts: int
    max_attempts: int
    url: str | None
    secret: str | None


class WebhookDispatcher:
    def __init__(
        self,
        store: LedgerStore,
        *,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        batch_size: int = DEFAULT_BATCH_SIZE,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.store = store
        self.batch_size = batch_size
        self._client = httpx.Client(timeout=httpx.Timeout(timeout_sec), transport=transport)

    def close(self) -> None:
        self._client.close()

    def _due_event_ids(self, now: int) -> list[str]:
        with self.store.session_scope() as session:
            return list(
                session.execute(
                    select(WebhookEvent.id)
                    .where(
                        WebhookEvent.status.in_((WebhookStatus.PENDING, WebhookStatus.RETRYING)),
                        WebhookEvent.next_retry_at <= now,
                        WebhookEvent.attempts < WebhookEvent.max_attempts,
                    )
                    .order_by(WebhookEvent.created_at.asc())
                    .limit(self.batch_size)
                ).scalars()
            )

    def _claim(self, event_id: str, now: int) -> _Claimed | None:
        with self.store.session_scope() as session:
            event = session.get(WebhookEvent, event_id)
            if event is None:
                return None
            won = compare_and_set(
                session,
                WebhookEvent,
                event_id,
                expected_status=(WebhookStatus.PENDING, WebhookStatus.RETRYING),
                values={"next_retry_at": now + CLAIM_LEASE_SEC},
                conditions=[
                    WebhookEvent.attempts == event.attempts,
                    WebhookEvent.next_retry_at == event.next_retry_at,
                    WebhookEvent.next_retry_at <= now,
                ],
            )
            if not won:
                return None
            merchant = session.get(Merchant, event.merchant_id)
            return _Claimed(
                id=event.id,
                event_type=event.event_type,
                payload=event.payload,
                attempts=event.attempts,
                max_attempts=event.max_attempts,
                url=merchant.webhook_url if merchant else None,
                secret=merchant.webhook_secret if merchant else None,
            )

    def _finish(self, claimed: _Claimed, values: dict) -> None:
        with self.store.session_scope() as session:
            compare_and_set(
                session,
                WebhookEvent,
                claimed.id,
                expected_status=(WebhookStatus.PENDING, WebhookStatus.RETRYING),
                values=values,
                conditions=[WebhookEvent.attempts == claimed.attempts],
            )

    def deliver(self, claimed: _Claimed, now: int) -> str:
        """POST one claimed event; returns the resulting status."""
        if not claimed.url:
            self._finish(claimed, {"status": WebhookStatus.FAILED, "error_message": "No webhook URL configured"})
            logger.warning("webhook_no_url", event_id=claimed.id)
            return WebhookStatus.FAILED
        if not claimed.secret:
            self._finish(claimed, {"status": WebhookStatus.FAILED, "error_message": "No webhook secret configured"})
            logger.warning("webhook_no_secret", event_id=claimed.id)
            return WebhookStatus.FAILED

        body = claimed.payload.encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(claimed.secret, body),
            TIMESTAMP_HEADER: str(now),
            EVENT_ID_HEADER: claimed.id,
            EVENT_TYPE_HEADER: claimed.event_type,
        }
        attempts = claimed.attempts + 1
        status_code: int | None = None
        response_body: str | None = None
        error: str | None = None
        try:
            resp = self._client.post(claimed.url, content=body, headers=headers)
            status_code = resp.status_code
            response_body = resp.text[:RESPONSE_BODY_LIMIT]
            if not resp.is_success:
                error = f"HTTP {resp.status_code}"
        except httpx.HTTPError as e:
            error = str(e) or e.__class__.__name__

        values: dict = {
            "attempts": attempts,
            "last_attempt_at": now,
            "response_status_code": status_code,
            "response_body": response_body,
        }
        if error is None:
            values.update(status=WebhookStatus.DELIVERED, delivered_at=now, error_message=None)
            outcome = WebhookStatus.DELIVERED
            logger.info("webhook_delivered", event_id=claimed.id, event_type=claimed.event_type, attempts=attempts)
        elif attempts < claimed.max_attempts:
            values.update(
                status=WebhookStatus.RETRYING,
                next_retry_at=now + backoff_delay(attempts),
                error_message=error[:1024],
            )
            outcome = WebhookStatus.RETRYING
            logger.warning("webhook_delivery_retry", event_id=claimed.id, attempts=attempts, error=error)
        else:
            values.update(status=WebhookStatus.FAILED, error_message=error[:1024])
            outcome = WebhookStatus.FAILED
            logger.error("webhook_delivery_failed", event_id=claimed.id, attempts=attempts, error=error)
        self._finish(claimed, values)
        return outcome

    def run_tick(self, now_ts: int | None = None) -> DispatchResult:
        now = _now(now_ts)
        result = DispatchResult()
        for event_id in self._due_event_ids(now):
            result.selected += 1
            claimed = self._claim(event_id, now)
            if claimed is None:
                result.skipped += 1
                continue
            outcome = self.deliver(claimed, now)
            if outcome == WebhookStatus.DELIVERED:
                result.delivered += 1
            elif outcome == WebhookStatus.RETRYING:
                result.retrying += 1
            else:
                result.failed += 1
        logger.info(
            "webhook_dispatcher_tick",
            selected=result.selected,
            delivered=result.delivered,
            retrying=result.retrying,
            failed=result.failed,
            skipped=result.skipped,
        )
        return result


def run_dispatcher_tick(
    store: LedgerStore,
    now_ts: int | None = None,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    timeout_sec: float = DEFAULT_TIMEOUT_SEC,
    transport: httpx.BaseTransport | None = None,
) -> DispatchResult:
    dispatcher = WebhookDispatcher(
        store,
        timeout_sec=timeout_sec,
        batch_size=batch_size,
        transport=transport,
    )
    try:
        return dispatcher.run_tick(now_ts)
    finally:
        dispatcher.close()
