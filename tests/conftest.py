"""
Pytest fixtures for Payrail tests. Each test gets a temporary SQLite ledger and
an in-memory chain adapter, so nothing touches a real RPC endpoint.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from backend_payrail.chain.addresses import canonical_address
from backend_payrail.chain.base import ChainAdapter
from backend_payrail.chain.models import Transfer, TransferStatus, UnsignedTransaction
from backend_payrail.chain.registry import ChainRegistry
from backend_payrail.core.exceptions import ChainUnavailable, InvalidSignedTransaction, SignatureNotFound
from backend_payrail.core.money import format_amount

NOW = 1_700_000_000

# Valid Solana pubkeys (base58, 32 bytes)
SETTLEMENT_WALLET = "9QCfNuQuxct1Xk9ytFYgxc5fThmTzL4pHQnSjjrVUrka"
CUSTOMER_WALLET = "7F1WzVNQ1Qpurqxxdyv3UrFQR3uoNepULVW9A4bAJ5nZ"

USDC_DEVNET_MINT = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"
USDT_DEVNET_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"

WEBHOOK_URL = "https://merchant.example/hooks"
WEBHOOK_SECRET = "whsec_test_secret"


class FakeChainAdapter(ChainAdapter):
    """
    Scriptable adapter: tests put transfers/statuses in place and read back
    what was broadcast. Signed transactions are "signed:<anything>" strings.
    """

    unsigned_ttl_sec = 120

    def __init__(self, chain: str = "solana") -> None:
        self.chain = chain
        self.transfers: dict[str, list[Transfer]] = {}
        self.statuses: dict[str, TransferStatus] = {}
        self.confirmation: TransferStatus | None = TransferStatus(confirmations=1, finalized=False)
        self.broadcast_error: Exception | None = None
        self.read_error: Exception | None = None
        self.broadcasted: list[str] = []
        self.built: list[dict] = []
        self.recent_calls = 0

    def recent_transfers(self, address, limit=20, token_id=None):
        self.recent_calls += 1
        if self.read_error is not None:
            raise self.read_error
        return list(self.transfers.get(address, []))[:limit]

    def transfer_status(self, signature):
        if self.read_error is not None:
            raise self.read_error
        if signature not in self.statuses:
            raise SignatureNotFound("signature not found", signature=signature)
        return self.statuses[signature]

    def validate_address(self, address):
        return canonical_address(self.chain, address)

    def build_unsigned_transfer(self, *, source, destination, currency, amount):
        payload = {
            "source": source,
            "destination": destination,
            "currency": currency,
            "amount": format_amount(amount),
        }
        self.built.append(payload)
        return UnsignedTransaction(chain=self.chain, encoding="fake", payload=payload)

    def verify_signed_transaction(self, unsigned, signed, source):
        if not signed.startswith("signed:"):
            raise InvalidSignedTransaction("not signed by the source wallet", source=source)

    def transaction_signature(self, signed):
        return "sig-" + signed.split(":", 1)[1]

    def broadcast(self, signed):
        if self.broadcast_error is not None:
            raise self.broadcast_error
        signature = self.transaction_signature(signed)
        self.broadcasted.append(signature)
        return signature

    def wait_for_confirmation(self, signature, timeout_sec):
        return self.confirmation


def make_transfer(
    signature: str,
    amount: str,
    to_address: str = SETTLEMENT_WALLET,
    mint: str = USDC_DEVNET_MINT,
) -> Transfer:
    return Transfer(
        signature=signature,
        from_address=CUSTOMER_WALLET,
        to_address=to_address,
        token_id=mint,
        raw_amount=int(Decimal(amount) * 10**6),
        decimals=6,
        observed_at=NOW,
    )


@pytest.fixture
def payrail_env(tmp_path, monkeypatch):
    """Deterministic settings: temp SQLite path, devnet, no in-process jobs."""
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("PAYRAIL_DB_PATH", str(tmp_path / "payrail.db"))
    monkeypatch.setenv("SOLANA_NETWORK", "devnet")
    monkeypatch.setenv("RUN_JOBS_IN_API", "0")

    from backend_payrail.config import reset_settings_cache

    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def store(payrail_env, tmp_path):
    """Fresh ledger per test, installed as the process-wide store."""
    from backend_payrail.database.store import LedgerStore, set_store

    ledger = LedgerStore(f"sqlite:///{tmp_path / 'ledger.db'}")
    ledger.create_all()
    set_store(ledger)
    yield ledger
    set_store(None)
    ledger.dispose()


@pytest.fixture
def fake_solana():
    return FakeChainAdapter("solana")


@pytest.fixture
def registry(fake_solana):
    return ChainRegistry([fake_solana], network="devnet")


@pytest.fixture
def merchant(store):
    from backend_payrail.api_server.db_merchants import create_merchant

    return create_merchant(
        store,
        "Acme Coffee",
        webhook_url=WEBHOOK_URL,
        webhook_secret=WEBHOOK_SECRET,
        now_ts=NOW,
    )


def mark_verified(store, wallet_id: str, verified_at: int = NOW) -> None:
    from backend_payrail.database.models import Wallet

    with store.session_scope() as session:
        wallet = session.get(Wallet, wallet_id)
        wallet.proof_verified = True
        wallet.verified_at = verified_at


@pytest.fixture
def settlement_wallet(store, merchant):
    """Ownership-verified Solana settlement wallet for the merchant."""
    from backend_payrail.wallets.ownership import register_wallet

    wallet = register_wallet(store, merchant["id"], SETTLEMENT_WALLET, "solana", now_ts=NOW)
    mark_verified(store, wallet["id"])
    return wallet


def fund(store, merchant_id: str, amount: str, currency: str = "USDC") -> None:
    """Credit a balance directly, as a settled deposit would."""
    from backend_payrail.database.ledger import adjust_balance

    with store.session_scope() as session:
        adjust_balance(session, merchant_id, currency, Decimal(amount), NOW)


def balance_of(store, merchant_id: str, currency: str = "USDC") -> dict | None:
    from backend_payrail.api_server.db_merchants import list_balances

    for row in list_balances(store, merchant_id):
        if row["currency"] == currency:
            return row
    return None


def webhook_events(store, merchant_id: str, event_type: str | None = None) -> list[dict]:
    from backend_payrail.api_server.db_merchants import list_webhook_events

    events = list_webhook_events(store, merchant_id)
    if event_type:
        events = [e for e in events if e["event_type"] == event_type]
    return events


@pytest.fixture
def client(store, registry):
    """FastAPI TestClient over the temp ledger and fake chain registry."""
    from fastapi.testclient import TestClient

    from backend_payrail.api_server.server import create_app

    app = create_app(store=store, registry=registry, run_jobs=False)
    return TestClient(app)


@pytest.fixture
def unavailable():
    return ChainUnavailable("rpc down", chain="solana")
