"""
FastAPI server — merchant-facing endpoints over the Payrail services.

Tenant comes from the X-Merchant-Id header; approval decisions use the
X-Actor-Id / X-Actor-Role headers. Authentication happens upstream.
When RUN_JOBS_IN_API is on, the lifespan also starts the periodic jobs
in background threads so a single process can run everything.
"""

from __future__ import annotations

import threading
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from backend_payrail import __version__
from backend_payrail.api_server import db_merchants
from backend_payrail.api_server.errors import setup_error_handlers
from backend_payrail.chain.registry import ChainRegistry, build_registry
from backend_payrail.config import get_settings
from backend_payrail.database.store import LedgerStore, get_store
from backend_payrail.payouts import destinations as payout_destinations
from backend_payrail.payouts import orchestrator
from backend_payrail.payouts.finalizer import submit_signed_payout
from backend_payrail.payouts.orchestrator import Actor
from backend_payrail.payrail_logging import get_logger
from backend_payrail.settlement import intents
from backend_payrail.wallets import ownership

logger = get_logger(__name__)


# -----------------------------------------------------------------------------
# Request models
# -----------------------------------------------------------------------------


class CreateMerchantRequest(BaseModel):
    name: str = Field(..., min_length=1, description="Merchant display name")
    webhook_url: str | None = Field(None, description="HTTPS endpoint for event delivery")


class UpdateWebhookRequest(BaseModel):
    webhook_url: str | None = None
    rotate_secret: bool = False


class RegisterWalletRequest(BaseModel):
    address: str = Field(..., description="Wallet address (base58 for Solana, 0x for EVM)")
    chain: str = Field("solana", description="solana | ethereum | base | polygon")
    purpose: str = Field("settlement", description="settlement | destination")
    label: str | None = None


class ProveControlRequest(BaseModel):
    signature: str = Field(..., description="Signature over the nonce message (hex/base58 or 0x)")
    signer_pubkey: str | None = Field(None, description="Signer address, must equal the wallet")


class CreateDestinationRequest(BaseModel):
    address: str
    chain: str = "solana"
    label: str | None = None
    wallet_id: str | None = Field(None, description="Ownership-proven wallet backing this destination")


class CreateIntentRequest(BaseModel):
    amount: Decimal = Field(..., description="Amount in whole token units")
    currency: str = Field("USDC", description="USDC | USDT")
    chain: str = "solana"
    payment_address: str | None = Field(None, description="Verified settlement wallet; default: first verified")
    description: str | None = None
    metadata: dict[str, Any] | None = None
    expires_in_minutes: int | None = Field(None, description="Default 30")


class CreatePayoutRequest(BaseModel):
    amount: Decimal
    currency: str = "USDC"
    destination_id: str | None = None
    destination_address: str | None = None
    chain: str | None = Field(None, description="Required with destination_address; ignored with destination_id")
    notes: str | None = None


class ApproveRequest(BaseModel):
    notes: str | None = None


class RejectRequest(BaseModel):
    reason: str = Field("", description="Mandatory rejection reason")


class SubmitSignedRequest(BaseModel):
    signed_transaction: str = Field(..., description="Signed transaction (base64 for Solana, 0x raw for EVM)")


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------


def get_ledger_store(request: Request) -> LedgerStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        store = request.app.state.store = get_store()
    return store


def get_chain_registry(request: Request) -> ChainRegistry:
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        registry = request.app.state.registry = build_registry(get_settings())
    return registry


def merchant_id_header(x_merchant_id: str = Header(..., alias="X-Merchant-Id")) -> str:
    return x_merchant_id.strip()


def actor_header(
    x_actor_id: str | None = Header(None, alias="X-Actor-Id"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
) -> Actor | None:
    if not x_actor_id:
        return None
    return Actor(id=x_actor_id.strip(), role=(x_actor_role or "member").strip().lower())


# -----------------------------------------------------------------------------
# App
# -----------------------------------------------------------------------------


def create_app(
    store: LedgerStore | None = None,
    registry: ChainRegistry | None = None,
    run_jobs: bool | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        start = settings.run_jobs_in_api if run_jobs is None else run_jobs
        stop_event = threading.Event()
        threads: list[threading.Thread] = []
        if start:
            from backend_payrail.agent_worker.runner import build_jobs, start_jobs

            jobs = build_jobs(
                app.state.store or get_store(),
                app.state.registry or build_registry(settings),
                settings,
            )
            threads = start_jobs(jobs, stop_event)
        logger.info("api_server_started", jobs_in_process=bool(threads))
        yield
        if threads:
            from backend_payrail.agent_worker.runner import stop_jobs

            stop_jobs(threads, stop_event)
        logger.info("api_server_stopped")

    app = FastAPI(
        title="Payrail Settlement API",
        description="Stablecoin payment intents, settlement and payouts.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.registry = registry
    setup_error_handlers(app)
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    # --- merchants ------------------------------------------------------------

    @app.post("/merchants")
    def create_merchant(body: CreateMerchantRequest, store: LedgerStore = Depends(get_ledger_store)) -> JSONResponse:
        merchant = db_merchants.create_merchant(store, body.name, body.webhook_url)
        return JSONResponse(status_code=201, content=merchant)

    @app.get("/merchants/me")
    def get_me(
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> dict[str, Any]:
        return db_merchants.get_merchant_info(store, merchant_id)

    @app.put("/merchants/me/webhook")
    def update_webhook(
        body: UpdateWebhookRequest,
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> dict[str, Any]:
        return db_merchants.update_webhook(store, merchant_id, body.webhook_url, body.rotate_secret)

    @app.get("/balances")
    def balances(
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> list[dict[str, Any]]:
        return db_merchants.list_balances(store, merchant_id)

    @app.get("/transactions")
    def transactions(
        limit: int = 100,
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> list[dict[str, Any]]:
        return db_merchants.list_transactions(store, merchant_id, limit=min(limit, 500))

    @app.get("/webhook-events")
    def webhook_events(
        limit: int = 100,
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> list[dict[str, Any]]:
        return db_merchants.list_webhook_events(store, merchant_id, limit=min(limit, 500))

    # --- wallets --------------------------------------------------------------

    @app.post("/wallets")
    def register_wallet(
        body: RegisterWalletRequest,
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> JSONResponse:
        wallet = ownership.register_wallet(store, merchant_id, body.address, body.chain, body.purpose, body.label)
        return JSONResponse(status_code=201, content=wallet)

    @app.get("/wallets")
    def list_wallets(
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> list[dict[str, Any]]:
        return ownership.list_wallets(store, merchant_id)

    @app.post("/wallets/{wallet_id}/nonce")
    def wallet_nonce(
        wallet_id: str,
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> dict[str, Any]:
        return ownership.issue_nonce(store, merchant_id, wallet_id)

    @app.post("/wallets/{wallet_id}/verify")
    def wallet_verify(
        wallet_id: str,
        body: ProveControlRequest,
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> dict[str, Any]:
        return ownership.prove_control(store, merchant_id, wallet_id, body.signature, body.signer_pubkey)

    @app.post("/payout-destinations")
    def create_destination(
        body: CreateDestinationRequest,
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> JSONResponse:
        dest = payout_destinations.create_destination(
            store, merchant_id, body.address, body.chain, body.label, body.wallet_id
        )
        return JSONResponse(status_code=201, content=dest)

    @app.get("/payout-destinations")
    def list_destinations(
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> list[dict[str, Any]]:
        return payout_destinations.list_destinations(store, merchant_id)

    # --- payment intents ------------------------------------------------------

    @app.post("/payment-intents")
    def create_intent(
        body: CreateIntentRequest,
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
        registry: ChainRegistry = Depends(get_chain_registry),
    ) -> JSONResponse:
        intent = intents.create_intent(
            store,
            merchant_id,
            body.amount,
            body.currency,
            body.chain,
            payment_address=body.payment_address,
            description=body.description,
            metadata=body.metadata,
            expires_in_minutes=body.expires_in_minutes,
            network=registry.network,
        )
        return JSONResponse(status_code=201, content=intent)

    @app.get("/payment-intents")
    def list_intents(
        status: str | None = None,
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> list[dict[str, Any]]:
        return intents.list_intents(store, merchant_id, status=status)

    @app.get("/payment-intents/{intent_id}")
    def get_intent(
        intent_id: str,
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> dict[str, Any]:
        return intents.get_intent(store, merchant_id, intent_id)

    @app.post("/payment-intents/{intent_id}/cancel")
    def cancel_intent(
        intent_id: str,
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> dict[str, Any]:
        return intents.cancel_intent(store, merchant_id, intent_id)

    # --- payouts --------------------------------------------------------------

    @app.post("/payouts")
    def create_payout(
        body: CreatePayoutRequest,
        merchant_id: str = Depends(merchant_id_header),
        actor: Actor | None = Depends(actor_header),
        store: LedgerStore = Depends(get_ledger_store),
        registry: ChainRegistry = Depends(get_chain_registry),
    ) -> JSONResponse:
        payout = orchestrator.create_payout(
            store,
            registry,
            merchant_id,
            body.amount,
            body.currency,
            destination_id=body.destination_id,
            destination_address=body.destination_address,
            chain=body.chain,
            notes=body.notes,
            actor=actor,
        )
        return JSONResponse(status_code=201, content=payout)

    @app.get("/payouts")
    def list_payouts(
        status: str | None = None,
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> list[dict[str, Any]]:
        return orchestrator.list_payouts(store, merchant_id, status=status)

    @app.get("/payouts/{payout_id}")
    def get_payout(
        payout_id: str,
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> dict[str, Any]:
        return orchestrator.get_payout(store, merchant_id, payout_id)

    @app.get("/payouts/{payout_id}/approvals")
    def payout_approvals(
        payout_id: str,
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> list[dict[str, Any]]:
        return orchestrator.list_approvals(store, merchant_id, payout_id)

    @app.post("/payouts/{payout_id}/approve")
    def approve_payout(
        payout_id: str,
        body: ApproveRequest | None = None,
        merchant_id: str = Depends(merchant_id_header),
        actor: Actor | None = Depends(actor_header),
        store: LedgerStore = Depends(get_ledger_store),
        registry: ChainRegistry = Depends(get_chain_registry),
    ) -> dict[str, Any]:
        notes = body.notes if body else None
        return orchestrator.approve_payout(store, registry, merchant_id, payout_id, actor, notes)

    @app.post("/payouts/{payout_id}/reject")
    def reject_payout(
        payout_id: str,
        body: RejectRequest,
        merchant_id: str = Depends(merchant_id_header),
        actor: Actor | None = Depends(actor_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> dict[str, Any]:
        return orchestrator.reject_payout(store, merchant_id, payout_id, actor, body.reason)

    @app.post("/payouts/{payout_id}/cancel")
    def cancel_payout(
        payout_id: str,
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
    ) -> dict[str, Any]:
        return orchestrator.cancel_payout(store, merchant_id, payout_id)

    @app.post("/payouts/{payout_id}/transaction")
    def generate_transaction(
        payout_id: str,
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
        registry: ChainRegistry = Depends(get_chain_registry),
    ) -> dict[str, Any]:
        return orchestrator.generate_unsigned_transaction(store, registry, merchant_id, payout_id)

    @app.post("/payouts/{payout_id}/submit")
    def submit_payout(
        payout_id: str,
        body: SubmitSignedRequest,
        merchant_id: str = Depends(merchant_id_header),
        store: LedgerStore = Depends(get_ledger_store),
        registry: ChainRegistry = Depends(get_chain_registry),
    ) -> dict[str, Any]:
        return submit_signed_payout(store, registry, merchant_id, payout_id, body.signed_transaction)


app = create_app()
