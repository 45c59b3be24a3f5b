"""
Wallet-ownership proof: single-use nonce challenge and signature check.

A wallet must be proven before it can receive settlements (default payment
address), sign payouts (source wallet) or be used as a saved payout
destination. Solana wallets sign the canonical message with Ed25519; EVM
wallets use personal_sign (EIP-191) and are checked by address recovery.
"""

from __future__ import annotations

import uuid
from typing import Any

import base58
from eth_account import Account
from eth_account.messages import encode_defunct
from solders.pubkey import Pubkey
from solders.signature import Signature
from sqlalchemy import select, update

from backend_payrail.chain.addresses import canonical_address
from backend_payrail.chain.registry import normalize_chain
from backend_payrail.core.clock import now_ts as _now
from backend_payrail.core.exceptions import (
    InvalidState,
    NonceExpired,
    OwnershipProofFailed,
    ValidationError,
)
from backend_payrail.database.ledger import get_merchant, get_owned
from backend_payrail.database.models import Wallet, WalletPurpose
from backend_payrail.database.store import LedgerStore
from backend_payrail.payrail_logging import bind_merchant, get_logger

logger = get_logger(__name__)

NONCE_TTL_SEC = 600

VERIFICATION_MESSAGE_TEMPLATE = (
    "Payrail Wallet Verification\n\n"
    "Sign this message to prove you control this wallet.\n\n"
    "Nonce: {nonce}\n"
    "Wallet: {address}\n"
    "Chain: {chain}"
)


def verification_message(nonce: str, address: str, chain: str) -> str:
    return VERIFICATION_MESSAGE_TEMPLATE.format(nonce=nonce, address=address, chain=chain)


def register_wallet(
    store: LedgerStore,
    merchant_id: str,
    address: str,
    chain: str = "solana",
    purpose: str = WalletPurpose.SETTLEMENT,
    label: str | None = None,
    now_ts: int | None = None,
) -> dict[str, Any]:
    """Register (or return the existing) unverified wallet for this merchant."""
    chain = normalize_chain(chain)
    if purpose not in (WalletPurpose.SETTLEMENT, WalletPurpose.DESTINATION):
        raise ValidationError(f"unknown wallet purpose {purpose!r}", field="purpose")
    address = canonical_address(chain, address)
    now = _now(now_ts)
    with store.session_scope() as session:
        get_merchant(session, merchant_id)
        existing = session.execute(
            select(Wallet).where(
                Wallet.merchant_id == merchant_id,
                Wallet.chain == chain,
                Wallet.address == address,
            )
        ).scalar_one_or_none()
        if existing is not None:
            return existing.to_dict()
        wallet = Wallet(
            merchant_id=merchant_id,
            address=address,
            chain=chain,
            purpose=purpose,
            label=label,
            proof_verified=False,
            created_at=now,
        )
        session.add(wallet)
        session.flush()
        bind_merchant(merchant_id, __name__).info(
            "wallet_registered", wallet_id=wallet.id, chain=chain, purpose=purpose
        )
        return wallet.to_dict()


def issue_nonce(
    store: LedgerStore,
    merchant_id: str,
    wallet_id: str,
    now_ts: int | None = None,
) -> dict[str, Any]:
    """Issue a fresh nonce (replacing any outstanding one) and return the message to sign."""
    now = _now(now_ts)
    nonce = uuid.uuid4().hex
    with store.session_scope() as session:
        wallet = get_owned(session, Wallet, merchant_id, wallet_id)
        wallet.proof_nonce = nonce
        wallet.proof_nonce_expires_at = now + NONCE_TTL_SEC
        address, chain = wallet.address, wallet.chain
    logger.info("wallet_nonce_issued", merchant_id=merchant_id, wallet_id=wallet_id, chain=chain)
    return {
        "wallet_id": wallet_id,
        "wallet_address": address,
        "chain": chain,
        "nonce": nonce,
        "message": verification_message(nonce, address, chain),
        "expires_at": now + NONCE_TTL_SEC,
    }


def _decode_solana_signature(signature: str) -> Signature:
    sig = (signature or "").strip()
    if sig.startswith("0x"):
        sig = sig[2:]
    try:
        if len(sig) == 128:
            return Signature.from_bytes(bytes.fromhex(sig))
        return Signature.from_bytes(base58.b58decode(sig))
    except ValueError as e:
        raise OwnershipProofFailed("signature is neither hex nor base58 Ed25519") from e


def verify_solana_signature(message: str, signature: str, address: str) -> bool:
    sig = _decode_solana_signature(signature)
    return sig.verify(Pubkey.from_string(address), message.encode("utf-8"))


def verify_evm_signature(message: str, signature: str, address: str) -> bool:
    try:
        recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:
        raise OwnershipProofFailed(f"cannot recover signer: {e}") from e
    return recovered.lower() == address.lower()


def prove_control(
    store: LedgerStore,
    merchant_id: str,
    wallet_id: str,
    signature: str,
    signer_pubkey: str | None = None,
    now_ts: int | None = None,
) -> dict[str, Any]:
    """
    Verify the signature over the outstanding nonce message and mark the
    wallet proven. The nonce is consumed either way once it has expired,
    and on success; a wrong signature leaves it in place for a retry.
    """
    now = _now(now_ts)
    log = bind_merchant(merchant_id, __name__).bind(wallet_id=wallet_id)
    with store.session_scope() as session:
        wallet = get_owned(session, Wallet, merchant_id, wallet_id)
        nonce = wallet.proof_nonce
        if not nonce:
            raise InvalidState("no outstanding nonce; request one first", current_status="no_nonce")
        expired = wallet.proof_nonce_expires_at is None or now > wallet.proof_nonce_expires_at
        if expired:
            wallet.proof_nonce = None
            wallet.proof_nonce_expires_at = None
        address, chain = wallet.address, wallet.chain
    if expired:
        log.info("wallet_nonce_expired")
        raise NonceExpired("nonce expired; request a new one", wallet_id=wallet_id)

    if signer_pubkey and signer_pubkey.strip() != address:
        raise OwnershipProofFailed("signer does not match wallet address", wallet_id=wallet_id)

    message = verification_message(nonce, address, chain)
    if chain == "solana":
        valid = verify_solana_signature(message, signature, address)
    else:
        valid = verify_evm_signature(message, signature, address)
    if not valid:
        log.warning("wallet_proof_rejected", chain=chain)
        raise OwnershipProofFailed("signature does not verify for this wallet", wallet_id=wallet_id)

    with store.session_scope() as session:
        # Consume the nonce we verified against; a concurrent proof or a new nonce wins otherwise
        consumed = session.execute(
            update(Wallet)
            .where(
                Wallet.id == wallet_id,
                Wallet.merchant_id == merchant_id,
                Wallet.proof_nonce == nonce,
            )
            .values(
                proof_verified=True,
                proof_signature=signature.strip()[:256],
                verified_at=now,
                proof_nonce=None,
                proof_nonce_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if consumed != 1:
            raise InvalidState("nonce already used", current_status="nonce_consumed")
        result = get_owned(session, Wallet, merchant_id, wallet_id).to_dict()
    log.info("wallet_proof_verified", chain=chain)
    return result


def list_wallets(store: LedgerStore, merchant_id: str) -> list[dict[str, Any]]:
    with store.session_scope() as session:
        rows = session.execute(
            select(Wallet).where(Wallet.merchant_id == merchant_id).order_by(Wallet.created_at.asc())
        ).scalars()
        return [w.to_dict() for w in rows]
