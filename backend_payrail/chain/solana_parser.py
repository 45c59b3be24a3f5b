"""
Solana transaction parser — jsonParsed getTransaction payloads to Transfers.

Extracts SPL token `transfer` and `transferChecked` instructions (outer and
inner). Token accounts are resolved to their owner and mint through the
pre/post token balances so callers can match on wallet addresses.
Purely structural; matching rules live in the settlement monitor.
"""

from __future__ import annotations

from typing import Any

from backend_payrail.chain.models import Transfer
from backend_payrail.payrail_logging import get_logger

logger = get_logger(__name__)

SPL_TOKEN_PROGRAMS = ("spl-token", "spl-token-2022")
TRANSFER_TYPES = ("transfer", "transferChecked")
DEFAULT_DECIMALS = 6


def _account_keys(tx: dict[str, Any]) -> list[str]:
    message = (tx.get("transaction") or {}).get("message") or {}
    keys = message.get("accountKeys") or []
    out: list[str] = []
    for key in keys:
        if isinstance(key, dict):
            out.append(str(key.get("pubkey") or ""))
        else:
            out.append(str(key))
    return out


def _token_accounts(tx: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """token account address -> {owner, mint, decimals} from pre/post token balances."""
    meta = tx.get("meta") or {}
    keys = _account_keys(tx)
    accounts: dict[str, dict[str, Any]] = {}
    for entry in (meta.get("preTokenBalances") or []) + (meta.get("postTokenBalances") or []):
        idx = entry.get("accountIndex")
        if not isinstance(idx, int) or idx >= len(keys):
            continue
        ui = entry.get("uiTokenAmount") or {}
        accounts[keys[idx]] = {
            "owner": entry.get("owner"),
            "mint": entry.get("mint"),
            "decimals": ui.get("decimals"),
        }
    return accounts


def _iter_instructions(tx: dict[str, Any]) -> list[dict[str, Any]]:
    message = (tx.get("transaction") or {}).get("message") or {}
    instructions = list(message.get("instructions") or [])
    for inner in (tx.get("meta") or {}).get("innerInstructions") or []:
        instructions.extend(inner.get("instructions") or [])
    return instructions


def _first_signature(tx: dict[str, Any]) -> str | None:
    sigs = (tx.get("transaction") or {}).get("signatures") or []
    return str(sigs[0]) if sigs else None


def parse_token_transfers(tx: dict[str, Any] | None, signature: str | None = None) -> list[Transfer]:
    """
    Return every SPL token transfer in a jsonParsed transaction.

    Failed transactions (meta.err set) yield nothing. Amounts stay in base
    units; decimals come from the instruction, the token balances, or 6.
    """
    if not tx:
        return []
    meta = tx.get("meta") or {}
    if meta.get("err") is not None:
        return []
    sig = signature or _first_signature(tx)
    if not sig:
        return []
    accounts = _token_accounts(tx)
    block_time = tx.get("blockTime")
    slot = tx.get("slot")

    transfers: list[Transfer] = []
    for ix in _iter_instructions(tx):
        if ix.get("program") not in SPL_TOKEN_PROGRAMS:
            continue
        parsed = ix.get("parsed")
        if not isinstance(parsed, dict) or parsed.get("type") not in TRANSFER_TYPES:
            continue
        info = parsed.get("info") or {}
        source = info.get("source")
        destination = info.get("destination")
        dest_account = accounts.get(destination or "", {})
        source_account = accounts.get(source or "", {})

        token_amount = info.get("tokenAmount") or {}
        raw = info.get("amount", token_amount.get("amount"))
        try:
            raw_amount = int(raw)
        except (TypeError, ValueError):
            logger.debug("solana_parser_bad_amount", signature=sig, amount=raw)
            continue
        decimals = token_amount.get("decimals")
        if decimals is None:
            decimals = dest_account.get("decimals")
        if decimals is None:
            decimals = DEFAULT_DECIMALS

        transfers.append(
            Transfer(
                signature=sig,
                from_address=source_account.get("owner") or info.get("authority") or source,
                to_address=dest_account.get("owner") or destination,
                token_id=info.get("mint") or dest_account.get("mint") or source_account.get("mint"),
                raw_amount=raw_amount,
                decimals=int(decimals),
                observed_at=int(block_time) if block_time is not None else None,
                to_token_account=destination,
                slot=int(slot) if slot is not None else None,
            )
        )
    return transfers
