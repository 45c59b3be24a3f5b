"""
Application-level exceptions.

Every error carries a stable ``code``, a human readable message and a
``context`` dict. The API layer maps the families below to HTTP status
codes; scheduled jobs log them per row and keep going.

- ValidationError: bad input, rejected synchronously, never retried.
- StateConflict: the row is not in a state that allows the operation.
- NotFound: unknown row (tenant scoped) or unknown chain signature.
- PermissionDenied: actor role may not perform the operation.
- ChainUnavailable: transient RPC failure, retried on the next tick.
- TransactionRejected: the node refused a broadcast; final for that payout.
"""

from __future__ import annotations

from typing import Any


class ErrorCodes:
    """Stable error codes returned to API clients."""

    INVALID_AMOUNT = "INVALID_AMOUNT"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INVALID_DESTINATION = "INVALID_DESTINATION"
    UNSUPPORTED_CURRENCY = "UNSUPPORTED_CURRENCY"
    UNSUPPORTED_CHAIN = "UNSUPPORTED_CHAIN"
    INVALID_SIGNED_TRANSACTION = "INVALID_SIGNED_TRANSACTION"
    MISSING_REASON = "MISSING_REASON"
    INVALID_STATE = "INVALID_STATE"
    TRANSACTION_EXPIRED = "TRANSACTION_EXPIRED"
    NONCE_EXPIRED = "NONCE_EXPIRED"
    NOT_FOUND = "NOT_FOUND"
    SIGNATURE_NOT_FOUND = "SIGNATURE_NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    NO_VERIFIED_SOURCE_WALLET = "NO_VERIFIED_SOURCE_WALLET"
    OWNERSHIP_PROOF_FAILED = "OWNERSHIP_PROOF_FAILED"
    CHAIN_UNAVAILABLE = "CHAIN_UNAVAILABLE"
    TRANSACTION_REJECTED = "TRANSACTION_REJECTED"


class PayrailError(Exception):
    """Base class for all domain errors."""

    code = "PAYRAIL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, **context: Any) -> None:
        if code is not None:
            self.code = code
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": self.context}


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------


class ValidationError(PayrailError):
    code = "VALIDATION_ERROR"


class InvalidAmount(ValidationError):
    code = ErrorCodes.INVALID_AMOUNT


class InsufficientBalance(ValidationError):
    code = ErrorCodes.INSUFFICIENT_BALANCE


class InvalidDestination(ValidationError):
    code = ErrorCodes.INVALID_DESTINATION


class UnsupportedCurrency(ValidationError):
    code = ErrorCodes.UNSUPPORTED_CURRENCY


class UnsupportedChain(ValidationError):
    code = ErrorCodes.UNSUPPORTED_CHAIN


class InvalidSignedTransaction(ValidationError):
    code = ErrorCodes.INVALID_SIGNED_TRANSACTION


class MissingReason(ValidationError):
    code = ErrorCodes.MISSING_REASON


class NoVerifiedSourceWallet(ValidationError):
    code = ErrorCodes.NO_VERIFIED_SOURCE_WALLET


class OwnershipProofFailed(ValidationError):
    code = ErrorCodes.OWNERSHIP_PROOF_FAILED


# -----------------------------------------------------------------------------
# State conflicts
# -----------------------------------------------------------------------------


class StateConflict(PayrailError):
    code = "STATE_CONFLICT"


class InvalidState(StateConflict):
    """Operation not allowed from the row's current status (named in context)."""

    code = ErrorCodes.INVALID_STATE

    def __init__(self, message: str, *, current_status: str | None = None, **context: Any) -> None:
        super().__init__(message, current_status=current_status, **context)
        self.current_status = current_status


class TransactionExpired(StateConflict):
    code = ErrorCodes.TRANSACTION_EXPIRED


class NonceExpired(StateConflict):
    code = ErrorCodes.NONCE_EXPIRED


# -----------------------------------------------------------------------------
# Lookup / permission / external
# -----------------------------------------------------------------------------


class NotFound(PayrailError):
    code = ErrorCodes.NOT_FOUND


class ResourceNotFound(NotFound):
    pass


class SignatureNotFound(NotFound):
    """A chain signature no longer resolves on the RPC node."""

    code = ErrorCodes.SIGNATURE_NOT_FOUND


class PermissionDenied(PayrailError):
    code = ErrorCodes.PERMISSION_DENIED


class ChainUnavailable(PayrailError):
    """Chain RPC could not be reached or returned an error; safe to retry later."""

    code = ErrorCodes.CHAIN_UNAVAILABLE


class TransactionRejected(PayrailError):
    """The node refused a signed transaction outright (preflight / RPC error); it will not land."""

    code = ErrorCodes.TRANSACTION_REJECTED
