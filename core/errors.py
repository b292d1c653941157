"""
Error taxonomy for the ordering and settlement core.

Every error carries a stable machine code, a message safe to show to the
caller, and the HTTP status the API layer answers with.
"""
from typing import Optional


class MarketplaceError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


# --- Caller-correctable input ---

class ValidationError(MarketplaceError):
    code = "validation_error"
    status_code = 400


class EmptyCartError(ValidationError):
    code = "empty_cart"


class NotFoundError(MarketplaceError):
    code = "not_found"
    status_code = 404


# --- Concurrent state violations ---

class StateConflictError(MarketplaceError):
    code = "state_conflict"
    status_code = 409


class AlreadyAssignedError(StateConflictError):
    code = "already_assigned"


class InvalidStateTransitionError(StateConflictError):
    code = "invalid_state_transition"


# --- Business-rule rejections ---

class BusinessRuleError(MarketplaceError):
    code = "business_rule"
    status_code = 422


class InsufficientBalanceError(BusinessRuleError):
    code = "insufficient_balance"


class BelowMinimumError(BusinessRuleError):
    code = "below_minimum"


class IncompleteCollectionError(BusinessRuleError):
    code = "incomplete_collection"


class InvalidOTPError(BusinessRuleError):
    code = "invalid_otp"


# --- Gating failures ---

class NotVerifiedError(MarketplaceError):
    code = "not_verified"
    status_code = 403


class UnverifiedBankAccountError(NotVerifiedError):
    code = "unverified_bank_account"


# --- Storage ---

class PersistenceError(MarketplaceError):
    """Transaction aborted and fully rolled back. Safe to retry after re-reading state."""
    code = "persistence_error"
    status_code = 503
