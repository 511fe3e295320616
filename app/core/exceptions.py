"""
Error taxonomy for the settlement engine.

Services raise these; app.main maps them to HTTP responses.
"""
from typing import Optional


class SettlementError(Exception):
    """Base class for all settlement errors"""
    code = "settlement_error"
    status_code = 400

    def __init__(self, message: str = "", reason: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.reason = reason


class ValidationFailed(SettlementError):
    code = "validation_failed"
    status_code = 422


class NotFound(SettlementError):
    code = "not_found"
    status_code = 404


class PermissionDenied(SettlementError):
    code = "permission_denied"
    status_code = 403


class PromoError(SettlementError):
    code = "promo_error"


class PromoExhausted(PromoError):
    code = "promo_exhausted"


class PromoExpired(PromoError):
    code = "promo_expired"


class PromoNotApplicable(PromoError):
    code = "promo_not_applicable"


class InsufficientFunds(SettlementError):
    code = "insufficient_funds"


class InsufficientPayableBalance(SettlementError):
    code = "insufficient_payable_balance"


class InvalidStateTransition(SettlementError):
    code = "invalid_state_transition"
    status_code = 409


class PersistenceConflict(SettlementError):
    code = "persistence_conflict"
    status_code = 409


class LedgerCorrupted(SettlementError):
    code = "ledger_corrupted"
    status_code = 500


class PaymentFailed(SettlementError):
    code = "payment_failed"
    status_code = 402
