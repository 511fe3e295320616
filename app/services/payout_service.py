"""
Commission & Payout Engine

Provider earnings land in ProviderLedgerEntry when a booking completes.
Withdrawal requests reserve part of that balance while pending, approved or
processing, and only a completed request writes the ledger debit.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.exceptions import (
    InsufficientPayableBalance, InvalidStateTransition, LedgerCorrupted, NotFound, ValidationFailed,
)
from app.models.models import (
    Booking, LedgerEntryType, ProviderLedgerEntry, ServiceProvider, WithdrawalRequest, WithdrawalStatus,
)
from app.utils.money import ZERO, percent_of, to_money

logger = logging.getLogger(__name__)


class WithdrawalAction:
    APPROVE = "approve"
    PROCESS = "process"
    REJECT = "reject"
    COMPLETE = "complete"

    ALL = (APPROVE, PROCESS, REJECT, COMPLETE)


# ==================== COMMISSION ====================

def calculate_commission(booking: Booking, provider: ServiceProvider) -> Decimal:
    """total_amount * commission_rate / 100, using the provider's current rate"""
    return percent_of(booking.total_amount, provider.commission_rate or 0)


def get_provider(db: Session, provider_id: int, lock: bool = False) -> ServiceProvider:
    query = db.query(ServiceProvider).filter(ServiceProvider.id == provider_id)
    if lock:
        query = query.with_for_update()
    provider = query.first()
    if not provider:
        raise NotFound("Provider not found")
    return provider


# ==================== PROVIDER LEDGER ====================

def ledger_balance(db: Session, provider_id: int) -> Decimal:
    last = db.query(ProviderLedgerEntry).filter(
        ProviderLedgerEntry.provider_id == provider_id
    ).order_by(ProviderLedgerEntry.id.desc()).first()
    return to_money(last.balance_after) if last else ZERO


def _append_entry(
    db: Session,
    provider_id: int,
    entry_type: str,
    signed_amount: Decimal,
    booking_id: Optional[int] = None,
    withdrawal_request_id: Optional[int] = None,
    description: Optional[str] = None,
) -> ProviderLedgerEntry:
    balance_before = ledger_balance(db, provider_id)
    balance_after = to_money(balance_before + signed_amount)
    if balance_after < ZERO:
        logger.critical(f"Payable ledger for provider {provider_id} would go negative")
        raise LedgerCorrupted("Provider payable balance would become negative")

    entry = ProviderLedgerEntry(
        provider_id=provider_id,
        entry_type=entry_type,
        amount=signed_amount,
        balance_before=balance_before,
        balance_after=balance_after,
        booking_id=booking_id,
        withdrawal_request_id=withdrawal_request_id,
        description=description,
    )
    db.add(entry)
    db.flush()
    return entry


def credit_earning(db: Session, booking: Booking) -> Optional[ProviderLedgerEntry]:
    """Credit total - commission for a completed booking, once"""
    get_provider(db, booking.provider_id, lock=True)

    existing = db.query(ProviderLedgerEntry).filter(
        ProviderLedgerEntry.entry_type == LedgerEntryType.EARNING,
        ProviderLedgerEntry.booking_id == booking.id,
    ).first()
    if existing:
        return existing

    earning = to_money(booking.total_amount) - to_money(booking.commission_amount)
    if earning <= ZERO:
        return None

    entry = _append_entry(
        db, booking.provider_id, LedgerEntryType.EARNING, earning,
        booking_id=booking.id,
        description=f"Earning for booking {booking.booking_number}",
    )
    logger.info(f"Credited provider {booking.provider_id} with {earning} for booking {booking.id}")
    return entry


def reserved_amount(db: Session, provider_id: int) -> Decimal:
    total = db.query(func.coalesce(func.sum(WithdrawalRequest.amount), 0)).filter(
        WithdrawalRequest.provider_id == provider_id,
        WithdrawalRequest.status.in_(WithdrawalStatus.RESERVED),
    ).scalar()
    return to_money(total)


def payable_balance(db: Session, provider_id: int) -> Decimal:
    """Earnings not yet paid out, minus amounts tied up in open requests"""
    return to_money(ledger_balance(db, provider_id) - reserved_amount(db, provider_id))


# ==================== WITHDRAWAL REQUESTS ====================

def request_withdrawal(
    db: Session,
    provider_id: int,
    amount,
    withdrawal_commission_rate,
    bank_details: Optional[dict] = None,
    notes: Optional[str] = None,
) -> WithdrawalRequest:
    """
    Reserve `amount` of the provider's payable balance in a pending request.

    The provider row is locked so two concurrent requests cannot both pass
    the balance check.
    """
    amount = to_money(amount)
    if amount <= ZERO:
        raise ValidationFailed("Withdrawal amount must be greater than zero")

    provider = get_provider(db, provider_id, lock=True)
    available = payable_balance(db, provider_id)
    if amount > available:
        logger.info(f"Withdrawal of {amount} refused for provider {provider_id}: available {available}")
        raise InsufficientPayableBalance(
            f"Insufficient payable balance. Requested: {amount}, available: {available}"
        )

    bank = {
        "bank_account_title": provider.bank_account_title,
        "bank_account_number": provider.bank_account_number,
        "bank_iban": provider.bank_iban,
    }
    bank.update({k: v for k, v in (bank_details or {}).items() if v})
    if not bank["bank_account_title"] or not bank["bank_account_number"]:
        raise ValidationFailed("Bank account title and number are required")

    commission = percent_of(amount, withdrawal_commission_rate)
    request = WithdrawalRequest(
        reference=f"WD-{uuid.uuid4().hex[:12].upper()}",
        provider_id=provider_id,
        amount=amount,
        commission_amount=commission,
        net_amount=to_money(amount - commission),
        status=WithdrawalStatus.PENDING,
        notes=notes,
        **bank,
    )
    db.add(request)
    db.flush()
    logger.info(f"Withdrawal {request.reference} requested by provider {provider_id}: {amount}")
    return request


def get_withdrawal(db: Session, request_id: int, lock: bool = False) -> WithdrawalRequest:
    query = db.query(WithdrawalRequest).filter(WithdrawalRequest.id == request_id)
    if lock:
        query = query.with_for_update()
    request = query.first()
    if not request:
        raise NotFound("Withdrawal request not found")
    return request


def list_withdrawals(db: Session, provider_id: Optional[int] = None, status: Optional[str] = None) -> List[WithdrawalRequest]:
    query = db.query(WithdrawalRequest)
    if provider_id is not None:
        query = query.filter(WithdrawalRequest.provider_id == provider_id)
    if status:
        query = query.filter(WithdrawalRequest.status == status)
    return query.order_by(WithdrawalRequest.created_at.desc()).all()


def _require_status(request: WithdrawalRequest, allowed, action: str):
    if request.status not in allowed:
        logger.error(f"Illegal withdrawal transition '{action}' for {request.reference} in {request.status}")
        raise InvalidStateTransition(f"Cannot {action} withdrawal with status: {request.status}")


def approve(db: Session, request: WithdrawalRequest, admin_id: int, note: Optional[str], now: datetime):
    _require_status(request, (WithdrawalStatus.PENDING,), "approve")
    request.status = WithdrawalStatus.APPROVED
    request.approved_by = admin_id
    request.approved_at = now
    if note:
        request.admin_notes = note


def mark_processing(db: Session, request: WithdrawalRequest, admin_id: int, note: Optional[str], now: datetime):
    _require_status(request, (WithdrawalStatus.APPROVED,), "process")
    request.status = WithdrawalStatus.PROCESSING
    request.processed_by = admin_id
    request.processed_at = now
    if note:
        request.admin_notes = note


def reject(db: Session, request: WithdrawalRequest, admin_id: int, reason: Optional[str], now: datetime):
    _require_status(request, (WithdrawalStatus.PENDING, WithdrawalStatus.APPROVED), "reject")
    if not reason or not reason.strip():
        raise ValidationFailed("A rejection reason is required")
    request.status = WithdrawalStatus.REJECTED
    request.rejection_reason = reason
    request.processed_by = admin_id
    request.processed_at = now


def complete(
    db: Session,
    request: WithdrawalRequest,
    admin_id: int,
    transaction_reference: Optional[str],
    note: Optional[str],
    now: datetime,
) -> ProviderLedgerEntry:
    """Mark paid out and debit the provider ledger so the amount cannot be withdrawn twice"""
    _require_status(request, (WithdrawalStatus.APPROVED, WithdrawalStatus.PROCESSING), "complete")
    if not transaction_reference or not transaction_reference.strip():
        raise ValidationFailed("Transaction reference is required to complete a withdrawal")

    get_provider(db, request.provider_id, lock=True)
    entry = _append_entry(
        db, request.provider_id, LedgerEntryType.WITHDRAWAL, -to_money(request.amount),
        withdrawal_request_id=request.id,
        description=f"Withdrawal {request.reference}",
    )
    request.status = WithdrawalStatus.COMPLETED
    request.transaction_reference = transaction_reference
    request.processed_by = request.processed_by or admin_id
    request.processed_at = request.processed_at or now
    request.completed_at = now
    if note:
        request.admin_notes = note
    db.flush()
    logger.info(f"Withdrawal {request.reference} completed, ref {transaction_reference}")
    return entry
