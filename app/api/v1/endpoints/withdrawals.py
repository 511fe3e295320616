from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional

from app.api.deps import get_coordinator
from app.core.config import settings
from app.core.database import get_db
from app.core.security import get_current_admin, get_current_provider
from app.models.models import ServiceProvider, User
from app.schemas.schemas import (
    PayableBalanceResponse,
    WithdrawalCreate,
    WithdrawalResponse,
    WithdrawalReview,
)
from app.services import payout_service
from app.services.settlement_service import SettlementCoordinator

router = APIRouter()


@router.get("/balance", response_model=PayableBalanceResponse)
def get_payable_balance(
    db: Session = Depends(get_db),
    provider: ServiceProvider = Depends(get_current_provider),
):
    """Earnings available for withdrawal"""
    ledger = payout_service.ledger_balance(db, provider.id)
    reserved = payout_service.reserved_amount(db, provider.id)
    return PayableBalanceResponse(
        provider_id=provider.id,
        ledger_balance=ledger,
        reserved_amount=reserved,
        available_balance=ledger - reserved,
        currency=settings.CURRENCY,
    )


@router.post("", response_model=WithdrawalResponse)
def create_withdrawal(
    withdrawal: WithdrawalCreate,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
    provider: ServiceProvider = Depends(get_current_provider),
):
    """Request a payout of part of the payable balance"""
    bank_details = withdrawal.model_dump(include={"bank_account_title", "bank_account_number", "bank_iban"})
    return coordinator.request_withdrawal(
        provider.id, withdrawal.amount, bank_details=bank_details, notes=withdrawal.notes
    )


@router.get("", response_model=List[WithdrawalResponse])
def list_withdrawals(
    status_filter: Optional[str] = Query(None, description="Filter by status"),
    db: Session = Depends(get_db),
    provider: ServiceProvider = Depends(get_current_provider),
):
    """List the current provider's withdrawal requests"""
    return payout_service.list_withdrawals(db, provider_id=provider.id, status=status_filter)


@router.post("/{withdrawal_id}/review", response_model=WithdrawalResponse)
def review_withdrawal(
    withdrawal_id: int,
    review: WithdrawalReview,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
    current_user: User = Depends(get_current_admin),
):
    """Approve, process, reject or complete a withdrawal request (admin only)"""
    return coordinator.review_withdrawal(
        withdrawal_id,
        review.action,
        admin_id=current_user.id,
        note=review.note,
        transaction_reference=review.transaction_reference,
    )
