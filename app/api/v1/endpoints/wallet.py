from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from app.api.deps import get_coordinator
from app.core.config import settings
from app.core.database import get_db
from app.core.security import get_current_client
from app.models.models import User
from app.schemas.schemas import (
    WalletBalanceResponse,
    WalletDepositRequest,
    WalletDepositResponse,
    WalletTransactionResponse,
)
from app.services import wallet_service
from app.services.settlement_service import SettlementCoordinator

router = APIRouter()


@router.get("/balance", response_model=WalletBalanceResponse)
def get_wallet_balance(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_client)
):
    """Current balance, read from the latest ledger row."""
    return WalletBalanceResponse(
        user_id=current_user.id,
        balance=wallet_service.current_balance(db, current_user.id),
        currency=settings.CURRENCY,
    )


@router.get("/transactions", response_model=List[WalletTransactionResponse])
def get_wallet_transactions(
    type_filter: Optional[str] = Query(None, description="Filter by type: deposit, payment, refund, withdrawal"),
    limit: int = Query(100, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_client)
):
    """Ledger history for the current client, newest first."""
    return wallet_service.list_transactions(
        db, current_user.id, type_filter=type_filter, limit=limit, offset=offset
    )


@router.post("/deposit", response_model=WalletDepositResponse)
def deposit(
    request: WalletDepositRequest,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
    current_user: User = Depends(get_current_client)
):
    """Top up the wallet through the payment gateway."""
    return coordinator.deposit(current_user.id, request.amount)
