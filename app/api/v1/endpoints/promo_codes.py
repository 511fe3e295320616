from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List

from app.api.deps import get_coordinator
from app.core.database import get_db, run_atomic
from app.core.security import get_current_client, get_current_user
from app.models.models import ServiceProvider, User, UserRole
from app.schemas.schemas import (
    PromoCodeCreate,
    PromoCodeResponse,
    PromoCodeValidateRequest,
    PromoCodeValidateResponse,
)
from app.services import promo_service
from app.services.settlement_service import SettlementCoordinator
from app.utils.money import to_money

router = APIRouter()


def _managing_provider_id(db: Session, current_user: User):
    """None for admins (platform-wide codes), the provider id for providers"""
    if current_user.role == UserRole.ADMIN:
        return None
    if current_user.role == UserRole.PROVIDER:
        provider = db.query(ServiceProvider).filter(ServiceProvider.user_id == current_user.id).first()
        if provider:
            return provider.id
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Only providers and admins can manage promo codes",
    )


@router.post("/validate", response_model=PromoCodeValidateResponse)
def validate_promo_code(
    request: PromoCodeValidateRequest,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
    current_user: User = Depends(get_current_client),
):
    """Check a promo code against an order without consuming it"""
    result = coordinator.validate_promo_code(
        request.code, current_user.id, request.order_total, request.service_ids
    )
    order_total = to_money(request.order_total)
    return PromoCodeValidateResponse(
        valid=result.valid,
        message=result.message,
        reason=result.reason,
        discount_amount=result.discount_amount,
        final_amount=order_total - result.discount_amount,
        promo_code_id=result.promo_code.id if result.valid else None,
        discount_type=result.promo_code.discount_type if result.valid else None,
    )


@router.post("", response_model=PromoCodeResponse, status_code=status.HTTP_201_CREATED)
def create_promo_code(
    promo: PromoCodeCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Create a promo code (scoped to the provider when a provider creates it)"""
    provider_id = _managing_provider_id(db, current_user)
    return run_atomic(db, lambda: promo_service.create_promo_code(
        db, promo.model_dump(), created_by=current_user.id, provider_id=provider_id
    ))


@router.get("", response_model=List[PromoCodeResponse])
def list_promo_codes(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """List promo codes: all for admins, own codes for providers"""
    provider_id = _managing_provider_id(db, current_user)
    return promo_service.list_promo_codes(db, provider_id=provider_id)


@router.patch("/{promo_code_id}/toggle", response_model=PromoCodeResponse)
def toggle_promo_code(
    promo_code_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Activate or deactivate a promo code"""
    provider_id = _managing_provider_id(db, current_user)
    return run_atomic(db, lambda: promo_service.toggle_promo_code(db, promo_code_id, provider_id=provider_id))
