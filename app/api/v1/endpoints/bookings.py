from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.api.deps import get_coordinator
from app.core.database import get_db
from app.core.security import get_current_client, get_current_user
from app.models.models import ServiceProvider, User, UserRole
from app.schemas.schemas import (
    BookingCancelRequest,
    BookingCreate,
    BookingPayRequest,
    BookingRejectRequest,
    BookingResponse,
    CancellationPreviewResponse,
)
from app.services.booking_service import CancelledBy
from app.services.settlement_service import SettlementCoordinator

router = APIRouter()


def _cancel_actor(current_user: User) -> str:
    if current_user.role == UserRole.ADMIN:
        return CancelledBy.ADMIN
    if current_user.role == UserRole.CLIENT:
        return CancelledBy.CLIENT
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Only the client or an admin can cancel a booking",
    )


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    booking: BookingCreate,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
    current_user: User = Depends(get_current_client),
):
    """Create a pending booking, applying a promo code if given"""
    return coordinator.create_booking(
        client_id=current_user.id,
        provider_id=booking.provider_id,
        items=[item.model_dump() for item in booking.items],
        start_time=booking.start_time,
        promo_code=booking.promo_code,
        notes=booking.notes,
    )


@router.get("/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    coordinator: SettlementCoordinator = Depends(get_coordinator),
    current_user: User = Depends(get_current_user),
):
    """Get a booking visible to the current user"""
    booking = coordinator.get_booking(booking_id)
    if current_user.role == UserRole.ADMIN or booking.client_id == current_user.id:
        return booking
    provider = db.query(ServiceProvider).filter(ServiceProvider.user_id == current_user.id).first()
    if provider and provider.id == booking.provider_id:
        return booking
    raise HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail="Booking not found",
    )


@router.post("/{booking_id}/pay", response_model=BookingResponse)
def pay_booking(
    booking_id: int,
    payment: BookingPayRequest,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
    current_user: User = Depends(get_current_client),
):
    """Pay a pending booking from the wallet or through the gateway"""
    return coordinator.pay_booking(booking_id, current_user.id, payment.payment_method)


@router.post("/{booking_id}/accept", response_model=BookingResponse)
def accept_booking(
    booking_id: int,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
    current_user: User = Depends(get_current_user),
):
    """Provider acknowledges a pending booking"""
    return coordinator.accept_booking(booking_id, current_user.id)


@router.post("/{booking_id}/reject", response_model=BookingResponse)
def reject_booking(
    booking_id: int,
    request: BookingRejectRequest,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
    current_user: User = Depends(get_current_user),
):
    """Provider declines a pending booking"""
    return coordinator.reject_booking(booking_id, current_user.id, request.reason)


@router.get("/{booking_id}/cancellation-preview", response_model=CancellationPreviewResponse)
def preview_cancellation(
    booking_id: int,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
    current_user: User = Depends(get_current_user),
):
    """Show the fee and refund for cancelling now"""
    quote = coordinator.preview_cancellation(booking_id, _cancel_actor(current_user), current_user.id)
    booking = coordinator.get_booking(booking_id)
    return CancellationPreviewResponse(
        booking_id=booking.id,
        total_amount=booking.total_amount,
        cancellation_fee=quote.fee,
        refund_amount=quote.refund,
        fee_percent=quote.fee_percent,
        reason=quote.reason,
        hours_until_start=quote.hours_until_start,
    )


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: int,
    request: BookingCancelRequest,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
    current_user: User = Depends(get_current_user),
):
    """Cancel a booking; paid bookings are refunded to the client wallet"""
    booking, _ = coordinator.cancel_booking(
        booking_id, _cancel_actor(current_user), current_user.id, request.reason
    )
    return booking


@router.post("/{booking_id}/complete", response_model=BookingResponse)
def complete_booking(
    booking_id: int,
    coordinator: SettlementCoordinator = Depends(get_coordinator),
    current_user: User = Depends(get_current_user),
):
    """Mark a paid booking completed (provider or admin)"""
    if current_user.role == UserRole.ADMIN:
        return coordinator.complete_booking(booking_id)
    if current_user.role == UserRole.PROVIDER:
        return coordinator.complete_booking(booking_id, provider_user_id=current_user.id)
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Only the provider or an admin can complete a booking",
    )
