"""
Booking State Machine

    pending ──pay──▶ confirmed ──complete──▶ completed
       │                 │
       └──────cancel─────┴──▶ cancelled   (also: reject, expire)

Every transition is a conditional UPDATE on the expected (status,
payment_status) pair, so the payment path and the expiry sweep can never both
win. None of these functions commit; the settlement coordinator owns the
transaction.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.config import SettlementConfig
from app.core.exceptions import InvalidStateTransition, NotFound, ValidationFailed
from app.models.models import Booking, BookingItem, BookingStatus, PaymentStatus
from app.utils.money import ZERO, percent_of, to_money

logger = logging.getLogger(__name__)


class CancelReason:
    PROVIDER_REJECTED = "provider_rejected"
    PAYMENT_TIMEOUT = "payment_timeout"


class CancelledBy:
    CLIENT = "client"
    ADMIN = "admin"
    PROVIDER = "provider"
    SYSTEM = "system"


@dataclass
class PricedItem:
    service_id: int
    quantity: int
    unit_price: Decimal
    duration_minutes: int

    @property
    def total_price(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)


@dataclass
class CancellationQuote:
    fee: Decimal
    refund: Decimal
    fee_percent: Decimal
    reason: str
    hours_until_start: Optional[float] = None


def generate_booking_number(now: datetime) -> str:
    return f"BK{now.strftime('%Y%m%d')}{uuid.uuid4().hex[:6].upper()}"


def compute_totals(subtotal, discount, tax_rate):
    """Tax is charged on the discounted amount: total = subtotal + tax - discount"""
    subtotal = to_money(subtotal)
    discount = to_money(discount)
    if discount > subtotal:
        raise ValidationFailed("Discount cannot exceed the subtotal")
    tax = percent_of(subtotal - discount, tax_rate)
    total = to_money(subtotal + tax - discount)
    return tax, total


def get_booking(db: Session, booking_id: int, lock: bool = False) -> Booking:
    query = db.query(Booking).filter(Booking.id == booking_id)
    if lock:
        query = query.with_for_update()
    booking = query.first()
    if not booking:
        raise NotFound("Booking not found")
    return booking


def _transition(db: Session, booking: Booking, expected: dict, changes: dict, *extra_conditions) -> bool:
    """Compare-and-swap: apply `changes` only if the row still matches `expected`"""
    query = db.query(Booking).filter(Booking.id == booking.id)
    for column, value in expected.items():
        attr = getattr(Booking, column)
        if isinstance(value, (tuple, list)):
            query = query.filter(attr.in_(value))
        else:
            query = query.filter(attr == value)
    for condition in extra_conditions:
        query = query.filter(condition)

    changes = dict(changes)
    changes["updated_at"] = datetime.utcnow()
    updated = query.update(changes, synchronize_session=False)
    db.refresh(booking)
    return updated == 1


def _illegal(booking: Booking, action: str) -> InvalidStateTransition:
    logger.error(
        f"Illegal booking transition '{action}' for booking {booking.id} "
        f"(status={booking.status}, payment_status={booking.payment_status})"
    )
    return InvalidStateTransition(
        f"Cannot {action} booking in status {booking.status}/{booking.payment_status}"
    )


# ==================== CREATE ====================

def create_pending(
    db: Session,
    client_id: int,
    provider_id: int,
    items: Sequence[PricedItem],
    start_time: datetime,
    discount_amount,
    tax_rate,
    config: SettlementConfig,
    promo_code_id: Optional[int] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """Insert a pending, unpaid booking with its payment deadline"""
    now = now or datetime.utcnow()
    if not items:
        raise ValidationFailed("At least one service is required")

    subtotal = to_money(sum((item.total_price for item in items), ZERO))
    tax, total = compute_totals(subtotal, discount_amount, tax_rate)
    duration = sum(item.duration_minutes * item.quantity for item in items)

    booking = Booking(
        booking_number=generate_booking_number(now),
        client_id=client_id,
        provider_id=provider_id,
        start_time=start_time,
        end_time=start_time + timedelta(minutes=duration),
        status=BookingStatus.PENDING,
        payment_status=PaymentStatus.UNPAID,
        subtotal=subtotal,
        tax_amount=tax,
        discount_amount=to_money(discount_amount),
        total_amount=total,
        commission_amount=ZERO,
        payment_deadline=now + timedelta(minutes=config.acceptance_timeout_minutes),
        promo_code_id=promo_code_id,
        notes=notes,
        created_at=now,
    )
    for item in items:
        booking.items.append(BookingItem(
            service_id=item.service_id,
            quantity=item.quantity,
            unit_price=to_money(item.unit_price),
            total_price=item.total_price,
        ))

    db.add(booking)
    db.flush()
    logger.info(f"Created booking {booking.booking_number} total {total} deadline {booking.payment_deadline}")
    return booking


# ==================== PAY ====================

def mark_paid(db: Session, booking: Booking, method: str, reference: Optional[str], now: datetime) -> Booking:
    """pending/unpaid -> confirmed/paid, only while the deadline has not passed"""
    ok = _transition(
        db, booking,
        {"status": BookingStatus.PENDING, "payment_status": PaymentStatus.UNPAID},
        {
            "status": BookingStatus.CONFIRMED,
            "payment_status": PaymentStatus.PAID,
            "payment_method": method,
            "payment_reference": reference,
            "payment_deadline": None,
            "confirmed_at": now,
        },
        or_(Booking.payment_deadline.is_(None), Booking.payment_deadline >= now),
    )
    if not ok:
        raise _illegal(booking, "pay")
    return booking


def ensure_payable(booking: Booking, now: datetime):
    """Advisory pre-check before charging a gateway; mark_paid stays authoritative"""
    if booking.status != BookingStatus.PENDING or booking.payment_status != PaymentStatus.UNPAID:
        raise _illegal(booking, "pay")
    if booking.payment_deadline is not None and booking.payment_deadline < now:
        raise InvalidStateTransition("Payment deadline has passed")


# ==================== PROVIDER RESPONSE ====================

def accept(db: Session, booking: Booking, now: datetime) -> Booking:
    ok = _transition(
        db, booking,
        {"status": BookingStatus.PENDING, "payment_status": PaymentStatus.UNPAID},
        {"accepted_at": now},
        Booking.accepted_at.is_(None),
    )
    if not ok:
        raise _illegal(booking, "accept")
    return booking


def reject(db: Session, booking: Booking, reason: Optional[str], now: datetime) -> Booking:
    ok = _transition(
        db, booking,
        {"status": BookingStatus.PENDING, "payment_status": PaymentStatus.UNPAID},
        {
            "status": BookingStatus.CANCELLED,
            "cancelled_by": CancelledBy.PROVIDER,
            "cancellation_reason": f"{CancelReason.PROVIDER_REJECTED}: {reason}" if reason else CancelReason.PROVIDER_REJECTED,
            "cancelled_at": now,
            "payment_deadline": None,
        },
    )
    if not ok:
        raise _illegal(booking, "reject")
    return booking


# ==================== EXPIRY ====================

def find_overdue_booking_ids(db: Session, now: datetime, limit: int = 500) -> List[int]:
    rows = db.query(Booking.id).filter(
        Booking.status == BookingStatus.PENDING,
        Booking.payment_status == PaymentStatus.UNPAID,
        Booking.payment_deadline < now,
    ).order_by(Booking.id).limit(limit).all()
    return [row.id for row in rows]


def expire(db: Session, booking_id: int, now: datetime) -> bool:
    """
    Cancel an overdue booking if it is still pending and unpaid.

    Returns False when a concurrent payment (or anything else) got there
    first; the sweep simply moves on.
    """
    updated = db.query(Booking).filter(
        Booking.id == booking_id,
        Booking.status == BookingStatus.PENDING,
        Booking.payment_status == PaymentStatus.UNPAID,
        Booking.payment_deadline < now,
    ).update({
        "status": BookingStatus.CANCELLED,
        "cancelled_by": CancelledBy.SYSTEM,
        "cancellation_reason": CancelReason.PAYMENT_TIMEOUT,
        "cancelled_at": now,
        "payment_deadline": None,
        "updated_at": datetime.utcnow(),
    }, synchronize_session=False)
    return updated == 1


# ==================== CANCEL ====================

def quote_cancellation(booking: Booking, actor: str, config: SettlementConfig, now: datetime) -> CancellationQuote:
    """
    Fee and refund for cancelling now. Unpaid bookings cost nothing; admin
    cancellations refund in full; client cancellations follow the fee tiers.
    """
    total = to_money(booking.total_amount)
    if booking.payment_status != PaymentStatus.PAID:
        return CancellationQuote(fee=ZERO, refund=ZERO, fee_percent=ZERO, reason="No payment made yet")
    if actor == CancelledBy.ADMIN:
        return CancellationQuote(fee=ZERO, refund=total, fee_percent=ZERO, reason="Cancelled by admin")

    hours = (booking.start_time - now).total_seconds() / 3600
    if hours < 0:
        percent = config.late_cancellation_fee_percent
        reason = "Appointment time has passed"
    else:
        percent = ZERO
        reason = "Free cancellation"
        for threshold_hours, tier_percent in config.cancellation_fee_tiers:
            if hours < threshold_hours:
                percent = Decimal(str(tier_percent))
                reason = f"Cancellation within {threshold_hours} hours of appointment"
                break

    fee = min(percent_of(total, percent), total)
    return CancellationQuote(
        fee=fee,
        refund=to_money(total - fee),
        fee_percent=to_money(percent),
        reason=reason,
        hours_until_start=round(hours, 1),
    )


def cancel(
    db: Session,
    booking: Booking,
    actor: str,
    reason: Optional[str],
    quote: CancellationQuote,
    now: datetime,
) -> Booking:
    """pending|confirmed -> cancelled, guarded on the payment status the quote was made for"""
    if booking.status not in (BookingStatus.PENDING, BookingStatus.CONFIRMED):
        raise _illegal(booking, "cancel")

    changes = {
        "status": BookingStatus.CANCELLED,
        "cancelled_by": actor,
        "cancellation_reason": reason or f"Cancelled by {actor}",
        "cancelled_at": now,
        "payment_deadline": None,
        "cancellation_fee": quote.fee,
        "refund_amount": quote.refund,
    }
    if booking.payment_status == PaymentStatus.PAID:
        changes["payment_status"] = PaymentStatus.REFUNDED if quote.refund > ZERO else PaymentStatus.PAID

    ok = _transition(
        db, booking,
        {"status": booking.status, "payment_status": booking.payment_status},
        changes,
    )
    if not ok:
        raise _illegal(booking, "cancel")
    return booking


# ==================== COMPLETE ====================

def complete(db: Session, booking: Booking, commission_amount, now: datetime) -> bool:
    """
    confirmed/paid -> completed, storing the commission.

    Returns False (no-op) if the booking is already completed.
    """
    if booking.status == BookingStatus.COMPLETED:
        return False
    ok = _transition(
        db, booking,
        {"status": BookingStatus.CONFIRMED, "payment_status": PaymentStatus.PAID},
        {
            "status": BookingStatus.COMPLETED,
            "commission_amount": to_money(commission_amount),
            "completed_at": now,
        },
    )
    if not ok:
        if booking.status == BookingStatus.COMPLETED:
            return False
        raise _illegal(booking, "complete")
    return True


def find_finished_booking_ids(db: Session, now: datetime, limit: int = 500) -> List[int]:
    rows = db.query(Booking.id).filter(
        Booking.status == BookingStatus.CONFIRMED,
        Booking.payment_status == PaymentStatus.PAID,
        Booking.end_time <= now,
    ).order_by(Booking.id).limit(limit).all()
    return [row.id for row in rows]
