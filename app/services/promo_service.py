"""
Promo Engine

Validation is advisory and read-only. Redemption is authoritative: it
re-checks the limits under a row lock and bumps the counter with a
conditional UPDATE inside the caller's transaction.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Union

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.core.exceptions import (
    NotFound, PermissionDenied, PromoError, PromoExhausted, PromoExpired, PromoNotApplicable, ValidationFailed,
)
from app.models.models import DiscountType, PromoCode, PromoCodeUsage, Service
from app.utils.money import HUNDRED, ZERO, to_money

logger = logging.getLogger(__name__)


class PromoReason:
    """Rejection reason codes, in the order the checks run"""
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    USER_LIMIT_REACHED = "user_limit_reached"
    MIN_ORDER_NOT_MET = "min_order_not_met"
    NOT_APPLICABLE = "not_applicable"
    PROVIDER_MISMATCH = "provider_mismatch"


REASON_ERRORS = {
    PromoReason.NOT_FOUND: PromoNotApplicable,
    PromoReason.INACTIVE: PromoExpired,
    PromoReason.NOT_YET_VALID: PromoExpired,
    PromoReason.EXPIRED: PromoExpired,
    PromoReason.USAGE_LIMIT_REACHED: PromoExhausted,
    PromoReason.USER_LIMIT_REACHED: PromoExhausted,
    PromoReason.MIN_ORDER_NOT_MET: PromoNotApplicable,
    PromoReason.NOT_APPLICABLE: PromoNotApplicable,
    PromoReason.PROVIDER_MISMATCH: PromoNotApplicable,
}

REASON_MESSAGES = {
    PromoReason.NOT_FOUND: "Invalid promo code",
    PromoReason.INACTIVE: "This promo code is inactive",
    PromoReason.NOT_YET_VALID: "This promo code is not yet active",
    PromoReason.EXPIRED: "This promo code has expired",
    PromoReason.USAGE_LIMIT_REACHED: "This promo code is no longer available (maximum uses reached)",
    PromoReason.USER_LIMIT_REACHED: "You have reached the maximum usage limit for this promo code",
    PromoReason.MIN_ORDER_NOT_MET: "The order total is below the minimum for this promo code",
    PromoReason.NOT_APPLICABLE: "This promo code is not applicable to the selected services",
    PromoReason.PROVIDER_MISMATCH: "This promo code is not valid for the selected provider",
}


# ==================== DISCOUNT RULES ====================

@dataclass(frozen=True)
class PercentageDiscount:
    rate: Decimal
    cap: Optional[Decimal] = None


@dataclass(frozen=True)
class FixedAmountDiscount:
    amount: Decimal


@dataclass(frozen=True)
class FreeServiceDiscount:
    service_price: Decimal


DiscountRule = Union[PercentageDiscount, FixedAmountDiscount, FreeServiceDiscount]


def compute_discount(rule: DiscountRule, order_total) -> Decimal:
    """Discount for an order total; never more than the total itself"""
    order_total = to_money(order_total)
    if order_total <= ZERO:
        return ZERO

    if isinstance(rule, FixedAmountDiscount):
        return min(to_money(rule.amount), order_total)

    if isinstance(rule, FreeServiceDiscount):
        return min(to_money(rule.service_price), order_total)

    if isinstance(rule, PercentageDiscount):
        discount = to_money(order_total * Decimal(str(rule.rate)) / HUNDRED)
        if rule.cap is not None:
            discount = min(discount, to_money(rule.cap))
        return min(discount, order_total)

    raise ValidationFailed(f"Unknown discount rule: {rule!r}")


def discount_rule_for(promo: PromoCode) -> DiscountRule:
    if promo.discount_type == DiscountType.FIXED_AMOUNT:
        return FixedAmountDiscount(amount=to_money(promo.discount_value))
    if promo.discount_type == DiscountType.PERCENTAGE:
        cap = to_money(promo.max_discount_amount) if promo.max_discount_amount is not None else None
        return PercentageDiscount(rate=to_money(promo.discount_value), cap=cap)
    if promo.discount_type == DiscountType.FREE_SERVICE:
        price = to_money(promo.free_service.price) if promo.free_service else ZERO
        return FreeServiceDiscount(service_price=price)
    raise ValidationFailed(f"Unknown discount type: {promo.discount_type}")


# ==================== VALIDATION ====================

@dataclass
class PromoValidation:
    valid: bool
    discount_amount: Decimal = ZERO
    reason: Optional[str] = None
    promo_code: Optional[PromoCode] = None

    @property
    def message(self) -> str:
        if self.valid:
            return "Promo code applied successfully"
        return REASON_MESSAGES.get(self.reason, "Invalid promo code")

    def raise_for_reason(self):
        """Raise the error class matching the rejection reason"""
        if self.valid:
            return
        error_class = REASON_ERRORS.get(self.reason, PromoError)
        raise error_class(self.message, reason=self.reason)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def get_promo_by_code(db: Session, code: str) -> Optional[PromoCode]:
    return db.query(PromoCode).filter(func.upper(PromoCode.code) == normalize_code(code)).first()


def count_user_usages(db: Session, promo_code_id: int, user_id: int) -> int:
    return db.query(PromoCodeUsage).filter(
        PromoCodeUsage.promo_code_id == promo_code_id,
        PromoCodeUsage.user_id == user_id,
    ).count()


def validate(
    db: Session,
    code: str,
    client_id: int,
    order_total,
    service_ids: Iterable[int],
    now: Optional[datetime] = None,
) -> PromoValidation:
    """
    Check a promo code against a proposed order and compute the discount.

    Read-only: never touches used_count and never writes a usage row.
    """
    now = now or datetime.utcnow()
    today = now.date()
    order_total = to_money(order_total)
    service_ids = [int(s) for s in service_ids]

    promo = get_promo_by_code(db, code)
    if not promo:
        return PromoValidation(valid=False, reason=PromoReason.NOT_FOUND)

    def reject(reason: str) -> PromoValidation:
        return PromoValidation(valid=False, reason=reason, promo_code=promo)

    if not promo.is_active:
        return reject(PromoReason.INACTIVE)
    if today < promo.valid_from:
        return reject(PromoReason.NOT_YET_VALID)
    if today > promo.valid_until:
        return reject(PromoReason.EXPIRED)
    if promo.usage_limit is not None and promo.used_count >= promo.usage_limit:
        return reject(PromoReason.USAGE_LIMIT_REACHED)
    if count_user_usages(db, promo.id, client_id) >= promo.usage_limit_per_user:
        return reject(PromoReason.USER_LIMIT_REACHED)
    if promo.min_order_value is not None and order_total < to_money(promo.min_order_value):
        return reject(PromoReason.MIN_ORDER_NOT_MET)

    applicable = set(promo.applicable_service_ids or [])
    if applicable and not applicable.intersection(service_ids):
        return reject(PromoReason.NOT_APPLICABLE)

    if promo.provider_id is not None and service_ids:
        other_provider = db.query(Service.id).filter(
            Service.id.in_(service_ids),
            Service.provider_id != promo.provider_id,
        ).first()
        if other_provider:
            return reject(PromoReason.PROVIDER_MISMATCH)

    discount = compute_discount(discount_rule_for(promo), order_total)
    return PromoValidation(valid=True, discount_amount=discount, promo_code=promo)


# ==================== REDEMPTION ====================

def redeem(
    db: Session,
    promo_code_id: int,
    client_id: int,
    booking_id: int,
    discount_amount,
) -> PromoCodeUsage:
    """
    Consume one use of a promo code for a booking.

    Must run inside the same transaction that writes the booking. Re-verifies
    both limits; an earlier successful validate() guarantees nothing.
    """
    promo = db.query(PromoCode).filter(PromoCode.id == promo_code_id).with_for_update().first()
    if not promo:
        raise NotFound("Promo code not found")

    if count_user_usages(db, promo.id, client_id) >= promo.usage_limit_per_user:
        logger.warning(f"Promo {promo.code} per-user limit reached for user {client_id} at redemption")
        raise PromoExhausted(
            REASON_MESSAGES[PromoReason.USER_LIMIT_REACHED], reason=PromoReason.USER_LIMIT_REACHED
        )

    claimed = db.query(PromoCode).filter(
        PromoCode.id == promo.id,
        or_(PromoCode.usage_limit.is_(None), PromoCode.used_count < PromoCode.usage_limit),
    ).update({"used_count": PromoCode.used_count + 1}, synchronize_session=False)

    if claimed != 1:
        logger.warning(f"Promo {promo.code} exhausted at redemption for booking {booking_id}")
        raise PromoExhausted(
            REASON_MESSAGES[PromoReason.USAGE_LIMIT_REACHED], reason=PromoReason.USAGE_LIMIT_REACHED
        )

    usage = PromoCodeUsage(
        promo_code_id=promo.id,
        user_id=client_id,
        booking_id=booking_id,
        discount_amount=to_money(discount_amount),
    )
    db.add(usage)
    db.flush()
    db.expire(promo, ["used_count"])

    logger.info(f"Redeemed promo {promo.code} for booking {booking_id} (user {client_id})")
    return usage


# ==================== ADMINISTRATION ====================

def create_promo_code(db: Session, data: dict, created_by: int, provider_id: Optional[int] = None) -> PromoCode:
    """
    Create a promo code. Provider-created codes are always scoped to that
    provider; admins may create platform-wide codes.
    """
    code = normalize_code(data.get("code"))
    if not code:
        raise ValidationFailed("Promo code is required")
    if get_promo_by_code(db, code):
        raise ValidationFailed("Promo code already exists")

    discount_type = data.get("discount_type")
    if discount_type not in DiscountType.ALL:
        raise ValidationFailed(f"Invalid discount type: {discount_type}")

    discount_value = to_money(data.get("discount_value") or 0)
    if discount_type == DiscountType.PERCENTAGE and not (ZERO < discount_value <= HUNDRED):
        raise ValidationFailed("Percentage discount must be between 0 and 100")
    if discount_type == DiscountType.FIXED_AMOUNT and discount_value <= ZERO:
        raise ValidationFailed("Fixed discount must be greater than 0")

    valid_from: date = data["valid_from"]
    valid_until: date = data["valid_until"]
    if valid_from > valid_until:
        raise ValidationFailed("valid_from must not be after valid_until")

    free_service_id = data.get("free_service_id")
    if discount_type == DiscountType.FREE_SERVICE:
        if not free_service_id:
            raise ValidationFailed("free_service_id is required for free_service codes")
        free_service = db.query(Service).filter(Service.id == free_service_id).first()
        if not free_service:
            raise NotFound("Free service not found")
        if provider_id is not None and free_service.provider_id != provider_id:
            raise PermissionDenied("Free service does not belong to this provider")

    usage_limit = data.get("usage_limit")
    if usage_limit is not None and usage_limit < 1:
        raise ValidationFailed("usage_limit must be at least 1")
    usage_limit_per_user = data.get("usage_limit_per_user") or 1

    promo = PromoCode(
        code=code,
        description=data.get("description"),
        discount_type=discount_type,
        discount_value=discount_value,
        free_service_id=free_service_id,
        max_discount_amount=data.get("max_discount_amount"),
        min_order_value=data.get("min_order_value"),
        valid_from=valid_from,
        valid_until=valid_until,
        usage_limit=usage_limit,
        usage_limit_per_user=usage_limit_per_user,
        is_active=data.get("is_active", True),
        applicable_service_ids=list(data.get("applicable_service_ids") or []),
        provider_id=provider_id,
        created_by=created_by,
    )
    db.add(promo)
    db.flush()
    logger.info(f"Created promo code {promo.code} (provider {provider_id})")
    return promo


def toggle_promo_code(db: Session, promo_code_id: int, provider_id: Optional[int] = None) -> PromoCode:
    promo = db.query(PromoCode).filter(PromoCode.id == promo_code_id).first()
    if not promo:
        raise NotFound("Promo code not found")
    if provider_id is not None and promo.provider_id != provider_id:
        raise PermissionDenied("Promo code belongs to another provider")
    promo.is_active = not promo.is_active
    db.flush()
    return promo


def list_promo_codes(db: Session, provider_id: Optional[int] = None) -> List[PromoCode]:
    query = db.query(PromoCode)
    if provider_id is not None:
        query = query.filter(PromoCode.provider_id == provider_id)
    return query.order_by(PromoCode.created_at.desc()).all()
