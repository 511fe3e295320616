from __future__ import annotations
from pydantic import BaseModel, Field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List


# Auth schemas
class TokenData(BaseModel):
    user_id: int
    role: Optional[str] = None


# Promo code schemas
class PromoCodeValidateRequest(BaseModel):
    code: str
    order_total: Decimal = Field(ge=0)
    service_ids: List[int] = []


class PromoCodeValidateResponse(BaseModel):
    valid: bool
    message: str
    reason: Optional[str] = None
    discount_amount: Decimal = Decimal("0.00")
    final_amount: Decimal = Decimal("0.00")
    promo_code_id: Optional[int] = None
    discount_type: Optional[str] = None


class PromoCodeCreate(BaseModel):
    code: str = Field(min_length=3, max_length=50)
    description: Optional[str] = None
    discount_type: str  # percentage, fixed_amount, free_service
    discount_value: Decimal = Decimal("0")
    free_service_id: Optional[int] = None
    max_discount_amount: Optional[Decimal] = None
    min_order_value: Optional[Decimal] = None
    valid_from: date
    valid_until: date
    usage_limit: Optional[int] = None
    usage_limit_per_user: int = 1
    is_active: bool = True
    applicable_service_ids: List[int] = []


class PromoCodeResponse(BaseModel):
    id: int
    code: str
    description: Optional[str] = None
    discount_type: str
    discount_value: Decimal
    free_service_id: Optional[int] = None
    max_discount_amount: Optional[Decimal] = None
    min_order_value: Optional[Decimal] = None
    valid_from: date
    valid_until: date
    usage_limit: Optional[int] = None
    usage_limit_per_user: int
    used_count: int
    is_active: bool
    applicable_service_ids: Optional[List[int]] = None
    provider_id: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


# Booking schemas
class BookingItemCreate(BaseModel):
    service_id: int
    quantity: int = Field(default=1, ge=1)


class BookingCreate(BaseModel):
    provider_id: int
    items: List[BookingItemCreate] = Field(min_length=1)
    start_time: datetime
    promo_code: Optional[str] = None
    notes: Optional[str] = None


class BookingItemResponse(BaseModel):
    id: int
    service_id: int
    quantity: int
    unit_price: Decimal
    total_price: Decimal

    class Config:
        from_attributes = True


class BookingResponse(BaseModel):
    id: int
    booking_number: str
    client_id: int
    provider_id: int
    start_time: datetime
    end_time: datetime
    status: str
    payment_status: str
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    commission_amount: Decimal
    payment_deadline: Optional[datetime] = None
    promo_code_id: Optional[int] = None
    notes: Optional[str] = None
    accepted_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancellation_fee: Decimal
    refund_amount: Decimal
    created_at: datetime
    items: List[BookingItemResponse] = []

    class Config:
        from_attributes = True


class BookingPayRequest(BaseModel):
    payment_method: str  # wallet, gateway


class BookingRejectRequest(BaseModel):
    reason: Optional[str] = None


class BookingCancelRequest(BaseModel):
    reason: Optional[str] = None


class CancellationPreviewResponse(BaseModel):
    booking_id: int
    total_amount: Decimal
    cancellation_fee: Decimal
    refund_amount: Decimal
    fee_percent: Decimal
    reason: str
    hours_until_start: Optional[float] = None


# Wallet schemas
class WalletBalanceResponse(BaseModel):
    user_id: int
    balance: Decimal
    currency: str


class WalletTransactionResponse(BaseModel):
    id: int
    type: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    related_type: Optional[str] = None
    related_id: Optional[int] = None
    reference_number: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class WalletDepositRequest(BaseModel):
    amount: Decimal = Field(gt=0)


class WalletDepositResponse(BaseModel):
    id: int
    amount: Decimal
    status: str
    gateway_reference: Optional[str] = None
    wallet_transaction_id: Optional[int] = None
    completed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


# Withdrawal schemas
class PayableBalanceResponse(BaseModel):
    provider_id: int
    ledger_balance: Decimal
    reserved_amount: Decimal
    available_balance: Decimal
    currency: str


class WithdrawalCreate(BaseModel):
    amount: Decimal = Field(gt=0)
    bank_account_title: Optional[str] = None
    bank_account_number: Optional[str] = None
    bank_iban: Optional[str] = None
    notes: Optional[str] = None


class WithdrawalResponse(BaseModel):
    id: int
    reference: str
    provider_id: int
    amount: Decimal
    commission_amount: Decimal
    net_amount: Decimal
    status: str
    bank_account_title: str
    bank_account_number: str
    bank_iban: Optional[str] = None
    notes: Optional[str] = None
    admin_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    transaction_reference: Optional[str] = None
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    processed_by: Optional[int] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class WithdrawalReview(BaseModel):
    action: str  # approve, process, reject, complete
    note: Optional[str] = None
    transaction_reference: Optional[str] = None
