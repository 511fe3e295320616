from sqlalchemy import (
    Boolean, CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from datetime import datetime
from app.core.config import settings
from app.core.database import Base

MONEY = Numeric(12, 2)


# ==================== ENUM-LIKE CONSTANTS ====================

class UserRole:
    CLIENT = "client"
    PROVIDER = "provider"
    ADMIN = "admin"


class DiscountType:
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"
    FREE_SERVICE = "free_service"

    ALL = (PERCENTAGE, FIXED_AMOUNT, FREE_SERVICE)


class BookingStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    TERMINAL = (COMPLETED, CANCELLED)


class PaymentStatus:
    UNPAID = "unpaid"
    PAID = "paid"
    REFUNDED = "refunded"


class PaymentMethod:
    WALLET = "wallet"
    GATEWAY = "gateway"

    ALL = (WALLET, GATEWAY)


class WalletTransactionType:
    DEPOSIT = "deposit"
    PAYMENT = "payment"
    REFUND = "refund"
    WITHDRAWAL = "withdrawal"

    CREDITS = (DEPOSIT, REFUND)
    DEBITS = (PAYMENT, WITHDRAWAL)


class LedgerEntryType:
    EARNING = "earning"
    WITHDRAWAL = "withdrawal"


class WithdrawalStatus:
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"

    # amounts in these states are reserved against the payable balance
    RESERVED = (PENDING, APPROVED, PROCESSING)


class DepositStatus:
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class ChargeStatus:
    PENDING = "pending"
    FAILED = "failed"
    APPLIED = "applied"  # booking marked paid with this charge
    REFUNDED = "refunded"  # booking left pending first; amount credited to the wallet


class RelatedType:
    BOOKING = "booking"
    DEPOSIT = "deposit"
    GATEWAY_CHARGE = "gateway_charge"  # related_id is a gateway_charges row


# ==================== PARTIES ====================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    role = Column(String, nullable=False, default=UserRole.CLIENT)  # client, provider, admin
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    provider_profile = relationship("ServiceProvider", back_populates="user", uselist=False)
    wallet_transactions = relationship("WalletTransaction", back_populates="user")


class ServiceProvider(Base):
    __tablename__ = "service_providers"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    business_name = Column(String, nullable=False)
    # percent; new providers take the configured platform default
    commission_rate = Column(Numeric(5, 2), nullable=False, default=lambda: settings.DEFAULT_COMMISSION_RATE)
    is_active = Column(Boolean, default=True, nullable=False)

    # Bank details, snapshotted onto each withdrawal request
    bank_account_title = Column(String, nullable=True)
    bank_account_number = Column(String, nullable=True)
    bank_iban = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="provider_profile")
    services = relationship("Service", back_populates="provider")
    bookings = relationship("Booking", back_populates="provider")
    withdrawal_requests = relationship("WithdrawalRequest", back_populates="provider")


class Service(Base):
    __tablename__ = "services"

    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(Integer, ForeignKey("service_providers.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    price = Column(MONEY, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=60)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    provider = relationship("ServiceProvider", back_populates="services")

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_services_price_non_negative"),
    )


# ==================== PROMO CODES ====================

class PromoCode(Base):
    __tablename__ = "promo_codes"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, unique=True, index=True, nullable=False)  # stored upper-case
    description = Column(Text, nullable=True)
    discount_type = Column(String, nullable=False)  # percentage, fixed_amount, free_service
    discount_value = Column(MONEY, nullable=False, default=0)
    free_service_id = Column(Integer, ForeignKey("services.id"), nullable=True)
    max_discount_amount = Column(MONEY, nullable=True)  # cap for percentage codes
    min_order_value = Column(MONEY, nullable=True)
    valid_from = Column(Date, nullable=False)
    valid_until = Column(Date, nullable=False)
    usage_limit = Column(Integer, nullable=True)  # NULL = unlimited
    usage_limit_per_user = Column(Integer, nullable=False, default=1)
    used_count = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    applicable_service_ids = Column(JSON, nullable=True)  # empty/NULL = all services
    provider_id = Column(Integer, ForeignKey("service_providers.id"), nullable=True)  # NULL = platform-wide
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    free_service = relationship("Service", foreign_keys=[free_service_id])
    provider = relationship("ServiceProvider", foreign_keys=[provider_id])
    usages = relationship("PromoCodeUsage", back_populates="promo_code")

    __table_args__ = (
        CheckConstraint("used_count >= 0", name="ck_promo_codes_used_count_non_negative"),
        CheckConstraint(
            "usage_limit IS NULL OR used_count <= usage_limit",
            name="ck_promo_codes_used_within_limit",
        ),
    )


class PromoCodeUsage(Base):
    __tablename__ = "promo_code_usages"

    id = Column(Integer, primary_key=True, index=True)
    promo_code_id = Column(Integer, ForeignKey("promo_codes.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, unique=True)
    discount_amount = Column(MONEY, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    promo_code = relationship("PromoCode", back_populates="usages")


# ==================== BOOKINGS ====================

class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    booking_number = Column(String, unique=True, index=True, nullable=False)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    provider_id = Column(Integer, ForeignKey("service_providers.id"), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)

    status = Column(String, nullable=False, default=BookingStatus.PENDING, index=True)
    payment_status = Column(String, nullable=False, default=PaymentStatus.UNPAID)
    payment_method = Column(String, nullable=True)  # wallet, gateway
    payment_reference = Column(String, nullable=True)

    subtotal = Column(MONEY, nullable=False)
    tax_amount = Column(MONEY, nullable=False, default=0)
    discount_amount = Column(MONEY, nullable=False, default=0)
    total_amount = Column(MONEY, nullable=False)
    commission_amount = Column(MONEY, nullable=False, default=0)  # set once on completion

    payment_deadline = Column(DateTime, nullable=True, index=True)
    promo_code_id = Column(Integer, ForeignKey("promo_codes.id"), nullable=True)
    notes = Column(Text, nullable=True)

    accepted_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String, nullable=True)  # client, admin, provider, system
    cancellation_reason = Column(Text, nullable=True)
    cancellation_fee = Column(MONEY, nullable=False, default=0)
    refund_amount = Column(MONEY, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    client = relationship("User", foreign_keys=[client_id])
    provider = relationship("ServiceProvider", back_populates="bookings")
    items = relationship("BookingItem", back_populates="booking", cascade="all, delete-orphan")
    promo_code = relationship("PromoCode")

    __table_args__ = (
        CheckConstraint("subtotal >= 0", name="ck_bookings_subtotal_non_negative"),
        CheckConstraint("tax_amount >= 0", name="ck_bookings_tax_non_negative"),
        CheckConstraint("discount_amount >= 0", name="ck_bookings_discount_non_negative"),
        CheckConstraint("total_amount >= 0", name="ck_bookings_total_non_negative"),
        CheckConstraint("commission_amount >= 0", name="ck_bookings_commission_non_negative"),
        CheckConstraint(
            "ABS(total_amount - (subtotal + tax_amount - discount_amount)) < 0.005",
            name="ck_bookings_total_consistent",
        ),
    )


class BookingItem(Base):
    __tablename__ = "booking_items"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    service_id = Column(Integer, ForeignKey("services.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(MONEY, nullable=False)
    total_price = Column(MONEY, nullable=False)

    # Relationships
    booking = relationship("Booking", back_populates="items")
    service = relationship("Service")


# ==================== WALLET LEDGER ====================

class WalletTransaction(Base):
    """
    Append-only client wallet ledger. A user's balance is the latest row's
    balance_after; rows are never updated.
    """
    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False)  # deposit, payment, refund, withdrawal
    amount = Column(MONEY, nullable=False)  # positive for credits, negative for debits
    balance_before = Column(MONEY, nullable=False)
    balance_after = Column(MONEY, nullable=False)
    related_type = Column(String, nullable=True)  # booking, deposit, gateway_charge
    related_id = Column(Integer, nullable=True)
    reference_number = Column(String, nullable=True, index=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    # Relationships
    user = relationship("User", back_populates="wallet_transactions")

    __table_args__ = (
        UniqueConstraint("user_id", "type", "related_type", "related_id", name="uq_wallet_tx_once_per_entity"),
        CheckConstraint("balance_after >= 0", name="ck_wallet_tx_balance_non_negative"),
        CheckConstraint("ABS(balance_after - (balance_before + amount)) < 0.005", name="ck_wallet_tx_balance_chain"),
    )


class WalletDeposit(Base):
    __tablename__ = "wallet_deposits"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    status = Column(String, nullable=False, default=DepositStatus.PENDING)  # pending, success, failed
    gateway_reference = Column(String, nullable=True)
    error_code = Column(String, nullable=True)
    wallet_transaction_id = Column(Integer, ForeignKey("wallet_transactions.id"), nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class GatewayCharge(Base):
    """
    One gateway charge attempt for a booking, recorded before the charge is
    made. A charge that arrives after the booking left pending is refunded to
    the wallet against this row, so every charge is accounted for once.
    """
    __tablename__ = "gateway_charges"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    status = Column(String, nullable=False, default=ChargeStatus.PENDING)  # pending, failed, applied, refunded
    gateway_reference = Column(String, nullable=True)
    error_code = Column(String, nullable=True)
    wallet_transaction_id = Column(Integer, ForeignKey("wallet_transactions.id"), nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


# ==================== PROVIDER PAYOUTS ====================

class ProviderLedgerEntry(Base):
    """
    Provider payable-balance ledger: earnings from completed bookings and
    debits for completed withdrawals.
    """
    __tablename__ = "provider_ledger_entries"

    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(Integer, ForeignKey("service_providers.id"), nullable=False, index=True)
    entry_type = Column(String, nullable=False)  # earning, withdrawal
    amount = Column(MONEY, nullable=False)  # signed
    balance_before = Column(MONEY, nullable=False)
    balance_after = Column(MONEY, nullable=False)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True)
    withdrawal_request_id = Column(Integer, ForeignKey("withdrawal_requests.id"), nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        UniqueConstraint("entry_type", "booking_id", name="uq_provider_ledger_booking"),
        UniqueConstraint("entry_type", "withdrawal_request_id", name="uq_provider_ledger_withdrawal"),
        CheckConstraint("balance_after >= 0", name="ck_provider_ledger_non_negative"),
        CheckConstraint("ABS(balance_after - (balance_before + amount)) < 0.005", name="ck_provider_ledger_chain"),
    )


class WithdrawalRequest(Base):
    __tablename__ = "withdrawal_requests"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String, unique=True, nullable=False, index=True)
    provider_id = Column(Integer, ForeignKey("service_providers.id"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    commission_amount = Column(MONEY, nullable=False, default=0)
    net_amount = Column(MONEY, nullable=False)  # amount - commission_amount
    status = Column(String, nullable=False, default=WithdrawalStatus.PENDING, index=True)

    # Bank snapshot captured at request time
    bank_account_title = Column(String, nullable=False)
    bank_account_number = Column(String, nullable=False)
    bank_iban = Column(String, nullable=True)

    notes = Column(Text, nullable=True)  # Notes from provider
    admin_notes = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    approved_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    processed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    processed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    transaction_reference = Column(String, nullable=True)  # Bank transfer reference
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    provider = relationship("ServiceProvider", back_populates="withdrawal_requests")
    approver = relationship("User", foreign_keys=[approved_by])
    processor = relationship("User", foreign_keys=[processed_by])

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_withdrawal_amount_positive"),
        CheckConstraint("net_amount >= 0", name="ck_withdrawal_net_non_negative"),
        CheckConstraint("ABS(net_amount - (amount - commission_amount)) < 0.005", name="ck_withdrawal_net_consistent"),
    )


# ==================== NOTIFICATIONS ====================

class Notification(Base):
    """Stored notifications for in-app display and history."""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    event = Column(String, nullable=False, index=True)  # booking_created, booking_paid, etc.
    payload = Column(Text, nullable=True)  # JSON string
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
