"""
Settlement Coordinator

Orchestrates the promo engine, wallet ledger, booking state machine and
payout engine. Each public operation commits exactly one atomic unit (two
for gateway-backed flows, with the external charge in between) and sends
notifications only after the commit.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import SettlementConfig
from app.core.database import run_atomic
from app.core.exceptions import (
    InvalidStateTransition, NotFound, PaymentFailed, PermissionDenied, PersistenceConflict, ValidationFailed,
)
from app.core.payment import PaymentGateway, PlaceholderPaymentGateway
from app.models.models import (
    Booking, BookingStatus, ChargeStatus, DepositStatus, GatewayCharge, PaymentMethod, RelatedType, Service,
    ServiceProvider, WalletDeposit, WalletTransactionType, WithdrawalRequest,
)
from app.services import booking_service, payout_service, promo_service, wallet_service
from app.services.booking_service import CancellationQuote, CancelledBy, PricedItem
from app.services.notification_service import NotificationEvent, NotificationService
from app.services.payout_service import WithdrawalAction
from app.utils.money import ZERO, to_money

logger = logging.getLogger(__name__)


class SettlementCoordinator:
    def __init__(
        self,
        db: Session,
        config: SettlementConfig,
        gateway: Optional[PaymentGateway] = None,
        notifier: Optional[NotificationService] = None,
    ):
        self.db = db
        self.config = config
        self.gateway = gateway or PlaceholderPaymentGateway()
        self.notifier = notifier or NotificationService(db)

    def _notify(self, user_id: Optional[int], event: str, payload: Optional[Dict[str, Any]] = None):
        try:
            self.notifier.notify(user_id, event, payload)
        except Exception as e:
            logger.error(f"Notifier raised for {event} (user {user_id}): {e}")

    @staticmethod
    def _booking_payload(booking: Booking, **extra) -> Dict[str, Any]:
        payload = {
            "booking_id": booking.id,
            "booking_number": booking.booking_number,
            "status": booking.status,
            "payment_status": booking.payment_status,
            "total_amount": str(booking.total_amount),
        }
        payload.update(extra)
        return payload

    def _provider_user_id(self, provider_id: int) -> Optional[int]:
        provider = self.db.query(ServiceProvider).filter(ServiceProvider.id == provider_id).first()
        return provider.user_id if provider else None

    # ==================== PROMO ====================

    def validate_promo_code(
        self,
        code: str,
        client_id: int,
        order_total,
        service_ids: Iterable[int],
        now: Optional[datetime] = None,
    ) -> promo_service.PromoValidation:
        return promo_service.validate(self.db, code, client_id, order_total, service_ids, now=now)

    # ==================== BOOKINGS ====================

    def get_booking(self, booking_id: int) -> Booking:
        return booking_service.get_booking(self.db, booking_id)

    def _price_items(self, provider_id: int, items: List[Dict[str, Any]]) -> List[PricedItem]:
        if not items:
            raise ValidationFailed("At least one service is required")

        quantities: Dict[int, int] = {}
        for item in items:
            quantity = int(item.get("quantity") or 1)
            if quantity < 1:
                raise ValidationFailed("Quantity must be at least 1")
            service_id = int(item["service_id"])
            quantities[service_id] = quantities.get(service_id, 0) + quantity

        services = self.db.query(Service).filter(
            Service.id.in_(list(quantities)),
            Service.provider_id == provider_id,
            Service.is_active == True,
        ).all()
        if len(services) != len(quantities):
            raise ValidationFailed("One or more services are unavailable for this provider")

        return [
            PricedItem(
                service_id=service.id,
                quantity=quantities[service.id],
                unit_price=to_money(service.price),
                duration_minutes=service.duration_minutes,
            )
            for service in services
        ]

    def create_booking(
        self,
        client_id: int,
        provider_id: int,
        items: List[Dict[str, Any]],
        start_time: datetime,
        promo_code: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Price the items, apply and redeem the promo code and insert a pending
        booking, all in one transaction. A promo that fails at redemption
        rolls back the whole booking.
        """
        now = now or datetime.utcnow()
        if start_time <= now:
            raise ValidationFailed("Booking start time must be in the future")

        def operation() -> Booking:
            provider = self.db.query(ServiceProvider).filter(
                ServiceProvider.id == provider_id,
                ServiceProvider.is_active == True,
            ).first()
            if not provider:
                raise NotFound("Provider not found")

            priced = self._price_items(provider_id, items)
            subtotal = to_money(sum((item.total_price for item in priced), ZERO))

            discount = ZERO
            promo_code_id = None
            if promo_code:
                validation = promo_service.validate(
                    self.db, promo_code, client_id, subtotal, [item.service_id for item in priced], now=now
                )
                if not validation.valid:
                    logger.warning(f"Promo {promo_code} rejected for user {client_id}: {validation.reason}")
                validation.raise_for_reason()
                discount = validation.discount_amount
                promo_code_id = validation.promo_code.id

            booking = booking_service.create_pending(
                self.db, client_id, provider_id, priced, start_time,
                discount_amount=discount,
                tax_rate=self.config.tax_rate,
                config=self.config,
                promo_code_id=promo_code_id,
                notes=notes,
                now=now,
            )
            if promo_code_id:
                promo_service.redeem(self.db, promo_code_id, client_id, booking.id, discount)
            return booking

        booking = run_atomic(self.db, operation)
        logger.info(f"Booking {booking.booking_number} created for client {client_id}")
        self._notify(self._provider_user_id(provider_id), NotificationEvent.BOOKING_CREATED,
                     self._booking_payload(booking))
        return booking

    def pay_booking(
        self,
        booking_id: int,
        client_id: int,
        method: str,
        now: Optional[datetime] = None,
    ) -> Booking:
        now = now or datetime.utcnow()
        if method not in PaymentMethod.ALL:
            raise ValidationFailed(f"Unsupported payment method: {method}")

        if method == PaymentMethod.WALLET:
            booking = run_atomic(self.db, lambda: self._pay_from_wallet(booking_id, client_id, now))
        else:
            booking = self._pay_through_gateway(booking_id, client_id, now)

        logger.info(f"Booking {booking.booking_number} paid via {method}")
        payload = self._booking_payload(booking, payment_method=method)
        self._notify(client_id, NotificationEvent.BOOKING_PAID, payload)
        self._notify(self._provider_user_id(booking.provider_id), NotificationEvent.BOOKING_PAID, payload)
        return booking

    def _load_payable(self, booking_id: int, client_id: int, now: datetime) -> Booking:
        booking = booking_service.get_booking(self.db, booking_id)
        if booking.client_id != client_id:
            raise PermissionDenied("Not your booking")
        booking_service.ensure_payable(booking, now)
        return booking

    def _pay_from_wallet(self, booking_id: int, client_id: int, now: datetime) -> Booking:
        booking = self._load_payable(booking_id, client_id, now)
        amount = to_money(booking.total_amount)
        reference = None
        if amount > ZERO:
            transaction = wallet_service.debit(
                self.db, client_id, amount,
                related_type=RelatedType.BOOKING,
                related_id=booking.id,
                reference_number=booking.booking_number,
                description=f"Payment for booking {booking.booking_number}",
            )
            reference = f"WALLET-{transaction.id}"
        return booking_service.mark_paid(self.db, booking, PaymentMethod.WALLET, reference, now)

    def _pay_through_gateway(self, booking_id: int, client_id: int, now: datetime) -> Booking:
        booking = self._load_payable(booking_id, client_id, now)
        amount = to_money(booking.total_amount)
        booking_number = booking.booking_number
        # nothing may stay locked while the gateway is called
        self.db.rollback()

        if amount <= ZERO:
            return run_atomic(self.db, lambda: booking_service.mark_paid(
                self.db, booking_service.get_booking(self.db, booking_id), PaymentMethod.GATEWAY, None, now
            ))

        def open_charge() -> int:
            charge = GatewayCharge(booking_id=booking_id, user_id=client_id, amount=amount,
                                   status=ChargeStatus.PENDING)
            self.db.add(charge)
            self.db.flush()
            return charge.id

        charge_id = run_atomic(self.db, open_charge)
        result = self.gateway.charge(
            amount, PaymentMethod.GATEWAY,
            {"reference": booking_number, "booking_id": booking_id, "client_id": client_id, "charge_id": charge_id},
        )
        if not result.success:
            run_atomic(self.db, lambda: self._close_charge(charge_id, ChargeStatus.FAILED, result, now))
            logger.warning(f"Gateway charge {charge_id} for booking {booking_number} failed: {result.error_code}")
            raise PaymentFailed("Payment was declined", reason=result.error_code)

        def confirm() -> Booking:
            locked = booking_service.get_booking(self.db, booking_id)
            booking_service.mark_paid(self.db, locked, PaymentMethod.GATEWAY, result.transaction_reference, now)
            self._close_charge(charge_id, ChargeStatus.APPLIED, result, now)
            return locked

        try:
            return run_atomic(self.db, confirm)
        except InvalidStateTransition:
            self._refund_late_charge(charge_id, booking_id, booking_number, client_id, amount, result, now)
            raise

    def _close_charge(self, charge_id: int, status: str, result, now: datetime) -> GatewayCharge:
        charge = self.db.query(GatewayCharge).filter(GatewayCharge.id == charge_id).with_for_update().first()
        charge.status = status
        charge.gateway_reference = result.transaction_reference
        charge.error_code = result.error_code
        charge.completed_at = now
        return charge

    def _refund_late_charge(self, charge_id: int, booking_id: int, booking_number: str, client_id: int, amount,
                            result, now: datetime):
        """The booking moved on while the gateway was charging; keep the money with the client"""
        reference = result.transaction_reference
        logger.warning(
            f"Gateway payment {reference} (charge {charge_id}) for booking {booking_number} arrived after the "
            f"booking left pending; crediting {amount} to wallet of user {client_id}"
        )

        def operation():
            transaction = wallet_service.credit(
                self.db, client_id, amount,
                related_type=RelatedType.GATEWAY_CHARGE,
                related_id=charge_id,
                transaction_type=WalletTransactionType.REFUND,
                reference_number=reference,
                description=f"Refund of late payment for booking {booking_number}",
            )
            charge = self._close_charge(charge_id, ChargeStatus.REFUNDED, result, now)
            charge.wallet_transaction_id = transaction.id

        run_atomic(self.db, operation)
        self._notify(client_id, NotificationEvent.BOOKING_CANCELLED, {
            "booking_id": booking_id,
            "booking_number": booking_number,
            "refund_amount": str(amount),
        })

    def _provider_booking(self, booking_id: int, provider_user_id: int) -> Booking:
        booking = booking_service.get_booking(self.db, booking_id)
        if self._provider_user_id(booking.provider_id) != provider_user_id:
            raise PermissionDenied("Booking belongs to another provider")
        return booking

    def accept_booking(self, booking_id: int, provider_user_id: int, now: Optional[datetime] = None) -> Booking:
        now = now or datetime.utcnow()

        def operation() -> Booking:
            booking = self._provider_booking(booking_id, provider_user_id)
            return booking_service.accept(self.db, booking, now)

        booking = run_atomic(self.db, operation)
        logger.info(f"Booking {booking.booking_number} accepted by provider")
        self._notify(booking.client_id, NotificationEvent.BOOKING_ACCEPTED, self._booking_payload(booking))
        return booking

    def reject_booking(
        self,
        booking_id: int,
        provider_user_id: int,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        now = now or datetime.utcnow()

        def operation() -> Booking:
            booking = self._provider_booking(booking_id, provider_user_id)
            return booking_service.reject(self.db, booking, reason, now)

        booking = run_atomic(self.db, operation)
        logger.info(f"Booking {booking.booking_number} rejected by provider")
        self._notify(booking.client_id, NotificationEvent.BOOKING_REJECTED,
                     self._booking_payload(booking, reason=reason))
        return booking

    def _authorize_cancel(self, booking: Booking, actor: str, actor_id: int):
        if actor == CancelledBy.ADMIN:
            return
        if actor == CancelledBy.CLIENT and booking.client_id == actor_id:
            return
        raise PermissionDenied("You cannot cancel this booking")

    def preview_cancellation(
        self,
        booking_id: int,
        actor: str = CancelledBy.CLIENT,
        actor_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> CancellationQuote:
        """Fee and refund the caller would get by cancelling now; read-only"""
        now = now or datetime.utcnow()
        booking = booking_service.get_booking(self.db, booking_id)
        self._authorize_cancel(booking, actor, actor_id)
        if booking.status in BookingStatus.TERMINAL:
            raise InvalidStateTransition(f"Booking is already {booking.status}")
        return booking_service.quote_cancellation(booking, actor, self.config, now)

    def cancel_booking(
        self,
        booking_id: int,
        actor: str,
        actor_id: int,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[Booking, CancellationQuote]:
        """
        Cancel a pending or confirmed booking. For paid bookings the refund
        (total minus any cancellation fee) is credited to the client wallet in
        the same transaction.
        """
        now = now or datetime.utcnow()

        def operation() -> Tuple[Booking, CancellationQuote]:
            booking = booking_service.get_booking(self.db, booking_id, lock=True)
            self._authorize_cancel(booking, actor, actor_id)
            quote = booking_service.quote_cancellation(booking, actor, self.config, now)
            booking_service.cancel(self.db, booking, actor, reason, quote, now)
            if quote.refund > ZERO:
                wallet_service.credit(
                    self.db, booking.client_id, quote.refund,
                    related_type=RelatedType.BOOKING,
                    related_id=booking.id,
                    transaction_type=WalletTransactionType.REFUND,
                    reference_number=booking.booking_number,
                    description=f"Refund for cancelled booking {booking.booking_number}",
                )
            return booking, quote

        booking, quote = run_atomic(self.db, operation)
        logger.info(
            f"Booking {booking.booking_number} cancelled by {actor}: fee {quote.fee}, refund {quote.refund}"
        )
        payload = self._booking_payload(booking, refund_amount=str(quote.refund), cancellation_fee=str(quote.fee))
        self._notify(booking.client_id, NotificationEvent.BOOKING_CANCELLED, payload)
        self._notify(self._provider_user_id(booking.provider_id), NotificationEvent.BOOKING_CANCELLED, payload)
        return booking, quote

    def complete_booking(
        self,
        booking_id: int,
        provider_user_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Mark a confirmed, paid booking completed and credit the provider's
        earning. Completing an already completed booking changes nothing.
        """
        booking, _ = self._complete(booking_id, provider_user_id, now or datetime.utcnow())
        return booking

    def _complete(self, booking_id: int, provider_user_id: Optional[int], now: datetime) -> Tuple[Booking, bool]:
        def operation() -> Tuple[Booking, bool]:
            booking = booking_service.get_booking(self.db, booking_id, lock=True)
            provider = payout_service.get_provider(self.db, booking.provider_id, lock=True)
            if provider_user_id is not None and provider.user_id != provider_user_id:
                raise PermissionDenied("Booking belongs to another provider")
            if booking.status == BookingStatus.COMPLETED:
                return booking, False

            commission = payout_service.calculate_commission(booking, provider)
            changed = booking_service.complete(self.db, booking, commission, now)
            if changed:
                payout_service.credit_earning(self.db, booking)
            return booking, changed

        booking, changed = run_atomic(self.db, operation)
        if changed:
            logger.info(f"Booking {booking.booking_number} completed, commission {booking.commission_amount}")
            self._notify(self._provider_user_id(booking.provider_id), NotificationEvent.BOOKING_COMPLETED,
                         self._booking_payload(booking, commission_amount=str(booking.commission_amount)))
        return booking, changed

    # ==================== WALLET ====================

    def deposit(self, user_id: int, amount, now: Optional[datetime] = None) -> WalletDeposit:
        """
        Top up a wallet through the gateway. The deposit row is committed
        before the charge so a failed or interrupted charge leaves a trace.
        """
        now = now or datetime.utcnow()
        amount = to_money(amount)
        if amount <= ZERO:
            raise ValidationFailed("Deposit amount must be greater than zero")

        def open_deposit() -> int:
            deposit = WalletDeposit(user_id=user_id, amount=amount, status=DepositStatus.PENDING)
            self.db.add(deposit)
            self.db.flush()
            return deposit.id

        deposit_id = run_atomic(self.db, open_deposit)
        result = self.gateway.charge(
            amount, PaymentMethod.GATEWAY,
            {"reference": f"DEP-{deposit_id}", "deposit_id": deposit_id, "user_id": user_id},
        )

        def settle() -> WalletDeposit:
            deposit = self.db.query(WalletDeposit).filter(WalletDeposit.id == deposit_id).with_for_update().first()
            deposit.gateway_reference = result.transaction_reference
            deposit.completed_at = now
            if not result.success:
                deposit.status = DepositStatus.FAILED
                deposit.error_code = result.error_code
                return deposit
            transaction = wallet_service.credit(
                self.db, user_id, amount,
                related_type=RelatedType.DEPOSIT,
                related_id=deposit.id,
                transaction_type=WalletTransactionType.DEPOSIT,
                reference_number=result.transaction_reference,
                description="Wallet top-up",
            )
            deposit.status = DepositStatus.SUCCESS
            deposit.wallet_transaction_id = transaction.id
            return deposit

        deposit = run_atomic(self.db, settle)
        self._notify(user_id, NotificationEvent.WALLET_DEPOSIT, {
            "deposit_id": deposit.id,
            "amount": str(amount),
            "status": deposit.status,
        })
        if deposit.status == DepositStatus.FAILED:
            logger.warning(f"Deposit {deposit.id} for user {user_id} failed: {deposit.error_code}")
            raise PaymentFailed("Deposit payment was declined", reason=deposit.error_code)

        logger.info(f"Deposit {deposit.id} of {amount} credited to user {user_id}")
        return deposit

    # ==================== PAYOUTS ====================

    def request_withdrawal(
        self,
        provider_id: int,
        amount,
        bank_details: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> WithdrawalRequest:
        request = run_atomic(self.db, lambda: payout_service.request_withdrawal(
            self.db, provider_id, amount, self.config.withdrawal_commission_rate,
            bank_details=bank_details, notes=notes,
        ))
        self._notify(self._provider_user_id(provider_id), NotificationEvent.WITHDRAWAL_REQUESTED, {
            "withdrawal_id": request.id,
            "reference": request.reference,
            "amount": str(request.amount),
        })
        return request

    def review_withdrawal(
        self,
        request_id: int,
        action: str,
        admin_id: int,
        note: Optional[str] = None,
        transaction_reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> WithdrawalRequest:
        """Apply an admin decision: approve, process, reject (note is the reason) or complete"""
        now = now or datetime.utcnow()
        if action not in WithdrawalAction.ALL:
            raise ValidationFailed(f"Invalid action: {action}")

        def operation() -> WithdrawalRequest:
            request = payout_service.get_withdrawal(self.db, request_id, lock=True)
            if action == WithdrawalAction.APPROVE:
                payout_service.approve(self.db, request, admin_id, note, now)
            elif action == WithdrawalAction.PROCESS:
                payout_service.mark_processing(self.db, request, admin_id, note, now)
            elif action == WithdrawalAction.REJECT:
                payout_service.reject(self.db, request, admin_id, note, now)
            else:
                payout_service.complete(self.db, request, admin_id, transaction_reference, note, now)
            self.db.flush()
            return request

        request = run_atomic(self.db, operation)
        logger.info(f"Withdrawal {request.reference} -> {request.status} by admin {admin_id}")
        self._notify(self._provider_user_id(request.provider_id), NotificationEvent.WITHDRAWAL_UPDATED, {
            "withdrawal_id": request.id,
            "reference": request.reference,
            "status": request.status,
            "note": note,
        })
        return request

    # ==================== SWEEPS ====================

    def expire_overdue_bookings(self, now: Optional[datetime] = None) -> int:
        """Cancel pending, unpaid bookings past their payment deadline; returns how many"""
        now = now or datetime.utcnow()
        booking_ids = booking_service.find_overdue_booking_ids(self.db, now)
        self.db.rollback()

        expired = 0
        for booking_id in booking_ids:
            try:
                changed = run_atomic(self.db, lambda bid=booking_id: booking_service.expire(self.db, bid, now))
            except PersistenceConflict:
                logger.warning(f"Expiry of booking {booking_id} conflicted, leaving it for the next sweep")
                continue
            if not changed:
                continue
            expired += 1
            booking = booking_service.get_booking(self.db, booking_id)
            self._notify(booking.client_id, NotificationEvent.BOOKING_EXPIRED, self._booking_payload(booking))

        if expired:
            logger.info(f"Expired {expired} overdue booking(s)")
        return expired

    def complete_finished_bookings(self, now: Optional[datetime] = None) -> int:
        """Complete confirmed, paid bookings whose end time has passed; returns how many"""
        now = now or datetime.utcnow()
        booking_ids = booking_service.find_finished_booking_ids(self.db, now)
        self.db.rollback()

        completed = 0
        for booking_id in booking_ids:
            try:
                _, changed = self._complete(booking_id, None, now)
            except (InvalidStateTransition, PersistenceConflict) as e:
                logger.warning(f"Auto-complete of booking {booking_id} skipped: {e}")
                continue
            if changed:
                completed += 1

        if completed:
            logger.info(f"Auto-completed {completed} booking(s)")
        return completed
