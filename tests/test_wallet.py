"""
Unit tests for the wallet ledger and wallet endpoints
"""
import pytest
from datetime import timedelta
from decimal import Decimal
from fastapi import status

from app.core.exceptions import InsufficientFunds, LedgerCorrupted, PaymentFailed, ValidationFailed
from app.models.models import (
    DepositStatus, RelatedType, WalletDeposit, WalletTransaction, WalletTransactionType,
)
from app.services import wallet_service


@pytest.mark.unit
class TestWalletLedger:
    """Tests for wallet debits, credits and replay"""

    def test_empty_wallet_is_zero(self, db, test_client_user):
        assert wallet_service.current_balance(db, test_client_user.id) == Decimal("0.00")

    def test_credit_then_debit_chain(self, db, test_client_user):
        wallet_service.credit(db, test_client_user.id, Decimal("100"))
        wallet_service.debit(db, test_client_user.id, Decimal("40"), related_type=RelatedType.BOOKING, related_id=1)
        wallet_service.credit(db, test_client_user.id, Decimal("15.50"), related_type=RelatedType.BOOKING,
                              related_id=1, transaction_type=WalletTransactionType.REFUND)
        db.commit()

        rows = db.query(WalletTransaction).order_by(WalletTransaction.id).all()
        assert [row.type for row in rows] == ["deposit", "payment", "refund"]
        assert [Decimal(str(row.amount)) for row in rows] == [Decimal("100"), Decimal("-40"), Decimal("15.5")]
        for previous, row in zip(rows, rows[1:]):
            assert Decimal(str(row.balance_before)) == Decimal(str(previous.balance_after))

        assert wallet_service.current_balance(db, test_client_user.id) == Decimal("75.50")
        assert wallet_service.replay(db, test_client_user.id) == Decimal("75.50")

    def test_insufficient_funds_writes_nothing(self, db, test_client_user, fund_wallet):
        fund_wallet(test_client_user, 100)

        with pytest.raises(InsufficientFunds):
            wallet_service.debit(db, test_client_user.id, Decimal("150"))
        db.rollback()

        assert db.query(WalletTransaction).count() == 1
        assert wallet_service.current_balance(db, test_client_user.id) == Decimal("100.00")

    def test_debit_exact_balance(self, db, test_client_user, fund_wallet):
        fund_wallet(test_client_user, 100)
        transaction = wallet_service.debit(db, test_client_user.id, Decimal("100"))
        assert transaction.balance_after == Decimal("0.00")

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5")])
    def test_non_positive_amounts_rejected(self, db, test_client_user, amount):
        with pytest.raises(ValidationFailed):
            wallet_service.credit(db, test_client_user.id, amount)

    def test_debit_type_must_be_a_debit(self, db, test_client_user):
        with pytest.raises(ValidationFailed):
            wallet_service.debit(db, test_client_user.id, Decimal("5"), transaction_type=WalletTransactionType.REFUND)

    def test_latest_row_follows_insertion_order(self, db, test_client_user, fund_wallet):
        fund_wallet(test_client_user, 100)
        wallet_service.debit(db, test_client_user.id, Decimal("40"))
        db.commit()
        first, second = db.query(WalletTransaction).order_by(WalletTransaction.id).all()
        # a host with a slow clock stamps the newer row earlier
        second.created_at = first.created_at - timedelta(hours=1)
        db.commit()

        assert wallet_service.current_balance(db, test_client_user.id) == Decimal("60.00")
        assert wallet_service.replay(db, test_client_user.id) == Decimal("60.00")

    def test_replay_detects_broken_chain(self, db, test_client_user, fund_wallet):
        fund_wallet(test_client_user, 50)
        db.add(WalletTransaction(
            user_id=test_client_user.id,
            type=WalletTransactionType.DEPOSIT,
            amount=Decimal("10"),
            balance_before=Decimal("999"),
            balance_after=Decimal("1009"),
        ))
        db.commit()

        with pytest.raises(LedgerCorrupted):
            wallet_service.replay(db, test_client_user.id)

    def test_booking_paid_at_most_once(self, db, test_client_user, fund_wallet):
        fund_wallet(test_client_user, 500)
        wallet_service.debit(db, test_client_user.id, Decimal("10"), related_type=RelatedType.BOOKING, related_id=7)
        db.commit()

        with pytest.raises(Exception):
            wallet_service.debit(db, test_client_user.id, Decimal("10"), related_type=RelatedType.BOOKING, related_id=7)
            db.commit()
        db.rollback()


@pytest.mark.unit
class TestDeposits:
    """Tests for gateway-backed wallet top-ups"""

    def test_successful_deposit(self, db, coordinator, gateway, test_client_user):
        deposit = coordinator.deposit(test_client_user.id, Decimal("250"))

        assert deposit.status == DepositStatus.SUCCESS
        assert deposit.gateway_reference == "TXN-1"
        assert deposit.wallet_transaction_id is not None
        assert gateway.charges[0]["amount"] == Decimal("250.00")
        assert wallet_service.current_balance(db, test_client_user.id) == Decimal("250.00")

    def test_failed_deposit_credits_nothing(self, db, coordinator, gateway, test_client_user):
        gateway.succeed = False

        with pytest.raises(PaymentFailed):
            coordinator.deposit(test_client_user.id, Decimal("250"))

        deposit = db.query(WalletDeposit).one()
        assert deposit.status == DepositStatus.FAILED
        assert deposit.error_code == "card_declined"
        assert wallet_service.current_balance(db, test_client_user.id) == Decimal("0.00")


@pytest.mark.unit
class TestWalletEndpoints:
    """Tests for wallet endpoints"""

    def test_balance(self, client, db, client_headers, test_client_user, fund_wallet):
        fund_wallet(test_client_user, 120)

        response = client.get("/api/v1/wallet/balance", headers=client_headers)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert Decimal(data["balance"]) == Decimal("120")
        assert data["currency"] == "SAR"

    def test_transactions_newest_first(self, client, db, client_headers, test_client_user, fund_wallet):
        fund_wallet(test_client_user, 100)
        wallet_service.debit(db, test_client_user.id, Decimal("30"), related_type=RelatedType.BOOKING, related_id=1)
        db.commit()

        response = client.get("/api/v1/wallet/transactions", headers=client_headers)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert [t["type"] for t in data] == ["payment", "deposit"]
        assert Decimal(data[0]["balance_after"]) == Decimal("70")

    def test_transactions_type_filter(self, client, db, client_headers, test_client_user, fund_wallet):
        fund_wallet(test_client_user, 100)
        wallet_service.debit(db, test_client_user.id, Decimal("30"), related_type=RelatedType.BOOKING, related_id=1)
        db.commit()

        response = client.get("/api/v1/wallet/transactions?type_filter=deposit", headers=client_headers)

        assert [t["type"] for t in response.json()] == ["deposit"]

    def test_deposit_endpoint(self, client, client_headers):
        response = client.post("/api/v1/wallet/deposit", headers=client_headers, json={"amount": "75.00"})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "success"

        balance = client.get("/api/v1/wallet/balance", headers=client_headers).json()
        assert Decimal(balance["balance"]) == Decimal("75")

    def test_declined_deposit_is_402(self, client, gateway, client_headers):
        gateway.succeed = False

        response = client.post("/api/v1/wallet/deposit", headers=client_headers, json={"amount": "75.00"})

        assert response.status_code == status.HTTP_402_PAYMENT_REQUIRED
        assert response.json()["code"] == "payment_failed"

    def test_provider_cannot_use_client_wallet(self, client, provider_headers):
        response = client.get("/api/v1/wallet/balance", headers=provider_headers)
        assert response.status_code == status.HTTP_403_FORBIDDEN
