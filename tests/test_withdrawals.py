"""
Unit tests for provider payable balances and withdrawal requests
"""
import pytest
from datetime import timedelta
from decimal import Decimal
from fastapi import status

from app.core.config import SettlementConfig
from app.core.exceptions import InsufficientPayableBalance, InvalidStateTransition, ValidationFailed
from app.models.models import LedgerEntryType, ProviderLedgerEntry, WithdrawalStatus
from app.services import payout_service
from app.services.payout_service import WithdrawalAction
from app.services.settlement_service import SettlementCoordinator


@pytest.fixture
def earnings(db, test_provider):
    """Seed the provider's payable ledger with 1000"""
    db.add(ProviderLedgerEntry(
        provider_id=test_provider.id,
        entry_type=LedgerEntryType.EARNING,
        amount=Decimal("1000.00"),
        balance_before=Decimal("0.00"),
        balance_after=Decimal("1000.00"),
        description="Seeded earnings",
    ))
    db.commit()
    return Decimal("1000.00")


@pytest.mark.unit
class TestWithdrawalRequests:
    """Tests for requesting withdrawals against the payable balance"""

    def test_cannot_exceed_payable_balance(self, db, coordinator, test_provider, earnings):
        with pytest.raises(InsufficientPayableBalance):
            coordinator.request_withdrawal(test_provider.id, Decimal("1200"))

        assert payout_service.list_withdrawals(db, provider_id=test_provider.id) == []

    def test_request_reserves_amount(self, db, coordinator, test_provider, earnings):
        request = coordinator.request_withdrawal(test_provider.id, Decimal("800"))

        assert request.status == WithdrawalStatus.PENDING
        assert request.reference.startswith("WD-")
        assert request.net_amount == Decimal("800.00")
        assert request.bank_account_title == "Glow Studio LLC"
        assert payout_service.ledger_balance(db, test_provider.id) == Decimal("1000.00")
        assert payout_service.payable_balance(db, test_provider.id) == Decimal("200.00")

    def test_second_request_sees_reservation(self, coordinator, test_provider, earnings):
        coordinator.request_withdrawal(test_provider.id, Decimal("800"))
        with pytest.raises(InsufficientPayableBalance):
            coordinator.request_withdrawal(test_provider.id, Decimal("300"))

    def test_withdrawal_commission(self, db, gateway, test_provider, earnings):
        coordinator = SettlementCoordinator(db, SettlementConfig(withdrawal_commission_rate=Decimal("2")), gateway)

        request = coordinator.request_withdrawal(test_provider.id, Decimal("800"))

        assert request.commission_amount == Decimal("16.00")
        assert request.net_amount == Decimal("784.00")

    def test_bank_details_override_profile(self, coordinator, test_provider, earnings):
        request = coordinator.request_withdrawal(
            test_provider.id, Decimal("100"), bank_details={"bank_account_number": "999", "bank_iban": None}
        )
        assert request.bank_account_number == "999"
        assert request.bank_iban == test_provider.bank_iban

    def test_missing_bank_details(self, db, coordinator, other_provider):
        db.add(ProviderLedgerEntry(
            provider_id=other_provider.id,
            entry_type=LedgerEntryType.EARNING,
            amount=Decimal("100.00"),
            balance_before=Decimal("0.00"),
            balance_after=Decimal("100.00"),
        ))
        db.commit()

        with pytest.raises(ValidationFailed):
            coordinator.request_withdrawal(other_provider.id, Decimal("50"))

    def test_non_positive_amount(self, coordinator, test_provider, earnings):
        with pytest.raises(ValidationFailed):
            coordinator.request_withdrawal(test_provider.id, Decimal("0"))

    def test_ledger_balance_follows_insertion_order(self, db, test_provider, earnings):
        seeded = db.query(ProviderLedgerEntry).one()
        db.add(ProviderLedgerEntry(
            provider_id=test_provider.id,
            entry_type=LedgerEntryType.EARNING,
            amount=Decimal("50.00"),
            balance_before=Decimal("1000.00"),
            balance_after=Decimal("1050.00"),
            created_at=seeded.created_at - timedelta(hours=1),
        ))
        db.commit()

        assert payout_service.ledger_balance(db, test_provider.id) == Decimal("1050.00")


@pytest.mark.unit
class TestWithdrawalReview:
    """Tests for the admin review flow"""

    def test_approve_process_complete(self, db, coordinator, test_provider, test_admin_user, earnings):
        request = coordinator.request_withdrawal(test_provider.id, Decimal("800"))

        coordinator.review_withdrawal(request.id, WithdrawalAction.APPROVE, test_admin_user.id, note="ok")
        coordinator.review_withdrawal(request.id, WithdrawalAction.PROCESS, test_admin_user.id)
        completed = coordinator.review_withdrawal(
            request.id, WithdrawalAction.COMPLETE, test_admin_user.id, transaction_reference="BANK-123"
        )

        assert completed.status == WithdrawalStatus.COMPLETED
        assert completed.transaction_reference == "BANK-123"
        assert completed.approved_by == test_admin_user.id
        assert completed.completed_at is not None

        debit = db.query(ProviderLedgerEntry).filter(
            ProviderLedgerEntry.entry_type == LedgerEntryType.WITHDRAWAL
        ).one()
        assert debit.amount == Decimal("-800.00")
        assert debit.withdrawal_request_id == request.id
        assert payout_service.ledger_balance(db, test_provider.id) == Decimal("200.00")
        assert payout_service.payable_balance(db, test_provider.id) == Decimal("200.00")

    def test_complete_straight_from_approved(self, db, coordinator, test_provider, test_admin_user, earnings):
        request = coordinator.request_withdrawal(test_provider.id, Decimal("100"))
        coordinator.review_withdrawal(request.id, WithdrawalAction.APPROVE, test_admin_user.id)

        completed = coordinator.review_withdrawal(
            request.id, WithdrawalAction.COMPLETE, test_admin_user.id, transaction_reference="BANK-1"
        )

        assert completed.status == WithdrawalStatus.COMPLETED

    def test_complete_requires_reference(self, coordinator, test_provider, test_admin_user, earnings):
        request = coordinator.request_withdrawal(test_provider.id, Decimal("100"))
        coordinator.review_withdrawal(request.id, WithdrawalAction.APPROVE, test_admin_user.id)

        with pytest.raises(ValidationFailed):
            coordinator.review_withdrawal(request.id, WithdrawalAction.COMPLETE, test_admin_user.id)

    def test_reject_releases_reservation(self, db, coordinator, test_provider, test_admin_user, earnings):
        request = coordinator.request_withdrawal(test_provider.id, Decimal("800"))

        rejected = coordinator.review_withdrawal(
            request.id, WithdrawalAction.REJECT, test_admin_user.id, note="IBAN mismatch"
        )

        assert rejected.status == WithdrawalStatus.REJECTED
        assert rejected.rejection_reason == "IBAN mismatch"
        assert payout_service.payable_balance(db, test_provider.id) == Decimal("1000.00")

    def test_reject_requires_reason(self, coordinator, test_provider, test_admin_user, earnings):
        request = coordinator.request_withdrawal(test_provider.id, Decimal("100"))
        with pytest.raises(ValidationFailed):
            coordinator.review_withdrawal(request.id, WithdrawalAction.REJECT, test_admin_user.id, note="  ")

    def test_cannot_complete_pending(self, coordinator, test_provider, test_admin_user, earnings):
        request = coordinator.request_withdrawal(test_provider.id, Decimal("100"))
        with pytest.raises(InvalidStateTransition):
            coordinator.review_withdrawal(
                request.id, WithdrawalAction.COMPLETE, test_admin_user.id, transaction_reference="BANK-1"
            )

    def test_cannot_reject_processing(self, coordinator, test_provider, test_admin_user, earnings):
        request = coordinator.request_withdrawal(test_provider.id, Decimal("100"))
        coordinator.review_withdrawal(request.id, WithdrawalAction.APPROVE, test_admin_user.id)
        coordinator.review_withdrawal(request.id, WithdrawalAction.PROCESS, test_admin_user.id)

        with pytest.raises(InvalidStateTransition):
            coordinator.review_withdrawal(request.id, WithdrawalAction.REJECT, test_admin_user.id, note="late")

    def test_unknown_action(self, coordinator, test_provider, test_admin_user, earnings):
        request = coordinator.request_withdrawal(test_provider.id, Decimal("100"))
        with pytest.raises(ValidationFailed):
            coordinator.review_withdrawal(request.id, "cancel", test_admin_user.id)


@pytest.mark.unit
class TestWithdrawalEndpoints:
    """Tests for withdrawal endpoints"""

    def test_balance(self, client, provider_headers, earnings):
        response = client.get("/api/v1/withdrawals/balance", headers=provider_headers)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert Decimal(data["ledger_balance"]) == Decimal("1000")
        assert Decimal(data["available_balance"]) == Decimal("1000")

    def test_request_and_list(self, client, provider_headers, earnings):
        created = client.post("/api/v1/withdrawals", headers=provider_headers, json={"amount": "250"})
        assert created.status_code == status.HTTP_200_OK
        assert created.json()["status"] == "pending"

        listed = client.get("/api/v1/withdrawals?status_filter=pending", headers=provider_headers)
        assert [w["id"] for w in listed.json()] == [created.json()["id"]]

        balance = client.get("/api/v1/withdrawals/balance", headers=provider_headers).json()
        assert Decimal(balance["reserved_amount"]) == Decimal("250")
        assert Decimal(balance["available_balance"]) == Decimal("750")

    def test_over_balance_request(self, client, provider_headers, earnings):
        response = client.post("/api/v1/withdrawals", headers=provider_headers, json={"amount": "1200"})

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["code"] == "insufficient_payable_balance"

    def test_admin_review(self, client, provider_headers, admin_headers, earnings):
        withdrawal_id = client.post("/api/v1/withdrawals", headers=provider_headers, json={"amount": "250"}).json()["id"]

        response = client.post(f"/api/v1/withdrawals/{withdrawal_id}/review", headers=admin_headers,
                               json={"action": "approve"})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "approved"

    def test_invalid_review_is_409(self, client, provider_headers, admin_headers, earnings):
        withdrawal_id = client.post("/api/v1/withdrawals", headers=provider_headers, json={"amount": "250"}).json()["id"]

        response = client.post(f"/api/v1/withdrawals/{withdrawal_id}/review", headers=admin_headers,
                               json={"action": "complete", "transaction_reference": "BANK-1"})

        assert response.status_code == status.HTTP_409_CONFLICT

    def test_provider_cannot_review(self, client, provider_headers, earnings):
        withdrawal_id = client.post("/api/v1/withdrawals", headers=provider_headers, json={"amount": "250"}).json()["id"]

        response = client.post(f"/api/v1/withdrawals/{withdrawal_id}/review", headers=provider_headers,
                               json={"action": "approve"})

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_client_cannot_withdraw(self, client, client_headers):
        response = client.post("/api/v1/withdrawals", headers=client_headers, json={"amount": "10"})
        assert response.status_code == status.HTTP_403_FORBIDDEN
