"""
Unit tests for the promo engine and promo code endpoints
"""
import pytest
from datetime import date, datetime, timedelta
from decimal import Decimal
from fastapi import status

from app.core.exceptions import PromoExhausted, PromoExpired, PromoNotApplicable, ValidationFailed
from app.models.models import Booking, DiscountType, PromoCode, PromoCodeUsage
from app.services import promo_service
from app.services.promo_service import (
    FixedAmountDiscount, FreeServiceDiscount, PercentageDiscount, PromoReason, compute_discount,
)


def make_promo(db, code, **overrides):
    values = dict(
        code=code,
        discount_type=DiscountType.FIXED_AMOUNT,
        discount_value=Decimal("30"),
        valid_from=date.today() - timedelta(days=1),
        valid_until=date.today() + timedelta(days=10),
        usage_limit=None,
        usage_limit_per_user=1,
        applicable_service_ids=[],
    )
    values.update(overrides)
    promo = PromoCode(**values)
    db.add(promo)
    db.commit()
    db.refresh(promo)
    return promo


@pytest.mark.unit
class TestComputeDiscount:
    """Tests for the pure discount computation"""

    def test_percentage_capped(self):
        rule = PercentageDiscount(rate=Decimal("20"), cap=Decimal("50"))
        assert compute_discount(rule, Decimal("400")) == Decimal("50.00")

    def test_percentage_under_cap(self):
        rule = PercentageDiscount(rate=Decimal("20"), cap=Decimal("50"))
        assert compute_discount(rule, Decimal("100")) == Decimal("20.00")

    def test_percentage_rounds_half_up(self):
        rule = PercentageDiscount(rate=Decimal("10"))
        assert compute_discount(rule, Decimal("99.95")) == Decimal("10.00")

    def test_fixed_amount_never_exceeds_total(self):
        assert compute_discount(FixedAmountDiscount(amount=Decimal("100")), Decimal("60")) == Decimal("60.00")

    def test_free_service_capped_at_total(self):
        assert compute_discount(FreeServiceDiscount(service_price=Decimal("150")), Decimal("100")) == Decimal("100.00")

    def test_zero_order_total(self):
        assert compute_discount(FixedAmountDiscount(amount=Decimal("10")), Decimal("0")) == Decimal("0.00")


@pytest.mark.unit
class TestPromoValidation:
    """Tests for read-only promo validation"""

    def test_save20_on_400(self, db, test_client_user, haircut, coloring, save20):
        result = promo_service.validate(db, "SAVE20", test_client_user.id, Decimal("400"), [haircut.id, coloring.id])

        assert result.valid is True
        assert result.discount_amount == Decimal("50.00")
        assert Decimal("400") - result.discount_amount == Decimal("350.00")

    def test_lookup_is_case_insensitive(self, db, test_client_user, haircut, save20):
        result = promo_service.validate(db, "  save20 ", test_client_user.id, Decimal("150"), [haircut.id])
        assert result.valid is True

    def test_validation_does_not_consume(self, db, test_client_user, haircut, save20):
        for _ in range(3):
            promo_service.validate(db, "SAVE20", test_client_user.id, Decimal("150"), [haircut.id])

        db.refresh(save20)
        assert save20.used_count == 0
        assert db.query(PromoCodeUsage).count() == 0

    def test_unknown_code(self, db, test_client_user):
        result = promo_service.validate(db, "NOPE", test_client_user.id, Decimal("100"), [])
        assert result.valid is False
        assert result.reason == PromoReason.NOT_FOUND
        with pytest.raises(PromoNotApplicable):
            result.raise_for_reason()

    def test_inactive(self, db, test_client_user):
        make_promo(db, "OFF", is_active=False)
        result = promo_service.validate(db, "OFF", test_client_user.id, Decimal("100"), [])
        assert result.reason == PromoReason.INACTIVE
        with pytest.raises(PromoExpired):
            result.raise_for_reason()

    def test_not_yet_valid(self, db, test_client_user):
        make_promo(db, "SOON", valid_from=date.today() + timedelta(days=2))
        result = promo_service.validate(db, "SOON", test_client_user.id, Decimal("100"), [])
        assert result.reason == PromoReason.NOT_YET_VALID

    def test_expired(self, db, test_client_user):
        make_promo(db, "OLD", valid_from=date.today() - timedelta(days=10), valid_until=date.today() - timedelta(days=1))
        result = promo_service.validate(db, "OLD", test_client_user.id, Decimal("100"), [])
        assert result.reason == PromoReason.EXPIRED

    def test_valid_until_is_inclusive(self, db, test_client_user):
        make_promo(db, "LASTDAY", valid_until=date.today())
        result = promo_service.validate(db, "LASTDAY", test_client_user.id, Decimal("100"), [])
        assert result.valid is True

    def test_usage_limit_reached(self, db, test_client_user):
        make_promo(db, "GONE", usage_limit=5, used_count=5)
        result = promo_service.validate(db, "GONE", test_client_user.id, Decimal("100"), [])
        assert result.reason == PromoReason.USAGE_LIMIT_REACHED
        with pytest.raises(PromoExhausted):
            result.raise_for_reason()

    def test_min_order_not_met(self, db, test_client_user):
        make_promo(db, "BIG", min_order_value=Decimal("200"))
        result = promo_service.validate(db, "BIG", test_client_user.id, Decimal("199.99"), [])
        assert result.reason == PromoReason.MIN_ORDER_NOT_MET

    def test_not_applicable_to_services(self, db, test_client_user, haircut, coloring):
        make_promo(db, "COLOR", applicable_service_ids=[coloring.id])
        result = promo_service.validate(db, "COLOR", test_client_user.id, Decimal("150"), [haircut.id])
        assert result.reason == PromoReason.NOT_APPLICABLE

    def test_provider_mismatch(self, db, test_client_user, haircut, other_provider):
        make_promo(db, "THEIRS", provider_id=other_provider.id)
        result = promo_service.validate(db, "THEIRS", test_client_user.id, Decimal("150"), [haircut.id])
        assert result.reason == PromoReason.PROVIDER_MISMATCH

    def test_first_failing_check_wins(self, db, test_client_user):
        make_promo(db, "BOTH", is_active=False, valid_until=date.today() - timedelta(days=1),
                   valid_from=date.today() - timedelta(days=5))
        result = promo_service.validate(db, "BOTH", test_client_user.id, Decimal("100"), [])
        assert result.reason == PromoReason.INACTIVE


@pytest.mark.unit
class TestPromoRedemption:
    """Tests for authoritative redemption"""

    def test_booking_with_promo_redeems_once(self, db, coordinator, test_client_user, haircut, coloring, save20, start_time):
        booking = coordinator.create_booking(
            test_client_user.id, haircut.provider_id,
            [{"service_id": haircut.id}, {"service_id": coloring.id}],
            start_time, promo_code="SAVE20",
        )

        db.refresh(save20)
        assert save20.used_count == 1
        usage = db.query(PromoCodeUsage).one()
        assert usage.booking_id == booking.id
        assert usage.discount_amount == Decimal("50.00")
        assert booking.promo_code_id == save20.id

    def test_second_use_by_same_client_is_exhausted(self, db, coordinator, test_client_user, haircut, save20, start_time):
        coordinator.create_booking(test_client_user.id, haircut.provider_id, [{"service_id": haircut.id}],
                                   start_time, promo_code="SAVE20")

        with pytest.raises(PromoExhausted) as exc_info:
            coordinator.create_booking(test_client_user.id, haircut.provider_id, [{"service_id": haircut.id}],
                                       start_time, promo_code="SAVE20")

        assert exc_info.value.reason == PromoReason.USER_LIMIT_REACHED
        db.refresh(save20)
        assert save20.used_count == 1
        assert db.query(Booking).count() == 1

    def test_redeem_rechecks_global_limit(self, db, coordinator, test_client_user, haircut, start_time):
        promo = make_promo(db, "ONCE", usage_limit=1, used_count=1)
        booking = coordinator.create_booking(test_client_user.id, haircut.provider_id,
                                             [{"service_id": haircut.id}], start_time)

        with pytest.raises(PromoExhausted):
            promo_service.redeem(db, promo.id, test_client_user.id, booking.id, Decimal("30"))
        db.rollback()

        db.refresh(promo)
        assert promo.used_count == 1
        assert db.query(PromoCodeUsage).count() == 0

    def test_redeem_rechecks_per_user_limit(self, db, coordinator, test_client_user, haircut, start_time):
        promo = make_promo(db, "PERUSER", usage_limit_per_user=1)
        first = coordinator.create_booking(test_client_user.id, haircut.provider_id,
                                           [{"service_id": haircut.id}], start_time, promo_code="PERUSER")
        second = coordinator.create_booking(test_client_user.id, haircut.provider_id,
                                            [{"service_id": haircut.id}], start_time)
        assert first.promo_code_id == promo.id

        with pytest.raises(PromoExhausted):
            promo_service.redeem(db, promo.id, test_client_user.id, second.id, Decimal("30"))
        db.rollback()

        db.refresh(promo)
        assert promo.used_count == 1


@pytest.mark.unit
class TestPromoAdministration:
    """Tests for promo code creation and toggling"""

    def test_rejects_percentage_over_100(self, db, test_admin_user):
        with pytest.raises(ValidationFailed):
            promo_service.create_promo_code(db, {
                "code": "TOOMUCH",
                "discount_type": DiscountType.PERCENTAGE,
                "discount_value": Decimal("120"),
                "valid_from": date.today(),
                "valid_until": date.today(),
            }, created_by=test_admin_user.id)

    def test_rejects_inverted_dates(self, db, test_admin_user):
        with pytest.raises(ValidationFailed):
            promo_service.create_promo_code(db, {
                "code": "BACKWARDS",
                "discount_type": DiscountType.FIXED_AMOUNT,
                "discount_value": Decimal("10"),
                "valid_from": date.today(),
                "valid_until": date.today() - timedelta(days=1),
            }, created_by=test_admin_user.id)

    def test_free_service_requires_service(self, db, test_admin_user):
        with pytest.raises(ValidationFailed):
            promo_service.create_promo_code(db, {
                "code": "FREEBIE",
                "discount_type": DiscountType.FREE_SERVICE,
                "valid_from": date.today(),
                "valid_until": date.today(),
            }, created_by=test_admin_user.id)


@pytest.mark.unit
class TestPromoCodeEndpoints:
    """Tests for promo code endpoints"""

    def test_validate_endpoint(self, client, client_headers, haircut, coloring, save20):
        response = client.post(
            "/api/v1/promo-codes/validate",
            headers=client_headers,
            json={"code": "save20", "order_total": "400.00", "service_ids": [haircut.id, coloring.id]},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["valid"] is True
        assert Decimal(data["discount_amount"]) == Decimal("50")
        assert Decimal(data["final_amount"]) == Decimal("350")

    def test_validate_endpoint_reports_reason(self, client, client_headers):
        response = client.post(
            "/api/v1/promo-codes/validate",
            headers=client_headers,
            json={"code": "MISSING", "order_total": "100", "service_ids": []},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["valid"] is False
        assert data["reason"] == "not_found"

    def test_validate_requires_auth(self, client):
        response = client.post("/api/v1/promo-codes/validate", json={"code": "X", "order_total": "1"})
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_provider_creates_scoped_code(self, client, provider_headers, test_provider):
        response = client.post(
            "/api/v1/promo-codes",
            headers=provider_headers,
            json={
                "code": "glow10",
                "discount_type": "percentage",
                "discount_value": "10",
                "valid_from": date.today().isoformat(),
                "valid_until": (date.today() + timedelta(days=7)).isoformat(),
            },
        )

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["code"] == "GLOW10"
        assert data["provider_id"] == test_provider.id
        assert data["used_count"] == 0

    def test_invalid_percentage_is_422(self, client, admin_headers):
        response = client.post(
            "/api/v1/promo-codes",
            headers=admin_headers,
            json={
                "code": "HALFOFF",
                "discount_type": "percentage",
                "discount_value": "150",
                "valid_from": date.today().isoformat(),
                "valid_until": date.today().isoformat(),
            },
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["code"] == "validation_failed"

    def test_client_cannot_create(self, client, client_headers):
        response = client.post(
            "/api/v1/promo-codes",
            headers=client_headers,
            json={
                "code": "MINE",
                "discount_type": "fixed_amount",
                "discount_value": "10",
                "valid_from": date.today().isoformat(),
                "valid_until": date.today().isoformat(),
            },
        )
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_toggle_other_providers_code_forbidden(self, client, db, provider_headers, other_provider):
        promo = make_promo(db, "NOTYOURS", provider_id=other_provider.id)
        response = client.patch(f"/api/v1/promo-codes/{promo.id}/toggle", headers=provider_headers)
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_admin_toggle(self, client, db, admin_headers, save20):
        response = client.patch(f"/api/v1/promo-codes/{save20.id}/toggle", headers=admin_headers)
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["is_active"] is False

    def test_provider_lists_only_own_codes(self, client, db, provider_headers, test_provider, other_provider, save20):
        make_promo(db, "MINEONLY", provider_id=test_provider.id)
        make_promo(db, "THEIRSONLY", provider_id=other_provider.id)

        response = client.get("/api/v1/promo-codes", headers=provider_headers)

        assert response.status_code == status.HTTP_200_OK
        codes = [p["code"] for p in response.json()]
        assert codes == ["MINEONLY"]
