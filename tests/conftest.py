"""
Test configuration and fixtures
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENABLE_BACKGROUND_SWEEPS"] = "false"

import pytest
from datetime import date, datetime, timedelta
from decimal import Decimal
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.core.config import SettlementConfig
from app.core.database import Base, get_db
from app.core.payment import ChargeResult, PaymentGateway, get_payment_gateway
from app.core.security import create_access_token
from app.models.models import DiscountType, PromoCode, Service, ServiceProvider, User, UserRole
from app.services import wallet_service
from app.services.notification_service import NotificationService
from app.services.settlement_service import SettlementCoordinator


# Create an in-memory SQLite database for testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FakeGateway(PaymentGateway):
    """Records charges; succeeds unless `succeed` is switched off"""

    def __init__(self, succeed: bool = True, error_code: str = "card_declined"):
        self.succeed = succeed
        self.error_code = error_code
        self.charges = []
        self.before_return = None

    def charge(self, amount, method, metadata=None):
        self.charges.append({"amount": amount, "method": method, "metadata": metadata or {}})
        number = len(self.charges)
        if self.before_return:
            self.before_return()
        if not self.succeed:
            return ChargeResult(success=False, error_code=self.error_code)
        return ChargeResult(success=True, transaction_reference=f"TXN-{number}")


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def settlement_config():
    return SettlementConfig()


@pytest.fixture
def coordinator(db, settlement_config, gateway):
    return SettlementCoordinator(db, settlement_config, gateway, NotificationService(db))


@pytest.fixture(scope="function")
def client(db, gateway):
    """Create a test client with overridden database and gateway dependencies"""
    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    with TestClient(app=app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_user(db, email, role, full_name=None):
    user = User(email=email, full_name=full_name or email.split("@")[0], role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def auth_headers_for(user):
    token = create_access_token({"sub": user.id, "role": user.role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def fund_wallet(db):
    """Credit a wallet directly, bypassing the gateway"""
    def _fund(user, amount):
        wallet_service.credit(db, user.id, Decimal(str(amount)), description="Test funding")
        db.commit()
    return _fund


@pytest.fixture
def test_client_user(db):
    return make_user(db, "client@test.com", UserRole.CLIENT, "Test Client")


@pytest.fixture
def other_client_user(db):
    return make_user(db, "other@test.com", UserRole.CLIENT, "Other Client")


@pytest.fixture
def test_admin_user(db):
    return make_user(db, "admin@test.com", UserRole.ADMIN, "Test Admin")


@pytest.fixture
def test_provider_user(db):
    return make_user(db, "provider@test.com", UserRole.PROVIDER, "Test Provider")


@pytest.fixture
def test_provider(db, test_provider_user):
    """Provider with a 10% commission rate and bank details on file"""
    provider = ServiceProvider(
        user_id=test_provider_user.id,
        business_name="Glow Studio",
        commission_rate=Decimal("10"),
        bank_account_title="Glow Studio LLC",
        bank_account_number="0001234567",
        bank_iban="SA0380000000608010167519",
    )
    db.add(provider)
    db.commit()
    db.refresh(provider)
    return provider


@pytest.fixture
def other_provider(db):
    user = make_user(db, "provider2@test.com", UserRole.PROVIDER, "Other Provider")
    provider = ServiceProvider(user_id=user.id, business_name="Other Studio", commission_rate=Decimal("10"))
    db.add(provider)
    db.commit()
    db.refresh(provider)
    return provider


@pytest.fixture
def haircut(db, test_provider):
    service = Service(provider_id=test_provider.id, name="Haircut", price=Decimal("150.00"), duration_minutes=60)
    db.add(service)
    db.commit()
    db.refresh(service)
    return service


@pytest.fixture
def coloring(db, test_provider):
    service = Service(provider_id=test_provider.id, name="Coloring", price=Decimal("250.00"), duration_minutes=90)
    db.add(service)
    db.commit()
    db.refresh(service)
    return service


@pytest.fixture
def save20(db):
    """20% off, capped at 50, once per user"""
    promo = PromoCode(
        code="SAVE20",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=Decimal("20"),
        max_discount_amount=Decimal("50"),
        valid_from=date.today() - timedelta(days=1),
        valid_until=date.today() + timedelta(days=30),
        usage_limit=100,
        usage_limit_per_user=1,
        applicable_service_ids=[],
    )
    db.add(promo)
    db.commit()
    db.refresh(promo)
    return promo


@pytest.fixture
def start_time():
    return datetime.utcnow() + timedelta(days=5)


@pytest.fixture
def client_headers(test_client_user):
    return auth_headers_for(test_client_user)


@pytest.fixture
def provider_headers(test_provider_user, test_provider):
    return auth_headers_for(test_provider_user)


@pytest.fixture
def admin_headers(test_admin_user):
    return auth_headers_for(test_admin_user)


@pytest.fixture
def other_client_headers(other_client_user):
    return auth_headers_for(other_client_user)
