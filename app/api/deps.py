from fastapi import Depends
from sqlalchemy.orm import Session

from app.core.config import SettlementConfig
from app.core.database import get_db
from app.core.payment import PaymentGateway, get_payment_gateway
from app.services.notification_service import NotificationService
from app.services.settlement_service import SettlementCoordinator


def get_settlement_config() -> SettlementConfig:
    return SettlementConfig.from_settings()


def get_coordinator(
    db: Session = Depends(get_db),
    config: SettlementConfig = Depends(get_settlement_config),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> SettlementCoordinator:
    """Coordinator bound to the request's session"""
    return SettlementCoordinator(db, config, gateway, NotificationService(db))
