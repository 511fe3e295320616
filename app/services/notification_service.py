"""
Notification Service - records settlement events for users

Notification Types:
- BOOKING_CREATED: client created a booking (sent to the provider)
- BOOKING_PAID: booking payment captured (client and provider)
- BOOKING_ACCEPTED / BOOKING_REJECTED: provider response (client)
- BOOKING_CANCELLED: booking cancelled by client, admin or the expiry sweep
- BOOKING_COMPLETED: service delivered, earning credited (provider)
- WALLET_DEPOSIT: wallet top-up succeeded or failed (client)
- WITHDRAWAL_REQUESTED / WITHDRAWAL_UPDATED: payout lifecycle (provider)

notify() runs after the financial transaction has committed. A failure here
is logged and swallowed; it never undoes a settlement.
"""
import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.models.models import Notification

logger = logging.getLogger(__name__)


class NotificationEvent:
    """Notification event constants"""
    BOOKING_CREATED = "booking_created"
    BOOKING_PAID = "booking_paid"
    BOOKING_ACCEPTED = "booking_accepted"
    BOOKING_REJECTED = "booking_rejected"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_EXPIRED = "booking_expired"
    BOOKING_COMPLETED = "booking_completed"
    WALLET_DEPOSIT = "wallet_deposit"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_UPDATED = "withdrawal_updated"


class NotificationService:
    """Persists in-app notifications"""

    def __init__(self, db: Session):
        self.db = db

    def _save_notification(self, user_id: int, event: str, payload: Optional[Dict[str, Any]]) -> Notification:
        notification = Notification(
            user_id=user_id,
            event=event,
            payload=json.dumps(payload, default=str) if payload else None,
        )
        self.db.add(notification)
        self.db.commit()
        return notification

    def notify(self, user_id: Optional[int], event: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Record a notification; returns False instead of raising on failure"""
        if user_id is None:
            return False
        try:
            self._save_notification(user_id, event, payload)
            logger.info(f"Notification {event} recorded for user {user_id}")
            return True
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to record notification {event} for user {user_id}: {e}")
            return False
