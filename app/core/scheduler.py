"""
Background sweeps: expire unpaid bookings past their payment deadline and
auto-complete bookings whose end time has passed.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.core.config import SettlementConfig, settings
from app.core.database import SessionLocal
from app.core.payment import get_payment_gateway
from app.services.settlement_service import SettlementCoordinator

logger = logging.getLogger(__name__)


def run_sweeps(session_factory: Callable[[], Session] = SessionLocal, now: Optional[datetime] = None) -> Dict[str, int]:
    """One pass of both sweeps on a fresh session"""
    db = session_factory()
    try:
        coordinator = SettlementCoordinator(db, SettlementConfig.from_settings(), get_payment_gateway())
        expired = coordinator.expire_overdue_bookings(now)
        completed = coordinator.complete_finished_bookings(now)
        return {"expired": expired, "completed": completed}
    finally:
        db.close()


async def sweep_forever(interval_seconds: Optional[int] = None, session_factory: Callable[[], Session] = SessionLocal):
    """Run the sweeps every `interval_seconds` until cancelled"""
    interval = interval_seconds or settings.EXPIRY_SWEEP_INTERVAL_SECONDS
    logger.info(f"Booking sweeps started, every {interval}s")
    try:
        while True:
            try:
                result = await asyncio.to_thread(run_sweeps, session_factory)
                if result["expired"] or result["completed"]:
                    logger.info(f"Sweep pass: {result}")
            except Exception as e:
                # keep the loop alive; the next pass retries the same rows
                logger.error(f"Booking sweep failed: {e}")
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("Booking sweeps stopped")
        raise
