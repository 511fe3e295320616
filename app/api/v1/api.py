from fastapi import APIRouter
from app.api.v1.endpoints import bookings, promo_codes, wallet, withdrawals

api_router = APIRouter()
api_router.include_router(promo_codes.router, prefix="/promo-codes", tags=["promo-codes"])
api_router.include_router(bookings.router, prefix="/bookings", tags=["bookings"])
api_router.include_router(wallet.router, prefix="/wallet", tags=["wallet"])
api_router.include_router(withdrawals.router, prefix="/withdrawals", tags=["withdrawals"])
