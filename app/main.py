import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.api.v1.api import api_router
from app.core.config import settings
from app.core.database import init_db
from app.core.exceptions import InvalidStateTransition, LedgerCorrupted, SettlementError
from app.core.scheduler import sweep_forever

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_STR}/openapi.json"
)

# Set up CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:3001",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:3001",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError):
    if isinstance(exc, LedgerCorrupted):
        logger.critical(f"Ledger corruption on {request.method} {request.url.path}: {exc.message}")
        detail = "Internal ledger error"
    elif isinstance(exc, InvalidStateTransition):
        # already logged where raised; clients only learn that it conflicted
        detail = "The request conflicts with the current state of the resource"
    else:
        detail = exc.message

    body = {"detail": detail, "code": exc.code}
    if exc.reason:
        body["reason"] = exc.reason
    return JSONResponse(status_code=exc.status_code, content=body)


_sweep_task = None


# Initialize database and background sweeps on startup
@app.on_event("startup")
async def on_startup():
    global _sweep_task
    init_db()
    if settings.ENABLE_BACKGROUND_SWEEPS:
        _sweep_task = asyncio.create_task(sweep_forever(settings.EXPIRY_SWEEP_INTERVAL_SECONDS))


@app.on_event("shutdown")
async def on_shutdown():
    if _sweep_task is not None:
        _sweep_task.cancel()


app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/")
def read_root():
    return {"message": "Welcome to Marketplace Settlement API"}


@app.get("/health")
def health_check():
    return {"status": "healthy"}
