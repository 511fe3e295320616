"""
Database engine, session factory and transaction helpers
"""
import logging
from contextlib import contextmanager
from typing import Callable, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from app.core.config import settings
from app.core.exceptions import PersistenceConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Postgres serialization_failure / deadlock_detected
RETRYABLE_PGCODES = {"40001", "40P01"}
UNIQUE_VIOLATION_PGCODE = "23505"

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(settings.DATABASE_URL, connect_args=connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


@event.listens_for(engine, "connect")
def enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    if not settings.DATABASE_URL.startswith("sqlite"):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_db():
    """FastAPI dependency yielding a database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create all tables (development convenience, migrations live in alembic/)"""
    import app.models.models  # noqa: F401
    Base.metadata.create_all(bind=engine)


def is_retryable_conflict(exc: Exception) -> bool:
    """True for lock/serialization failures that are safe to retry as a whole unit"""
    pgcode = getattr(exc.orig, "pgcode", None)
    message = str(exc.orig).lower()
    if isinstance(exc, IntegrityError):
        # a concurrent writer won a unique slot; CHECK violations are not conflicts
        return pgcode == UNIQUE_VIOLATION_PGCODE or "unique constraint failed" in message
    if isinstance(exc, OperationalError):
        if pgcode in RETRYABLE_PGCODES:
            return True
        return "database is locked" in message
    return False


@contextmanager
def atomic(db: Session):
    """Commit on success, roll back on any error"""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def run_atomic(db: Session, operation: Callable[[], T], retries: int = 1) -> T:
    """
    Run `operation` as one transaction.

    Lock and serialization failures roll back and re-run the whole unit
    `retries` more times; after that they surface as PersistenceConflict.
    Business errors raised by the operation are never retried.
    """
    attempt = 0
    while True:
        try:
            with atomic(db):
                return operation()
        except (IntegrityError, OperationalError) as e:
            if not is_retryable_conflict(e):
                raise
            if attempt >= retries:
                logger.warning(f"Giving up after {attempt + 1} attempts: {e.orig}")
                raise PersistenceConflict("The operation conflicted with a concurrent update") from e
            attempt += 1
            logger.info(f"Retrying atomic unit after conflict: {e.orig}")
