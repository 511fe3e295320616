"""
Wallet Ledger

The append-only WalletTransaction sequence is the only record of a client's
balance. Every mutation locks the user row, re-reads the latest balance and
appends one row; callers own the transaction.
"""
import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from app.core.exceptions import InsufficientFunds, LedgerCorrupted, NotFound, ValidationFailed
from app.models.models import User, WalletTransaction, WalletTransactionType
from app.utils.money import ZERO, to_money

logger = logging.getLogger(__name__)


def _lock_wallet(db: Session, user_id: int) -> User:
    """Serialize balance reads and writes for one user"""
    user = db.query(User).filter(User.id == user_id).with_for_update().first()
    if not user:
        raise NotFound("User not found")
    return user


def latest_transaction(db: Session, user_id: int) -> Optional[WalletTransaction]:
    return db.query(WalletTransaction).filter(
        WalletTransaction.user_id == user_id
    ).order_by(WalletTransaction.id.desc()).first()


def current_balance(db: Session, user_id: int) -> Decimal:
    """Latest row's balance_after, or zero for an empty ledger"""
    last = latest_transaction(db, user_id)
    return to_money(last.balance_after) if last else ZERO


def _append(
    db: Session,
    user_id: int,
    transaction_type: str,
    signed_amount: Decimal,
    related_type: Optional[str],
    related_id: Optional[int],
    reference_number: Optional[str],
    description: Optional[str],
) -> WalletTransaction:
    balance_before = current_balance(db, user_id)
    balance_after = to_money(balance_before + signed_amount)
    if balance_after < ZERO:
        logger.critical(
            f"Wallet for user {user_id} would go negative: {balance_before} + {signed_amount}"
        )
        raise LedgerCorrupted("Wallet balance would become negative")

    transaction = WalletTransaction(
        user_id=user_id,
        type=transaction_type,
        amount=signed_amount,
        balance_before=balance_before,
        balance_after=balance_after,
        related_type=related_type,
        related_id=related_id,
        reference_number=reference_number,
        description=description,
    )
    db.add(transaction)
    db.flush()
    return transaction


def _positive_amount(amount) -> Decimal:
    amount = to_money(amount)
    if amount <= ZERO:
        raise ValidationFailed("Amount must be greater than zero")
    return amount


def debit(
    db: Session,
    user_id: int,
    amount,
    related_type: Optional[str] = None,
    related_id: Optional[int] = None,
    transaction_type: str = WalletTransactionType.PAYMENT,
    reference_number: Optional[str] = None,
    description: Optional[str] = None,
) -> WalletTransaction:
    """Take `amount` out of the wallet or raise InsufficientFunds"""
    if transaction_type not in WalletTransactionType.DEBITS:
        raise ValidationFailed(f"{transaction_type} is not a debit type")
    amount = _positive_amount(amount)

    _lock_wallet(db, user_id)
    balance = current_balance(db, user_id)
    if amount > balance:
        logger.info(f"Insufficient wallet balance for user {user_id}: need {amount}, have {balance}")
        raise InsufficientFunds(
            f"Insufficient wallet balance. Required: {amount}, available: {balance}"
        )

    transaction = _append(
        db, user_id, transaction_type, -amount, related_type, related_id, reference_number, description
    )
    logger.info(f"Wallet debit {transaction_type} {amount} for user {user_id}, balance {transaction.balance_after}")
    return transaction


def credit(
    db: Session,
    user_id: int,
    amount,
    related_type: Optional[str] = None,
    related_id: Optional[int] = None,
    transaction_type: str = WalletTransactionType.DEPOSIT,
    reference_number: Optional[str] = None,
    description: Optional[str] = None,
) -> WalletTransaction:
    """Add `amount` to the wallet (deposits and refunds)"""
    if transaction_type not in WalletTransactionType.CREDITS:
        raise ValidationFailed(f"{transaction_type} is not a credit type")
    amount = _positive_amount(amount)

    _lock_wallet(db, user_id)
    transaction = _append(
        db, user_id, transaction_type, amount, related_type, related_id, reference_number, description
    )
    logger.info(f"Wallet credit {transaction_type} {amount} for user {user_id}, balance {transaction.balance_after}")
    return transaction


def list_transactions(
    db: Session,
    user_id: int,
    type_filter: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[WalletTransaction]:
    query = db.query(WalletTransaction).filter(WalletTransaction.user_id == user_id)
    if type_filter:
        query = query.filter(WalletTransaction.type == type_filter)
    return query.order_by(WalletTransaction.id.desc()).offset(offset).limit(limit).all()


def replay(db: Session, user_id: int) -> Decimal:
    """
    Rebuild the balance from the ledger in insertion order.

    Raises LedgerCorrupted on the first row whose balance_before does not
    match the previous balance_after or whose arithmetic is off.
    """
    rows = db.query(WalletTransaction).filter(
        WalletTransaction.user_id == user_id
    ).order_by(WalletTransaction.id.asc()).all()

    balance = ZERO
    for row in rows:
        if to_money(row.balance_before) != balance:
            raise LedgerCorrupted(f"Wallet chain broken at transaction {row.id}")
        if to_money(row.balance_before + row.amount) != to_money(row.balance_after):
            raise LedgerCorrupted(f"Wallet arithmetic mismatch at transaction {row.id}")
        balance = to_money(row.balance_after)
    return balance
