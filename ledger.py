# ledger.py - Balance mutations, transaction history and the metadata (cursor) store
# - credit_deposit: row lock -> insert history (UNIQUE tx_hash+currency) -> balance += amount
# - debit_withdrawal / settle_withdrawal: same row lock, refund on failed broadcast
# - get_cursor / set_cursor: "last_processed_block" in metadata, never moves backwards

import logging
from decimal import Context, Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import db as ledger_db
from db import (
    UserRecord, TransactionRecord, MetadataRecord,
    TX_DEPOSIT, TX_WITHDRAWAL, STATUS_PENDING, STATUS_CONFIRMED, STATUS_FAILED,
)
from errors import InvalidInput, InsufficientFunds, LedgerConflict

logger = logging.getLogger("custodia.ledger")

CURSOR_KEY = "last_processed_block"

SessionFactory = Callable[[], Session]

# uint256 at 18 decimals needs 78 digits; default context rounds at 28
EXACT = Context(prec=100)


def _factory(session_factory: Optional[SessionFactory]) -> SessionFactory:
    return session_factory or ledger_db.SessionLocal


def to_units(amount_raw: int, decimals: int) -> Decimal:
    """Raw integer amount (wei, token base units) -> exact Decimal."""
    return Decimal(int(amount_raw)).scaleb(-int(decimals), context=EXACT)


def _lock_user(db: Session, user_id: int) -> Optional[UserRecord]:
    return (
        db.query(UserRecord)
        .filter(UserRecord.id == user_id)
        .with_for_update()
        .first()
    )


# ---------------------------------
# Crediting transaction
# ---------------------------------
def credit_deposit(user_id: int, amount_raw: int, tx_hash: str, currency: str, decimals: int = 18,
                   address: Optional[str] = None, block_number: Optional[int] = None,
                   session_factory: Optional[SessionFactory] = None) -> bool:
    """Credit one on-chain transfer exactly once.

    Returns True only when this call inserted the deposit row and moved the
    balance. Zero amounts, duplicates, unknown users and database errors all
    roll back and return False; nothing is raised to the scanner.
    """
    try:
        amount = to_units(amount_raw, decimals)
    except (TypeError, ValueError, ArithmeticError) as e:
        logger.warning(f"Skipping invalid amount {amount_raw!r} for tx {tx_hash}: {e}")
        return False
    if amount == 0:
        logger.warning(f"Skipping zero amount for user {user_id}, tx: {tx_hash}")
        return False

    db = _factory(session_factory)()
    try:
        user = _lock_user(db, user_id)
        if user is None:
            raise LedgerConflict(f"User {user_id} not found when crediting")

        already = (
            db.query(TransactionRecord.id)
            .filter(TransactionRecord.tx_hash == tx_hash, TransactionRecord.currency == currency)
            .first()
        )
        if already is not None:
            db.rollback()
            logger.info(f"Deposit {tx_hash} ({currency}) already credited, skipping")
            return False

        db.add(TransactionRecord(
            user_id=user_id, amount=amount, currency=currency, tx_hash=tx_hash,
            type=TX_DEPOSIT, status=STATUS_CONFIRMED, address=address, block_number=block_number,
        ))
        # the unique constraint is the real guard, flush before touching the balance
        db.flush()

        previous = Decimal(user.balance or 0)
        user.balance = EXACT.add(previous, amount)
        db.commit()
        logger.info(f"Credited {amount} {currency} to user {user_id} (tx: {tx_hash}). "
                    f"Previous balance: {previous}, New balance: {user.balance}")
        return True
    except IntegrityError:
        db.rollback()
        logger.info(f"Deposit {tx_hash} ({currency}) rejected by unique constraint, already credited")
        return False
    except (LedgerConflict, SQLAlchemyError) as e:
        db.rollback()
        logger.error(f"Error in credit_deposit for user {user_id}, tx {tx_hash}: {e}")
        return False
    finally:
        db.close()


# ---------------------------------
# Withdrawal primitives
# ---------------------------------
def debit_withdrawal(user_id: int, amount: Decimal, currency: str, to_address: Optional[str] = None,
                     session_factory: Optional[SessionFactory] = None) -> int:
    """Lock, check and debit the balance; record a pending withdrawal. Returns its id."""
    amount = Decimal(amount)
    if amount <= 0:
        raise InvalidInput("Withdrawal amount must be positive")

    db = _factory(session_factory)()
    try:
        user = _lock_user(db, user_id)
        if user is None:
            raise LedgerConflict(f"User {user_id} not found")
        balance = Decimal(user.balance or 0)
        if balance < amount:
            raise InsufficientFunds(f"User {user_id} balance {balance} < {amount}")

        user.balance = EXACT.subtract(balance, amount)
        rec = TransactionRecord(
            user_id=user_id, amount=amount, currency=currency, tx_hash=None,
            type=TX_WITHDRAWAL, status=STATUS_PENDING, address=to_address,
        )
        db.add(rec)
        db.commit()
        logger.info(f"Debited {amount} {currency} from user {user_id} (withdrawal #{rec.id})")
        return rec.id
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def attach_tx_hash(record_id: int, tx_hash: str, session_factory: Optional[SessionFactory] = None):
    db = _factory(session_factory)()
    try:
        rec = db.get(TransactionRecord, record_id)
        if rec is None:
            raise LedgerConflict(f"Transaction #{record_id} not found")
        rec.tx_hash = tx_hash
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def settle_withdrawal(record_id: int, confirmed: bool, session_factory: Optional[SessionFactory] = None) -> str:
    """Mark a pending withdrawal confirmed, or failed with the amount refunded."""
    db = _factory(session_factory)()
    try:
        rec = (
            db.query(TransactionRecord)
            .filter(TransactionRecord.id == record_id)
            .with_for_update()
            .first()
        )
        if rec is None or rec.type != TX_WITHDRAWAL:
            raise LedgerConflict(f"Withdrawal #{record_id} not found")
        if rec.status != STATUS_PENDING:
            db.rollback()
            return rec.status

        if confirmed:
            rec.status = STATUS_CONFIRMED
        else:
            user = _lock_user(db, rec.user_id)
            if user is None:
                raise LedgerConflict(f"User {rec.user_id} not found for refund")
            user.balance = EXACT.add(Decimal(user.balance or 0), Decimal(rec.amount))
            rec.status = STATUS_FAILED
            logger.warning(f"Withdrawal #{record_id} failed, refunded {rec.amount} to user {rec.user_id}")
        db.commit()
        return rec.status
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ---------------------------------
# Reads
# ---------------------------------
def get_balance(user_id: int, session_factory: Optional[SessionFactory] = None) -> Decimal:
    db = _factory(session_factory)()
    try:
        user = db.get(UserRecord, user_id)
        if user is None:
            raise LedgerConflict(f"User {user_id} not found")
        return Decimal(user.balance or 0)
    finally:
        db.close()


def list_transactions(user_id: int, limit: int = 50,
                      session_factory: Optional[SessionFactory] = None) -> List[Dict[str, Any]]:
    db = _factory(session_factory)()
    try:
        rows = (
            db.query(TransactionRecord)
            .filter(TransactionRecord.user_id == user_id)
            .order_by(TransactionRecord.id.desc())
            .limit(limit)
            .all()
        )
    finally:
        db.close()

    out = []
    for r in rows:
        sign = "+" if r.type == TX_DEPOSIT else "-"
        amount = Decimal(r.amount)
        out.append({
            "id": r.id,
            "tx_hash": r.tx_hash,
            "type": r.type,
            "status": r.status,
            "currency": r.currency,
            "amount": amount,
            "formatted": f"{sign}{amount.normalize():f} {r.currency}",
            "address": r.address,
            "block_number": r.block_number,
            "created_at": r.created_at,
        })
    return out


# ---------------------------------
# Metadata / cursor
# ---------------------------------
def get_meta(key: str, session_factory: Optional[SessionFactory] = None) -> Optional[str]:
    db = _factory(session_factory)()
    try:
        rec = db.get(MetadataRecord, key)
        return rec.value if rec else None
    finally:
        db.close()


def set_meta(key: str, value: str, session_factory: Optional[SessionFactory] = None):
    db = _factory(session_factory)()
    try:
        rec = db.get(MetadataRecord, key)
        if rec is None:
            db.add(MetadataRecord(key=key, value=value))
        else:
            rec.value = value
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _parse_cursor(raw: Optional[str]) -> int:
    try:
        return int(raw) if raw else 0
    except ValueError:
        logger.error(f"Corrupt cursor value {raw!r}, treating as 0")
        return 0


def get_cursor(session_factory: Optional[SessionFactory] = None) -> int:
    return _parse_cursor(get_meta(CURSOR_KEY, session_factory))


def set_cursor(height: int, session_factory: Optional[SessionFactory] = None) -> int:
    """Persist the cursor; a lower height than the stored one is ignored."""
    height = int(height)
    db = _factory(session_factory)()
    try:
        rec = db.get(MetadataRecord, CURSOR_KEY)
        if rec is None:
            db.add(MetadataRecord(key=CURSOR_KEY, value=str(height)))
        else:
            current = _parse_cursor(rec.value)
            if height < current:
                db.rollback()
                logger.warning(f"Refusing to move cursor back from {current} to {height}")
                return current
            rec.value = str(height)
        db.commit()
        return height
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def ensure_cursor(session_factory: Optional[SessionFactory] = None):
    if get_meta(CURSOR_KEY, session_factory) is None:
        set_meta(CURSOR_KEY, "0", session_factory)
        logger.info("Inserted default last_processed_block = 0")
