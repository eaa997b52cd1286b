# users.py - Account provisioning and the deposit address -> user index
# - create_user: user row + derived deposit address (stored lower-case) + derivation path
# - find_owner: normalized address lookup, malformed input never reaches the DB

import logging
import re
import time
import unicodedata
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import db as ledger_db
from db import UserRecord, DepositAddressRecord
from errors import InvalidInput, LedgerConflict
from hd import derive_address, derive_path

logger = logging.getLogger("custodia.users")

ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
CONTROL_CHARS_RE = re.compile(r"[\u0000-\u001f\u007f-\u009f]")


def normalize_address(address: Any) -> Optional[str]:
    """Lower-case 0x address, or None if the input is not an address."""
    if not address or not isinstance(address, str):
        return None
    cleaned = unicodedata.normalize("NFD", address).strip()
    cleaned = CONTROL_CHARS_RE.sub("", cleaned).lower()
    if not ADDRESS_RE.match(cleaned):
        return None
    return cleaned


def find_owner(address: Any, retries: int = 3, retry_delay: float = 1.0, session_factory=None) -> Optional[int]:
    final_address = normalize_address(address)
    if final_address is None:
        return None

    factory = session_factory or ledger_db.SessionLocal
    for attempt in range(1, retries + 1):
        db = factory()
        try:
            row = (
                db.query(DepositAddressRecord.user_id)
                .filter(DepositAddressRecord.wallet_address == final_address)
                .first()
            )
            return row[0] if row else None
        except SQLAlchemyError as e:
            logger.error(f"Error getting user by address (attempt {attempt}): {e}")
            if attempt == retries:
                return None
            time.sleep(retry_delay)
        finally:
            db.close()
    return None


def create_user(username: str, master_xpub: str, session_factory=None) -> Dict[str, Any]:
    """Provision a user and bind its deposit address (derived from the new id)."""
    username = (username or "").strip()
    if not username:
        raise InvalidInput("username required")

    db = (session_factory or ledger_db.SessionLocal)()
    try:
        user = UserRecord(username=username, balance=0)
        db.add(user)
        db.flush()  # assigns user.id

        address = derive_address(master_xpub, user.id)
        path = derive_path(user.id)
        user.derivation_path = path
        db.add(DepositAddressRecord(user_id=user.id, wallet_address=address.lower()))
        db.commit()
        logger.info(f"Created user {user.id} ({username}) with deposit address {address}")
        return {
            "id": user.id,
            "username": username,
            "deposit_address": address,
            "derivation_path": path,
            "balance": Decimal(0),
        }
    except IntegrityError as e:
        db.rollback()
        raise LedgerConflict(f"User or deposit address already exists: {username}") from e
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_user(user_id: int, session_factory=None) -> Optional[Dict[str, Any]]:
    db = (session_factory or ledger_db.SessionLocal)()
    try:
        user = db.get(UserRecord, user_id)
        if user is None:
            return None
        dep = user.deposit_address
        return {
            "id": user.id,
            "username": user.username,
            "balance": user.balance,
            "deposit_address": dep.wallet_address if dep else None,
            "derivation_path": user.derivation_path,
        }
    finally:
        db.close()
