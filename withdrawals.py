# withdrawals.py - Outbound native withdrawals from the hot wallet
# - debit first (row lock), broadcast second, settle from the receipt
# - broadcast failure or reverted receipt -> status failed + refund
# - a receipt timeout leaves the record pending (tx may still be mined)

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from web3 import Web3

import config
import ledger
import users
from chain import HotWallet
from errors import InvalidInput, TransientChainError

logger = logging.getLogger("custodia.withdrawals")


def _parse_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise InvalidInput(f"invalid amount: {amount!r}")
    if not value.is_finite() or value <= 0:
        raise InvalidInput("amount must be positive")
    return value


def validate_destination(to_address: str, session_factory=None) -> str:
    try:
        checksum = Web3.to_checksum_address(to_address)
    except (TypeError, ValueError):
        raise InvalidInput("invalid destination address")
    # internal transfers would collide with the deposit dedup key
    if users.find_owner(checksum, session_factory=session_factory) is not None:
        raise InvalidInput("destination is a custodial deposit address")
    return checksum


def withdraw(user_id: int, to_address: str, amount, sender: HotWallet,
             max_amount: Optional[Decimal] = config.MAX_WITHDRAW,
             currency: str = config.NATIVE_SYMBOL,
             receipt_timeout: int = 120,
             session_factory=None) -> Dict[str, Any]:
    value = _parse_amount(amount)
    # the ledger must debit exactly what is sent on chain
    if value.normalize().as_tuple().exponent < -config.NATIVE_DECIMALS:
        raise InvalidInput(f"amount has more than {config.NATIVE_DECIMALS} decimal places")
    if max_amount is not None and value > max_amount:
        raise InvalidInput("amount exceeds max")
    try:
        value_wei = int(Web3.to_wei(value, "ether"))
    except ValueError as e:
        raise InvalidInput(f"amount out of range: {value}") from e
    if value_wei == 0:
        raise InvalidInput("amount is below 1 wei")
    destination = validate_destination(to_address, session_factory)

    record_id = ledger.debit_withdrawal(user_id, value, currency, destination.lower(),
                                       session_factory=session_factory)

    try:
        tx_hash = sender.send_native(destination, value_wei)
    except TransientChainError:
        logger.exception(f"Broadcast failed for withdrawal #{record_id}")
        ledger.settle_withdrawal(record_id, confirmed=False, session_factory=session_factory)
        raise

    ledger.attach_tx_hash(record_id, tx_hash, session_factory=session_factory)

    try:
        ok = sender.wait_for_receipt(tx_hash, timeout=receipt_timeout)
    except TransientChainError as e:
        logger.warning(f"Withdrawal #{record_id} ({tx_hash}) still pending: {e}")
        return {"id": record_id, "tx_hash": tx_hash, "status": "pending"}

    status = ledger.settle_withdrawal(record_id, confirmed=ok, session_factory=session_factory)
    return {"id": record_id, "tx_hash": tx_hash, "status": status}
