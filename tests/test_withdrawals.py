"""Outbound withdrawals: debit, broadcast, settle, refund."""

import threading
from decimal import Decimal

import pytest

import ledger
from db import TransactionRecord
from errors import InvalidInput, InsufficientFunds, TransientChainError
from withdrawals import withdraw, validate_destination
from conftest import STRANGER, tx_hash

ONE_ETH = 10 ** 18
DEST = "0x1111111111111111111111111111111111111111"


class FakeSender:
    def __init__(self, mined=True, broadcast_error=None, receipt_error=None):
        self.mined = mined
        self.broadcast_error = broadcast_error
        self.receipt_error = receipt_error
        self.sent = []

    def send_native(self, to_address, value_wei):
        if self.broadcast_error:
            raise self.broadcast_error
        self.sent.append((to_address, value_wei))
        return tx_hash(9000 + len(self.sent))

    def wait_for_receipt(self, h, timeout=120):
        if self.receipt_error:
            raise self.receipt_error
        return self.mined


@pytest.fixture
def funded_user(session_factory, make_user):
    user = make_user()
    ledger.credit_deposit(user["id"], 2 * ONE_ETH, tx_hash(1), "ETH", session_factory=session_factory)
    return user


def _record(session_factory, record_id):
    db = session_factory()
    try:
        return db.query(TransactionRecord).filter_by(id=record_id).one()
    finally:
        db.close()


class TestWithdraw:

    def test_mined_withdrawal_is_confirmed(self, session_factory, funded_user):
        sender = FakeSender()
        result = withdraw(funded_user["id"], DEST, "0.5", sender, session_factory=session_factory)

        assert result["status"] == "confirmed"
        assert sender.sent == [(DEST, ONE_ETH // 2)]
        assert ledger.get_balance(funded_user["id"], session_factory) == Decimal("1.5")
        rec = _record(session_factory, result["id"])
        assert rec.tx_hash == result["tx_hash"]
        assert rec.address == DEST

    def test_reverted_withdrawal_is_refunded(self, session_factory, funded_user):
        result = withdraw(funded_user["id"], DEST, "1", FakeSender(mined=False), session_factory=session_factory)

        assert result["status"] == "failed"
        assert ledger.get_balance(funded_user["id"], session_factory) == Decimal("2")

    def test_broadcast_failure_refunds_and_raises(self, session_factory, funded_user):
        sender = FakeSender(broadcast_error=TransientChainError("nonce too low"))
        with pytest.raises(TransientChainError):
            withdraw(funded_user["id"], DEST, "1", sender, session_factory=session_factory)

        assert ledger.get_balance(funded_user["id"], session_factory) == Decimal("2")
        (hist,) = [h for h in ledger.list_transactions(funded_user["id"], session_factory=session_factory)
                   if h["type"] == "withdrawal"]
        assert hist["status"] == "failed"

    def test_receipt_timeout_leaves_pending(self, session_factory, funded_user):
        sender = FakeSender(receipt_error=TransientChainError("not mined yet"))
        result = withdraw(funded_user["id"], DEST, "1", sender, session_factory=session_factory)

        assert result["status"] == "pending"
        assert _record(session_factory, result["id"]).status == "pending"
        assert ledger.get_balance(funded_user["id"], session_factory) == Decimal("1")

    def test_insufficient_funds_never_broadcasts(self, session_factory, funded_user):
        sender = FakeSender()
        with pytest.raises(InsufficientFunds):
            withdraw(funded_user["id"], DEST, "3", sender, session_factory=session_factory)
        assert sender.sent == []

    def test_max_amount(self, session_factory, funded_user):
        sender = FakeSender()
        with pytest.raises(InvalidInput):
            withdraw(funded_user["id"], DEST, "1", sender, max_amount=Decimal("0.5"),
                     session_factory=session_factory)
        assert sender.sent == []

    @pytest.mark.parametrize("amount", ["0", "-1", "abc", "NaN", "0.0000000000000000001"])
    def test_bad_amounts(self, session_factory, funded_user, amount):
        with pytest.raises(InvalidInput):
            withdraw(funded_user["id"], DEST, amount, FakeSender(), session_factory=session_factory)
        assert ledger.get_balance(funded_user["id"], session_factory) == Decimal("2")


    def test_sub_wei_precision_rejected(self, session_factory, funded_user):
        sender = FakeSender()
        with pytest.raises(InvalidInput):
            withdraw(funded_user["id"], DEST, "1.0000000000000000009", sender, session_factory=session_factory)
        assert sender.sent == []
        assert ledger.get_balance(funded_user["id"], session_factory) == Decimal("2")

    @pytest.mark.parametrize("amount,wei", [
        ("1.000000000000000001", 10 ** 18 + 1),
        ("0.50000000000000000000", 10 ** 18 // 2),
    ])
    def test_debit_matches_wei_sent(self, session_factory, funded_user, amount, wei):
        sender = FakeSender()
        withdraw(funded_user["id"], DEST, amount, sender, session_factory=session_factory)

        assert sender.sent == [(DEST, wei)]
        assert ledger.get_balance(funded_user["id"], session_factory) == Decimal(2) - Decimal(amount)


class TestValidateDestination:

    def test_accepts_external_address(self, session_factory):
        assert validate_destination(STRANGER, session_factory) == "0x000000000000000000000000000000000000dEaD"

    @pytest.mark.parametrize("bad", ["", "0x123", "not an address", None])
    def test_rejects_malformed(self, session_factory, bad):
        with pytest.raises(InvalidInput):
            validate_destination(bad, session_factory)

    def test_rejects_own_deposit_address(self, session_factory, make_user):
        user = make_user()
        with pytest.raises(InvalidInput):
            validate_destination(user["deposit_address"], session_factory)


def test_concurrent_deposit_and_withdrawal_keep_invariant(session_factory, make_user):
    user = make_user()
    ledger.credit_deposit(user["id"], ONE_ETH, tx_hash(1), "ETH", session_factory=session_factory)
    barrier = threading.Barrier(2)
    errors = []

    def deposit():
        barrier.wait()
        ledger.credit_deposit(user["id"], 2 * ONE_ETH, tx_hash(2), "ETH", session_factory=session_factory)

    def withdrawal():
        barrier.wait()
        try:
            withdraw(user["id"], DEST, "1", FakeSender(), session_factory=session_factory)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=deposit), threading.Thread(target=withdrawal)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)

    assert errors == []
    assert ledger.get_balance(user["id"], session_factory) == Decimal("2")
    history = ledger.list_transactions(user["id"], session_factory=session_factory)
    assert sorted(h["formatted"] for h in history) == ["+1 ETH", "+2 ETH", "-1 ETH"]
