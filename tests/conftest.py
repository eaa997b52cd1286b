"""
Shared fixtures for the deposit engine tests.

- every test gets its own SQLite ledger file (BEGIN IMMEDIATE engine from db.make_engine)
- FakeChain stands in for ChainReader: blocks, Transfer logs, decimals, injected failures
- master_xpub is derived from the public BIP39 test mnemonic
"""

import os
import tempfile

# Keep module-level side effects (log dir, default engine) out of the repo
_TMP = tempfile.mkdtemp(prefix="custodia-tests-")
os.environ.setdefault("LOG_DIR", os.path.join(_TMP, "logs"))
os.environ.setdefault("WALLET_DATABASE_URL", f"sqlite:///{os.path.join(_TMP, 'default.db')}")

import pytest

from chain import TRANSFER_TOPIC
from db import make_engine, make_session_factory, init_db
from errors import TransientChainError
from hd import account_xpub_from_mnemonic
from users import create_user

TEST_MNEMONIC = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
TOKEN = "0x55d398326f99059ff775485246999027b3197955"
STRANGER = "0x000000000000000000000000000000000000dead"


def tx_hash(n: int) -> str:
    return "0x" + format(n, "064x")


class FakeChain:
    """In-memory ChainReader double with failure injection."""

    def __init__(self, head: int = 0):
        self.head = head
        self.blocks = {}
        self.logs = {}
        self.decimals = {}
        self.missing = set()
        self.fail_blocks = {}   # height -> number of TransientChainError raises left
        self.fail_logs = set()  # heights whose get_logs always fails
        self.fetched = []
        self.log_queries = []

    def get_head_height(self) -> int:
        return self.head

    def get_block(self, height: int):
        self.fetched.append(height)
        if self.fail_blocks.get(height, 0) > 0:
            self.fail_blocks[height] -= 1
            raise TransientChainError(f"timeout fetching {height}")
        if height in self.missing:
            return None
        return self.blocks.get(height, {"number": height, "transactions": []})

    def get_logs(self, from_block, to_block, topic=TRANSFER_TOPIC, addresses=None):
        self.log_queries.append((from_block, to_block, topic, addresses))
        for h in range(from_block, to_block + 1):
            if h in self.fail_logs:
                raise TransientChainError(f"logs unavailable for {h}")
        return [lg for h in range(from_block, to_block + 1) for lg in self.logs.get(h, [])]

    def get_token_decimals(self, token_address: str) -> int:
        return self.decimals.get(token_address.lower(), 18)

    # builders
    def add_native(self, height, to, value, h):
        block = self.blocks.setdefault(height, {"number": height, "transactions": []})
        block["transactions"].append({"hash": h, "to": to, "value": value})

    def add_token_transfer(self, height, token, to, value, h, extra_topic=None):
        topics = [TRANSFER_TOPIC, "0x" + "0" * 24 + "ab" * 20, "0x" + "0" * 24 + to.lower()[2:]]
        if extra_topic is not None:
            topics.append(extra_topic)
        self.logs.setdefault(height, []).append({
            "address": token,
            "topics": topics,
            "data": "0x" + format(value, "064x") if value is not None else "0x",
            "transactionHash": h,
        })


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture(scope="session")
def master_xpub():
    return account_xpub_from_mnemonic(TEST_MNEMONIC)


@pytest.fixture
def make_user(session_factory, master_xpub):
    def _make(username="alice"):
        return create_user(username, master_xpub, session_factory=session_factory)
    return _make


@pytest.fixture
def fake_chain():
    return FakeChain()
