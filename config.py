# config.py - Environment settings for the Custodia deposit engine
# - .env is loaded first (python-dotenv), real env vars win
# - Numbers are parsed at import; a bad value stops the process (FatalConfigError)
# - validate_config() is called by the entry points before anything touches RPC or DB

import os
import re
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from dotenv import load_dotenv
load_dotenv()

from errors import FatalConfigError

ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")


def _env_str(key: str, default: str = "") -> str:
    return (os.getenv(key) or default).strip()


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise FatalConfigError(f"{key} must be an integer, got {raw!r}")


def _env_decimal(key: str) -> Optional[Decimal]:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return None
    try:
        return Decimal(raw.strip())
    except InvalidOperation:
        raise FatalConfigError(f"{key} must be a decimal number, got {raw!r}")


def _env_list(key: str) -> List[str]:
    raw = os.getenv(key) or ""
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


# ---------------------------------
# Chain / keys
# ---------------------------------
PROVIDER_URL = _env_str("PROVIDER_URL")
MASTER_XPUB = _env_str("MASTER_XPUB")
HOT_WALLET_PRIVATE_KEY = _env_str("HOT_WALLET_PRIVATE_KEY")
RPC_TIMEOUT_SECONDS = _env_int("RPC_TIMEOUT_SECONDS", 20)

NATIVE_SYMBOL = _env_str("NATIVE_SYMBOL", "ETH")
NATIVE_DECIMALS = 18

# Empty list = examine every Transfer log in the block
TOKEN_CONTRACTS = _env_list("TOKEN_CONTRACTS")

# ---------------------------------
# Scanner policy
# ---------------------------------
REQUIRED_CONFIRMATIONS = _env_int("REQUIRED_CONFIRMATIONS", 3)
POLL_INTERVAL_MS = _env_int("POLL_INTERVAL_MS", 15000)
MAX_BLOCKS_PER_BATCH = _env_int("MAX_BLOCKS_PER_BATCH", 5)
MIN_START_HEIGHT = _env_int("MIN_START_HEIGHT", 0)
BATCH_DELAY_MS = _env_int("BATCH_DELAY_MS", 1000)
BLOCK_FETCH_RETRIES = _env_int("BLOCK_FETCH_RETRIES", 3)

# ---------------------------------
# Storage / withdrawals / logs
# ---------------------------------
DATABASE_URL = _env_str("WALLET_DATABASE_URL", "sqlite:///./wallet.db")
MAX_WITHDRAW = _env_decimal("MAX_WITHDRAW")  # native units, None = no limit
LOG_DIR = _env_str("LOG_DIR", "logs")


def validate_config(require_hot_wallet: bool = False) -> None:
    missing = []
    if not PROVIDER_URL:
        missing.append("PROVIDER_URL")
    if not MASTER_XPUB:
        missing.append("MASTER_XPUB")
    if require_hot_wallet and not HOT_WALLET_PRIVATE_KEY:
        missing.append("HOT_WALLET_PRIVATE_KEY")
    if missing:
        raise FatalConfigError(f"Missing required env: {', '.join(missing)}")

    if REQUIRED_CONFIRMATIONS < 1:
        raise FatalConfigError("REQUIRED_CONFIRMATIONS must be at least 1")
    if MAX_BLOCKS_PER_BATCH < 1:
        raise FatalConfigError("MAX_BLOCKS_PER_BATCH must be at least 1")
    if POLL_INTERVAL_MS <= 0:
        raise FatalConfigError("POLL_INTERVAL_MS must be positive")
    if MIN_START_HEIGHT < 0:
        raise FatalConfigError("MIN_START_HEIGHT cannot be negative")
    if MAX_WITHDRAW is not None and MAX_WITHDRAW <= 0:
        raise FatalConfigError("MAX_WITHDRAW must be positive when set")
    bad_tokens = [t for t in TOKEN_CONTRACTS if not ADDRESS_RE.match(t)]
    if bad_tokens:
        raise FatalConfigError(f"TOKEN_CONTRACTS has invalid addresses: {', '.join(bad_tokens)}")
