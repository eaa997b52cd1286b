# listener.py - Deposit listener (block scanner + crediting)
# - Polls the head, scans (cursor, head - (confirmations - 1)] in small batches
# - Native transfers: tx.to is a deposit address, tx.value > 0
# - Token transfers: Transfer(address,address,uint256) logs, recipient = topics[2]
# - Cursor is persisted after every block; replays are safe (UNIQUE tx_hash+currency)
# - One scan at a time: a tick that arrives mid-scan is dropped
# - Standalone: python listener.py (same loop the API process runs at startup)

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

import config
import ledger
import users
from chain import ChainReader, TRANSFER_TOPIC, to_hex
from errors import TransientChainError

logger = logging.getLogger("custodia.listener")

STATE_IDLE = "idle"
STATE_SCANNING = "scanning"


def _log_value(data: Any) -> Optional[int]:
    """uint256 from log data (HexBytes or hex str); None when empty."""
    if isinstance(data, (bytes, bytearray)):
        return int.from_bytes(bytes(data), "big") if len(data) else None
    text = str(data or "")
    if text in ("", "0x"):
        return None
    return int(text, 16)


def _topic_address(topic: Any) -> str:
    # indexed address = last 20 bytes of the 32-byte topic
    return "0x" + to_hex(topic)[-40:]


class DepositListener:
    def __init__(self, chain: ChainReader, session_factory=None,
                 confirmations: int = config.REQUIRED_CONFIRMATIONS,
                 max_blocks_per_batch: int = config.MAX_BLOCKS_PER_BATCH,
                 min_start_height: int = config.MIN_START_HEIGHT,
                 batch_delay: float = config.BATCH_DELAY_MS / 1000.0,
                 block_fetch_retries: int = config.BLOCK_FETCH_RETRIES,
                 retry_delay: float = 1.0,
                 native_symbol: str = config.NATIVE_SYMBOL,
                 token_contracts: Optional[Iterable[str]] = None):
        self.chain = chain
        self.session_factory = session_factory
        self.confirmations = confirmations
        self.max_blocks_per_batch = max_blocks_per_batch
        self.min_start_height = min_start_height
        self.batch_delay = batch_delay
        self.block_fetch_retries = max(1, block_fetch_retries)
        self.retry_delay = retry_delay
        self.native_symbol = native_symbol
        self.token_contracts = list(token_contracts if token_contracts is not None else config.TOKEN_CONTRACTS)

        self.state = STATE_IDLE
        self._scan_guard = threading.Lock()
        self.last_head: Optional[int] = None
        self.last_target: Optional[int] = None
        self.last_scan_at: Optional[datetime] = None
        self.last_error: Optional[str] = None

    # ---------------------------------
    # Scheduling
    # ---------------------------------
    def tick(self) -> bool:
        """Run one scan unless one is already running. False = tick dropped."""
        if not self._scan_guard.acquire(blocking=False):
            logger.debug("Scan already in progress, dropping tick")
            return False
        self.state = STATE_SCANNING
        try:
            self.process_new_blocks()
            self.last_error = None
        except Exception as e:
            self.last_error = str(e)
            logger.exception("Error in process_new_blocks")
        finally:
            self.last_scan_at = datetime.now(timezone.utc)
            self.state = STATE_IDLE
            self._scan_guard.release()
        return True

    def run_forever(self, interval: float = config.POLL_INTERVAL_MS / 1000.0,
                    stop_event: Optional[threading.Event] = None):
        stop_event = stop_event or threading.Event()
        logger.info(f"Block listener started (interval {interval}s, confirmations {self.confirmations})")
        while not stop_event.is_set():
            self.tick()
            stop_event.wait(interval)

    def safe_target(self, head: int) -> int:
        return head - (self.confirmations - 1)

    def process_new_blocks(self):
        head = self.chain.get_head_height()
        target = self.safe_target(head)
        self.last_head, self.last_target = head, target

        last_processed = ledger.get_cursor(self.session_factory)
        if last_processed < self.min_start_height:
            last_processed = ledger.set_cursor(self.min_start_height, self.session_factory)
            logger.info(f"Starting from configured minimum height {self.min_start_height}")

        if last_processed >= target:
            logger.debug("No new blocks to process")
            return

        logger.info(f"Processing blocks {last_processed + 1} to {target}")
        start = last_processed + 1
        while start <= target:
            end = min(start + self.max_blocks_per_batch - 1, target)
            start = self.process_block_batch(start, end) + 1
            if start <= target and self.batch_delay > 0:
                time.sleep(self.batch_delay)

    # ---------------------------------
    # Batch / block processing
    # ---------------------------------
    def process_block_batch(self, start_block: int, end_block: int) -> int:
        """Process blocks in order; returns the last height persisted as the cursor."""
        last_processed = start_block - 1
        for bn in range(start_block, end_block + 1):
            self.process_block(bn)
            ledger.set_cursor(bn, self.session_factory)
            last_processed = bn
        return last_processed

    def process_block(self, bn: int) -> Dict[str, int]:
        """Credit every matching transfer in block `bn`. Never raises for chain data."""
        credited = {"native": 0, "token": 0}

        block = self._fetch_block(bn)
        if block is None:
            logger.warning(f"Block {bn} not found after {self.block_fetch_retries} attempts, skipping")
            return credited

        for tx in block.get("transactions") or []:
            try:
                if self._process_native_tx(tx, bn):
                    credited["native"] += 1
            except Exception:
                logger.exception(f"Error processing native tx {tx.get('hash')} in block {bn}")

        try:
            logs = self._fetch_logs(bn)
        except TransientChainError as e:
            logger.error(f"Error fetching token logs in block {bn}: {e}")
            logs = []
        except Exception:
            logger.exception(f"Unexpected error fetching token logs in block {bn}")
            logs = []

        for log in logs:
            try:
                if self._process_token_log(log, bn):
                    credited["token"] += 1
            except Exception:
                logger.exception(f"Error processing token log {log.get('transactionHash')} in block {bn}")

        return credited

    def _fetch_block(self, bn: int):
        for attempt in range(1, self.block_fetch_retries + 1):
            try:
                block = self.chain.get_block(bn)
            except TransientChainError as e:
                logger.error(f"Error fetching block {bn} (attempt {attempt}): {e}")
                block = None
            if block is not None:
                return block
            if attempt < self.block_fetch_retries and self.retry_delay > 0:
                time.sleep(self.retry_delay)
        return None

    def _fetch_logs(self, bn: int):
        last_error = None
        for attempt in range(1, self.block_fetch_retries + 1):
            try:
                return self.chain.get_logs(bn, bn, TRANSFER_TOPIC, self.token_contracts or None)
            except TransientChainError as e:
                last_error = e
                if attempt < self.block_fetch_retries and self.retry_delay > 0:
                    time.sleep(self.retry_delay)
        raise last_error

    def _process_native_tx(self, tx, bn: int) -> bool:
        to_addr = tx.get("to")
        value = int(tx.get("value") or 0)
        if not to_addr or value == 0:
            return False

        tx_hash = to_hex(tx.get("hash"))
        logger.debug(f"CHECKING NATIVE TX | To: {to_addr} | Hash: {tx_hash}")
        user_id = users.find_owner(to_addr, session_factory=self.session_factory)
        if user_id is None:
            return False

        return ledger.credit_deposit(
            user_id, value, tx_hash, self.native_symbol, config.NATIVE_DECIMALS,
            address=to_addr.lower(), block_number=bn, session_factory=self.session_factory,
        )

    def _process_token_log(self, log, bn: int) -> bool:
        topics = log.get("topics") or []
        # ERC-721 Transfer has a 4th indexed topic and no data
        if len(topics) != 3:
            return False
        value = _log_value(log.get("data"))
        if value is None:
            return False

        to_addr = _topic_address(topics[2])
        token = str(log.get("address") or "").lower()
        tx_hash = to_hex(log.get("transactionHash"))
        logger.debug(f"CHECKING TOKEN LOG | Token: {token} | To: {to_addr} | Hash: {tx_hash}")

        user_id = users.find_owner(to_addr, session_factory=self.session_factory)
        if user_id is None:
            return False

        decimals = self.chain.get_token_decimals(token)
        return ledger.credit_deposit(
            user_id, value, tx_hash, token, decimals,
            address=to_addr, block_number=bn, session_factory=self.session_factory,
        )

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "cursor": ledger.get_cursor(self.session_factory),
            "last_head": self.last_head,
            "last_target": self.last_target,
            "last_scan_at": self.last_scan_at.isoformat() if self.last_scan_at else None,
            "last_error": self.last_error,
            "confirmations": self.confirmations,
        }


if __name__ == "__main__":
    import db

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    config.validate_config()
    db.init_db()
    ledger.ensure_cursor()
    DepositListener(ChainReader()).run_forever()
