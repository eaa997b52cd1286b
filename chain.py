# chain.py - JSON-RPC access for the deposit engine and the hot wallet
# - ChainReader: head height, full blocks, Transfer logs, token decimals (cached, default 18)
# - HotWallet: signs + broadcasts native withdrawals (gas estimate with 5% margin)
# - Any RPC failure surfaces as TransientChainError; "block not found" is None

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from eth_account import Account
from web3 import Web3
from web3.exceptions import BlockNotFound, TimeExhausted
from web3.middleware import ExtraDataToPOAMiddleware

from config import PROVIDER_URL, RPC_TIMEOUT_SECONDS
from errors import InvalidInput, TransientChainError

logger = logging.getLogger("custodia.chain")

# keccak("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
DEFAULT_TOKEN_DECIMALS = 18
GAS_MARGIN = Decimal("1.05")

# Minimal ERC20 ABI (decimals only)
ERC20_DECIMALS_ABI = [
    {"constant": True, "inputs": [], "name": "decimals", "outputs": [{"name": "", "type": "uint8"}], "type": "function"},
]

POA_HINTS = ("polygon", "matic", "bsc", "binance", "avax", "linea")


def to_hex(value: Any) -> str:
    """0x-prefixed lower-case hex for HexBytes/bytes, passthrough for str."""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text.lower() if text.startswith("0x") else "0x" + text.lower()


def _inject_poa_if_needed(w3: Web3, rpc: str):
    if any(x in rpc.lower() for x in POA_HINTS):
        w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)


def make_w3(rpc_url: str = PROVIDER_URL, timeout: int = RPC_TIMEOUT_SECONDS) -> Web3:
    if not rpc_url:
        raise InvalidInput("RPC endpoint URL is required")
    w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
    _inject_poa_if_needed(w3, rpc_url)
    return w3


# ---------------------------------
# Reader
# ---------------------------------
class ChainReader:
    def __init__(self, w3: Optional[Web3] = None, rpc_url: str = PROVIDER_URL):
        self.w3 = w3 if w3 is not None else make_w3(rpc_url)
        self._decimals: Dict[str, int] = {}

    def get_head_height(self) -> int:
        try:
            return int(self.w3.eth.block_number)
        except Exception as e:
            raise TransientChainError(f"block_number failed: {e}") from e

    def get_block(self, height: int):
        try:
            return self.w3.eth.get_block(height, full_transactions=True)
        except BlockNotFound:
            return None
        except Exception as e:
            raise TransientChainError(f"get_block({height}) failed: {e}") from e

    def get_logs(self, from_block: int, to_block: int, topic: str = TRANSFER_TOPIC,
                 addresses: Optional[Iterable[str]] = None) -> List[Any]:
        params: Dict[str, Any] = {"fromBlock": from_block, "toBlock": to_block, "topics": [topic]}
        try:
            if addresses:
                params["address"] = [Web3.to_checksum_address(a) for a in addresses]
            return list(self.w3.eth.get_logs(params))
        except Exception as e:
            raise TransientChainError(f"get_logs({from_block}, {to_block}) failed: {e}") from e

    def get_token_decimals(self, token_address: str) -> int:
        key = token_address.lower()
        if key in self._decimals:
            return self._decimals[key]
        try:
            contract = self.w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_DECIMALS_ABI)
            decimals = int(contract.functions.decimals().call())
        except Exception as e:
            # not cached: the next transfer from this token retries the lookup
            logger.warning(f"Could not fetch decimals for token {token_address}, defaulting to 18: {e}")
            return DEFAULT_TOKEN_DECIMALS
        self._decimals[key] = decimals
        return decimals


# ---------------------------------
# Hot wallet (withdrawals)
# ---------------------------------
def _send_raw_tx_and_return_hex(w3: Web3, signed_tx_obj: Any) -> str:
    raw = getattr(signed_tx_obj, "raw_transaction", None) or getattr(signed_tx_obj, "rawTransaction", None)
    tx_hash = w3.eth.send_raw_transaction(raw)
    return to_hex(tx_hash)


def estimate_native_tx_gas(w3: Web3, from_addr: str, to_addr: str, value_wei: int) -> Tuple[int, int]:
    obj = {"from": from_addr, "to": to_addr, "value": int(value_wei)}
    try:
        estimated = w3.eth.estimate_gas(obj)
    except Exception:
        estimated = 21000
    try:
        gas_price = w3.eth.gas_price
    except Exception:
        gas_price = int(1e9)
    estimated = int(Decimal(estimated) * GAS_MARGIN)
    return int(estimated), int(gas_price)


class HotWallet:
    """Broadcasts outbound native transfers from the custodial hot wallet."""

    def __init__(self, w3: Web3, private_key: str, chain_id: Optional[int] = None):
        if not private_key:
            raise InvalidInput("Hot wallet private key is required")
        self.w3 = w3
        self.account = Account.from_key(private_key)
        self._chain_id = chain_id

    @property
    def address(self) -> str:
        return self.account.address

    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(self.w3.eth.chain_id)
        return self._chain_id

    def send_native(self, to_address: str, value_wei: int) -> str:
        to_checksum = Web3.to_checksum_address(to_address)
        try:
            nonce = self.w3.eth.get_transaction_count(self.address, "pending")
            gas, gas_price = estimate_native_tx_gas(self.w3, self.address, to_checksum, value_wei)
            tx = {"nonce": nonce, "to": to_checksum, "value": int(value_wei),
                  "gas": gas, "gasPrice": gas_price, "chainId": self.chain_id()}
            signed = self.account.sign_transaction(tx)
            tx_hash = _send_raw_tx_and_return_hex(self.w3, signed)
        except Exception as e:
            raise TransientChainError(f"broadcast to {to_checksum} failed: {e}") from e
        logger.info(f"Broadcast withdrawal {tx_hash}: {value_wei} wei -> {to_checksum}")
        return tx_hash

    def wait_for_receipt(self, tx_hash: str, timeout: int = 120) -> bool:
        """True if mined with status 1, False if reverted."""
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as e:
            raise TransientChainError(f"receipt for {tx_hash} not available after {timeout}s") from e
        return receipt["status"] == 1
