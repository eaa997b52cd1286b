# hd.py - Deterministic deposit addresses from the master account xpub
# - MASTER_XPUB is the account node m/44'/60'/0'/0 (public only, safe on the server)
# - user id N -> child N -> m/44'/60'/0'/0/N (MetaMask compatible)
# - keygen: 12-word BIP39 -> account xpub + fresh hot wallet (testnet bootstrap)

import argparse
from typing import Dict, List

from bip_utils import Bip32Slip10Secp256k1, EthAddrEncoder
from eth_account import Account
from mnemonic import Mnemonic
from web3 import Web3

from errors import InvalidInput

ACCOUNT_PATH = "m/44'/60'/0'/0"
HARDENED_OFFSET = 2 ** 31


def _check_user_id(user_id) -> int:
    # bool is an int subclass, reject it explicitly
    if isinstance(user_id, bool) or not isinstance(user_id, int):
        raise InvalidInput(f"Invalid userId for derivation: {user_id!r}")
    if user_id < 0 or user_id >= HARDENED_OFFSET:
        raise InvalidInput(f"userId out of range for derivation: {user_id}")
    return user_id


def derive_path(user_id: int) -> str:
    return f"{ACCOUNT_PATH}/{_check_user_id(user_id)}"


def derive_address(master_xpub: str, user_id: int) -> str:
    """Checksummed address of child `user_id` under the account xpub."""
    index = _check_user_id(user_id)
    if not master_xpub or not isinstance(master_xpub, str):
        raise InvalidInput("Master extended key is required")
    try:
        node = Bip32Slip10Secp256k1.FromExtendedKey(master_xpub.strip())
        child = node.ChildKey(index)
    except Exception as e:
        # bip_utils raises base58/checksum/key errors from several hierarchies
        raise InvalidInput(f"Cannot derive from extended key: {e}") from e
    address = EthAddrEncoder.EncodeKey(child.PublicKey().KeyObject())
    return Web3.to_checksum_address(address)


# ---------------------------------
# Key generation (operator tooling)
# ---------------------------------
def account_xpub_from_mnemonic(mnemonic: str, passphrase: str = "") -> str:
    seed = Mnemonic.to_seed(mnemonic, passphrase=passphrase)
    node = Bip32Slip10Secp256k1.FromSeedAndPath(seed, ACCOUNT_PATH)
    return node.PublicKey().ToExtended()


def generate_master_keys(example_users: int = 3) -> Dict[str, object]:
    mnemonic = Mnemonic("english").generate(strength=128)  # 12 words
    xpub = account_xpub_from_mnemonic(mnemonic)
    hot = Account.create()
    examples: List[Dict[str, str]] = [
        {"user_id": i, "address": derive_address(xpub, i), "path": derive_path(i)}
        for i in range(1, example_users + 1)
    ]
    return {
        "mnemonic": mnemonic,
        "master_xpub": xpub,
        "hot_wallet_address": hot.address,
        "hot_wallet_private_key": Web3.to_hex(hot.key),
        "examples": examples,
    }


def _main(argv=None):
    parser = argparse.ArgumentParser(description="Deposit address tooling")
    sub = parser.add_subparsers(dest="command", required=True)

    addr = sub.add_parser("address", help="Print the deposit address for a user id")
    addr.add_argument("user_id", type=int)
    addr.add_argument("--xpub", default=None, help="Account xpub (default: MASTER_XPUB)")

    sub.add_parser("keygen", help="Generate testnet mnemonic, xpub and hot wallet")

    args = parser.parse_args(argv)

    if args.command == "address":
        from config import MASTER_XPUB
        xpub = args.xpub or MASTER_XPUB
        try:
            address = derive_address(xpub, args.user_id)
        except InvalidInput as e:
            parser.exit(1, f"Error generating address: {e}\n")
        print(f"User ID:         {args.user_id}")
        print(f"Address:         {address}")
        print(f"Derivation Path: {derive_path(args.user_id)}")
        return

    keys = generate_master_keys()
    print("WARNING: testnet only. Store the mnemonic offline.\n")
    print(f"MNEMONIC:               {keys['mnemonic']}")
    print(f"MASTER_XPUB:            {keys['master_xpub']}")
    print(f"HOT_WALLET_PRIVATE_KEY: {keys['hot_wallet_private_key']}")
    print(f"Hot wallet address:     {keys['hot_wallet_address']}\n")
    for ex in keys["examples"]:
        print(f"User {ex['user_id']}: {ex['address']}  ({ex['path']})")


if __name__ == "__main__":
    _main()
