"""Per-user rollup chain identity."""

from eth_utils import is_hex_address
from web3 import Web3

from whisperpay.src.errors import InvalidAddress

CHAIN_ID_MODULUS = 2_147_483_647


def normalize_address(address: str) -> str:
    """Return the lowercase canonical form of a 20-byte hex address.

    Checksum casing is not enforced, so the same account spelled in upper,
    lower or mixed case normalizes to one key.
    """
    if not isinstance(address, str):
        raise InvalidAddress("Invalid EVM address")
    candidate = address.strip()
    if candidate[:2] not in ("0x", "0X") or not is_hex_address(candidate):
        raise InvalidAddress(f"Invalid EVM address: {address}")
    return candidate.lower()


def derive_chain_id(address: str) -> int:
    """
    Derive the rollup chain id owned by an address

    keccak256 over the lowercase hex address (decoded to its 20 bytes), leading
    64 bits taken from hex characters 2..18 of the 0x-prefixed digest,
    reduced modulo 2^31 - 1. Distinct addresses may collide.
    """
    digest = Web3.to_hex(Web3.keccak(hexstr=normalize_address(address)))
    return int(digest[2:18], 16) % CHAIN_ID_MODULUS
