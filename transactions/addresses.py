"""
Bridge - Segwit Address Encoding

Witness version 0 and 1 addresses on top of bitcoinlib's bech32 codec,
network prefixes, and conversion between addresses and output scripts.
"""

from typing import Optional, Tuple

from bitcoinlib.encoding import EncodingError, addr_bech32_to_pubkeyhash, pubkeyhash_to_addr_bech32

from .exceptions import TransactionError


BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"

NETWORK_HRPS = {
    "mainnet": "bc",
    "testnet": "tb",
    "signet": "tb",
    "regtest": "bcrt",
}


class AddressError(TransactionError):
    """Raised for malformed addresses or network mismatches."""


def network_hrp(network: str) -> str:
    try:
        return NETWORK_HRPS[network]
    except KeyError:
        raise AddressError(f"Unknown network: {network}") from None


def _witness_version(version_op: int) -> int:
    if version_op == 0x00:
        return 0
    if 0x51 <= version_op <= 0x60:
        return version_op - 0x50
    raise AddressError("Not a segwit output script")


def encode_segwit_address(hrp: str, witver: int, witprog: bytes) -> str:
    """
    Encode a segwit output as an address.

    Witness version 0 uses bech32, later versions use bech32m.

    Args:
        hrp: Human-readable part
        witver: Witness version (0-16)
        witprog: Witness program (20 or 32 bytes)

    Returns:
        Encoded address
    """
    if not 0 <= witver <= 16:
        raise AddressError(f"Invalid witness version: {witver}")
    # bitcoinlib reads any other length as a full output script
    if len(witprog) not in (20, 32):
        raise AddressError(f"Invalid witness program length: {len(witprog)}")
    try:
        return pubkeyhash_to_addr_bech32(bytes(witprog), prefix=hrp, witver=witver)
    except EncodingError as e:
        raise AddressError(f"Cannot encode address: {e}") from e


def decode_segwit_address(address: str, hrp: Optional[str] = None) -> Tuple[int, bytes]:
    """
    Decode a segwit address.

    Args:
        address: Address string
        hrp: Expected human-readable part, checked when given

    Returns:
        Tuple of (witness_version, witness_program)
    """
    try:
        witprog = addr_bech32_to_pubkeyhash(address, prefix=hrp)
    except (EncodingError, TypeError, ValueError) as e:
        raise AddressError(f"Invalid address '{address}': {e}") from e
    # the first data character after the separator is the witness version
    lowered = address.lower()
    return BECH32_CHARSET.index(lowered[lowered.rfind("1") + 1]), bytes(witprog)


def encode_taproot_address(output_key_x: bytes, network: str = "mainnet") -> str:
    """Encode a 32-byte Taproot output key as a bech32m address."""
    if len(output_key_x) != 32:
        raise AddressError("Taproot output key must be 32 bytes")
    return encode_segwit_address(network_hrp(network), 1, output_key_x)


def script_pubkey_to_address(script_pubkey: bytes, network: str = "mainnet") -> str:
    """Render a segwit output script as an address."""
    if len(script_pubkey) < 4 or script_pubkey[1] != len(script_pubkey) - 2:
        raise AddressError("Not a segwit output script")
    witver = _witness_version(script_pubkey[0])
    return encode_segwit_address(network_hrp(network), witver, script_pubkey[2:])


def address_to_script_pubkey(address: str, network: Optional[str] = None) -> bytes:
    """
    Convert an address to its output script.

    Args:
        address: Segwit address
        network: When given, the address prefix must match this network

    Returns:
        Output script bytes
    """
    hrp = network_hrp(network) if network is not None else None
    witver, witprog = decode_segwit_address(address, hrp)
    version_op = 0x00 if witver == 0 else 0x50 + witver
    return bytes([version_op, len(witprog)]) + witprog
