"""
Bridge - Transaction Utilities

Compact size and variable-length string codecs, hashing and outpoint helpers
shared by the transaction model, the sighash code and the Taproot builder.
"""

import hashlib
from typing import Tuple

from bitcoinlib.encoding import EncodingError, int_to_varbyteint, varbyteint_to_int, varstr


__all__ = [
    'serialize_compact_size',
    'parse_compact_size',
    'varstr',
    'varstr_parse',
    'sha256',
    'double_sha256',
    'create_p2wsh_script',
    'txid_to_bytes',
    'txid_from_bytes',
]


def serialize_compact_size(n: int) -> bytes:
    """
    Encode a non-negative integer as a Bitcoin compact size.

    Raises:
        ValueError: If n does not fit in 64 bits
    """
    if not 0 <= n <= 0xffffffffffffffff:
        raise ValueError(f"Compact size out of range: {n}")
    return int_to_varbyteint(n)


def parse_compact_size(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """
    Decode a compact size starting at offset.

    Returns:
        Tuple of (value, offset after the encoding)
    """
    if offset >= len(data):
        raise ValueError(f"Truncated compact size at offset {offset}")
    try:
        value, size = varbyteint_to_int(bytes(data[offset:offset + 9]))
    except EncodingError as e:
        raise ValueError(f"Invalid compact size at offset {offset}: {e}") from e
    if offset + size > len(data):
        raise ValueError(f"Truncated {size - 1}-byte compact size at offset {offset}")
    return value, offset + size


def varstr_parse(data: bytes, offset: int = 0) -> Tuple[bytes, int]:
    """
    Parse variable-length string from bytes (missing from bitcoinlib).

    Returns:
        Tuple of (bytes, offset after it)
    """
    length, start = parse_compact_size(data, offset)
    end = start + length
    if end > len(data):
        raise ValueError(f"Byte string of {length} bytes runs past the end of the data")
    return data[start:end], end


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def double_sha256(data: bytes) -> bytes:
    """Bitcoin hash256, used for txids and block hashes."""
    return sha256(sha256(data))


def create_p2wsh_script(witness_script: bytes) -> bytes:
    """Witness v0 script hash output for the given witness script."""
    return bytes([0x00, 0x20]) + sha256(witness_script)


def txid_to_bytes(txid: str) -> bytes:
    """Convert a display-order txid hex string to internal byte order."""
    raw = bytes.fromhex(txid)
    if len(raw) != 32:
        raise ValueError(f"Transaction ID must be 32 bytes, got {len(raw)}")
    return raw[::-1]


def txid_from_bytes(raw: bytes) -> str:
    """Convert internal byte order txid to its display hex string."""
    return raw[::-1].hex()
