"""
Bridge - Bitcoin Script Opcodes

Opcode constants and push encoding helpers used when assembling tapscript
leaves.
"""

import struct


class ScriptOpcode:
    """Bitcoin Script opcodes used in bridge scripts."""

    # Constants
    OP_0 = 0x00
    OP_FALSE = OP_0
    OP_PUSHDATA1 = 0x4c
    OP_PUSHDATA2 = 0x4d
    OP_PUSHDATA4 = 0x4e
    OP_1NEGATE = 0x4f
    OP_1 = 0x51
    OP_TRUE = OP_1
    OP_16 = 0x60

    # Flow control
    OP_IF = 0x63
    OP_ENDIF = 0x68
    OP_VERIFY = 0x69
    OP_RETURN = 0x6a

    # Stack operations
    OP_DROP = 0x75

    # Bitwise logic
    OP_EQUAL = 0x87
    OP_EQUALVERIFY = 0x88

    # Arithmetic
    OP_NUMEQUAL = 0x9c
    OP_NUMEQUALVERIFY = 0x9d

    # Crypto
    OP_SHA256 = 0xa8
    OP_CHECKSIG = 0xac
    OP_CHECKSIGVERIFY = 0xad

    # Locktime
    OP_CHECKLOCKTIMEVERIFY = 0xb1
    OP_CHECKSEQUENCEVERIFY = 0xb2

    # Tapscript
    OP_CHECKSIGADD = 0xba


def encode_script_num(value: int) -> bytes:
    """
    Encode an integer as a minimal little-endian script number.

    Args:
        value: Integer to encode

    Returns:
        Minimally encoded bytes (empty for zero)
    """
    if value == 0:
        return b''

    negative = value < 0
    magnitude = abs(value)
    result = bytearray()
    while magnitude:
        result.append(magnitude & 0xff)
        magnitude >>= 8

    # Sign bit lives in the most significant bit of the last byte
    if result[-1] & 0x80:
        result.append(0x80 if negative else 0x00)
    elif negative:
        result[-1] |= 0x80

    return bytes(result)


def push_data(data: bytes) -> bytes:
    """
    Encode a data push with the smallest push opcode.

    Args:
        data: Bytes to push

    Returns:
        Push opcode(s) followed by data
    """
    length = len(data)
    if length < ScriptOpcode.OP_PUSHDATA1:
        return bytes([length]) + data
    elif length <= 0xff:
        return bytes([ScriptOpcode.OP_PUSHDATA1, length]) + data
    elif length <= 0xffff:
        return bytes([ScriptOpcode.OP_PUSHDATA2]) + struct.pack('<H', length) + data
    else:
        return bytes([ScriptOpcode.OP_PUSHDATA4]) + struct.pack('<I', length) + data


def push_int(value: int) -> bytes:
    """Push an integer using OP_0, OP_1NEGATE, OP_1..OP_16 or a minimal number push."""
    if value == 0:
        return bytes([ScriptOpcode.OP_0])
    if value == -1:
        return bytes([ScriptOpcode.OP_1NEGATE])
    if 1 <= value <= 16:
        return bytes([ScriptOpcode.OP_1 + value - 1])
    return push_data(encode_script_num(value))
