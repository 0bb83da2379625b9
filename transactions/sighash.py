"""
Bridge - Taproot Signature Hashes

BIP341 signature message construction for key path and script path spends.

References:
- BIP341: https://github.com/bitcoin/bips/blob/master/bip-0341.mediawiki
- BIP342: https://github.com/bitcoin/bips/blob/master/bip-0342.mediawiki
"""

import struct
from enum import IntEnum
from typing import List, Optional, Sequence

from crypto.keys import tagged_hash

from .exceptions import TransactionError
from .primitives import Transaction, TxOut
from .utils import sha256, varstr


class SighashType(IntEnum):
    """Taproot sighash flags."""
    DEFAULT = 0x00
    ALL = 0x01
    NONE = 0x02
    SINGLE = 0x03
    ALL_ANYONECANPAY = 0x81
    NONE_ANYONECANPAY = 0x82
    SINGLE_ANYONECANPAY = 0x83


VALID_SIGHASH_TYPES = frozenset(int(t) for t in SighashType)

TAPSCRIPT_LEAF_VERSION = 0xc0
_KEY_VERSION = 0x00
_NO_CODESEPARATOR = 0xffffffff


def tapleaf_hash(script: bytes, leaf_version: int = TAPSCRIPT_LEAF_VERSION) -> bytes:
    """BIP341 TapLeaf hash of a script."""
    return tagged_hash("TapLeaf", bytes([leaf_version]) + varstr(script))


def taproot_signature_hash(tx: Transaction, input_index: int, prevouts: Sequence[TxOut],
                           hash_type: int = SighashType.DEFAULT,
                           leaf_script: Optional[bytes] = None,
                           leaf_hash: Optional[bytes] = None,
                           annex: Optional[bytes] = None) -> bytes:
    """
    Compute the BIP341 signature hash for a Taproot input.

    A key path sighash is produced when neither leaf_script nor leaf_hash
    is given; otherwise the script path extension is committed.

    Args:
        tx: Transaction being signed
        input_index: Index of the input being signed
        prevouts: Outputs spent by every input, in input order
        hash_type: Sighash flag
        leaf_script: Tapscript being executed (script path)
        leaf_hash: Precomputed TapLeaf hash (script path)
        annex: Optional annex, must start with 0x50

    Returns:
        32-byte message to sign
    """
    hash_type = int(hash_type)
    if hash_type not in VALID_SIGHASH_TYPES:
        raise TransactionError(f"Invalid sighash type: {hash_type:#x}")
    if not 0 <= input_index < len(tx.inputs):
        raise TransactionError(f"Input index {input_index} out of range")
    if len(prevouts) != len(tx.inputs):
        raise TransactionError(
            f"Expected {len(tx.inputs)} prevouts, got {len(prevouts)}"
        )
    if annex is not None and (not annex or annex[0] != 0x50):
        raise TransactionError("Annex must start with 0x50")

    if leaf_script is not None and leaf_hash is None:
        leaf_hash = tapleaf_hash(leaf_script)

    output_type = hash_type & 0x03 if hash_type != SighashType.DEFAULT else SighashType.ALL
    anyone_can_pay = bool(hash_type & 0x80)

    msg = bytearray()
    msg += b'\x00'  # epoch
    msg += bytes([hash_type])
    msg += struct.pack('<i', tx.version)
    msg += struct.pack('<I', tx.locktime)

    if not anyone_can_pay:
        msg += sha256(b''.join(tx_in.previous_output.serialize() for tx_in in tx.inputs))
        msg += sha256(b''.join(struct.pack('<q', out.value) for out in prevouts))
        msg += sha256(b''.join(varstr(out.script_pubkey) for out in prevouts))
        msg += sha256(b''.join(struct.pack('<I', tx_in.sequence) for tx_in in tx.inputs))

    if output_type == SighashType.ALL:
        msg += sha256(b''.join(out.serialize() for out in tx.outputs))

    ext_flag = 1 if leaf_hash is not None else 0
    spend_type = ext_flag * 2 + (1 if annex is not None else 0)
    msg += bytes([spend_type])

    if anyone_can_pay:
        tx_in = tx.inputs[input_index]
        msg += tx_in.previous_output.serialize()
        msg += prevouts[input_index].serialize()
        msg += struct.pack('<I', tx_in.sequence)
    else:
        msg += struct.pack('<I', input_index)

    if annex is not None:
        msg += sha256(varstr(annex))

    if output_type == SighashType.SINGLE:
        if input_index >= len(tx.outputs):
            raise TransactionError("SIGHASH_SINGLE without matching output")
        msg += sha256(tx.outputs[input_index].serialize())

    if leaf_hash is not None:
        msg += leaf_hash
        msg += bytes([_KEY_VERSION])
        msg += struct.pack('<I', _NO_CODESEPARATOR)

    return tagged_hash("TapSighash", bytes(msg))


def script_spend_sighash(tx: Transaction, input_index: int, prevouts: List[TxOut],
                         script: bytes, hash_type: int = SighashType.DEFAULT) -> bytes:
    """Script path sighash for a single tapscript leaf."""
    return taproot_signature_hash(tx, input_index, prevouts, hash_type, leaf_script=script)


def key_spend_sighash(tx: Transaction, input_index: int, prevouts: List[TxOut],
                      hash_type: int = SighashType.DEFAULT) -> bytes:
    """Key path sighash."""
    return taproot_signature_hash(tx, input_index, prevouts, hash_type)
