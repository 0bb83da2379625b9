"""
Bridge - Tapscript Leaf Construction

This module provides the tapscript leaves the bridge commits to:
- N-of-N verifier multisig using OP_CHECKSIGADD
- Deposit and move-commit leaves with data envelopes
- 2-of-2 operator/verifier multisig
- Relative and absolute timelocked single-key leaves
- Hash preimage reveal and inscription leaves
- The anyone-can-spend anchor output
"""

import struct
from typing import List, Sequence

from transactions.primitives import TxOut
from transactions.utils import create_p2wsh_script

from .opcodes import ScriptOpcode, push_data, push_int


ANCHOR_OUTPUT_VALUE = 330


def _check_x_only(pubkey: bytes) -> bytes:
    if len(pubkey) != 32:
        raise ValueError("Public key must be 32 bytes (x-only)")
    return pubkey


def _envelope(items: Sequence[bytes]) -> bytes:
    """OP_FALSE OP_IF <items...> OP_ENDIF, a branch that never executes."""
    parts = [bytes([ScriptOpcode.OP_FALSE, ScriptOpcode.OP_IF])]
    parts.extend(push_data(item) for item in items)
    parts.append(bytes([ScriptOpcode.OP_ENDIF]))
    return b''.join(parts)


class ScriptBuilder:
    """
    Builder for the bridge's tapscript leaves.

    Verifier keys are fixed at construction and always used in the
    configured order, so every participant derives identical scripts.
    """

    def __init__(self, verifiers_pks: List[bytes]):
        """
        Initialize the script builder.

        Args:
            verifiers_pks: 32-byte x-only verifier public keys, in order
        """
        if not verifiers_pks:
            raise ValueError("At least one verifier key is required")
        self.verifiers_pks = [_check_x_only(pk) for pk in verifiers_pks]

    def generate_n_of_n_script(self) -> bytes:
        """
        Create the N-of-N verifier script.

        Script format: <pk0> OP_CHECKSIG <pk1> OP_CHECKSIGADD ... <N> OP_NUMEQUAL

        Returns:
            Serialized tapscript bytes
        """
        script_parts = [push_data(self.verifiers_pks[0]), bytes([ScriptOpcode.OP_CHECKSIG])]
        for pubkey in self.verifiers_pks[1:]:
            script_parts.append(push_data(pubkey))
            script_parts.append(bytes([ScriptOpcode.OP_CHECKSIGADD]))
        script_parts.append(push_int(len(self.verifiers_pks)))
        script_parts.append(bytes([ScriptOpcode.OP_NUMEQUAL]))
        return b''.join(script_parts)

    def generate_deposit_script(self, evm_address: bytes, amount: int) -> bytes:
        """
        Create the deposit leaf: N-of-N followed by the peg-in destination envelope.

        Args:
            evm_address: 20-byte destination address on the rollup side
            amount: Deposit amount in satoshis

        Returns:
            Serialized tapscript bytes
        """
        if len(evm_address) != 20:
            raise ValueError("EVM address must be 20 bytes")
        return self.generate_n_of_n_script() + _envelope([evm_address, struct.pack('<Q', amount)])

    def generate_move_commit_script(self, kickoff_txids: List[bytes]) -> bytes:
        """N-of-N followed by an envelope carrying the registered kickoff txids."""
        for txid in kickoff_txids:
            if len(txid) != 32:
                raise ValueError("Kickoff txid must be 32 bytes")
        return self.generate_n_of_n_script() + _envelope(kickoff_txids)

    @staticmethod
    def generate_2_of_2_script(first_pk: bytes, second_pk: bytes) -> bytes:
        """
        Create a 2-of-2 script.

        Script format: <first_pk> OP_CHECKSIGVERIFY <second_pk> OP_CHECKSIG
        """
        return b''.join([
            push_data(_check_x_only(first_pk)),
            bytes([ScriptOpcode.OP_CHECKSIGVERIFY]),
            push_data(_check_x_only(second_pk)),
            bytes([ScriptOpcode.OP_CHECKSIG]),
        ])

    @staticmethod
    def generate_timelock_script(pubkey: bytes, block_count: int) -> bytes:
        """
        Create a relative timelock leaf.

        Script format: <block_count> OP_CHECKSEQUENCEVERIFY OP_DROP <pubkey> OP_CHECKSIG

        Args:
            pubkey: 32-byte x-only key allowed to spend after the delay
            block_count: Relative delay in blocks

        Returns:
            Serialized tapscript bytes
        """
        if block_count < 0:
            raise ValueError("Block count cannot be negative")
        return b''.join([
            push_int(block_count),
            bytes([ScriptOpcode.OP_CHECKSEQUENCEVERIFY, ScriptOpcode.OP_DROP]),
            push_data(_check_x_only(pubkey)),
            bytes([ScriptOpcode.OP_CHECKSIG]),
        ])

    @staticmethod
    def generate_absolute_timelock_script(pubkey: bytes, block_height: int) -> bytes:
        """
        Create an absolute timelock leaf.

        Script format: <block_height> OP_CHECKLOCKTIMEVERIFY OP_DROP <pubkey> OP_CHECKSIG
        """
        if block_height < 0:
            raise ValueError("Block height cannot be negative")
        return b''.join([
            push_int(block_height),
            bytes([ScriptOpcode.OP_CHECKLOCKTIMEVERIFY, ScriptOpcode.OP_DROP]),
            push_data(_check_x_only(pubkey)),
            bytes([ScriptOpcode.OP_CHECKSIG]),
        ])

    @staticmethod
    def generate_hash_script(hash_value: bytes) -> bytes:
        """Script format: OP_SHA256 <hash> OP_EQUAL"""
        if len(hash_value) != 32:
            raise ValueError("Hash must be 32 bytes")
        return (bytes([ScriptOpcode.OP_SHA256])
                + push_data(hash_value)
                + bytes([ScriptOpcode.OP_EQUAL]))

    @staticmethod
    def create_inscription_script_32_bytes(pubkey: bytes, preimages: List[bytes]) -> bytes:
        """
        Create a leaf that inscribes 32-byte preimages under a key spend.

        Script format: <pubkey> OP_CHECKSIG OP_FALSE OP_IF <p1> ... <pn> OP_ENDIF

        Args:
            pubkey: 32-byte x-only key of the inscribing actor
            preimages: 32-byte preimages to reveal on-chain

        Returns:
            Serialized tapscript bytes
        """
        for preimage in preimages:
            if len(preimage) != 32:
                raise ValueError("Preimage must be 32 bytes")
        return (push_data(_check_x_only(pubkey))
                + bytes([ScriptOpcode.OP_CHECKSIG])
                + _envelope(preimages))

    @staticmethod
    def anyone_can_spend_script() -> bytes:
        return bytes([ScriptOpcode.OP_TRUE])

    @staticmethod
    def anyone_can_spend_txout() -> TxOut:
        """P2WSH(OP_TRUE) anchor output at the dust value for that script type."""
        return TxOut(ANCHOR_OUTPUT_VALUE, create_p2wsh_script(ScriptBuilder.anyone_can_spend_script()))
