"""
Bridge - Transaction Model

Plain dataclasses for outpoints, inputs, outputs and transactions with
consensus serialization (BIP144 witness encoding) and txid computation.
"""

import struct
from dataclasses import dataclass, field
from io import BytesIO
from typing import List

from bitcoinlib.encoding import EncodingError
from bitcoinlib.scripts import ScriptError
from bitcoinlib.transactions import Transaction as BitcoinlibTransaction
from bitcoinlib.transactions import TransactionError as BitcoinlibTransactionError

from .exceptions import TransactionParsingError
from .utils import (
    double_sha256,
    parse_compact_size,
    serialize_compact_size,
    txid_from_bytes,
    txid_to_bytes,
    varstr,
    varstr_parse,
)


# Sequence numbers
SEQUENCE_FINAL = 0xffffffff
ENABLE_RBF_NO_LOCKTIME = 0xfffffffd
SEQUENCE_LOCKTIME_DISABLE_FLAG = 1 << 31
SEQUENCE_LOCKTIME_MASK = 0x0000ffff


def sequence_from_height(blocks: int) -> int:
    """Relative timelock sequence for a number of blocks (BIP68)."""
    if not 0 <= blocks <= SEQUENCE_LOCKTIME_MASK:
        raise ValueError(f"Relative height out of range: {blocks}")
    return blocks


@dataclass(frozen=True)
class OutPoint:
    """Reference to a transaction output."""
    txid: str
    vout: int

    def __post_init__(self):
        txid_to_bytes(self.txid)
        if not 0 <= self.vout <= 0xffffffff:
            raise ValueError(f"Output index out of range: {self.vout}")

    @classmethod
    def from_str(cls, value: str) -> 'OutPoint':
        """Parse the `txid:vout` form."""
        try:
            txid, vout = value.rsplit(':', 1)
            return cls(txid.lower(), int(vout))
        except ValueError as e:
            raise ValueError(f"Invalid outpoint '{value}': {e}") from e

    @property
    def txid_bytes(self) -> bytes:
        return txid_to_bytes(self.txid)

    def serialize(self) -> bytes:
        return self.txid_bytes + struct.pack('<I', self.vout)

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass(frozen=True)
class TxOut:
    """Transaction output."""
    value: int
    script_pubkey: bytes

    def __post_init__(self):
        if self.value < 0:
            raise ValueError(f"Output value cannot be negative: {self.value}")

    def serialize(self) -> bytes:
        return struct.pack('<q', self.value) + varstr(self.script_pubkey)


@dataclass
class TxIn:
    """Transaction input."""
    previous_output: OutPoint
    sequence: int = ENABLE_RBF_NO_LOCKTIME
    script_sig: bytes = b''
    witness: List[bytes] = field(default_factory=list)

    def serialize(self) -> bytes:
        return (self.previous_output.serialize()
                + varstr(self.script_sig)
                + struct.pack('<I', self.sequence))


@dataclass
class Transaction:
    """
    Bitcoin transaction.

    Inputs carry their own witness stacks; serialize() emits the segwit
    marker and flag only when at least one witness is non-empty.
    """
    inputs: List[TxIn]
    outputs: List[TxOut]
    version: int = 2
    locktime: int = 0

    def has_witness(self) -> bool:
        return any(tx_in.witness for tx_in in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        """
        Serialize transaction in network format.

        Args:
            include_witness: Emit witness data if any input has it

        Returns:
            Raw transaction bytes
        """
        with_witness = include_witness and self.has_witness()
        result = BytesIO()

        result.write(struct.pack('<i', self.version))
        if with_witness:
            result.write(b'\x00\x01')

        result.write(serialize_compact_size(len(self.inputs)))
        for tx_in in self.inputs:
            result.write(tx_in.serialize())

        result.write(serialize_compact_size(len(self.outputs)))
        for tx_out in self.outputs:
            result.write(tx_out.serialize())

        if with_witness:
            for tx_in in self.inputs:
                result.write(serialize_compact_size(len(tx_in.witness)))
                for item in tx_in.witness:
                    result.write(varstr(item))

        result.write(struct.pack('<I', self.locktime))
        return result.getvalue()

    @property
    def txid(self) -> str:
        """Transaction ID (display byte order)."""
        return txid_from_bytes(double_sha256(self.serialize(include_witness=False)))

    @property
    def wtxid(self) -> str:
        return txid_from_bytes(double_sha256(self.serialize()))

    @property
    def vsize(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize())
        return (base * 3 + total + 3) // 4

    def hex(self) -> str:
        return self.serialize().hex()

    def outpoint(self, vout: int) -> OutPoint:
        if not 0 <= vout < len(self.outputs):
            raise IndexError(f"Transaction {self.txid} has no output {vout}")
        return OutPoint(self.txid, vout)

    @classmethod
    def from_hex(cls, hex_string: str) -> 'Transaction':
        try:
            raw = bytes.fromhex(hex_string)
        except ValueError as e:
            raise TransactionParsingError(f"Invalid transaction hex: {e}") from e
        return cls.from_bytes(raw)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'Transaction':
        """
        Parse a raw transaction with or without witness data.

        The structure is decoded with bitcoinlib; the result must re-encode
        to exactly the given bytes.

        Args:
            data: Raw transaction bytes

        Returns:
            Parsed Transaction
        """
        try:
            parsed = BitcoinlibTransaction.parse_bytes(bytes(data), strict=False)
            tx = cls(
                inputs=[TxIn(OutPoint(inp.prev_txid.hex(), inp.output_n_int), inp.sequence,
                             inp.unlocking_script or b'')
                        for inp in parsed.inputs],
                outputs=[TxOut(out.value, out.lock_script) for out in parsed.outputs],
                version=parsed.version_int,
                locktime=parsed.locktime,
            )
            if data[4:6] == b'\x00\x01':
                tx._read_witnesses(data)
        except (BitcoinlibTransactionError, EncodingError, ScriptError,
                ValueError, TypeError, IndexError, struct.error) as e:
            raise TransactionParsingError(f"Failed to parse transaction: {e}") from e

        if tx.serialize() != bytes(data):
            raise TransactionParsingError(
                f"Transaction bytes do not re-encode: parsed {len(tx.serialize())} of {len(data)} bytes"
            )
        return tx

    def _read_witnesses(self, data: bytes):
        """Fill input witness stacks from the witness section of raw bytes."""
        # version, marker and flag precede the inputs; locktime follows the witnesses
        offset = 6 + len(self.serialize(include_witness=False)) - 8
        for tx_in in self.inputs:
            item_count, offset = parse_compact_size(data, offset)
            tx_in.witness = []
            for _ in range(item_count):
                item, offset = varstr_parse(data, offset)
                tx_in.witness.append(item)
        if offset != len(data) - 4:
            raise ValueError(f"Witness data ends at {offset}, expected {len(data) - 4}")
