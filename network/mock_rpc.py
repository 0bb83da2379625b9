"""
Bridge - In-Memory Chain

MockRpc implements ExtendedRpc over a simulated chain so protocol flows can
be exercised without a node: funding outputs, mining, spending and
broadcast all update in-memory UTXO and transaction tables.
"""

import hashlib
import logging
import struct
from typing import Dict, Optional, Union

from transactions.addresses import address_to_script_pubkey
from transactions.primitives import OutPoint, Transaction, TxIn, TxOut

from .extended_rpc import RPC_INVALID_ADDRESS_OR_KEY, ExtendedRpc
from .rpc import RPCError


logger = logging.getLogger(__name__)


class MockRpc(ExtendedRpc):
    """
    Simulated node.

    Transactions enter unconfirmed and gain one confirmation per mined
    block from the block that includes them.
    """

    def __init__(self, network: str = "regtest", fee_rate: int = 1):
        self.network = network
        self.fee_rate = fee_rate
        self.height = 0
        self.transactions: Dict[str, Transaction] = {}
        self.tx_heights: Dict[str, Optional[int]] = {}
        self.utxos: Dict[OutPoint, TxOut] = {}
        self._funding_counter = 0

    def _script_pubkey(self, destination: Union[str, bytes]) -> bytes:
        if isinstance(destination, bytes):
            return destination
        return address_to_script_pubkey(destination, self.network)

    def _add_transaction(self, tx: Transaction) -> str:
        txid = tx.txid
        self.transactions[txid] = tx
        self.tx_heights[txid] = None
        for vout, txout in enumerate(tx.outputs):
            self.utxos[OutPoint(txid, vout)] = txout
        return txid

    def send_to_address(self, destination: Union[str, bytes], amount: int) -> OutPoint:
        """
        Fund an address from nowhere.

        Args:
            destination: Address or output script
            amount: Value in satoshis

        Returns:
            Outpoint of the new (unconfirmed) output
        """
        self._funding_counter += 1
        seed = hashlib.sha256(b"mock-funding" + struct.pack('<Q', self._funding_counter)).hexdigest()
        tx = Transaction(
            inputs=[TxIn(OutPoint(seed, 0))],
            outputs=[TxOut(amount, self._script_pubkey(destination))],
        )
        txid = self._add_transaction(tx)
        logger.debug(f"Funded {amount} sats in {txid}:0")
        return OutPoint(txid, 0)

    def mine_blocks(self, count: int = 1) -> int:
        """Mine blocks, confirming every pending transaction in the first one."""
        if count <= 0:
            return self.height
        for txid, height in self.tx_heights.items():
            if height is None:
                self.tx_heights[txid] = self.height + 1
        self.height += count
        return self.height

    def spend(self, outpoint: OutPoint) -> None:
        if self.utxos.pop(outpoint, None) is None:
            raise RPCError(-25, f"Missing or spent input {outpoint}")

    # ExtendedRpc

    def confirmation_blocks(self, txid: str) -> int:
        if txid not in self.tx_heights:
            raise RPCError(RPC_INVALID_ADDRESS_OR_KEY, "No such mempool or blockchain transaction")
        height = self.tx_heights[txid]
        return 0 if height is None else self.height - height + 1

    def get_txout(self, outpoint: OutPoint) -> Optional[TxOut]:
        return self.utxos.get(outpoint)

    def get_block_count(self) -> int:
        return self.height

    def get_block_hash(self, height: int) -> str:
        if not 0 <= height <= self.height:
            raise RPCError(-8, "Block height out of range")
        return hashlib.sha256(b"mock-block" + struct.pack('<Q', height)).digest()[::-1].hex()

    def estimate_fee_rate(self, conf_target: int = 6) -> int:
        return self.fee_rate

    def send_raw_transaction(self, tx: Transaction) -> str:
        for tx_in in tx.inputs:
            if tx_in.previous_output not in self.utxos:
                raise RPCError(-25, f"Missing or spent input {tx_in.previous_output}")
        for tx_in in tx.inputs:
            del self.utxos[tx_in.previous_output]
        txid = self._add_transaction(tx)
        logger.info(f"Broadcast transaction {txid}")
        return txid

    def get_raw_transaction(self, txid: str) -> Transaction:
        try:
            return self.transactions[txid]
        except KeyError:
            raise RPCError(RPC_INVALID_ADDRESS_OR_KEY, "No such mempool or blockchain transaction") from None
