"""
Bridge - Chain Access Capability

ExtendedRpc is the single interface the verifier uses to look at the chain:
outpoint confirmation and spentness, block lookups, fee estimation and
broadcast. BitcoinCoreRpc implements it over the JSON-RPC client; the
in-memory MockRpc in network.mock_rpc implements it for tests.
"""

import logging
import math
from abc import ABC, abstractmethod
from typing import Optional

from transactions.addresses import address_to_script_pubkey
from transactions.primitives import OutPoint, Transaction, TxOut

from .rpc import BitcoinRPCClient, RPCConfig, RPCError


logger = logging.getLogger(__name__)

SATS_PER_BTC = 100_000_000

# bitcoind: "No such mempool or blockchain transaction"
RPC_INVALID_ADDRESS_OR_KEY = -5


class UtxoCheckFailed(Exception):
    """An outpoint does not satisfy the expected confirmation, value or script."""

    def __init__(self, outpoint: OutPoint, reason: str):
        self.outpoint = outpoint
        self.reason = reason
        super().__init__(f"UTXO {outpoint} rejected: {reason}")


def btc_to_sats(value) -> int:
    return int(round(float(value) * SATS_PER_BTC))


class ExtendedRpc(ABC):
    """Chain queries consumed by the bridge."""

    @abstractmethod
    def confirmation_blocks(self, txid: str) -> int:
        """Number of confirmations of a transaction (0 if unconfirmed)."""

    @abstractmethod
    def get_txout(self, outpoint: OutPoint) -> Optional[TxOut]:
        """The output if it exists and is unspent, otherwise None."""

    @abstractmethod
    def get_block_count(self) -> int:
        pass

    @abstractmethod
    def get_block_hash(self, height: int) -> str:
        pass

    @abstractmethod
    def estimate_fee_rate(self, conf_target: int = 6) -> int:
        """Fee rate estimate in sat/vB."""

    @abstractmethod
    def send_raw_transaction(self, tx: Transaction) -> str:
        pass

    @abstractmethod
    def get_raw_transaction(self, txid: str) -> Transaction:
        pass

    def is_utxo_spent(self, outpoint: OutPoint) -> bool:
        """
        Whether a known outpoint has been spent.

        Raises RPCError if the transaction is unknown to the node.
        """
        self.confirmation_blocks(outpoint.txid)
        return self.get_txout(outpoint) is None

    def check_deposit_utxo(self, outpoint: OutPoint, expected_script_pubkey: bytes,
                           amount: int, confirmation_threshold: int) -> TxOut:
        """
        Validate a deposit outpoint against what the bridge expects.

        Args:
            outpoint: Deposit UTXO
            expected_script_pubkey: Output script of the deposit address
            amount: Required value in satoshis
            confirmation_threshold: Minimum confirmations

        Returns:
            The deposit output

        Raises:
            UtxoCheckFailed: If any check fails
        """
        try:
            confirmations = self.confirmation_blocks(outpoint.txid)
        except RPCError as e:
            raise UtxoCheckFailed(outpoint, f"transaction not found: {e.message}") from e

        if confirmations < confirmation_threshold:
            raise UtxoCheckFailed(
                outpoint, f"{confirmations} confirmations, {confirmation_threshold} required"
            )

        txout = self.get_txout(outpoint)
        if txout is None:
            raise UtxoCheckFailed(outpoint, "output is spent")
        if txout.value != amount:
            raise UtxoCheckFailed(outpoint, f"value {txout.value} does not equal {amount}")
        if txout.script_pubkey != expected_script_pubkey:
            raise UtxoCheckFailed(outpoint, "output does not pay to the deposit address")

        logger.debug(f"Deposit UTXO {outpoint} verified with {confirmations} confirmations")
        return txout


class BitcoinCoreRpc(ExtendedRpc):
    """ExtendedRpc backed by a Bitcoin Core node."""

    def __init__(self, client: BitcoinRPCClient, fallback_fee_rate: int = 1):
        self.client = client
        self.fallback_fee_rate = fallback_fee_rate

    @classmethod
    def from_config(cls, config) -> 'BitcoinCoreRpc':
        """Connect to the node named in a BridgeConfig's rpc section."""
        return cls(BitcoinRPCClient(RPCConfig.from_settings(config.rpc)))

    def confirmation_blocks(self, txid: str) -> int:
        info = self.client.getrawtransaction(txid, True)
        return info.get("confirmations", 0)

    def get_txout(self, outpoint: OutPoint) -> Optional[TxOut]:
        result = self.client.gettxout(outpoint.txid, outpoint.vout)
        if result is None:
            return None
        return TxOut(btc_to_sats(result["value"]), bytes.fromhex(result["scriptPubKey"]["hex"]))

    def get_block_count(self) -> int:
        return self.client.getblockcount()

    def get_block_hash(self, height: int) -> str:
        return self.client.getblockhash(height)

    def estimate_fee_rate(self, conf_target: int = 6) -> int:
        """Convert estimatesmartfee (BTC/kvB) to sat/vB, rounding up."""
        result = self.client.estimatesmartfee(conf_target)
        fee_rate = result.get("feerate")
        if fee_rate is None:
            logger.warning(f"Fee estimation unavailable ({result.get('errors')}), "
                           f"using {self.fallback_fee_rate} sat/vB")
            return self.fallback_fee_rate
        return max(1, math.ceil(float(fee_rate) * SATS_PER_BTC / 1000))

    def send_raw_transaction(self, tx: Transaction) -> str:
        txid = self.client.sendrawtransaction(tx.hex())
        logger.info(f"Broadcast transaction {txid}")
        return txid

    def get_raw_transaction(self, txid: str) -> Transaction:
        return Transaction.from_hex(self.client.getrawtransaction(txid, False))

    def send_to_address(self, address: str, amount: int) -> OutPoint:
        """
        Pay an address from the node wallet.

        Returns:
            Outpoint of the created output
        """
        txid = self.client.sendtoaddress(address, amount / SATS_PER_BTC)
        tx = self.get_raw_transaction(txid)
        for vout, txout in enumerate(tx.outputs):
            if txout.value == amount and txout.script_pubkey == address_to_script_pubkey(address):
                return OutPoint(txid, vout)
        raise RPCError(-1, f"Transaction {txid} has no output paying {amount} sats to {address}")
