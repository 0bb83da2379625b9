"""
Bridge - Depositor

Client-side helper for peg-ins: derives the deposit address for a
destination and funds it through the chain backend.
"""

import logging
from typing import Optional, Tuple

from transactions.builder import TransactionBuilder
from transactions.primitives import OutPoint
from transactions.taproot import TaprootSpendInfo

from .actor import Actor


logger = logging.getLogger(__name__)


class User:
    """
    A depositor. The actor's own Taproot address is the recovery address.
    """

    def __init__(self, rpc, transaction_builder: TransactionBuilder, secret_key: Optional[bytes] = None):
        """
        Initialize the depositor.

        Args:
            rpc: Chain backend providing send_to_address (MockRpc or BitcoinCoreRpc)
            transaction_builder: Builder configured for the bridge
            secret_key: Depositor key (random if None)
        """
        self.rpc = rpc
        self.transaction_builder = transaction_builder
        network = transaction_builder.network
        self.signer = Actor(secret_key, network) if secret_key is not None else Actor.generate(network)

    @property
    def recovery_address(self) -> str:
        return self.signer.address

    def get_deposit_address(self, evm_address: bytes) -> Tuple[str, TaprootSpendInfo]:
        """Deposit address paying to the bridge for the given peg-in destination."""
        return self.transaction_builder.generate_deposit_address(self.recovery_address, evm_address)

    def deposit_tx(self, evm_address: bytes) -> Tuple[OutPoint, str, bytes]:
        """
        Send the bridge amount to the deposit address.

        Returns:
            Tuple of (deposit outpoint, recovery address, evm address)
        """
        deposit_address, _ = self.get_deposit_address(evm_address)
        outpoint = self.rpc.send_to_address(deposit_address, self.transaction_builder.bridge_amount_sats)
        logger.info(f"Deposited {self.transaction_builder.bridge_amount_sats} sats to "
                    f"{deposit_address} in {outpoint}")
        return outpoint, self.recovery_address, evm_address
