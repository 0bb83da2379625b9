"""
Bridge - Actor

A protocol participant holding one secp256k1 key: verifiers, the operator
and depositors all sign through an Actor. The actor's own address is a
key-path-only Taproot output of its x-only key.
"""

import logging
from typing import List, Optional, Union

from crypto.keys import PrivateKey
from crypto.signatures import verify_schnorr
from transactions.primitives import Transaction, TxOut
from transactions.sighash import SighashType, key_spend_sighash, script_spend_sighash
from transactions.taproot import TaprootSpendInfo, key_path_spend_info


logger = logging.getLogger(__name__)


class Actor:
    """
    Keypair plus the signing operations the bridge needs.

    Example:
        actor = Actor.generate("regtest")
        sig = actor.sign_taproot_pubkey_spend_tx(tx, prevouts, 0)
    """

    def __init__(self, secret_key: Union[bytes, str, PrivateKey], network: str = "regtest"):
        """
        Initialize the actor.

        Args:
            secret_key: 32-byte secret key, its hex form, or a PrivateKey
            network: Network used to render the actor's address
        """
        if isinstance(secret_key, PrivateKey):
            self.private_key = secret_key
        elif isinstance(secret_key, str):
            self.private_key = PrivateKey.from_hex(secret_key)
        else:
            self.private_key = PrivateKey(secret_key)
        self.network = network
        self.public_key = self.private_key.public_key()
        self.x_only = self.public_key.x_only
        self.spend_info: TaprootSpendInfo = key_path_spend_info(self.x_only)
        self.address = self.spend_info.address(network)

    @classmethod
    def generate(cls, network: str = "regtest") -> 'Actor':
        """Actor with a fresh random key."""
        return cls(PrivateKey(), network)

    @property
    def secret_key(self) -> bytes:
        return self.private_key.bytes

    @property
    def script_pubkey(self) -> bytes:
        return self.spend_info.script_pubkey

    def sign(self, message: bytes) -> bytes:
        """BIP340 signature of a 32-byte message with the untweaked key."""
        return self.private_key.sign_schnorr(message)

    def sign_with_tweak(self, message: bytes, merkle_root: Optional[bytes] = None) -> bytes:
        """Sign with the Taproot-tweaked key, as a key path spend requires."""
        return self.private_key.taproot_tweak_private_key(merkle_root).sign_schnorr(message)

    def verify(self, signature: bytes, message: bytes) -> bool:
        return verify_schnorr(self.x_only, signature, message)

    def sign_taproot_pubkey_spend_tx(self, tx: Transaction, prevouts: List[TxOut],
                                     input_index: int) -> bytes:
        """
        Sign a key path spend of one of the actor's own outputs.

        Args:
            tx: Spending transaction
            prevouts: Outputs spent by every input, in input order
            input_index: Input to sign

        Returns:
            64-byte signature (SIGHASH_DEFAULT)
        """
        sighash = key_spend_sighash(tx, input_index, prevouts, SighashType.DEFAULT)
        return self.sign_with_tweak(sighash, self.spend_info.merkle_root)

    def sign_taproot_script_spend_tx(self, tx: Transaction, prevouts: List[TxOut],
                                     script: bytes, input_index: int) -> bytes:
        """
        Sign a script path spend through the given leaf script.

        Returns:
            64-byte signature (SIGHASH_DEFAULT) with the untweaked key
        """
        sighash = script_spend_sighash(tx, input_index, prevouts, script, SighashType.DEFAULT)
        logger.debug(f"Script path sighash {sighash.hex()} for input {input_index}")
        return self.sign(sighash)

    def __repr__(self) -> str:
        return f"Actor(x_only={self.x_only.hex()}, network={self.network})"
