"""
Bridge - Transaction Construction

This module provides the Bitcoin transaction layer of the bridge:
- Transaction model with segwit serialization and txid computation
- BIP341 signature hashes for key and script path spends
- Taproot script trees, control blocks and bech32m addresses
- Bridge transaction templates (transactions.builder) and the connector
  tree layout (transactions.connector_tree)
"""

from .exceptions import (
    TransactionError,
    TransactionParsingError,
    TaprootBuildFailed,
    InvalidPeriod,
    InsufficientFundsError,
)
from .primitives import OutPoint, TxIn, TxOut, Transaction, ENABLE_RBF_NO_LOCKTIME
from .sighash import SighashType, taproot_signature_hash, tapleaf_hash
from .addresses import (
    AddressError,
    NETWORK_HRPS,
    encode_taproot_address,
    decode_segwit_address,
    address_to_script_pubkey,
)
from .taproot import (
    UNSPENDABLE_INTERNAL_KEY,
    TaprootBuilder,
    TaprootSpendInfo,
    balanced_leaf_depths,
    build_taproot_tree,
    create_taproot_address,
)

__all__ = [
    'TransactionError',
    'TransactionParsingError',
    'TaprootBuildFailed',
    'InvalidPeriod',
    'InsufficientFundsError',
    'OutPoint',
    'TxIn',
    'TxOut',
    'Transaction',
    'ENABLE_RBF_NO_LOCKTIME',
    'SighashType',
    'taproot_signature_hash',
    'tapleaf_hash',
    'AddressError',
    'NETWORK_HRPS',
    'encode_taproot_address',
    'decode_segwit_address',
    'address_to_script_pubkey',
    'UNSPENDABLE_INTERNAL_KEY',
    'TaprootBuilder',
    'TaprootSpendInfo',
    'balanced_leaf_depths',
    'build_taproot_tree',
    'create_taproot_address',
]
