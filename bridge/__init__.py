"""
Bridge - Verifier Protocol Package

This package ties the transaction, signing and storage layers into the
verifier side of the bridge:
- Configuration loading (bridge.config)
- Protocol error taxonomy (bridge.errors)
- Actor signing, MuSig2 nonce lifecycle and the Verifier state machine
- Depositor helper and JSON request handler
"""

from .errors import (
    BridgeError,
    InvalidDepositUtxo,
    AddressNetworkMismatch,
    PublicKeyNotFound,
    InvalidKickoffUtxo,
    NoncesNotFound,
    AggNonceMissing,
    NonceReuseDetected,
    DepositInfoNotFound,
    KickoffOutpointsNotFound,
    SignatureVerificationFailed,
    AlreadySpentWithdrawal,
    InvalidBridgeUtxo,
)
from .config import BridgeConfig, ConfigError, ConfigurationManager, configure_logging, load_config
from .actor import Actor
from .musig_coordinator import MuSig2Coordinator, aggregate_key, aggregate_partial_signatures
from .verifier import KickoffUtxo, Verifier, kickoff_commitment_digest
from .user import User
from .server import VerifierRequestHandler

__all__ = [
    # Errors
    "BridgeError",
    "InvalidDepositUtxo",
    "AddressNetworkMismatch",
    "PublicKeyNotFound",
    "InvalidKickoffUtxo",
    "NoncesNotFound",
    "AggNonceMissing",
    "NonceReuseDetected",
    "DepositInfoNotFound",
    "KickoffOutpointsNotFound",
    "SignatureVerificationFailed",
    "AlreadySpentWithdrawal",
    "InvalidBridgeUtxo",
    # Configuration
    "BridgeConfig",
    "ConfigError",
    "ConfigurationManager",
    "configure_logging",
    "load_config",
    # Protocol
    "Actor",
    "MuSig2Coordinator",
    "aggregate_key",
    "aggregate_partial_signatures",
    "KickoffUtxo",
    "Verifier",
    "kickoff_commitment_digest",
    "User",
    "VerifierRequestHandler",
]
