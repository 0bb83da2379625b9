"""
Bridge - Cryptographic Operations Module

This module provides the cryptographic primitives used by the bridge:
- Taproot key tweaking and tagged hashes
- BIP340 Schnorr signatures
- BIP327 MuSig2 key aggregation and partial signing

Dependencies:
- coincurve: Fast secp256k1 operations
- hashlib: Cryptographic hash functions
- secrets: Secure random number generation
"""

from .exceptions import (
    CryptoError,
    InvalidKeyError,
    InvalidSignatureError,
    MuSig2Error,
    InvalidContributionError,
)
from .keys import (
    CURVE_ORDER,
    PrivateKey,
    PublicKey,
    tagged_hash,
    lift_x,
    compute_taproot_tweak,
    taproot_tweak_public_key,
    taproot_output_script,
)
from .signatures import SchnorrSignature, sign_schnorr, verify_schnorr

__all__ = [
    # Exceptions
    "CryptoError",
    "InvalidKeyError",
    "InvalidSignatureError",
    "MuSig2Error",
    "InvalidContributionError",
    # Keys
    "CURVE_ORDER",
    "PrivateKey",
    "PublicKey",
    "tagged_hash",
    "lift_x",
    "compute_taproot_tweak",
    "taproot_tweak_public_key",
    "taproot_output_script",
    # Signatures
    "SchnorrSignature",
    "sign_schnorr",
    "verify_schnorr",
]
