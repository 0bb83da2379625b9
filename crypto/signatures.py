"""
Schnorr Signature Operations for the Bridge

BIP340 signing and verification backed by libsecp256k1 through coincurve.

References:
- BIP340: https://github.com/bitcoin/bips/blob/master/bip-0340.mediawiki
"""

from dataclasses import dataclass
from typing import Optional, Union

from coincurve.keys import PublicKeyXOnly

from .exceptions import InvalidSignatureError
from .keys import PrivateKey, PublicKey


@dataclass(frozen=True)
class SchnorrSignature:
    """
    BIP340 Schnorr signature representation.
    """
    r: bytes  # 32-byte x-coordinate of R point
    s: bytes  # 32-byte scalar

    def __post_init__(self):
        if len(self.r) != 32:
            raise InvalidSignatureError("Schnorr r must be 32 bytes")
        if len(self.s) != 32:
            raise InvalidSignatureError("Schnorr s must be 32 bytes")

    @classmethod
    def from_bytes(cls, sig_bytes: bytes) -> 'SchnorrSignature':
        """
        Parse 64-byte Schnorr signature.

        Args:
            sig_bytes: 64-byte signature (32-byte r + 32-byte s)

        Returns:
            SchnorrSignature object
        """
        if len(sig_bytes) != 64:
            raise InvalidSignatureError("Schnorr signature must be 64 bytes")
        return cls(r=sig_bytes[:32], s=sig_bytes[32:])

    @classmethod
    def from_hex(cls, hex_string: str) -> 'SchnorrSignature':
        try:
            return cls.from_bytes(bytes.fromhex(hex_string))
        except ValueError as e:
            raise InvalidSignatureError(f"Invalid signature hex: {e}") from e

    def to_bytes(self) -> bytes:
        return self.r + self.s

    def hex(self) -> str:
        return self.to_bytes().hex()


def sign_schnorr(private_key: PrivateKey, message: bytes,
                 aux_rand: Optional[bytes] = None) -> SchnorrSignature:
    """
    Sign a 32-byte message with a BIP340 Schnorr signature.

    Args:
        private_key: Private key for signing
        message: 32-byte message
        aux_rand: Optional 32-byte auxiliary randomness

    Returns:
        Schnorr signature
    """
    return SchnorrSignature.from_bytes(private_key.sign_schnorr(message, aux_rand))


def verify_schnorr(public_key: Union[PublicKey, bytes],
                   signature: Union[SchnorrSignature, bytes],
                   message: bytes) -> bool:
    """
    Verify a BIP340 Schnorr signature.

    Args:
        public_key: PublicKey or 32-byte x-only key
        signature: SchnorrSignature or 64 raw bytes
        message: Signed message

    Returns:
        True if the signature is valid for the key and message
    """
    x_only = public_key.x_only if isinstance(public_key, PublicKey) else public_key
    sig_bytes = signature.to_bytes() if isinstance(signature, SchnorrSignature) else signature
    if len(x_only) != 32 or len(sig_bytes) != 64:
        return False
    try:
        return PublicKeyXOnly(x_only).verify(sig_bytes, message)
    except ValueError:
        # x is not a valid curve point
        return False
