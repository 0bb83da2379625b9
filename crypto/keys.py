"""
Key Management and Taproot Tweaking for the Bridge

This module wraps coincurve keys and provides the BIP340/BIP341 helpers
used by script, transaction and signing code: tagged hashes, x-only keys,
even-y lifting and Taproot key tweaking.

References:
- BIP340: https://github.com/bitcoin/bips/blob/master/bip-0340.mediawiki
- BIP341: https://github.com/bitcoin/bips/blob/master/bip-0341.mediawiki
"""

import hashlib
import secrets
from typing import Optional, Tuple, Union

from coincurve import PrivateKey as CoinCurvePrivateKey, PublicKey as CoinCurvePublicKey

from .exceptions import InvalidKeyError


# secp256k1 group order
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


def tagged_hash(tag: str, data: bytes) -> bytes:
    """
    Compute BIP340/341 tagged hash: SHA256(SHA256(tag) + SHA256(tag) + data).

    Args:
        tag: Tag string for the hash
        data: Data to hash

    Returns:
        32-byte tagged hash
    """
    tag_hash = hashlib.sha256(tag.encode('utf-8')).digest()
    return hashlib.sha256(tag_hash + tag_hash + data).digest()


def lift_x(x: bytes) -> Optional[bytes]:
    """
    Lift an x-coordinate to the point with even y.

    Args:
        x: 32-byte x-coordinate

    Returns:
        33-byte compressed public key with even y, or None if x is not on the curve
    """
    if len(x) != 32:
        return None
    try:
        CoinCurvePublicKey(b'\x02' + x)
    except ValueError:
        return None
    return b'\x02' + x


def has_even_y(pubkey: bytes) -> bool:
    """Check whether a 33-byte compressed public key has an even y-coordinate."""
    return pubkey[0] == 0x02


class PrivateKey:
    """
    Wrapper for secp256k1 private key operations.
    """

    def __init__(self, key_bytes: Optional[bytes] = None):
        """
        Initialize private key.

        Args:
            key_bytes: 32-byte private key. If None, generates a random key.
        """
        if key_bytes is None:
            key_bytes = (secrets.randbelow(CURVE_ORDER - 1) + 1).to_bytes(32, 'big')

        if not isinstance(key_bytes, bytes) or len(key_bytes) != 32:
            raise InvalidKeyError("Private key must be 32 bytes")

        key_int = int.from_bytes(key_bytes, 'big')
        if key_int == 0 or key_int >= CURVE_ORDER:
            raise InvalidKeyError("Private key out of valid range")

        self._key = CoinCurvePrivateKey(key_bytes)

    @classmethod
    def from_hex(cls, hex_string: str) -> 'PrivateKey':
        """Create a private key from a 64-character hex string."""
        try:
            return cls(bytes.fromhex(hex_string))
        except ValueError as e:
            raise InvalidKeyError(f"Invalid private key hex: {e}") from e

    @property
    def bytes(self) -> bytes:
        """Get private key as bytes."""
        return self._key.secret

    @property
    def hex(self) -> str:
        """Get private key as hex string."""
        return self._key.secret.hex()

    @property
    def int(self) -> int:
        return int.from_bytes(self._key.secret, 'big')

    def public_key(self) -> 'PublicKey':
        """Get corresponding public key."""
        return PublicKey(self._key.public_key)

    @property
    def x_only(self) -> bytes:
        """Get the 32-byte x-only public key."""
        return self.public_key().x_only

    def sign_schnorr(self, message: bytes, aux_rand: Optional[bytes] = None) -> bytes:
        """
        Create a BIP340 Schnorr signature.

        Args:
            message: 32-byte message (usually a sighash)
            aux_rand: Optional 32 bytes of auxiliary randomness

        Returns:
            64-byte signature
        """
        if len(message) != 32:
            raise InvalidKeyError("Message must be 32 bytes")
        if aux_rand is None:
            aux_rand = secrets.token_bytes(32)
        return self._key.sign_schnorr(message, aux_rand)

    def negate(self) -> 'PrivateKey':
        return PrivateKey((CURVE_ORDER - self.int).to_bytes(32, 'big'))

    def tweak_add(self, tweak: bytes) -> 'PrivateKey':
        """
        Add a tweak to the private key: (priv + tweak) mod n.

        Args:
            tweak: 32-byte tweak value

        Returns:
            Tweaked private key
        """
        if len(tweak) != 32:
            raise InvalidKeyError("Tweak must be 32 bytes")

        tweaked_int = (self.int + int.from_bytes(tweak, 'big')) % CURVE_ORDER
        if tweaked_int == 0:
            raise InvalidKeyError("Tweaked key is zero")
        return PrivateKey(tweaked_int.to_bytes(32, 'big'))

    def taproot_tweak_private_key(self, merkle_root: Optional[bytes] = None) -> 'PrivateKey':
        """
        Tweak the private key for a Taproot key-path spend according to BIP341.

        Args:
            merkle_root: 32-byte Merkle root of script tree (None for key-path only)

        Returns:
            Tweaked private key whose x-only public key is the output key
        """
        key = self if has_even_y(self.public_key().bytes) else self.negate()
        return key.tweak_add(compute_taproot_tweak(key.x_only, merkle_root))


class PublicKey:
    """
    Wrapper for public key operations.
    """

    def __init__(self, key_data: Union[bytes, CoinCurvePublicKey]):
        """
        Initialize public key.

        Args:
            key_data: Public key bytes (33 or 65 bytes) or CoinCurvePublicKey
        """
        if isinstance(key_data, CoinCurvePublicKey):
            self._key = key_data
            return

        if not isinstance(key_data, bytes) or len(key_data) not in (33, 65):
            raise InvalidKeyError("Public key must be 33 or 65 bytes")
        try:
            self._key = CoinCurvePublicKey(key_data)
        except ValueError as e:
            raise InvalidKeyError(f"Failed to create public key: {e}") from e

    @classmethod
    def from_x_only(cls, x_only: bytes) -> 'PublicKey':
        """Create the even-y public key for a 32-byte x-only key."""
        lifted = lift_x(x_only)
        if lifted is None:
            raise InvalidKeyError(f"Not a valid x-only public key: {x_only.hex()}")
        return cls(lifted)

    @property
    def bytes(self) -> bytes:
        """Get compressed public key as bytes."""
        return self._key.format(compressed=True)

    @property
    def hex(self) -> str:
        return self.bytes.hex()

    @property
    def x_only(self) -> bytes:
        """Get x-only public key for Taproot (32 bytes)."""
        return self.bytes[1:]

    @property
    def point(self) -> CoinCurvePublicKey:
        return self._key

    def tweak_add(self, tweak: bytes) -> 'PublicKey':
        """Return P + tweak*G."""
        if len(tweak) != 32:
            raise InvalidKeyError("Tweak must be 32 bytes")
        try:
            return PublicKey(self._key.add(tweak))
        except ValueError as e:
            raise InvalidKeyError(f"Failed to tweak public key: {e}") from e

    def __eq__(self, other) -> bool:
        return isinstance(other, PublicKey) and self.bytes == other.bytes

    def __hash__(self) -> int:
        return hash(self.bytes)


def compute_taproot_tweak(internal_pubkey_x: bytes, merkle_root: Optional[bytes] = None) -> bytes:
    """
    Compute Taproot tweak according to BIP341.

    Args:
        internal_pubkey_x: 32-byte x-only internal public key
        merkle_root: Optional 32-byte Merkle root of script tree

    Returns:
        32-byte tweak value
    """
    if len(internal_pubkey_x) != 32:
        raise InvalidKeyError("Internal pubkey x-coordinate must be 32 bytes")

    tweak_data = internal_pubkey_x
    if merkle_root is not None:
        if len(merkle_root) != 32:
            raise InvalidKeyError("Merkle root must be 32 bytes")
        tweak_data += merkle_root

    tweak = tagged_hash("TapTweak", tweak_data)
    if int.from_bytes(tweak, 'big') >= CURVE_ORDER:
        raise InvalidKeyError("Taproot tweak exceeds curve order")
    return tweak


def taproot_tweak_public_key(internal_pubkey_x: bytes,
                             merkle_root: Optional[bytes] = None) -> Tuple[bytes, int]:
    """
    Derive the Taproot output key Q = lift_x(P) + t*G.

    Returns:
        Tuple of (32-byte x-only output key, output key parity)
    """
    internal = PublicKey.from_x_only(internal_pubkey_x)
    tweaked = internal.tweak_add(compute_taproot_tweak(internal_pubkey_x, merkle_root))
    return tweaked.x_only, 0 if has_even_y(tweaked.bytes) else 1


def taproot_output_script(tweaked_pubkey_x: bytes) -> bytes:
    """
    Create Taproot output script (witness program).

    Args:
        tweaked_pubkey_x: 32-byte x-only tweaked public key

    Returns:
        34-byte P2TR output script
    """
    if len(tweaked_pubkey_x) != 32:
        raise InvalidKeyError("Tweaked pubkey must be 32 bytes")

    # P2TR script: OP_1 <32-byte-tweaked-pubkey>
    return b'\x51\x20' + tweaked_pubkey_x
