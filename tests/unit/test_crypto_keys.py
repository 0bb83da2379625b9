"""
Tests for key handling, tagged hashes and Taproot tweaking.
"""

import hashlib

import pytest

from crypto.exceptions import InvalidKeyError
from crypto.keys import (
    CURVE_ORDER,
    PrivateKey,
    PublicKey,
    compute_taproot_tweak,
    lift_x,
    tagged_hash,
    taproot_output_script,
    taproot_tweak_public_key,
)
from transactions.addresses import encode_taproot_address
from transactions.taproot import UNSPENDABLE_INTERNAL_KEY


# BIP86 test vector, account 0 first receiving address
BIP86_INTERNAL_KEY = bytes.fromhex("cc8a4bc64d897bddc5fbc2f670f7a8ba0b386779106cf1223c6fc5d7cd6fc115")
BIP86_OUTPUT_KEY = bytes.fromhex("a60869f0dbcf1dc659c9cecbaf8050135ea9e8cdc487053f1dc6880949dc684c")
BIP86_ADDRESS = "bc1p5cyxnuxmeuwuvkwfem96lqzszd02n6xdcjrs20cac6yqjjwudpxqkedrcr"

GENERATOR_UNCOMPRESSED = bytes.fromhex(
    "04"
    "79be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
    "483ada7726a3c4655da4fbfc0e1108a8fd17b448a68554199c47d08ffb10d4b8"
)


class TestTaggedHash:
    """Test BIP340 tagged hashes."""

    def test_matches_definition(self):
        """Tagged hash is sha256(sha256(tag) || sha256(tag) || data)."""
        tag_hash = hashlib.sha256(b"TapLeaf").digest()
        expected = hashlib.sha256(tag_hash + tag_hash + b"data").digest()
        assert tagged_hash("TapLeaf", b"data") == expected

    def test_tags_are_domain_separated(self):
        assert tagged_hash("TapLeaf", b"x") != tagged_hash("TapBranch", b"x")


class TestPrivateKey:
    """Test private key wrapper."""

    def test_random_key_in_range(self):
        key = PrivateKey()
        assert 0 < key.int < CURVE_ORDER
        assert len(key.x_only) == 32

    @pytest.mark.parametrize("raw", [b"\x00" * 32, CURVE_ORDER.to_bytes(32, "big"), b"\x01" * 31])
    def test_invalid_keys_rejected(self, raw):
        with pytest.raises(InvalidKeyError):
            PrivateKey(raw)

    def test_from_hex(self):
        key = PrivateKey.from_hex("01" * 32)
        assert key.hex == "01" * 32

    def test_from_bad_hex(self):
        with pytest.raises(InvalidKeyError):
            PrivateKey.from_hex("zz" * 32)

    def test_negate_keeps_x_only(self):
        key = PrivateKey(b"\x07" * 32)
        assert key.negate().x_only == key.x_only
        assert key.negate().public_key().bytes[0] != key.public_key().bytes[0]

    def test_taproot_tweak_matches_public_tweak(self):
        """Tweaking the secret yields the secret of the tweaked output key."""
        key = PrivateKey(b"\x05" * 32)
        merkle_root = tagged_hash("TapLeaf", b"leaf")
        output_key, _ = taproot_tweak_public_key(key.x_only, merkle_root)
        assert key.taproot_tweak_private_key(merkle_root).x_only == output_key


class TestPublicKey:
    """Test public key wrapper and lifting."""

    def test_lift_x_even(self):
        key = PrivateKey(b"\x03" * 32)
        assert lift_x(key.x_only) == b"\x02" + key.x_only

    def test_lift_x_invalid(self):
        # x = 5 is not on secp256k1
        assert lift_x((5).to_bytes(32, "big")) is None
        assert lift_x(b"\x01" * 31) is None

    def test_from_x_only(self):
        key = PrivateKey(b"\x09" * 32)
        pub = PublicKey.from_x_only(key.x_only)
        assert pub.x_only == key.x_only
        assert pub.bytes[0] == 0x02

    def test_bad_length(self):
        with pytest.raises(InvalidKeyError):
            PublicKey(b"\x02" * 10)


class TestTaprootTweak:
    """Test BIP341 key tweaking."""

    def test_bip86_vector(self):
        """Key path only output key and address from BIP86."""
        output_key, _ = taproot_tweak_public_key(BIP86_INTERNAL_KEY)
        assert output_key == BIP86_OUTPUT_KEY
        assert encode_taproot_address(output_key, "mainnet") == BIP86_ADDRESS

    def test_unspendable_key_derivation(self):
        """The internal key is the hash of the uncompressed generator."""
        assert hashlib.sha256(GENERATOR_UNCOMPRESSED).digest() == UNSPENDABLE_INTERNAL_KEY
        assert lift_x(UNSPENDABLE_INTERNAL_KEY) is not None

    def test_tweak_depends_on_merkle_root(self):
        root_a = b"\x01" * 32
        root_b = b"\x02" * 32
        assert (compute_taproot_tweak(UNSPENDABLE_INTERNAL_KEY, root_a)
                != compute_taproot_tweak(UNSPENDABLE_INTERNAL_KEY, root_b))

    def test_tweak_rejects_bad_root(self):
        with pytest.raises(InvalidKeyError):
            compute_taproot_tweak(UNSPENDABLE_INTERNAL_KEY, b"\x01" * 31)

    def test_output_script(self):
        script = taproot_output_script(BIP86_OUTPUT_KEY)
        assert script == b"\x51\x20" + BIP86_OUTPUT_KEY
        with pytest.raises(InvalidKeyError):
            taproot_output_script(b"\x00" * 20)
