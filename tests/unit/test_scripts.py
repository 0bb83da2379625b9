"""
Tests for tapscript leaf construction.
"""

import hashlib
import struct

import pytest

from scripts.builder import ANCHOR_OUTPUT_VALUE, ScriptBuilder
from scripts.opcodes import ScriptOpcode, encode_script_num, push_data, push_int


PK_A = bytes.fromhex("aa" * 32)
PK_B = bytes.fromhex("bb" * 32)
PK_C = bytes.fromhex("cc" * 32)


class TestScriptNumbers:
    """Test script number encoding."""

    @pytest.mark.parametrize("value,expected", [
        (0, b""),
        (1, b"\x01"),
        (127, b"\x7f"),
        (128, b"\x80\x00"),
        (255, b"\xff\x00"),
        (256, b"\x00\x01"),
        (-1, b"\x81"),
        (-128, b"\x80\x80"),
        (144, b"\x90\x00"),
    ])
    def test_encode_script_num(self, value, expected):
        assert encode_script_num(value) == expected

    def test_push_int_small_values(self):
        assert push_int(0) == bytes([ScriptOpcode.OP_0])
        assert push_int(-1) == bytes([ScriptOpcode.OP_1NEGATE])
        assert push_int(1) == bytes([ScriptOpcode.OP_1])
        assert push_int(16) == bytes([ScriptOpcode.OP_1 + 15])

    def test_push_int_large_value(self):
        assert push_int(17) == b"\x01\x11"
        assert push_int(200) == b"\x02\xc8\x00"

    def test_push_data_lengths(self):
        assert push_data(b"\x01" * 75)[:1] == b"\x4b"
        assert push_data(b"\x01" * 76)[:2] == bytes([ScriptOpcode.OP_PUSHDATA1, 76])
        assert push_data(b"\x01" * 300)[:3] == bytes([ScriptOpcode.OP_PUSHDATA2]) + struct.pack("<H", 300)


class TestNOfNScript:
    """Test the verifier multisig leaf."""

    def test_layout(self):
        script = ScriptBuilder([PK_A, PK_B, PK_C]).generate_n_of_n_script()
        expected = (b"\x20" + PK_A + b"\xac"
                    + b"\x20" + PK_B + b"\xba"
                    + b"\x20" + PK_C + b"\xba"
                    + b"\x53\x9c")
        assert script == expected

    def test_single_key(self):
        assert ScriptBuilder([PK_A]).generate_n_of_n_script() == b"\x20" + PK_A + b"\xac\x51\x9c"

    def test_order_matters(self):
        assert (ScriptBuilder([PK_A, PK_B]).generate_n_of_n_script()
                != ScriptBuilder([PK_B, PK_A]).generate_n_of_n_script())

    def test_rejects_bad_keys(self):
        with pytest.raises(ValueError):
            ScriptBuilder([])
        with pytest.raises(ValueError):
            ScriptBuilder([b"\x02" + PK_A])


class TestEnvelopeScripts:
    """Test leaves carrying data envelopes."""

    def test_deposit_script(self):
        builder = ScriptBuilder([PK_A, PK_B])
        evm = b"\x11" * 20
        script = builder.generate_deposit_script(evm, 100_000_000)
        tail = (b"\x00\x63" + b"\x14" + evm + b"\x08" + struct.pack("<Q", 100_000_000) + b"\x68")
        assert script == builder.generate_n_of_n_script() + tail

    def test_deposit_script_binds_destination(self):
        builder = ScriptBuilder([PK_A])
        assert (builder.generate_deposit_script(b"\x11" * 20, 1)
                != builder.generate_deposit_script(b"\x22" * 20, 1))
        assert (builder.generate_deposit_script(b"\x11" * 20, 1)
                != builder.generate_deposit_script(b"\x11" * 20, 2))

    def test_deposit_script_bad_evm(self):
        with pytest.raises(ValueError):
            ScriptBuilder([PK_A]).generate_deposit_script(b"\x11" * 19, 1)

    def test_move_commit_script(self):
        builder = ScriptBuilder([PK_A])
        txids = [b"\x01" * 32, b"\x02" * 32]
        script = builder.generate_move_commit_script(txids)
        assert script.endswith(b"\x00\x63\x20" + txids[0] + b"\x20" + txids[1] + b"\x68")
        with pytest.raises(ValueError):
            builder.generate_move_commit_script([b"\x01" * 31])

    def test_inscription_script(self):
        preimages = [b"\x03" * 32]
        script = ScriptBuilder.create_inscription_script_32_bytes(PK_A, preimages)
        assert script == b"\x20" + PK_A + b"\xac\x00\x63\x20" + preimages[0] + b"\x68"
        with pytest.raises(ValueError):
            ScriptBuilder.create_inscription_script_32_bytes(PK_A, [b"\x03" * 33])


class TestSimpleScripts:
    """Test the remaining leaf templates."""

    def test_2_of_2(self):
        script = ScriptBuilder.generate_2_of_2_script(PK_A, PK_B)
        assert script == b"\x20" + PK_A + b"\xad" + b"\x20" + PK_B + b"\xac"

    def test_timelock(self):
        script = ScriptBuilder.generate_timelock_script(PK_A, 144)
        assert script == b"\x02\x90\x00\xb2\x75\x20" + PK_A + b"\xac"

    def test_timelock_small(self):
        assert ScriptBuilder.generate_timelock_script(PK_A, 5)[:3] == b"\x55\xb2\x75"

    def test_negative_timelock(self):
        with pytest.raises(ValueError):
            ScriptBuilder.generate_timelock_script(PK_A, -1)
        with pytest.raises(ValueError):
            ScriptBuilder.generate_absolute_timelock_script(PK_A, -1)

    def test_absolute_timelock(self):
        script = ScriptBuilder.generate_absolute_timelock_script(PK_A, 500)
        assert script[:4] == b"\x02\xf4\x01\xb1"

    def test_hash_script(self):
        digest = hashlib.sha256(b"preimage").digest()
        assert ScriptBuilder.generate_hash_script(digest) == b"\xa8\x20" + digest + b"\x87"
        with pytest.raises(ValueError):
            ScriptBuilder.generate_hash_script(b"\x00" * 20)

    def test_anchor_output(self):
        txout = ScriptBuilder.anyone_can_spend_txout()
        assert txout.value == ANCHOR_OUTPUT_VALUE == 330
        assert txout.script_pubkey == b"\x00\x20" + hashlib.sha256(b"\x51").digest()
