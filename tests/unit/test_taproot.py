"""
Tests for Taproot tree construction and control blocks.
"""

from collections import Counter

import pytest

from crypto.keys import PrivateKey, tagged_hash, taproot_tweak_public_key
from scripts.builder import ScriptBuilder
from transactions.addresses import address_to_script_pubkey
from transactions.exceptions import InvalidPeriod, TaprootBuildFailed
from transactions.sighash import tapleaf_hash
from transactions.taproot import (
    UNSPENDABLE_INTERNAL_KEY,
    TaprootBuilder,
    balanced_leaf_depths,
    build_taproot_tree,
    create_taproot_address,
    key_path_spend_info,
)


def _scripts(count):
    return [ScriptBuilder.generate_hash_script(tagged_hash("test", bytes([i]))) for i in range(count)]


class TestBalancedDepths:
    """Test depth assignment."""

    @pytest.mark.parametrize("n", range(1, 17))
    def test_depth_multiset(self, n):
        """Depths describe a complete tree: sum of 2^-d equals one."""
        depths = balanced_leaf_depths(n)
        assert len(depths) == n
        assert sum(2.0 ** -d for d in depths) == 1.0
        assert max(depths) - min(depths) <= 1

    def test_first_leaves_are_shallow(self):
        assert balanced_leaf_depths(3) == [1, 2, 2]
        assert balanced_leaf_depths(5) == [2, 2, 2, 3, 3]
        assert balanced_leaf_depths(4) == [2, 2, 2, 2]

    def test_single_leaf(self):
        assert balanced_leaf_depths(1) == [0]

    def test_zero_leaves(self):
        with pytest.raises(InvalidPeriod):
            balanced_leaf_depths(0)


class TestTaprootBuilder:
    """Test the incremental tree builder."""

    def test_single_leaf_root_is_leaf_hash(self):
        script = _scripts(1)[0]
        info = TaprootBuilder().add_leaf(0, script).finalize(UNSPENDABLE_INTERNAL_KEY)
        assert info.merkle_root == tapleaf_hash(script)

    def test_two_leaves_sorted_branch(self):
        a, b = _scripts(2)
        info = TaprootBuilder().add_leaf(1, a).add_leaf(1, b).finalize(UNSPENDABLE_INTERNAL_KEY)
        ha, hb = tapleaf_hash(a), tapleaf_hash(b)
        expected = tagged_hash("TapBranch", min(ha, hb) + max(ha, hb))
        assert info.merkle_root == expected

    def test_leaves_keep_insertion_order(self):
        scripts = _scripts(5)
        info = build_taproot_tree(scripts)
        assert [leaf.script for leaf in info.leaves] == scripts
        assert info.leaf_depths == balanced_leaf_depths(5)

    def test_empty_tree(self):
        info = TaprootBuilder().finalize(UNSPENDABLE_INTERNAL_KEY)
        assert info.merkle_root is None
        assert info.output_key == taproot_tweak_public_key(UNSPENDABLE_INTERNAL_KEY)[0]

    def test_not_depth_first(self):
        a, b = _scripts(2)
        builder = TaprootBuilder().add_leaf(2, a)
        with pytest.raises(TaprootBuildFailed):
            builder.add_leaf(0, b)

    def test_over_complete(self):
        a, b = _scripts(2)
        builder = TaprootBuilder().add_leaf(0, a)
        with pytest.raises(TaprootBuildFailed):
            builder.add_leaf(0, b)

    def test_incomplete(self):
        builder = TaprootBuilder().add_leaf(1, _scripts(1)[0])
        assert not builder.is_finalizable()
        with pytest.raises(TaprootBuildFailed):
            builder.finalize(UNSPENDABLE_INTERNAL_KEY)

    def test_bad_internal_key(self):
        with pytest.raises(TaprootBuildFailed):
            TaprootBuilder().add_leaf(0, _scripts(1)[0]).finalize(b"\x02" * 33)


class TestSpendInfo:
    """Test spend info and control blocks."""

    def test_deterministic(self):
        scripts = _scripts(6)
        assert build_taproot_tree(scripts).output_key == build_taproot_tree(list(scripts)).output_key

    def test_order_changes_output(self):
        scripts = _scripts(3)
        assert build_taproot_tree(scripts).output_key != build_taproot_tree(scripts[::-1]).output_key

    @pytest.mark.parametrize("n", [1, 2, 3, 7])
    def test_control_blocks_verify(self, n):
        scripts = _scripts(n)
        info = build_taproot_tree(scripts)
        for script, depth in zip(scripts, info.leaf_depths):
            control_block = info.control_block(script)
            assert len(control_block) == 33 + 32 * depth
            assert control_block[0] & 0xfe == 0xc0
            assert control_block[1:33] == UNSPENDABLE_INTERNAL_KEY
            assert info.verify_control_block(script, control_block)

    def test_control_block_wrong_script(self):
        a, b = _scripts(2)
        info = build_taproot_tree([a, b])
        assert not info.verify_control_block(b, info.control_block(a))
        assert not info.verify_control_block(a, b"\xc0" * 40)

    def test_unknown_script(self):
        info = build_taproot_tree(_scripts(2))
        with pytest.raises(KeyError):
            info.control_block(b"\x51")

    def test_address(self):
        scripts = _scripts(2)
        address, info = create_taproot_address(scripts, "regtest")
        assert address.startswith("bcrt1p")
        assert address_to_script_pubkey(address, "regtest") == info.script_pubkey
        assert info.script_pubkey == b"\x51\x20" + info.output_key

    def test_key_path_spend_info(self):
        key = PrivateKey(b"\x31" * 32)
        info = key_path_spend_info(key.x_only)
        assert info.merkle_root is None
        assert info.leaves == []
        assert info.output_key == key.taproot_tweak_private_key().x_only

    def test_leaf_depth_counts(self):
        info = build_taproot_tree(_scripts(5))
        assert Counter(info.leaf_depths) == Counter({2: 3, 3: 2})
