"""
Tests for connector tree layout.
"""

import hashlib

import pytest

from transactions.connector_tree import ConnectorTreeBuilder, calculate_amount
from transactions.primitives import OutPoint


ROOT_UTXO = OutPoint("cd" * 32, 0)


def _hashes(depth):
    return [[hashlib.sha256(f"{level}/{index}".encode()).digest() for index in range(1 << level)]
            for level in range(depth + 1)]


@pytest.fixture
def tree_builder(transaction_builder):
    return ConnectorTreeBuilder(transaction_builder)


class TestCalculateAmount:
    """Test subtree value requirements."""

    def test_leaf(self):
        assert calculate_amount(0, 1000, 289) == 1000

    def test_recurrence(self):
        """A subtree holds two children plus one split fee."""
        for depth in range(1, 8):
            assert calculate_amount(depth, 1000, 289) == 2 * calculate_amount(depth - 1, 1000, 289) + 289

    def test_negative_depth(self):
        with pytest.raises(ValueError):
            calculate_amount(-1, 1000, 289)


class TestConnectorTreeBuilder:
    """Test tree construction."""

    def test_depth_zero(self, tree_builder, operator):
        tree = tree_builder.create_connector_binary_tree(operator.x_only, ROOT_UTXO, 0, _hashes(0))
        assert len(tree) == 1
        assert tree.leaves()[0].outpoint == ROOT_UTXO
        assert tree.leaves()[0].value == tree_builder.transaction_builder.dust_value
        assert tree.transactions == {}

    def test_shape(self, tree_builder, operator):
        depth = 3
        tree = tree_builder.create_connector_binary_tree(operator.x_only, ROOT_UTXO, depth, _hashes(depth))
        assert len(tree) == (1 << (depth + 1)) - 1
        assert len(tree.transactions) == (1 << depth) - 1
        assert [len(level) for level in tree.outpoints()] == [1, 2, 4, 8]

    def test_value_conservation(self, tree_builder, operator):
        """Every split spends its parent's value into two children and one fee."""
        depth = 3
        fee = tree_builder.transaction_builder.min_relay_fee
        tree = tree_builder.create_connector_binary_tree(operator.x_only, ROOT_UTXO, depth, _hashes(depth))
        for (level, index), tx in tree.transactions.items():
            parent = tree.node(level, index)
            assert sum(out.value for out in tx.outputs) + fee == parent.value
        assert all(leaf.value == tree_builder.transaction_builder.dust_value for leaf in tree.leaves())

    def test_children_spend_parent(self, tree_builder, operator):
        tree = tree_builder.create_connector_binary_tree(operator.x_only, ROOT_UTXO, 2, _hashes(2))
        for level in range(2):
            for index in range(1 << level):
                tx = tree.split_tx(level, index)
                parent = tree.node(level, index)
                left, right = tree.children(level, index)
                assert tx.inputs[0].previous_output == parent.outpoint
                assert left.outpoint == OutPoint(tx.txid, 0)
                assert right.outpoint == OutPoint(tx.txid, 1)
                assert left.parent == parent.outpoint
                assert tx.outputs[0].script_pubkey == left.script_pubkey

    def test_hashes_bind_addresses(self, tree_builder, operator):
        first = tree_builder.create_connector_binary_tree(operator.x_only, ROOT_UTXO, 1, _hashes(1))
        other_hashes = _hashes(1)
        other_hashes[1][1] = b"\x00" * 32
        second = tree_builder.create_connector_binary_tree(operator.x_only, ROOT_UTXO, 1, other_hashes)
        assert first.node(1, 0).address == second.node(1, 0).address
        assert first.node(1, 1).address != second.node(1, 1).address

    def test_iteration_order(self, tree_builder, operator):
        tree = tree_builder.create_connector_binary_tree(operator.x_only, ROOT_UTXO, 2, _hashes(2))
        assert [(n.level, n.index) for n in tree] == [(0, 0), (1, 0), (1, 1), (2, 0), (2, 1), (2, 2), (2, 3)]

    def test_too_few_hashes(self, tree_builder, operator):
        hashes = _hashes(2)
        hashes[2] = hashes[2][:3]
        with pytest.raises(ValueError):
            tree_builder.create_connector_binary_tree(operator.x_only, ROOT_UTXO, 2, hashes)
        with pytest.raises(ValueError):
            tree_builder.create_connector_binary_tree(operator.x_only, ROOT_UTXO, 3, _hashes(2))

    def test_missing_nodes(self, tree_builder, operator):
        tree = tree_builder.create_connector_binary_tree(operator.x_only, ROOT_UTXO, 1, _hashes(1))
        with pytest.raises(KeyError):
            tree.node(2, 0)
        with pytest.raises(KeyError):
            tree.split_tx(1, 0)
