"""
Bridge - Connector Tree Layout

A connector tree is a binary tree of UTXOs for one settlement period. The
root splits level by level until each of the 2^depth leaves holds exactly
the dust value. Every node pays to Taproot(operator timelock leaf, hash
preimage leaf) so the operator must reveal the committed preimage, or any
verifier may reclaim the output after the delay.

Nodes are stored in an arena keyed by (level, index).
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from .builder import TransactionBuilder
from .primitives import OutPoint, Transaction


logger = logging.getLogger(__name__)


def calculate_amount(depth: int, dust_value: int, fee: int) -> int:
    """
    Value a subtree of the given depth needs.

    The 2^depth leaves hold dust each and the 2^depth - 1 inner splits each
    pay one relay fee.

    Args:
        depth: Subtree depth
        dust_value: Leaf value
        fee: Fee per split transaction

    Returns:
        Required value in satoshis
    """
    if depth < 0:
        raise ValueError(f"Depth cannot be negative: {depth}")
    leaves = 1 << depth
    return dust_value * leaves + fee * (leaves - 1)


@dataclass
class ConnectorTreeNode:
    """One UTXO in the connector tree."""
    level: int
    index: int
    hash: bytes
    outpoint: OutPoint
    value: int
    address: str
    parent: Optional[OutPoint] = None
    script_pubkey: bytes = b''


@dataclass
class ConnectorTree:
    """Arena of connector tree nodes and the transactions that create them."""
    depth: int
    nodes: Dict[Tuple[int, int], ConnectorTreeNode] = field(default_factory=dict)
    transactions: Dict[Tuple[int, int], Transaction] = field(default_factory=dict)

    def node(self, level: int, index: int) -> ConnectorTreeNode:
        try:
            return self.nodes[(level, index)]
        except KeyError:
            raise KeyError(f"No connector tree node at level {level} index {index}") from None

    def children(self, level: int, index: int) -> Tuple[ConnectorTreeNode, ConnectorTreeNode]:
        return self.node(level + 1, 2 * index), self.node(level + 1, 2 * index + 1)

    def split_tx(self, level: int, index: int) -> Transaction:
        """Transaction spending node (level, index) into its two children."""
        try:
            return self.transactions[(level, index)]
        except KeyError:
            raise KeyError(f"Node at level {level} index {index} is a leaf") from None

    def level(self, level: int) -> List[ConnectorTreeNode]:
        return [self.nodes[(level, i)] for i in range(1 << level)]

    def leaves(self) -> List[ConnectorTreeNode]:
        return self.level(self.depth)

    def outpoints(self) -> List[List[OutPoint]]:
        return [[node.outpoint for node in self.level(lvl)] for lvl in range(self.depth + 1)]

    def __iter__(self) -> Iterator[ConnectorTreeNode]:
        for lvl in range(self.depth + 1):
            yield from self.level(lvl)

    def __len__(self) -> int:
        return len(self.nodes)


class ConnectorTreeBuilder:
    """
    Lays out the connector tree for a period.

    Uses the transaction builder's dust, fee and delay parameters so the
    operator and every verifier derive the same tree.
    """

    def __init__(self, transaction_builder: TransactionBuilder):
        self.transaction_builder = transaction_builder
        self.logger = logging.getLogger("bridge.connector_tree")

    def amount(self, depth: int) -> int:
        tb = self.transaction_builder
        return calculate_amount(depth, tb.dust_value, tb.min_relay_fee)

    def create_connector_binary_tree(self, operator_pk: bytes, root_utxo: OutPoint,
                                     depth: int, hashes: List[List[bytes]]) -> ConnectorTree:
        """
        Build the connector tree rooted at a UTXO.

        Args:
            operator_pk: 32-byte x-only key of the operator
            root_utxo: Outpoint holding calculate_amount(depth)
            depth: Tree depth (0 yields a root-only tree)
            hashes: Commitment hashes per level, hashes[level][index]

        Returns:
            ConnectorTree with every node and split transaction
        """
        if depth < 0:
            raise ValueError(f"Depth cannot be negative: {depth}")
        required = (1 << (depth + 1)) - 1
        supplied = sum(len(level) for level in hashes[:depth + 1])
        if supplied < required or len(hashes) < depth + 1:
            raise ValueError(
                f"Connector tree of depth {depth} needs {required} hashes, got {supplied}"
            )
        for level in range(depth + 1):
            if len(hashes[level]) < (1 << level):
                raise ValueError(f"Level {level} needs {1 << level} hashes, got {len(hashes[level])}")

        tb = self.transaction_builder
        tree = ConnectorTree(depth)

        root_address, root_info = tb.create_connector_tree_node_address(operator_pk, hashes[0][0])
        tree.nodes[(0, 0)] = ConnectorTreeNode(
            level=0, index=0, hash=hashes[0][0], outpoint=root_utxo,
            value=self.amount(depth), address=root_address,
            script_pubkey=root_info.script_pubkey,
        )

        for level in range(depth):
            child_value = self.amount(depth - level - 1)
            for index in range(1 << level):
                parent = tree.nodes[(level, index)]
                children = []
                for child_index in (2 * index, 2 * index + 1):
                    child_hash = hashes[level + 1][child_index]
                    address, info = tb.create_connector_tree_node_address(operator_pk, child_hash)
                    children.append((child_index, child_hash, address, info.script_pubkey))

                tx = tb.create_connector_tree_tx(
                    parent.outpoint, child_value, children[0][3], children[1][3]
                )
                tree.transactions[(level, index)] = tx
                txid = tx.txid
                for vout, (child_index, child_hash, address, script_pubkey) in enumerate(children):
                    tree.nodes[(level + 1, child_index)] = ConnectorTreeNode(
                        level=level + 1, index=child_index, hash=child_hash,
                        outpoint=OutPoint(txid, vout), value=child_value,
                        address=address, parent=parent.outpoint,
                        script_pubkey=script_pubkey,
                    )

        self.logger.info(f"Built connector tree of depth {depth} with {len(tree)} nodes "
                         f"from {root_utxo}")
        return tree
