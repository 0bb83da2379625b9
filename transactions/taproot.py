"""
Bridge - Taproot Script Trees

This module builds Taproot outputs from tapscript leaves:
- Depth-first TaprootBuilder that combines leaves into a Merkle tree
- Spend info with merkle root, output key and per-leaf control blocks
- Balanced depth assignment for an ordered list of leaf scripts
- The provably unspendable internal key from BIP341
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from crypto.keys import tagged_hash, taproot_tweak_public_key, taproot_output_script

from .addresses import encode_taproot_address
from .exceptions import InvalidPeriod, TaprootBuildFailed
from .sighash import TAPSCRIPT_LEAF_VERSION, tapleaf_hash


logger = logging.getLogger(__name__)

# BIP341 NUMS point: lift_x(sha256(uncompressed generator))
UNSPENDABLE_INTERNAL_KEY = bytes.fromhex(
    "50929b74c1a04954b78b4b6035e97a5e078a5a0f28ec96d547bfee9ace803ac0"
)

TAPROOT_CONTROL_MAX_DEPTH = 128


@dataclass
class TapLeaf:
    """A tapscript leaf and its path to the root."""
    script: bytes
    leaf_version: int = TAPSCRIPT_LEAF_VERSION
    merkle_branch: List[bytes] = field(default_factory=list)

    def __post_init__(self):
        if not self.script:
            raise ValueError("Tap leaf script cannot be empty")

    def leaf_hash(self) -> bytes:
        return tapleaf_hash(self.script, self.leaf_version)


@dataclass
class TapNode:
    """Partially built subtree: its hash and the leaves beneath it."""
    hash: bytes
    leaves: List[TapLeaf]

    @classmethod
    def from_leaf(cls, leaf: TapLeaf) -> 'TapNode':
        return cls(leaf.leaf_hash(), [leaf])

    @classmethod
    def combine(cls, a: 'TapNode', b: 'TapNode') -> 'TapNode':
        """Join two subtrees, extending every leaf path with its sibling hash."""
        for leaf in a.leaves:
            leaf.merkle_branch.append(b.hash)
        for leaf in b.leaves:
            leaf.merkle_branch.append(a.hash)

        # Lexicographically order the hashes
        if a.hash <= b.hash:
            branch_hash = tagged_hash("TapBranch", a.hash + b.hash)
        else:
            branch_hash = tagged_hash("TapBranch", b.hash + a.hash)
        return cls(branch_hash, a.leaves + b.leaves)


@dataclass
class TaprootSpendInfo:
    """Everything needed to pay to and spend from a Taproot output."""
    internal_key: bytes
    merkle_root: Optional[bytes]
    output_key: bytes
    output_key_parity: int
    leaves: List[TapLeaf] = field(default_factory=list)

    @property
    def script_pubkey(self) -> bytes:
        return taproot_output_script(self.output_key)

    @property
    def leaf_depths(self) -> List[int]:
        return [len(leaf.merkle_branch) for leaf in self.leaves]

    def address(self, network: str = "mainnet") -> str:
        return encode_taproot_address(self.output_key, network)

    def find_leaf(self, script: bytes, leaf_version: int = TAPSCRIPT_LEAF_VERSION) -> TapLeaf:
        for leaf in self.leaves:
            if leaf.script == script and leaf.leaf_version == leaf_version:
                return leaf
        raise KeyError(f"Script not found in tree: {script.hex()}")

    def control_block(self, script: bytes, leaf_version: int = TAPSCRIPT_LEAF_VERSION) -> bytes:
        """
        Build the control block for spending through a given leaf.

        Args:
            script: Leaf script being executed
            leaf_version: Tapscript leaf version

        Returns:
            Control block: (leaf_version | parity) || internal key || merkle path
        """
        leaf = self.find_leaf(script, leaf_version)
        return (bytes([leaf_version | self.output_key_parity])
                + self.internal_key
                + b''.join(leaf.merkle_branch))

    def verify_control_block(self, script: bytes, control_block: bytes) -> bool:
        """Recompute the output key from a control block and compare."""
        if len(control_block) < 33 or (len(control_block) - 33) % 32:
            return False
        leaf_version = control_block[0] & 0xfe
        parity = control_block[0] & 0x01
        internal_key = control_block[1:33]
        node = tapleaf_hash(script, leaf_version)
        for i in range(33, len(control_block), 32):
            sibling = control_block[i:i + 32]
            pair = node + sibling if node <= sibling else sibling + node
            node = tagged_hash("TapBranch", pair)
        output_key, output_parity = taproot_tweak_public_key(internal_key, node)
        return output_key == self.output_key and output_parity == parity


class TaprootBuilder:
    """
    Incremental Taproot tree builder.

    Leaves must be added in depth-first order with their depth in the final
    tree. Pending subtrees are kept on a stack indexed by depth and merged
    whenever two siblings at the same depth are available.
    """

    def __init__(self):
        self.branch: List[Optional[TapNode]] = []

    def add_leaf(self, depth: int, script: bytes,
                 leaf_version: int = TAPSCRIPT_LEAF_VERSION) -> 'TaprootBuilder':
        """
        Add a leaf script at the given depth.

        Args:
            depth: Depth of the leaf in the final tree (root = 0)
            script: Leaf script
            leaf_version: Tapscript leaf version

        Returns:
            The builder, for chaining
        """
        return self._insert(TapNode.from_leaf(TapLeaf(script, leaf_version)), depth)

    def _insert(self, node: TapNode, depth: int) -> 'TaprootBuilder':
        if depth > TAPROOT_CONTROL_MAX_DEPTH:
            raise TaprootBuildFailed(f"Leaf depth {depth} exceeds {TAPROOT_CONTROL_MAX_DEPTH}")
        if depth + 1 < len(self.branch):
            raise TaprootBuildFailed("Node not in depth-first order")

        while len(self.branch) == depth + 1:
            child = self.branch.pop()
            if child is None:
                self.branch.append(None)
                break
            if depth == 0:
                raise TaprootBuildFailed("Tree is over complete")
            node = TapNode.combine(child, node)
            depth -= 1

        if len(self.branch) < depth + 1:
            self.branch.extend([None] * (depth + 1 - len(self.branch)))
        self.branch[depth] = node
        return self

    def is_finalizable(self) -> bool:
        return len(self.branch) == 1 and self.branch[0] is not None

    def finalize(self, internal_key: bytes) -> TaprootSpendInfo:
        """
        Close the tree and tweak the internal key with its merkle root.

        Args:
            internal_key: 32-byte x-only internal key

        Returns:
            TaprootSpendInfo for the finished tree
        """
        if len(internal_key) != 32:
            raise TaprootBuildFailed("Internal key must be 32 bytes")
        if not self.branch:
            merkle_root = None
            leaves: List[TapLeaf] = []
        elif self.is_finalizable():
            merkle_root = self.branch[0].hash
            leaves = self.branch[0].leaves
        else:
            raise TaprootBuildFailed("Incomplete tree: leaves are missing")

        output_key, parity = taproot_tweak_public_key(internal_key, merkle_root)
        return TaprootSpendInfo(internal_key, merkle_root, output_key, parity, leaves)


def balanced_leaf_depths(n: int) -> List[int]:
    """
    Depths for n leaves in a balanced tree.

    With m = ceil(log2 n) and k = 2^m - n, the first k leaves sit at depth
    m - 1 and the rest at depth m.

    Args:
        n: Number of leaves

    Returns:
        Depth for each leaf in insertion order
    """
    if n <= 0:
        raise InvalidPeriod("Cannot build a Taproot tree without leaves")
    if n == 1:
        return [0]
    m = (n - 1).bit_length()
    k = (1 << m) - n
    return [m - 1] * k + [m] * (n - k)


def build_taproot_tree(scripts: List[bytes],
                       internal_key: bytes = UNSPENDABLE_INTERNAL_KEY) -> TaprootSpendInfo:
    """
    Build a balanced Taproot tree from an ordered list of scripts.

    Args:
        scripts: Leaf scripts in order
        internal_key: 32-byte x-only internal key

    Returns:
        TaprootSpendInfo for the tree
    """
    depths = balanced_leaf_depths(len(scripts))
    builder = TaprootBuilder()
    for depth, script in zip(depths, scripts):
        builder.add_leaf(depth, script)
    spend_info = builder.finalize(internal_key)
    logger.debug(f"Built taproot tree with {len(scripts)} leaves, output key {spend_info.output_key.hex()}")
    return spend_info


def create_taproot_address(scripts: List[bytes], network: str,
                           internal_key: bytes = UNSPENDABLE_INTERNAL_KEY) -> Tuple[str, TaprootSpendInfo]:
    """Taproot address and spend info for an ordered list of leaf scripts."""
    spend_info = build_taproot_tree(scripts, internal_key)
    return spend_info.address(network), spend_info


def key_path_spend_info(internal_key: bytes) -> TaprootSpendInfo:
    """Spend info for an output with no script tree."""
    return TaprootBuilder().finalize(internal_key)
