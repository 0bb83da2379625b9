"""
Pytest configuration and fixtures for bridge tests.
"""

import hashlib
import tempfile
from pathlib import Path
from typing import Dict, List

import pytest

from bridge.actor import Actor
from bridge.config import BridgeConfig
from bridge.musig_coordinator import aggregate_partial_signatures, slots_used
from bridge.user import User
from bridge.verifier import KickoffUtxo, Verifier, kickoff_commitment_digest
from crypto import musig2
from database.verifier_db import VerifierDB
from network.mock_rpc import MockRpc
from transactions.builder import TransactionBuilder
from transactions.primitives import OutPoint


NUM_VERIFIERS = 3
EVM_ADDRESS = bytes.fromhex("11" * 20)


def deterministic_key(label: str) -> bytes:
    """Reproducible 32-byte secret key."""
    return hashlib.sha256(label.encode()).digest()


@pytest.fixture
def test_data_dir():
    """Create temporary test data directory."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def verifier_keys() -> List[bytes]:
    return [deterministic_key(f"verifier-{i}") for i in range(NUM_VERIFIERS)]


@pytest.fixture
def verifier_actors(verifier_keys) -> List[Actor]:
    return [Actor(key, "regtest") for key in verifier_keys]


@pytest.fixture
def operator() -> Actor:
    return Actor(deterministic_key("operator"), "regtest")


@pytest.fixture
def bridge_config(verifier_actors, operator, verifier_keys) -> BridgeConfig:
    """Regtest configuration for a three verifier federation."""
    return BridgeConfig(
        network="regtest",
        secret_key=verifier_keys[0].hex(),
        verifiers_public_keys=[actor.x_only.hex() for actor in verifier_actors],
        operator_public_key=operator.x_only.hex(),
        confirmation_threshold=1,
    )


@pytest.fixture
def mock_rpc() -> MockRpc:
    return MockRpc("regtest")


@pytest.fixture
def transaction_builder(bridge_config) -> TransactionBuilder:
    return TransactionBuilder.from_config(bridge_config)


@pytest.fixture
def verifiers(bridge_config, mock_rpc, verifier_keys) -> List[Verifier]:
    """One verifier per key, each with its own in-memory store."""
    return [Verifier(bridge_config, mock_rpc, VerifierDB.in_memory(), secret_key=key)
            for key in verifier_keys]


@pytest.fixture
def user(mock_rpc, transaction_builder) -> User:
    return User(mock_rpc, transaction_builder, deterministic_key("user"))


@pytest.fixture
def confirmed_deposit(user, mock_rpc):
    """A deposit UTXO funded and confirmed on the mock chain."""
    outpoint, recovery_address, evm_address = user.deposit_tx(EVM_ADDRESS)
    mock_rpc.mine_blocks(1)
    return outpoint, recovery_address, evm_address


@pytest.fixture
def fund_bridge_utxo(mock_rpc, transaction_builder):
    """Fund and confirm a bridge UTXO at output 0; returns the funding txid."""
    def fund() -> str:
        _, bridge_info = transaction_builder.generate_bridge_address()
        outpoint = mock_rpc.send_to_address(bridge_info.script_pubkey, transaction_builder.bridge_utxo_value)
        mock_rpc.mine_blocks(1)
        return outpoint.txid
    return fund


class Federation:
    """
    Drives a set of verifiers the way the operator would: collects nonces,
    aggregates them, and combines partial signatures.
    """

    def __init__(self, verifiers: List[Verifier], operator: Actor, rpc: MockRpc,
                 transaction_builder: TransactionBuilder):
        self.verifiers = verifiers
        self.operator = operator
        self.rpc = rpc
        self.transaction_builder = transaction_builder
        self.verifiers_pks = [v.public_key for v in verifiers]
        self.pub_nonces: Dict[str, List[List[bytes]]] = {}

    def new_deposit(self, outpoint: OutPoint, recovery_address: str, evm_address: bytes):
        nonces = [v.new_deposit(outpoint, recovery_address, evm_address) for v in self.verifiers]
        self.pub_nonces[str(outpoint)] = nonces
        return nonces

    def agg_nonces(self, outpoint: OutPoint, num_kickoffs: int) -> List[bytes]:
        nonces = self.pub_nonces[str(outpoint)]
        return [musig2.nonce_agg([per_verifier[slot] for per_verifier in nonces])
                for slot in range(slots_used(num_kickoffs))]

    def fund_kickoffs(self, deposit: OutPoint, count: int, amount: int = 100_000):
        kickoffs, sigs = [], []
        for _ in range(count):
            outpoint = self.rpc.send_to_address(self.operator.address, amount)
            kickoffs.append(KickoffUtxo(outpoint, amount))
            sigs.append(self.operator.sign(kickoff_commitment_digest(deposit, outpoint)))
        self.rpc.mine_blocks(1)
        return kickoffs, sigs

    def register_kickoffs(self, deposit: OutPoint, count: int = 2):
        """Fund kickoffs and submit them to every verifier; returns burn partial sigs per verifier."""
        kickoffs, sigs = self.fund_kickoffs(deposit, count)
        agg_nonces = self.agg_nonces(deposit, count)
        burn_psigs = [v.operator_kickoffs_generated(deposit, kickoffs, sigs, agg_nonces)
                      for v in self.verifiers]
        return kickoffs, agg_nonces, burn_psigs

    def burn_sighashes(self, kickoffs: List[KickoffUtxo]) -> List[bytes]:
        tb = self.transaction_builder
        return [tb.create_burn_tx(tb.create_claim_tx(k.outpoint, k.amount).txid, k.amount).sighash()
                for k in kickoffs]

    def move_templates(self, deposit: OutPoint, recovery_address: str, evm_address: bytes,
                       kickoffs: List[KickoffUtxo]):
        txids = [k.outpoint.txid_bytes for k in kickoffs]
        commit = self.transaction_builder.create_move_commit_tx(deposit, recovery_address, evm_address, txids)
        reveal = self.transaction_builder.create_move_reveal_tx(commit.tx.txid, txids)
        return commit, reveal

    def take_sighashes(self, bridge_outpoint: OutPoint, kickoffs: List[KickoffUtxo]) -> List[bytes]:
        tb = self.transaction_builder
        return [tb.create_operator_take_tx(bridge_outpoint, tb.create_claim_tx(k.outpoint, k.amount).txid,
                                           k.amount).sighash()
                for k in kickoffs]

    def aggregate(self, agg_nonce: bytes, message: bytes, partial_sigs: List[bytes]) -> bytes:
        return aggregate_partial_signatures(self.verifiers_pks, agg_nonce, message, partial_sigs)

    def aggregate_round(self, agg_nonces: List[bytes], slots: List[int], messages: List[bytes],
                        psigs_per_verifier: List[List[bytes]]) -> List[bytes]:
        """Aggregate one signature per message from every verifier's partial signatures."""
        return [self.aggregate(agg_nonces[slot], message, [psigs[i] for psigs in psigs_per_verifier])
                for i, (slot, message) in enumerate(zip(slots, messages))]


@pytest.fixture
def federation_factory(operator, mock_rpc, transaction_builder):
    """Build a Federation around any list of verifiers."""
    def factory(verifiers: List[Verifier]) -> Federation:
        return Federation(verifiers, operator, mock_rpc, transaction_builder)
    return factory


@pytest.fixture
def federation(verifiers, federation_factory) -> Federation:
    return federation_factory(verifiers)


# Test markers for different test categories
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "concurrency: mark test as a concurrency test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def pytest_collection_modifyitems(config, items):
    """Add markers based on test paths and names."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)

        if "concurrent" in item.name or "thread" in item.name:
            item.add_marker(pytest.mark.concurrency)
