"""
Tests for the in-memory chain and deposit UTXO checks.
"""

import pytest

from network.extended_rpc import UtxoCheckFailed
from network.mock_rpc import MockRpc
from network.rpc import RPCError
from transactions.addresses import encode_taproot_address
from transactions.primitives import OutPoint, Transaction, TxIn, TxOut


SCRIPT = b"\x51\x20" + b"\x44" * 32
ADDRESS = encode_taproot_address(b"\x44" * 32, "regtest")


@pytest.fixture
def chain():
    return MockRpc("regtest")


class TestMockRpc:
    """Test the simulated node."""

    def test_funding_and_confirmations(self, chain):
        outpoint = chain.send_to_address(ADDRESS, 10_000)
        assert chain.get_txout(outpoint) == TxOut(10_000, SCRIPT)
        assert chain.confirmation_blocks(outpoint.txid) == 0

        chain.mine_blocks(1)
        assert chain.confirmation_blocks(outpoint.txid) == 1
        chain.mine_blocks(5)
        assert chain.confirmation_blocks(outpoint.txid) == 6
        assert chain.get_block_count() == 6

    def test_funding_outputs_are_unique(self, chain):
        assert chain.send_to_address(SCRIPT, 1) != chain.send_to_address(SCRIPT, 1)

    def test_unknown_transaction(self, chain):
        with pytest.raises(RPCError):
            chain.confirmation_blocks("00" * 32)
        with pytest.raises(RPCError):
            chain.get_raw_transaction("00" * 32)

    def test_broadcast_spends_inputs(self, chain):
        funding = chain.send_to_address(SCRIPT, 10_000)
        tx = Transaction([TxIn(funding)], [TxOut(9_000, SCRIPT)])
        txid = chain.send_raw_transaction(tx)

        assert chain.is_utxo_spent(funding)
        assert not chain.is_utxo_spent(OutPoint(txid, 0))
        assert chain.get_raw_transaction(txid) == tx
        with pytest.raises(RPCError):
            chain.send_raw_transaction(tx)

    def test_spend(self, chain):
        funding = chain.send_to_address(SCRIPT, 10_000)
        chain.spend(funding)
        with pytest.raises(RPCError):
            chain.spend(funding)

    def test_block_hash(self, chain):
        chain.mine_blocks(2)
        assert chain.get_block_hash(1) != chain.get_block_hash(2)
        with pytest.raises(RPCError):
            chain.get_block_hash(3)


class TestCheckDepositUtxo:
    """Test deposit outpoint validation."""

    def test_valid_deposit(self, chain):
        outpoint = chain.send_to_address(SCRIPT, 100_000)
        chain.mine_blocks(3)
        assert chain.check_deposit_utxo(outpoint, SCRIPT, 100_000, 3) == TxOut(100_000, SCRIPT)

    def test_unknown_transaction(self, chain):
        with pytest.raises(UtxoCheckFailed, match="not found"):
            chain.check_deposit_utxo(OutPoint("00" * 32, 0), SCRIPT, 100_000, 1)

    def test_insufficient_confirmations(self, chain):
        outpoint = chain.send_to_address(SCRIPT, 100_000)
        chain.mine_blocks(1)
        with pytest.raises(UtxoCheckFailed, match="confirmations"):
            chain.check_deposit_utxo(outpoint, SCRIPT, 100_000, 2)

    def test_spent_output(self, chain):
        outpoint = chain.send_to_address(SCRIPT, 100_000)
        chain.mine_blocks(1)
        chain.spend(outpoint)
        with pytest.raises(UtxoCheckFailed, match="spent"):
            chain.check_deposit_utxo(outpoint, SCRIPT, 100_000, 1)

    def test_wrong_amount(self, chain):
        outpoint = chain.send_to_address(SCRIPT, 99_999)
        chain.mine_blocks(1)
        with pytest.raises(UtxoCheckFailed, match="value"):
            chain.check_deposit_utxo(outpoint, SCRIPT, 100_000, 1)

    def test_wrong_script(self, chain):
        outpoint = chain.send_to_address(b"\x51\x20" + b"\x55" * 32, 100_000)
        chain.mine_blocks(1)
        with pytest.raises(UtxoCheckFailed, match="deposit address"):
            chain.check_deposit_utxo(outpoint, SCRIPT, 100_000, 1)

    def test_missing_output_index(self, chain):
        outpoint = chain.send_to_address(SCRIPT, 100_000)
        chain.mine_blocks(1)
        with pytest.raises(UtxoCheckFailed):
            chain.check_deposit_utxo(OutPoint(outpoint.txid, 1), SCRIPT, 100_000, 1)
