"""
Tests for the JSON request handler in front of the verifier.
"""

import json

import pytest

from bridge.server import VerifierRequestHandler


@pytest.fixture
def handler(verifiers):
    return VerifierRequestHandler(verifiers[0])


def _deposit_params(confirmed_deposit):
    outpoint, recovery_address, evm_address = confirmed_deposit
    return {"deposit_outpoint": str(outpoint), "recovery_address": recovery_address,
            "evm_address": evm_address.hex()}


class TestVerifierRequestHandler:
    """Test request dispatch and error responses."""

    def test_new_deposit(self, handler, confirmed_deposit, bridge_config):
        response = handler.process_request({"method": "new_deposit",
                                            "params": _deposit_params(confirmed_deposit)})
        assert response["status"] == "success"
        assert len(response["result"]) == bridge_config.num_nonces
        assert all(len(bytes.fromhex(nonce)) == 66 for nonce in response["result"])

    def test_kickoffs_over_json(self, handler, federation, confirmed_deposit):
        outpoint = confirmed_deposit[0]
        federation.new_deposit(*confirmed_deposit)
        kickoffs, sigs = federation.fund_kickoffs(outpoint, 1)
        params = {
            "deposit_outpoint": str(outpoint),
            "kickoff_utxos": [{"outpoint": str(k.outpoint), "amount": k.amount} for k in kickoffs],
            "operator_sigs": [sig.hex() for sig in sigs],
            "agg_nonces": [nonce.hex() for nonce in federation.agg_nonces(outpoint, 1)],
        }
        response = json.loads(handler.handle_json(json.dumps(
            {"method": "operator_kickoffs_generated", "params": params})))
        assert response["status"] == "success"
        assert len(response["result"]) == 1

    @pytest.mark.parametrize("vout_field", ["vout", "outpoint"])
    def test_funding_tx_output_out_of_range(self, handler, federation, confirmed_deposit, mock_rpc, vout_field):
        outpoint = confirmed_deposit[0]
        federation.new_deposit(*confirmed_deposit)
        kickoffs, sigs = federation.fund_kickoffs(outpoint, 1)
        funding_tx = mock_rpc.get_raw_transaction(kickoffs[0].outpoint.txid)
        kickoff = {"funding_tx": funding_tx.hex()}
        kickoff[vout_field] = 7 if vout_field == "vout" else f"{funding_tx.txid}:7"
        response = handler.process_request({"method": "operator_kickoffs_generated", "params": {
            "deposit_outpoint": str(outpoint),
            "kickoff_utxos": [kickoff],
            "operator_sigs": [sig.hex() for sig in sigs],
            "agg_nonces": [nonce.hex() for nonce in federation.agg_nonces(outpoint, 1)],
        }})
        assert response["status"] == "error"
        assert response["error"] == "InvalidKickoffUtxo"
        assert response["details"]["vout"] == 7

    def test_withdrawal(self, handler, user, fund_bridge_utxo):
        response = handler.process_request({"method": "new_withdrawal_direct", "params": {
            "idx": 0, "bridge_fund_txid": fund_bridge_utxo(), "withdrawal_address": user.recovery_address}})
        assert response["status"] == "success"
        assert len(bytes.fromhex(response["result"])) == 64

    def test_withdrawal_without_bridge_utxo(self, handler, user):
        response = handler.process_request({"method": "new_withdrawal_direct", "params": {
            "idx": 0, "bridge_fund_txid": "cd" * 32, "withdrawal_address": user.recovery_address}})
        assert response["error"] == "InvalidBridgeUtxo"
        assert response["details"]["outpoint"] == "cd" * 32 + ":0"

    def test_statistics(self, handler):
        response = handler.process_request({"method": "get_statistics"})
        assert response["result"]["deposits_accepted"] == 0

    def test_unknown_method(self, handler):
        response = handler.process_request({"method": "drop_tables", "params": {}})
        assert response["status"] == "error"
        assert response["error"] == "InvalidRequest"

    def test_missing_parameter(self, handler):
        response = handler.process_request({"method": "new_deposit", "params": {"deposit_outpoint": "ab" * 32 + ":0"}})
        assert response["error"] == "InvalidRequest"
        assert "recovery_address" in response["message"]

    def test_params_must_be_object(self, handler):
        response = handler.process_request({"method": "new_deposit", "params": ["x"]})
        assert response["error"] == "InvalidRequest"

    def test_malformed_hex(self, handler, confirmed_deposit):
        params = _deposit_params(confirmed_deposit)
        params["evm_address"] = "zz"
        response = handler.process_request({"method": "new_deposit", "params": params})
        assert response["error"] == "InvalidRequest"

    def test_bridge_error_is_reported(self, handler):
        response = handler.process_request({"method": "burn_txs_signed", "params": {
            "deposit_outpoint": "ee" * 32 + ":0", "burn_sigs": []}})
        assert response["status"] == "error"
        assert response["error"] == "DepositInfoNotFound"
        assert response["details"]["deposit_outpoint"] == "ee" * 32 + ":0"

    def test_invalid_json(self, handler):
        response = json.loads(handler.handle_json("{not json"))
        assert response["status"] == "error"
        assert response["message"].startswith("Invalid JSON")

    def test_non_object_request(self, handler):
        response = json.loads(handler.handle_json("[1, 2]"))
        assert response["message"] == "Request must be an object"
