"""
Bridge - Verifier Request Handler

JSON front end for the verifier protocol. Requests name a method and its
params; byte strings travel as hex, outpoints as "txid:vout" and raw
transactions as hex.

Example request:
    {"method": "new_deposit",
     "params": {"deposit_outpoint": "ab..01:0",
                "recovery_address": "bcrt1p...",
                "evm_address": "11..11"}}
"""

import json
import logging
import time
from typing import Any, Callable, Dict, List

from crypto.exceptions import CryptoError
from database.storage import PersistenceError
from network.rpc import RPCError
from transactions.exceptions import TransactionError
from transactions.primitives import OutPoint, Transaction

from .errors import BridgeError
from .verifier import KickoffUtxo, Verifier


class InvalidRequest(Exception):
    """Malformed request or parameters."""
    pass


def _hex_list(values: List[str]) -> List[bytes]:
    return [bytes.fromhex(value) for value in values]


def _kickoff_utxo(data: Dict[str, Any]) -> KickoffUtxo:
    funding_tx = data.get("funding_tx")
    if funding_tx:
        tx = Transaction.from_hex(funding_tx)
        if "outpoint" in data:
            outpoint = OutPoint.from_str(data["outpoint"])
            if "amount" not in data:
                return KickoffUtxo(outpoint, KickoffUtxo.from_funding_tx(tx, outpoint.vout).amount, tx)
            return KickoffUtxo(outpoint, int(data["amount"]), tx)
        return KickoffUtxo.from_funding_tx(tx, int(data.get("vout", 0)))
    return KickoffUtxo(OutPoint.from_str(data["outpoint"]), int(data["amount"]))


class VerifierRequestHandler:
    """Dispatches JSON requests to a Verifier."""

    def __init__(self, verifier: Verifier):
        self.verifier = verifier
        self.logger = logging.getLogger("bridge.server")
        self.methods: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            "new_deposit": self._new_deposit,
            "operator_kickoffs_generated": self._operator_kickoffs_generated,
            "burn_txs_signed": self._burn_txs_signed,
            "operator_take_txs_signed": self._operator_take_txs_signed,
            "new_withdrawal_direct": self._new_withdrawal_direct,
            "get_statistics": lambda params: self.verifier.get_statistics(),
        }

    def _new_deposit(self, params: Dict[str, Any]) -> List[str]:
        pub_nonces = self.verifier.new_deposit(
            params["deposit_outpoint"], params["recovery_address"], bytes.fromhex(params["evm_address"])
        )
        return [nonce.hex() for nonce in pub_nonces]

    def _operator_kickoffs_generated(self, params: Dict[str, Any]) -> List[str]:
        partial_sigs = self.verifier.operator_kickoffs_generated(
            params["deposit_outpoint"],
            [_kickoff_utxo(item) for item in params["kickoff_utxos"]],
            _hex_list(params["operator_sigs"]),
            _hex_list(params["agg_nonces"]),
        )
        return [sig.hex() for sig in partial_sigs]

    def _burn_txs_signed(self, params: Dict[str, Any]) -> List[str]:
        partial_sigs = self.verifier.burn_txs_signed(
            params["deposit_outpoint"], _hex_list(params["burn_sigs"])
        )
        return [sig.hex() for sig in partial_sigs]

    def _operator_take_txs_signed(self, params: Dict[str, Any]) -> Dict[str, str]:
        commit_sig, reveal_sig = self.verifier.operator_take_txs_signed(
            params["deposit_outpoint"], _hex_list(params["operator_take_sigs"])
        )
        return {"move_commit": commit_sig.hex(), "move_reveal": reveal_sig.hex()}

    def _new_withdrawal_direct(self, params: Dict[str, Any]) -> str:
        signature = self.verifier.new_withdrawal_direct(
            int(params["idx"]), params["bridge_fund_txid"], params["withdrawal_address"]
        )
        return signature.hex()

    def process_request(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process one request.

        Args:
            request: {"method": name, "params": {...}}

        Returns:
            {"status": "success", "result": ...} or {"status": "error", ...}
        """
        method = request.get("method")
        self.logger.info(f"Processing request {method}")

        try:
            handler = self.methods.get(method)
            if handler is None:
                raise InvalidRequest(f"Unknown method: {method}")
            params = request.get("params") or {}
            if not isinstance(params, dict):
                raise InvalidRequest("params must be an object")
            try:
                result = handler(params)
            except (KeyError, TypeError, IndexError) as e:
                raise InvalidRequest(f"Missing or malformed parameter: {e}") from e
            except ValueError as e:
                raise InvalidRequest(str(e)) from e

            return {"status": "success", "method": method, "result": result,
                    "timestamp": int(time.time())}

        except BridgeError as e:
            self.logger.warning(f"Request {method} rejected: {e.message}")
            return {"status": "error", "method": method, **e.to_dict()}
        except (InvalidRequest, TransactionError, CryptoError) as e:
            self.logger.warning(f"Invalid request {method}: {e}")
            return {"status": "error", "method": method, "error": e.__class__.__name__,
                    "message": str(e), "details": {}}
        except (PersistenceError, RPCError) as e:
            self.logger.error(f"Request {method} failed: {e}")
            return {"status": "error", "method": method, "error": e.__class__.__name__,
                    "message": str(e), "details": {}}

    def handle_json(self, raw: str) -> str:
        """Decode a JSON request, process it and encode the response."""
        try:
            request = json.loads(raw)
        except json.JSONDecodeError as e:
            return json.dumps({"status": "error", "error": "InvalidRequest",
                               "message": f"Invalid JSON: {e}", "details": {}})
        if not isinstance(request, dict):
            return json.dumps({"status": "error", "error": "InvalidRequest",
                               "message": "Request must be an object", "details": {}})
        return json.dumps(self.process_request(request))
