"""
Bridge - Protocol Errors

Typed failures returned to protocol callers. Each is raised inside a
database transaction where relevant, so nothing a failing call did is
committed.
"""

from typing import Any, Dict, Optional


class BridgeError(Exception):
    """Base exception for verifier protocol failures."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class InvalidDepositUtxo(BridgeError):
    """Deposit UTXO is unconfirmed, spent, wrongly valued or pays the wrong script."""
    pass


class AddressNetworkMismatch(InvalidDepositUtxo):
    """Recovery or destination address belongs to another network."""
    pass


class PublicKeyNotFound(BridgeError):
    """Signer key is not part of the configured verifier set."""
    pass


class InvalidKickoffUtxo(BridgeError):
    """Kickoff UTXOs violate the value or count rules."""
    pass


class NoncesNotFound(BridgeError):
    """No nonce has been generated for the requested slot."""
    pass


class AggNonceMissing(BridgeError):
    """Aggregated nonce for the slot has not been received."""
    pass


class NonceReuseDetected(BridgeError):
    """A nonce slot was asked to sign a second, different message."""
    pass


class DepositInfoNotFound(BridgeError):
    """Deposit has not been registered through new_deposit."""
    pass


class KickoffOutpointsNotFound(BridgeError):
    """Kickoffs have not been registered for the deposit."""
    pass


class SignatureVerificationFailed(BridgeError):
    """Supplied signature does not validate against the expected key and message."""
    pass


class AlreadySpentWithdrawal(BridgeError):
    """Withdrawal index is already bound to a different bridge fund txid."""
    pass


class InvalidBridgeUtxo(BridgeError):
    """Bridge fund output is missing, spent or not the expected bridge UTXO."""
    pass
