"""
Cryptographic Exceptions for the Bridge

This module defines custom exceptions for key, signature and MuSig2 operations.
"""


class CryptoError(Exception):
    """Base exception for all cryptographic errors."""
    pass


class InvalidKeyError(CryptoError):
    """Raised when a key is invalid or malformed."""
    pass


class InvalidSignatureError(CryptoError):
    """Raised when a signature is malformed."""
    pass


class MuSig2Error(CryptoError):
    """Raised when MuSig2 operations fail."""
    pass


class InvalidContributionError(MuSig2Error):
    """Raised when a signer or the nonce aggregator sends an invalid value."""

    def __init__(self, signer, contrib: str):
        self.signer = signer
        # one of "pubkey", "pubnonce", "aggnonce", "psig"
        self.contrib = contrib
        super().__init__(f"Invalid {contrib} contribution from signer {signer}")
