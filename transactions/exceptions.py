"""
Bridge - Transaction Exceptions

This module defines custom exceptions for transaction construction, parsing
and Taproot tree building.
"""


class TransactionError(Exception):
    """Base exception for transaction-related errors."""
    pass


class TransactionParsingError(TransactionError):
    """Exception raised when raw transaction bytes cannot be decoded."""
    pass


class TaprootBuildFailed(TransactionError):
    """Exception raised when a Taproot script tree cannot be built."""
    pass


class InvalidPeriod(TaprootBuildFailed):
    """Exception raised when a Taproot address is requested for an empty leaf set."""
    pass


class InsufficientFundsError(TransactionError):
    """Exception raised when an input value cannot cover the template's outputs and fees."""

    def __init__(self, required: int, available: int, message: str = None):
        self.required = required
        self.available = available
        if message is None:
            message = f"Insufficient funds: required {required} satoshis, available {available} satoshis"
        super().__init__(message)
