"""
Bridge - Bitcoin Network Access

JSON-RPC client for Bitcoin Core and the ExtendedRpc capability the
verifier consumes, with live and in-memory implementations.
"""

from .rpc import (
    BitcoinRPCClient,
    RPCAuthError,
    RPCConfig,
    RPCConnectionError,
    RPCError,
    RPCTimeoutError,
)
from .extended_rpc import BitcoinCoreRpc, ExtendedRpc, UtxoCheckFailed
from .mock_rpc import MockRpc

__all__ = [
    'BitcoinRPCClient',
    'RPCAuthError',
    'RPCConfig',
    'RPCConnectionError',
    'RPCError',
    'RPCTimeoutError',
    'BitcoinCoreRpc',
    'ExtendedRpc',
    'UtxoCheckFailed',
    'MockRpc',
]
