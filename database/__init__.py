"""
Bridge - Verifier Persistence

Pydantic state schema, file-locked JSON storage and the transactional
verifier database used by every protocol transition.
"""

from .schema import (
    DepositInfo,
    DepositState,
    KickoffRecord,
    MoveTxRecord,
    NonceRecord,
    PartialSigRecord,
    SignatureRole,
    VerifierState,
    WithdrawalSigRecord,
)
from .storage import FileLock, IntegrityError, JSONStorage, LockTimeoutError, PersistenceError
from .verifier_db import (
    InMemoryStateBackend,
    JSONStateBackend,
    StateBackend,
    VerifierDB,
    VerifierSession,
)

__all__ = [
    'DepositInfo',
    'DepositState',
    'KickoffRecord',
    'MoveTxRecord',
    'NonceRecord',
    'PartialSigRecord',
    'SignatureRole',
    'VerifierState',
    'WithdrawalSigRecord',
    'FileLock',
    'IntegrityError',
    'JSONStorage',
    'LockTimeoutError',
    'PersistenceError',
    'InMemoryStateBackend',
    'JSONStateBackend',
    'StateBackend',
    'VerifierDB',
    'VerifierSession',
]
