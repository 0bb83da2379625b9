"""
Bridge - Verifier Database

Transactional access to the verifier's persisted state. Every protocol
transition runs inside VerifierDB.transaction(): reads and writes go
through the yielded session, the whole state is committed when the block
exits normally and discarded when it raises.

Writes are first-writer-wins: saving a nonce slot, kickoff set, partial
signature or withdrawal signature that already exists returns the stored
record instead of overwriting it.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from pydantic import ValidationError

from .schema import (
    DepositInfo,
    DepositState,
    KickoffRecord,
    MoveTxRecord,
    NonceRecord,
    PartialSigRecord,
    VerifierState,
    WithdrawalSigRecord,
)
from .storage import IntegrityError, JSONStorage


logger = logging.getLogger(__name__)


class StateBackend(ABC):
    """Holds the verifier state and provides an exclusive begin/commit boundary."""

    @abstractmethod
    @contextmanager
    def begin(self) -> Iterator[VerifierState]:
        """Yield a private copy of the state, committed if the block succeeds."""

    @abstractmethod
    def snapshot(self) -> VerifierState:
        """Read-only copy of the committed state."""


class JSONStateBackend(StateBackend):
    """State kept in a single JSON document guarded by a file lock."""

    def __init__(self, file_path: Union[str, Path], lock_timeout: float = 30.0):
        self.storage = JSONStorage(file_path, lock_timeout=lock_timeout)

    @staticmethod
    def _parse(data: Dict) -> VerifierState:
        try:
            return VerifierState.model_validate(data) if data else VerifierState()
        except ValidationError as e:
            raise IntegrityError(f"Stored verifier state is invalid: {e}") from e

    @contextmanager
    def begin(self) -> Iterator[VerifierState]:
        with self.storage.transaction() as data:
            state = self._parse(data)
            yield state
            state.updated_at = datetime.now(timezone.utc)
            data.clear()
            data.update(state.model_dump(mode='json'))

    def snapshot(self) -> VerifierState:
        return self._parse(self.storage.read())


class InMemoryStateBackend(StateBackend):
    """State kept in process memory, for tests and mock deployments."""

    def __init__(self):
        self._state = VerifierState()
        self._lock = threading.RLock()

    @contextmanager
    def begin(self) -> Iterator[VerifierState]:
        with self._lock:
            working = copy.deepcopy(self._state)
            yield working
            working.updated_at = datetime.now(timezone.utc)
            self._state = working

    def snapshot(self) -> VerifierState:
        with self._lock:
            return copy.deepcopy(self._state)


class VerifierSession:
    """Accessors over one transaction's working copy of the state."""

    def __init__(self, state: VerifierState):
        self.state = state

    def _deposit(self, deposit_outpoint: str) -> Optional[DepositState]:
        return self.state.deposits.get(deposit_outpoint)

    def _require_deposit(self, deposit_outpoint: str) -> DepositState:
        deposit = self._deposit(deposit_outpoint)
        if deposit is None:
            raise IntegrityError(f"No deposit recorded for {deposit_outpoint}")
        return deposit

    # Deposits

    def get_deposit_info(self, deposit_outpoint: str) -> Optional[DepositInfo]:
        deposit = self._deposit(deposit_outpoint)
        return deposit.info if deposit else None

    def save_deposit_info(self, info: DepositInfo) -> DepositInfo:
        """Record deposit metadata; an existing record is returned unchanged."""
        existing = self._deposit(info.deposit_outpoint)
        if existing is not None:
            return existing.info
        self.state.deposits[info.deposit_outpoint] = DepositState(info=info)
        return info

    # Nonces

    def get_nonces(self, deposit_outpoint: str) -> Dict[int, NonceRecord]:
        deposit = self._deposit(deposit_outpoint)
        return dict(deposit.nonces) if deposit else {}

    def get_nonce(self, deposit_outpoint: str, index: int) -> Optional[NonceRecord]:
        deposit = self._deposit(deposit_outpoint)
        return deposit.nonces.get(index) if deposit else None

    def save_nonce(self, deposit_outpoint: str, record: NonceRecord) -> NonceRecord:
        deposit = self._require_deposit(deposit_outpoint)
        existing = deposit.nonces.get(record.index)
        if existing is not None:
            return existing
        deposit.nonces[record.index] = record
        return record

    def save_agg_nonce(self, deposit_outpoint: str, index: int, agg_nonce: str) -> NonceRecord:
        """
        Attach the aggregated nonce to a slot.

        A slot already carrying a different aggregated nonce is a conflict.
        """
        deposit = self._require_deposit(deposit_outpoint)
        record = deposit.nonces.get(index)
        if record is None:
            raise IntegrityError(f"No nonce in slot {index} of {deposit_outpoint}")
        if record.agg_nonce is not None and record.agg_nonce != agg_nonce.lower():
            raise IntegrityError(f"Slot {index} of {deposit_outpoint} already has an aggregated nonce")
        record.agg_nonce = agg_nonce.lower()
        return record

    # Kickoffs

    def get_kickoffs(self, deposit_outpoint: str) -> List[KickoffRecord]:
        deposit = self._deposit(deposit_outpoint)
        return list(deposit.kickoffs) if deposit else []

    def save_kickoffs(self, deposit_outpoint: str, kickoffs: List[KickoffRecord]) -> List[KickoffRecord]:
        deposit = self._require_deposit(deposit_outpoint)
        if deposit.kickoffs:
            return list(deposit.kickoffs)
        deposit.kickoffs = list(kickoffs)
        return list(kickoffs)

    # Partial signatures

    def get_partial_sig(self, deposit_outpoint: str, slot: int) -> Optional[PartialSigRecord]:
        deposit = self._deposit(deposit_outpoint)
        return deposit.partial_sigs.get(slot) if deposit else None

    def save_partial_sig(self, deposit_outpoint: str, record: PartialSigRecord) -> PartialSigRecord:
        deposit = self._require_deposit(deposit_outpoint)
        existing = deposit.partial_sigs.get(record.slot)
        if existing is not None:
            return existing
        deposit.partial_sigs[record.slot] = record
        return record

    # Move transactions

    def get_move_tx(self, deposit_outpoint: str) -> Optional[MoveTxRecord]:
        deposit = self._deposit(deposit_outpoint)
        return deposit.move_tx if deposit else None

    def save_move_tx(self, deposit_outpoint: str, record: MoveTxRecord) -> MoveTxRecord:
        deposit = self._require_deposit(deposit_outpoint)
        if deposit.move_tx is None:
            deposit.move_tx = record
        return deposit.move_tx

    # Withdrawals

    def get_withdrawal_sig(self, index: int) -> Optional[WithdrawalSigRecord]:
        return self.state.withdrawals.get(index)

    def save_withdrawal_sig(self, record: WithdrawalSigRecord) -> WithdrawalSigRecord:
        existing = self.state.withdrawals.get(record.index)
        if existing is not None:
            return existing
        self.state.withdrawals[record.index] = record
        return record


class VerifierDB:
    """
    Verifier persistence facade.

    Example:
        db = VerifierDB.json("/var/lib/bridge/verifier.json")
        with db.transaction() as session:
            session.save_deposit_info(info)
    """

    def __init__(self, backend: Optional[StateBackend] = None):
        self.backend = backend or InMemoryStateBackend()

    @classmethod
    def json(cls, file_path: Union[str, Path], lock_timeout: float = 30.0) -> 'VerifierDB':
        return cls(JSONStateBackend(file_path, lock_timeout=lock_timeout))

    @classmethod
    def in_memory(cls) -> 'VerifierDB':
        return cls(InMemoryStateBackend())

    @contextmanager
    def transaction(self) -> Iterator[VerifierSession]:
        """Run a block against the state; commit on success, discard on error."""
        with self.backend.begin() as state:
            yield VerifierSession(state)

    def snapshot(self) -> VerifierState:
        return self.backend.snapshot()
