"""
Unit tests for storage layer.
"""

import json
import threading
import time
from datetime import timedelta

import pytest

from database.schema import (
    DepositInfo,
    KickoffRecord,
    NonceRecord,
    PartialSigRecord,
    SignatureRole,
    WithdrawalSigRecord,
)
from database.storage import FileLock, IntegrityError, JSONStorage, LockTimeoutError
from database.verifier_db import VerifierDB


DEPOSIT = "ab" * 32 + ":0"


def _deposit_info(evm="11" * 20):
    return DepositInfo(deposit_outpoint=DEPOSIT, recovery_address="bcrt1pexample",
                       evm_address=evm, amount=100_000_000)


def _nonce(index, pub="02" * 66):
    return NonceRecord(index=index, pub_nonce=pub, sec_nonce="01" * 97)


class TestFileLock:
    """Test file locking mechanism."""

    def test_file_lock_acquire_release(self, test_data_dir):
        """Test lock acquisition and release."""
        target = test_data_dir / "data.json"
        lock = FileLock(target)

        assert lock.acquire()
        assert lock.lock_file_path.exists()

        lock.release()
        assert not lock.lock_file_path.exists()

    def test_file_lock_context_manager(self, test_data_dir):
        """Test file lock as context manager."""
        target = test_data_dir / "data.json"
        with FileLock(target) as lock:
            assert lock.lock_fd is not None
        assert lock.lock_fd is None

    def test_lock_timeout(self, test_data_dir):
        """A second holder times out while the first keeps the lock."""
        target = test_data_dir / "data.json"
        with FileLock(target):
            with pytest.raises(LockTimeoutError):
                FileLock(target, timeout=0.05).acquire()

    def test_concurrent_file_locking(self, test_data_dir):
        """Test concurrent access with file locking."""
        target = test_data_dir / "data.json"
        results = []
        errors = []

        def worker_thread(thread_id):
            try:
                with FileLock(target):
                    results.append(f"thread_{thread_id}_start")
                    time.sleep(0.02)
                    results.append(f"thread_{thread_id}_end")
            except Exception as e:
                errors.append(f"thread_{thread_id}: {e}")

        threads = [threading.Thread(target=worker_thread, args=(i,)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert not errors
        # Critical sections never interleave
        for i in range(0, len(results), 2):
            assert results[i].endswith("_start")
            assert results[i + 1] == results[i].replace("_start", "_end")


class TestJSONStorage:
    """Test JSON storage backend."""

    def test_creates_empty_document(self, test_data_dir):
        storage = JSONStorage(test_data_dir / "nested" / "store.json")
        assert storage.exists()
        assert storage.read() == {}

    def test_write_and_read(self, test_data_dir):
        storage = JSONStorage(test_data_dir / "store.json")
        checksum = storage.write({"key": "value"})
        assert len(checksum) == 64
        assert storage.read() == {"key": "value"}
        assert storage.size() > 0

    def test_update(self, test_data_dir):
        storage = JSONStorage(test_data_dir / "store.json")
        storage.write({"count": 1})
        storage.update(lambda data: {"count": data["count"] + 1})
        assert storage.read() == {"count": 2}

    def test_transaction_commits(self, test_data_dir):
        storage = JSONStorage(test_data_dir / "store.json")
        with storage.transaction() as data:
            data["written"] = True
        assert storage.read() == {"written": True}

    def test_transaction_discards_on_error(self, test_data_dir):
        storage = JSONStorage(test_data_dir / "store.json")
        storage.write({"original": True})
        with pytest.raises(RuntimeError):
            with storage.transaction() as data:
                data["original"] = False
                raise RuntimeError("abort")
        assert storage.read() == {"original": True}

    def test_corrupt_file(self, test_data_dir):
        path = test_data_dir / "store.json"
        storage = JSONStorage(path)
        path.write_text("{not json")
        with pytest.raises(IntegrityError):
            storage.read()


class TestVerifierDB:
    """Test the transactional verifier database."""

    @pytest.fixture(params=["memory", "json"])
    def db(self, request, test_data_dir):
        if request.param == "memory":
            return VerifierDB.in_memory()
        return VerifierDB.json(test_data_dir / "verifier.json")

    def test_commit_persists(self, db):
        with db.transaction() as session:
            session.save_deposit_info(_deposit_info())
            session.save_nonce(DEPOSIT, _nonce(0))

        snapshot = db.snapshot()
        assert DEPOSIT in snapshot.deposits
        assert snapshot.deposits[DEPOSIT].nonces[0].pub_nonce == "02" * 66

    def test_timestamps_are_utc(self, db):
        with db.transaction() as session:
            session.save_deposit_info(_deposit_info())

        snapshot = db.snapshot()
        assert snapshot.updated_at.utcoffset() == timedelta(0)
        assert snapshot.deposits[DEPOSIT].info.created_at.utcoffset() == timedelta(0)

    def test_rollback_on_error(self, db):
        with pytest.raises(ValueError):
            with db.transaction() as session:
                session.save_deposit_info(_deposit_info())
                raise ValueError("validation failed")
        assert db.snapshot().deposits == {}

    def test_first_writer_wins(self, db):
        with db.transaction() as session:
            first = session.save_deposit_info(_deposit_info())
            second = session.save_deposit_info(_deposit_info(evm="22" * 20))
            assert second == first
            session.save_nonce(DEPOSIT, _nonce(0, "02" * 66))
            kept = session.save_nonce(DEPOSIT, _nonce(0, "03" * 66))
            assert kept.pub_nonce == "02" * 66

    def test_agg_nonce_conflict(self, db):
        with db.transaction() as session:
            session.save_deposit_info(_deposit_info())
            session.save_nonce(DEPOSIT, _nonce(0))
            session.save_agg_nonce(DEPOSIT, 0, "02" * 66)
            session.save_agg_nonce(DEPOSIT, 0, "02" * 66)
            with pytest.raises(IntegrityError):
                session.save_agg_nonce(DEPOSIT, 0, "03" * 66)
            with pytest.raises(IntegrityError):
                session.save_agg_nonce(DEPOSIT, 5, "02" * 66)

    def test_requires_deposit(self, db):
        with pytest.raises(IntegrityError):
            with db.transaction() as session:
                session.save_nonce(DEPOSIT, _nonce(0))

    def test_kickoffs_and_partial_sigs(self, db):
        kickoffs = [KickoffRecord(outpoint="cd" * 32 + ":1", amount=100_000)]
        with db.transaction() as session:
            session.save_deposit_info(_deposit_info())
            session.save_kickoffs(DEPOSIT, kickoffs)
            assert session.save_kickoffs(DEPOSIT, []) == kickoffs
            session.save_partial_sig(DEPOSIT, PartialSigRecord(
                slot=2, role=SignatureRole.BURN, sighash="aa" * 32, partial_sig="bb" * 32))

        with db.transaction() as session:
            assert session.get_kickoffs(DEPOSIT) == kickoffs
            assert session.get_partial_sig(DEPOSIT, 2).role == SignatureRole.BURN
            assert session.get_partial_sig(DEPOSIT, 3) is None

    def test_withdrawals(self, db):
        record = WithdrawalSigRecord(index=0, bridge_fund_txid="ef" * 32,
                                     withdrawal_address="bcrt1pdest", signature="cc" * 64)
        with db.transaction() as session:
            session.save_withdrawal_sig(record)
        with db.transaction() as session:
            assert session.get_withdrawal_sig(0).bridge_fund_txid == "ef" * 32
            assert session.get_withdrawal_sig(1) is None

    def test_concurrent_nonce_requests(self, db):
        """Racing writers to one slot all observe the first stored nonce."""
        with db.transaction() as session:
            session.save_deposit_info(_deposit_info())

        observed = []
        errors = []

        def worker(i):
            try:
                with db.transaction() as session:
                    pub = f"{2 + i % 2:02x}" + f"{i:02x}" * 65
                    observed.append(session.save_nonce(DEPOSIT, _nonce(0, pub)).pub_nonce)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert not errors
        assert len(set(observed)) == 1
        assert db.snapshot().deposits[DEPOSIT].nonces[0].pub_nonce == observed[0]


class TestSchema:
    """Test record validation."""

    def test_outpoint_normalized(self):
        info = DepositInfo(deposit_outpoint="AB" * 32 + ":0", recovery_address="x",
                           evm_address="0x" + "AA" * 20, amount=1)
        assert info.deposit_outpoint == "ab" * 32 + ":0"
        assert info.evm_address == "aa" * 20

    def test_invalid_records(self):
        with pytest.raises(ValueError):
            DepositInfo(deposit_outpoint="bad", recovery_address="x", evm_address="aa" * 20, amount=1)
        with pytest.raises(ValueError):
            NonceRecord(index=0, pub_nonce="02" * 65, sec_nonce="01" * 97)
        with pytest.raises(ValueError):
            KickoffRecord(outpoint="cd" * 32 + ":1", amount=0)

    def test_json_round_trip(self, test_data_dir):
        db = VerifierDB.json(test_data_dir / "verifier.json")
        with db.transaction() as session:
            session.save_deposit_info(_deposit_info())
        raw = json.loads((test_data_dir / "verifier.json").read_text())
        assert DEPOSIT in raw["deposits"]
        assert VerifierDB.json(test_data_dir / "verifier.json").snapshot().deposits[DEPOSIT].info.amount == 100_000_000
