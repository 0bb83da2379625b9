"""
Bridge - JSON Storage Backend

This module provides JSON-based persistence with cross-process file locking
and atomic writes. A transaction holds the lock from read to write, and an
exception inside it leaves the file untouched.
"""

import fcntl
import hashlib
import json
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterator, Union


logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Base storage exception."""
    pass


class LockTimeoutError(PersistenceError):
    """Lock acquisition timeout exception."""
    pass


class IntegrityError(PersistenceError):
    """Stored data is corrupt or violates a constraint."""
    pass


class FileLock:
    """Exclusive lock built on an O_EXCL lock file and flock."""

    def __init__(self, file_path: Union[str, Path], timeout: float = 30.0,
                 poll_interval: float = 0.01):
        self.file_path = Path(file_path)
        self.lock_file_path = self.file_path.with_suffix(self.file_path.suffix + '.lock')
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.lock_fd = None
        self._thread_lock = RLock()

    def acquire(self) -> bool:
        """Acquire file lock with timeout."""
        with self._thread_lock:
            if self.lock_fd is not None:
                return True  # Already locked by this instance

            start_time = time.monotonic()

            while time.monotonic() - start_time < self.timeout:
                try:
                    self.lock_fd = os.open(
                        str(self.lock_file_path),
                        os.O_CREAT | os.O_EXCL | os.O_RDWR
                    )
                except FileExistsError:
                    time.sleep(self.poll_interval)
                    continue
                except OSError as e:
                    raise PersistenceError(f"Failed to acquire lock: {e}") from e

                try:
                    fcntl.flock(self.lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    return True
                except BlockingIOError:
                    os.close(self.lock_fd)
                    os.unlink(self.lock_file_path)
                    self.lock_fd = None

            raise LockTimeoutError(f"Failed to acquire lock within {self.timeout} seconds")

    def release(self) -> None:
        """Release file lock."""
        with self._thread_lock:
            if self.lock_fd is None:
                return

            try:
                fcntl.flock(self.lock_fd, fcntl.LOCK_UN)
                os.close(self.lock_fd)
                os.unlink(self.lock_file_path)
            except OSError as e:
                # Do not mask the exception that is unwinding the transaction
                logger.warning(f"Failed to release lock {self.lock_file_path}: {e}")
            finally:
                self.lock_fd = None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


class JSONStorage:
    """JSON document storage with atomic replace and transactional updates."""

    def __init__(self, file_path: Union[str, Path], lock_timeout: float = 30.0):
        self.file_path = Path(file_path)
        self.lock_timeout = lock_timeout

        self.file_path.parent.mkdir(parents=True, exist_ok=True)

        if not self.file_path.exists():
            with self._lock_context():
                if not self.file_path.exists():
                    self._write_file({})

    def _calculate_checksum(self, data: bytes) -> str:
        """Calculate SHA-256 checksum of data."""
        return hashlib.sha256(data).hexdigest()

    def _read_file(self) -> Dict[str, Any]:
        try:
            with open(self.file_path, 'rb') as f:
                raw = f.read()
        except OSError as e:
            raise PersistenceError(f"Failed to read storage: {e}") from e

        if not raw:
            return {}
        try:
            return json.loads(raw.decode('utf-8'))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise IntegrityError(f"Invalid JSON data in {self.file_path}: {e}") from e

    def _write_file(self, data: Dict[str, Any]) -> str:
        """Write data to file atomically and return its checksum."""
        json_data = json.dumps(data, indent=2, default=str).encode('utf-8')
        temp_file = self.file_path.with_suffix(self.file_path.suffix + '.tmp')

        try:
            with open(temp_file, 'wb') as f:
                f.write(json_data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_file, self.file_path)
        except OSError as e:
            if temp_file.exists():
                temp_file.unlink()
            raise PersistenceError(f"Failed to write file: {e}") from e

        return self._calculate_checksum(json_data)

    @contextmanager
    def _lock_context(self) -> Iterator[None]:
        with FileLock(self.file_path, timeout=self.lock_timeout):
            yield

    def read(self) -> Dict[str, Any]:
        """Read and deserialize data from storage."""
        with self._lock_context():
            return self._read_file()

    def write(self, data: Dict[str, Any]) -> str:
        """Write data to storage atomically."""
        with self._lock_context():
            return self._write_file(data)

    def update(self, updater_func) -> str:
        """Update data using a function atomically."""
        with self._lock_context():
            return self._write_file(updater_func(self._read_file()))

    @contextmanager
    def transaction(self) -> Iterator[Dict[str, Any]]:
        """
        Hold the lock across a read-modify-write cycle.

        The yielded document is written back when the block exits normally;
        on an exception nothing is written.
        """
        with self._lock_context():
            data = self._read_file()
            yield data
            self._write_file(data)

    def exists(self) -> bool:
        return self.file_path.exists()

    def size(self) -> int:
        """Get storage file size in bytes."""
        if not self.file_path.exists():
            return 0
        return self.file_path.stat().st_size
