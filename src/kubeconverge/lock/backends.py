"""Lock backends exposing atomic conditional-write primitives."""

import contextlib
import fcntl
import hashlib
import json
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from pathlib import Path
from typing import Dict, Optional

from kubeconverge.utils.errors import LockError
from kubeconverge.utils.logging import get_logger
from .models import Lock

logger = get_logger(__name__)


class LockBackend(ABC):
    """Storage for locks. Every method must be atomic with respect to others
    touching the same key, across every process sharing the backend."""

    @abstractmethod
    def try_acquire(self, lock: Lock, now: float) -> bool:
        """Store ``lock`` if no lock exists for its key or the existing one
        has expired at ``now``. Returns False when a valid lock is held."""

    @abstractmethod
    def try_renew(self, lock: Lock, new_expires_at: float, now: float) -> bool:
        """Extend the lease if the stored lock still carries ``lock.lock_id``
        and has not expired at ``now``."""

    @abstractmethod
    def release(self, lock: Lock) -> bool:
        """Delete the stored lock if it still carries ``lock.lock_id``."""

    @abstractmethod
    def current(self, key: str) -> Optional[Lock]:
        """Stored lock for ``key`` (possibly expired), or None."""

    @abstractmethod
    def force_release(self, key: str) -> Optional[Lock]:
        """Unconditionally delete the lock for ``key``; returns what was removed."""


class InMemoryLockBackend(LockBackend):
    """Process-local backend; a mutex stands in for the conditional write."""

    def __init__(self):
        self._mutex = threading.Lock()
        self._locks: Dict[str, Lock] = {}

    def try_acquire(self, lock: Lock, now: float) -> bool:
        with self._mutex:
            existing = self._locks.get(lock.key)
            if existing is not None and not existing.is_expired(now):
                return False
            self._locks[lock.key] = lock
            return True

    def try_renew(self, lock: Lock, new_expires_at: float, now: float) -> bool:
        with self._mutex:
            existing = self._locks.get(lock.key)
            if existing is None or existing.lock_id != lock.lock_id or existing.is_expired(now):
                return False
            self._locks[lock.key] = replace(existing, expires_at=new_expires_at)
            return True

    def release(self, lock: Lock) -> bool:
        with self._mutex:
            existing = self._locks.get(lock.key)
            if existing is None or existing.lock_id != lock.lock_id:
                return False
            del self._locks[lock.key]
            return True

    def current(self, key: str) -> Optional[Lock]:
        with self._mutex:
            return self._locks.get(key)

    def force_release(self, key: str) -> Optional[Lock]:
        with self._mutex:
            return self._locks.pop(key, None)


class FileLockBackend(LockBackend):
    """Lock files on a shared filesystem, serialized with ``flock``.

    Each key maps to ``<lock_dir>/<digest>.lock.json``; the read-check-write
    sequence runs while holding an exclusive ``flock`` on a sibling guard file.
    """

    def __init__(self, lock_dir: str):
        self.lock_dir = Path(lock_dir)

    def _paths(self, key: str):
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:24]
        return self.lock_dir / f"{digest}.lock.json", self.lock_dir / f"{digest}.guard"

    @contextlib.contextmanager
    def _guarded(self, key: str):
        lock_path, guard_path = self._paths(key)
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(guard_path), os.O_CREAT | os.O_RDWR)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield lock_path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    @staticmethod
    def _read(lock_path: Path) -> Optional[Lock]:
        if not lock_path.exists():
            return None
        try:
            return Lock.from_dict(json.loads(lock_path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError) as e:
            raise LockError(f"Corrupted lock file {lock_path}: {e}", cause=e)

    @staticmethod
    def _write(lock_path: Path, lock: Lock) -> None:
        tmp_path = lock_path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(lock.to_dict(), indent=2), encoding="utf-8")
        tmp_path.replace(lock_path)

    def try_acquire(self, lock: Lock, now: float) -> bool:
        with self._guarded(lock.key) as lock_path:
            existing = self._read(lock_path)
            if existing is not None and not existing.is_expired(now):
                return False
            self._write(lock_path, lock)
            return True

    def try_renew(self, lock: Lock, new_expires_at: float, now: float) -> bool:
        with self._guarded(lock.key) as lock_path:
            existing = self._read(lock_path)
            if existing is None or existing.lock_id != lock.lock_id or existing.is_expired(now):
                return False
            self._write(lock_path, replace(existing, expires_at=new_expires_at))
            return True

    def release(self, lock: Lock) -> bool:
        with self._guarded(lock.key) as lock_path:
            existing = self._read(lock_path)
            if existing is None or existing.lock_id != lock.lock_id:
                return False
            lock_path.unlink()
            return True

    def current(self, key: str) -> Optional[Lock]:
        with self._guarded(key) as lock_path:
            return self._read(lock_path)

    def force_release(self, key: str) -> Optional[Lock]:
        with self._guarded(key) as lock_path:
            existing = self._read(lock_path)
            if existing is not None:
                lock_path.unlink()
            return existing
