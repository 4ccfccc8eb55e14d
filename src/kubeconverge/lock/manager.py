"""Lock manager: acquisition with backoff, lease renewal and scoped holds."""

import contextlib
import threading
import time
from typing import Callable, Iterator, Optional

from kubeconverge.utils.errors import LockBusyError, LockError, LockLostError
from kubeconverge.utils.logging import get_logger
from kubeconverge.utils.retry import RetryStrategy
from .backends import LockBackend
from .models import Lock, default_holder

logger = get_logger(__name__)

Clock = Callable[[], float]


class LockManager:
    """Mutual exclusion over a :class:`LockBackend`.

    At most one unexpired lock exists per key. A holder that stops renewing
    loses the lock once its lease runs out, after which anyone may take it.
    """

    def __init__(
        self,
        backend: LockBackend,
        clock: Clock = time.time,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize lock manager.

        Args:
            backend: Storage exposing the conditional-write primitives
            clock: Epoch-seconds clock, replaceable in tests
            sleep: Sleep function used between acquisition attempts
        """
        self.backend = backend
        self.clock = clock
        self.sleep = sleep

    def acquire(
        self,
        key: str,
        holder: Optional[str] = None,
        lease_seconds: float = 60.0,
        operation: str = "apply"
    ) -> Lock:
        """Try once to acquire ``key``.

        Raises:
            LockBusyError: If another holder has a valid lease
        """
        holder = holder or default_holder()
        now = self.clock()
        lock = Lock.new(key, holder, lease_seconds, now, operation=operation)

        if self.backend.try_acquire(lock, now):
            logger.info(f"Acquired lock '{key}' for {holder} (lease {lease_seconds:.0f}s)",
                        extra={'holder': holder})
            return lock

        existing = self.backend.current(key)
        raise LockBusyError(
            key,
            holder=existing.holder if existing else None,
            expires_at=existing.expires_at if existing else None
        )

    def acquire_with_retry(
        self,
        key: str,
        holder: Optional[str] = None,
        lease_seconds: float = 60.0,
        retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 15.0,
        operation: str = "apply"
    ) -> Lock:
        """Acquire ``key``, backing off exponentially while it is busy.

        Raises:
            LockBusyError: If the lock is still held after ``retries`` retries
        """
        backoff = RetryStrategy(max_retries=retries, base_delay=base_delay, max_delay=max_delay)

        for attempt in range(retries + 1):
            try:
                return self.acquire(key, holder, lease_seconds, operation=operation)
            except LockBusyError as busy:
                if attempt >= retries:
                    logger.error(f"Giving up on lock '{key}' after {attempt + 1} attempts")
                    raise
                delay = backoff.get_delay(attempt)
                logger.warning(f"{busy.message}; retrying in {delay:.1f}s "
                               f"({attempt + 1}/{retries})")
                self.sleep(delay)

        raise AssertionError("unreachable")

    def renew(self, lock: Lock) -> Lock:
        """Restart the lease of a held lock.

        Raises:
            LockLostError: If the lease expired or another holder took over
        """
        now = self.clock()
        renewed = lock.extended(now)
        if not self.backend.try_renew(lock, renewed.expires_at, now):
            raise LockLostError(lock.key, lock.holder)
        logger.debug(f"Renewed lock '{lock.key}' until {renewed.expires_at:.0f}")
        return renewed

    def release(self, lock: Lock) -> bool:
        """Release a held lock. Returns False if it was no longer ours."""
        released = self.backend.release(lock)
        if released:
            logger.info(f"Released lock '{lock.key}'", extra={'holder': lock.holder})
        else:
            logger.warning(f"Lock '{lock.key}' was no longer held by {lock.holder} at release")
        return released

    def current(self, key: str) -> Optional[Lock]:
        return self.backend.current(key)

    def force_release(self, key: str) -> Optional[Lock]:
        """Remove a lock regardless of holder; for operator recovery only."""
        removed = self.backend.force_release(key)
        if removed:
            logger.warning(f"Force-released lock '{key}' held by {removed.describe()}")
        return removed

    @contextlib.contextmanager
    def hold(
        self,
        key: str,
        holder: Optional[str] = None,
        lease_seconds: float = 60.0,
        renew_fraction: float = 1 / 3,
        retries: int = 5,
        base_delay: float = 1.0,
        operation: str = "apply"
    ) -> Iterator["LeaseKeeper"]:
        """Acquire ``key`` and keep renewing it until the block exits.

        Release is attempted on every exit path, including
        ``KeyboardInterrupt``.
        """
        lock = self.acquire_with_retry(
            key, holder, lease_seconds, retries=retries, base_delay=base_delay, operation=operation
        )
        keeper = LeaseKeeper(self, lock, interval=max(lease_seconds * renew_fraction, 0.01))
        keeper.start()
        try:
            yield keeper
        finally:
            keeper.stop()
            try:
                self.release(keeper.lock)
            except LockError as e:
                logger.error(f"Failed to release lock '{key}': {e.message}")


class LeaseKeeper:
    """Background renewal of one lock's lease."""

    def __init__(self, manager: LockManager, lock: Lock, interval: float):
        self.manager = manager
        self.lock = lock
        self.interval = interval
        self._stop = threading.Event()
        self._lost = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def lost(self) -> bool:
        """True once the lease can no longer be trusted."""
        if self._lost.is_set():
            return True
        if self.lock.is_expired(self.manager.clock()):
            self._lost.set()
        return self._lost.is_set()

    def check(self) -> None:
        """Raise if the lock was lost."""
        if self.lost:
            raise LockLostError(self.lock.key, self.lock.holder)

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run, name=f"lease-{self.lock.key}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=max(self.interval, 1.0))

    def renew_now(self) -> None:
        """Renew synchronously; marks the lease lost on failure."""
        try:
            self.lock = self.manager.renew(self.lock)
        except LockLostError:
            logger.error(f"Lost lock '{self.lock.key}': lease expired or taken over")
            self._lost.set()
        except LockError as e:
            # Backend hiccup; the lease is still valid until expires_at
            logger.warning(f"Lock renewal failed, will retry: {e.message}")
            if self.lock.is_expired(self.manager.clock()):
                self._lost.set()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.renew_now()
            if self._lost.is_set():
                return
