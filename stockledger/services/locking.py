import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager

from stockledger.core.errors import LedgerConflictError


class KeyedLock:
    """One mutex per key, created on demand and dropped when nobody holds or waits for it."""

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self._timeout = timeout_seconds
        self._guard = threading.Lock()
        self._locks: dict[Hashable, list] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            slot = self._locks.setdefault(key, [threading.Lock(), 0])
            slot[1] += 1
        lock = slot[0]
        acquired = lock.acquire(timeout=self._timeout) if self._timeout is not None else lock.acquire()
        try:
            if not acquired:
                raise LedgerConflictError(f"Timed out waiting for ledger lock on {key!r}")
            yield
        finally:
            if acquired:
                lock.release()
            with self._guard:
                slot[1] -= 1
                if slot[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
