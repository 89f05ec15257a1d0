"""
In-process per-wallet serialization.

Every mutation of a wallet runs while holding that contractor's lock from
the registry.  Together with ``SELECT ... FOR UPDATE`` on the wallet row
(PostgreSQL) and the optimistic ``version`` column, this keeps concurrent
requests for one contractor strictly ordered within a process.  Different
contractors never contend.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from settlement_kernel.logging_config import get_logger

logger = get_logger("services.wallet_locks")


class WalletLockRegistry:
    """
    Lazily created re-entrant lock per contractor_id.

    Locks are never evicted; the registry grows with the number of distinct
    contractors touched by the process, one small object each.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, contractor_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(contractor_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[contractor_id] = lock
            return lock

    @contextmanager
    def hold(self, contractor_id: str) -> Iterator[None]:
        lock = self.lock_for(contractor_id)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
