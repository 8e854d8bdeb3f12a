import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Tuple


class UserLockRegistry:
    """Per-user mutexes so one user's time_in/time_out calls run one at a time in this process."""

    def __init__(self) -> None:
        # user_id (str) -> (lock, number of holders and waiters)
        self._locks: Dict[str, Tuple[threading.Lock, int]] = {}
        self._guard = threading.Lock()

    def _acquire_entry(self, key: str) -> threading.Lock:
        with self._guard:
            lock, refs = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, refs + 1)
            return lock

    def _release_entry(self, key: str) -> None:
        with self._guard:
            lock, refs = self._locks[key]
            if refs <= 1:
                self._locks.pop(key, None)
            else:
                self._locks[key] = (lock, refs - 1)

    @contextmanager
    def hold(self, user_id) -> Iterator[None]:
        key = str(user_id)
        lock = self._acquire_entry(key)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            self._release_entry(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Global singleton registry
user_locks = UserLockRegistry()
