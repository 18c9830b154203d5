# paygate/utils/locks.py
import threading
from contextlib import contextmanager

from paygate.extensions import get_redis


class LockTimeout(RuntimeError):
    """A keyed lock could not be acquired in time."""


class KeyedLock:
    """Process-local lock per key (e.g. one per user id).

    Entries are reference counted and dropped once no caller holds or waits
    on them.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def _checkout(self, key: str) -> list:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
            return entry

    def _checkin(self, key: str, entry: list) -> None:
        with self._guard:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def __len__(self):
        return len(self._locks)

    @contextmanager
    def hold(self, key: str, timeout: float = 30):
        entry = self._checkout(key)
        try:
            lock = entry[0]
            if not lock.acquire(timeout=timeout):
                raise LockTimeout(f"Timed out waiting for lock {key}")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(key, entry)


_local_locks = KeyedLock()


@contextmanager
def redis_lock(client, key: str, ttl: int = 60, timeout: float = 30):
    lock = client.lock(key, timeout=ttl, blocking_timeout=timeout)
    if not lock.acquire(blocking=True):
        raise LockTimeout(f"Timed out waiting for lock {key}")

    try:
        yield
    finally:
        lock.release()


@contextmanager
def keyed_lock(key: str, ttl: int = 60, timeout: float = 30):
    """Redis lock when Redis is configured, process-local lock otherwise."""
    client = get_redis()
    if client is not None:
        with redis_lock(client, f"lock:{key}", ttl=ttl, timeout=timeout):
            yield
    else:
        with _local_locks.hold(key, timeout=timeout):
            yield
