"""
Per-entity exclusive locks.

Stock decisions are serialized per part and status transitions per appointment.
The locks are re-entrant so a resolver holding an appointment lock can call into
the appointment service on the same thread. Callers that need both always take
the part lock first.

Sequence locks cover "count today's rows, insert the next number, commit" for the
numbered records. They are always taken last and never held while acquiring
another lock.
"""
import threading
import weakref
from contextlib import contextmanager


class KeyedLocks:
    """
    Hands out one RLock per key. Entries are weak: a key's lock disappears once no
    caller holds or waits on it, so the map only tracks keys in use.
    """

    def __init__(self, name: str):
        self.name = name
        self._guard = threading.Lock()
        self._locks = weakref.WeakValueDictionary()

    def get(self, key) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)

    @contextmanager
    def hold(self, key):
        lock = self.get(key)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()


part_locks = KeyedLocks("part")
appointment_locks = KeyedLocks("appointment")
sequence_locks = KeyedLocks("sequence")
