"""
Process-wide advisory locking for check-then-create sequences.
"""
import fcntl
import os
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

_thread_locks: Dict[str, threading.Lock] = {}
_registry_lock = threading.Lock()


def _thread_lock(path: str) -> threading.Lock:
    with _registry_lock:
        if path not in _thread_locks:
            _thread_locks[path] = threading.Lock()
        return _thread_locks[path]


@contextmanager
def advisory_lock(path: str) -> Iterator[None]:
    """
    Holds an exclusive lock on ``path`` for the duration of the block.

    Threads of this process serialize on an in-memory lock; other processes
    serialize on ``flock`` of the same file.

    :param path: Lock file path. Created if missing.
    """
    path = os.path.abspath(path)
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)

    with _thread_lock(path):
        with open(path, "a") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
