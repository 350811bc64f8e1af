"""Per-project mutual exclusion across processes (CLI, probe timer, watch)."""
from __future__ import annotations

import fcntl
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import LockTimeout

_THREAD_MUTEXES: dict[str, threading.Lock] = {}
_MUTEX_GUARD = threading.Lock()


def _thread_mutex(path: Path) -> threading.Lock:
    # flock is per open file description, so threads in one process need their own guard.
    key = str(path.resolve())
    with _MUTEX_GUARD:
        return _THREAD_MUTEXES.setdefault(key, threading.Lock())


@contextmanager
def project_lock(
    path: Path,
    *,
    timeout: float = 120.0,
    blocking: bool = True,
    poll_interval: float = 0.1,
    project: str | None = None,
) -> Iterator[bool]:
    """Hold an exclusive ``flock`` on ``path``.

    With ``blocking=False`` the context yields ``False`` immediately when the
    lock is taken instead of waiting; callers use that to skip work.
    Otherwise waits up to ``timeout`` seconds and raises ``LockTimeout``.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    mutex = _thread_mutex(path)
    got = mutex.acquire(timeout=timeout) if blocking else mutex.acquire(blocking=False)
    if not got:
        if not blocking:
            yield False
            return
        raise LockTimeout(f"could not lock {path} within {timeout}s", project=project, step="lock")

    fh = open(path, "a+")
    acquired = False
    try:
        start = time.monotonic()
        while True:
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                acquired = True
                break
            except OSError:
                if not blocking:
                    break
                if time.monotonic() - start >= timeout:
                    raise LockTimeout(f"could not lock {path} within {timeout}s", project=project, step="lock")
                time.sleep(poll_interval)
        yield acquired
    finally:
        try:
            if acquired:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()
            mutex.release()
