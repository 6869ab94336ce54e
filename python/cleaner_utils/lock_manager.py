"""
Cross-process locks keyed by name.

Locks are advisory ``fcntl.flock`` locks on ``<lock_dir>/<key>.lock``.
The kernel drops them when the holding process dies, so a crashed run
never leaves a stale lock behind.
"""

import fcntl
import os
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import IO, Optional

from cleaner_utils.error_utils import ActionableError, lock_guidance
from cleaner_utils.logging_utils import get_logger

logger = get_logger(__name__)


class LockUnavailableError(ActionableError):
    """Raised when a lock is held elsewhere and could not be acquired in time."""

    def __init__(self, key: str, holder: Optional[str] = None, timeout: float = 0):
        self.key = key
        self.holder = holder
        super().__init__(**lock_guidance(key, holder, timeout))


@dataclass
class LockHandle:
    """A held lock. ``released`` flips once the lock is given back."""

    key: str
    path: str
    acquired_at: datetime
    _file: Optional[IO] = field(default=None, repr=False)
    released: bool = False


def _lock_filename(key: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", key) + ".lock"


class LockManager:
    """Acquire and release named locks shared by every process on the host."""

    def __init__(self, lock_dir: str, poll_interval: float = 0.5):
        self.lock_dir = lock_dir
        self.poll_interval = poll_interval

    def _read_holder(self, path: str) -> Optional[str]:
        try:
            with open(path, "r") as f:
                return f.read().strip() or None
        except OSError:
            return None

    def acquire(self, key: str, timeout: float = 0) -> LockHandle:
        """Acquire ``key``, waiting up to ``timeout`` seconds (0 = fail fast).

        Raises:
            LockUnavailableError: Another process holds the lock
        """
        os.makedirs(self.lock_dir, exist_ok=True)
        path = os.path.join(self.lock_dir, _lock_filename(key))
        lock_file = open(path, "a+")
        deadline = time.monotonic() + max(timeout, 0)

        while True:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    lock_file.close()
                    holder = self._read_holder(path)
                    raise LockUnavailableError(key, holder=holder, timeout=timeout)
                time.sleep(self.poll_interval)
            except OSError:
                lock_file.close()
                raise

        # Record the holder after the lock is ours
        lock_file.seek(0)
        lock_file.truncate()
        lock_file.write(f"pid={os.getpid()} since={datetime.now().isoformat()}")
        lock_file.flush()

        logger.debug(f"Acquired lock {key} ({path})")
        return LockHandle(key=key, path=path, acquired_at=datetime.now(), _file=lock_file)

    def release(self, handle: LockHandle) -> None:
        """Release a held lock. Releasing twice is a no-op."""
        if handle.released:
            return
        lock_file = handle._file
        try:
            if lock_file is not None and not lock_file.closed:
                lock_file.seek(0)
                lock_file.truncate()
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        finally:
            if lock_file is not None:
                lock_file.close()
            handle._file = None
            handle.released = True
            logger.debug(f"Released lock {handle.key}")
