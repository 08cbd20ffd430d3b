"""
Cross-process run lock.

A reconciliation pass started by the timer and one started by hand must never
interleave their store writes.
"""
import fcntl
import logging
import os
from pathlib import Path
from typing import Optional, TextIO

from portsync.core.exceptions import ConfigurationError, RunInProgress

logger = logging.getLogger(__name__)


class RunLock:
    """Non-blocking exclusive flock on a lock file, usable as a context manager."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._handle: Optional[TextIO] = None

    def acquire(self) -> None:
        """
        Take the lock.

        Raises:
            RunInProgress: If another process holds it
            ConfigurationError: If the lock file cannot be created
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self.path, "a+")
        except OSError as e:
            raise ConfigurationError(f"Cannot open lock file {self.path}", cause=str(e))
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            raise RunInProgress(f"Another sync pass holds {self.path}")
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        logger.debug(f"Acquired run lock {self.path}")

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
        logger.debug(f"Released run lock {self.path}")

    @property
    def held(self) -> bool:
        return self._handle is not None

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
