"""Inter-process environment locks.

Within one process, runs for an environment are serialized by that
environment's worker queue. The file lock extends the guarantee to every
process sharing the lock directory, e.g. a CLI run next to the HTTP API.

The holder writes its pid into the lock file, so a waiting process can
log who it is waiting for.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

# Seconds between attempts while another process holds the lock
LOCK_POLL_INTERVAL = 0.1


class LockWaitAborted(Exception):
    """Raised when a caller gives up waiting for an environment lock."""

    def __init__(self, environment: str, code: str = "lock_wait_aborted") -> None:
        super().__init__(f"Stopped waiting for environment lock: {environment}")
        self.environment = environment
        self.code = code


def lock_path(lock_dir: Path, environment: str) -> Path:
    """Return the lock file of an environment.

    Environment names are restricted by the pipeline schema, so they are
    safe to use as file names.
    """
    return lock_dir / f"{environment}.lock"


def _try_lock(fd: int) -> bool:
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    return True


def _holder(fd: int) -> str:
    os.lseek(fd, 0, os.SEEK_SET)
    return os.read(fd, 32).decode(errors="replace").strip() or "unknown"


@contextmanager
def environment_lock(
    lock_dir: Path,
    environment: str,
    timeout: float | None = None,
    should_abort: Callable[[], bool] | None = None,
) -> Iterator[None]:
    """Hold the exclusive lock of a target environment.

    Args:
        lock_dir: Directory for lock files.
        environment: Environment to lock.
        timeout: Give up after this many seconds (None = wait forever).
        should_abort: Polled while waiting; returning True stops the wait.

    Raises:
        TimeoutError: If the lock was not acquired within ``timeout``.
        LockWaitAborted: If ``should_abort`` returned True while waiting.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    fd = os.open(lock_path(lock_dir, environment), os.O_RDWR | os.O_CREAT, 0o600)
    try:
        if not _try_lock(fd):
            logger.info(
                "Environment %s is locked by pid %s, waiting",
                environment,
                _holder(fd),
            )
            deadline = None if timeout is None else time.monotonic() + timeout
            while not _try_lock(fd):
                if should_abort is not None and should_abort():
                    raise LockWaitAborted(environment)
                if deadline is not None and time.monotonic() >= deadline:
                    raise TimeoutError(
                        f"Timeout waiting for environment lock on {environment}"
                    )
                time.sleep(LOCK_POLL_INTERVAL)

        os.ftruncate(fd, 0)
        os.pwrite(fd, str(os.getpid()).encode(), 0)
        logger.debug("Environment lock acquired: %s", environment)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Environment lock released: %s", environment)
    finally:
        os.close(fd)


__all__ = ["LOCK_POLL_INTERVAL", "LockWaitAborted", "environment_lock", "lock_path"]
