"""Process-level lock keeping orchestration runs one at a time."""

import fcntl
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from loguru import logger

from cyberrange.core.exceptions import RunLockedError


@contextmanager
def run_lock(path: Path) -> Iterator[None]:
    """Hold an exclusive, non-blocking ``flock`` on ``path`` for the block.

    Raises:
        RunLockedError: If another process already holds the lock.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a+") as handle:
        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise RunLockedError(
                f"Another provisioning run holds {path}; wait for it to finish"
            ) from e
        try:
            handle.seek(0)
            handle.truncate()
            handle.write(str(os.getpid()))
            handle.flush()
            logger.debug("Run lock acquired", path=str(path))
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)
