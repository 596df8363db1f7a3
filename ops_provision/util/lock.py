"""
Advisory lock so only one run touches a host per plan at a time.
"""

import fcntl
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ops_provision.exceptions import LockHeldError
from ops_provision.util.files import ensure_dir


def lock_path_for(lock_dir: Path, plan_name: str) -> Path:
    return Path(lock_dir) / f"ops-provision-{plan_name}.lock"


@contextmanager
def file_lock(path: str | Path) -> Iterator[Path]:
    """
    Hold an exclusive ``flock`` on ``path`` for the duration of the block.

    The lock is released when the block exits or the process dies; the file
    itself is left in place and records the holder's PID.

    Raises:
        LockHeldError: If another process holds the lock
    """
    lock_file = Path(path)
    ensure_dir(lock_file.parent)

    fd = os.open(lock_file, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise LockHeldError(str(lock_file)) from e

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        yield lock_file
    finally:
        os.close(fd)
