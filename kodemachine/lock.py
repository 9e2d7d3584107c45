"""Advisory lock serialising fleet-changing invocations on this host."""

from __future__ import annotations

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from kodemachine.exceptions import LockError
from kodemachine.utils import ensure_directory, log


@contextmanager
def fleet_lock(path: Path, enabled: bool = True) -> Iterator[None]:
    """Hold an exclusive flock on *path* for the duration of the block.

    The kernel drops the lock when the process dies, so a crash never leaves
    a stale lock behind.
    """
    if not enabled:
        yield
        return
    ensure_directory(path.parent)
    with open(path, "a+") as handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.seek(0)
            holder = handle.read().strip() or "unknown"
            raise LockError(f"Another kodemachine invocation (pid {holder}) is changing the fleet; try again")
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        log("DEBUG", f"Acquired fleet lock {path}")
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            log("DEBUG", f"Released fleet lock {path}")
