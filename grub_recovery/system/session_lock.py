"""Cross-process lock that admits one repair attempt per system.

Usage:
    from grub_recovery.system.session_lock import repair_guard

    with repair_guard(config.lock_path):
        # diagnose, checkpoint, mount, repair
        ...
"""

from __future__ import annotations

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Union

from grub_recovery.exceptions import RepairInProgressError
from grub_recovery.logging import LoggerFactory


log = LoggerFactory.for_system()


def _read_holder(handle) -> str:
    try:
        handle.seek(0)
        return handle.read().strip()
    except OSError:
        return ""


@contextmanager
def repair_guard(lock_path: Union[str, Path]) -> Generator[Path, None, None]:
    """Hold an exclusive flock on ``lock_path`` for the duration of the block.

    Raises:
        RepairInProgressError: If another process holds the lock
    """
    lock_path = Path(lock_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    handle = lock_path.open("a+", encoding="utf-8")
    try:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as error:
            raise RepairInProgressError(str(lock_path), holder=_read_holder(handle)) from error

        handle.seek(0)
        handle.truncate()
        handle.write(f"pid={os.getpid()}\n")
        handle.flush()
        log.debug(f"Acquired repair lock {lock_path}")
        try:
            yield lock_path
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            log.debug(f"Released repair lock {lock_path}")
    finally:
        handle.close()
