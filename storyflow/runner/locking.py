"""
File locks for storyflow.

Uses flock on files under ``<state_dir>/locks``. Each acquisition opens its
own file description, so a lock excludes other threads of this process as
well as other processes. Locks are not reentrant: never take the same lock
twice on one thread.
"""

import fcntl
import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path

from storyflow.lib.errors import StoryflowError

logger = logging.getLogger(__name__)

POLL_SECONDS = 0.05


class LockTimeout(StoryflowError):
    """Lock acquisition timed out."""

    category = "lock_timeout"


@contextmanager
def _acquire_lock(lock_file: Path, timeout: float, lock_name: str):
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = open(lock_file, "a+")
    deadline = time.monotonic() + timeout
    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except BlockingIOError:
            if time.monotonic() >= deadline:
                fd.close()
                raise LockTimeout(f"Could not acquire {lock_name} within {timeout}s")
            time.sleep(POLL_SECONDS)

    try:
        fd.seek(0)
        fd.truncate()
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        fd.close()


@contextmanager
def work_item_lock(locks_dir: Path, work_item_id: int, timeout: float = 60):
    """
    Acquire the per-work-item lock.

    Guards story reservation, dependency mutation and blocking for one
    work item; different work items proceed in parallel.
    """
    lock_file = locks_dir / "work_items" / f"{work_item_id}.lock"
    with _acquire_lock(lock_file, timeout, f"lock for work item {work_item_id}"):
        yield


@contextmanager
def store_lock(locks_dir: Path, timeout: float = 60):
    """Acquire the store-wide lock used for id allocation."""
    with _acquire_lock(locks_dir / "store.lock", timeout, "store lock"):
        yield
