from __future__ import annotations

import fcntl
import logging
import os
from typing import Optional

from services.logutil import log_exception_throttled
from services.paths import data_path


logger = logging.getLogger(__name__)


_LOCK_FD: Optional[int] = None


def lock_path() -> str:
    return (os.environ.get("BACKGROUND_LOCK_PATH") or "").strip() or data_path("background.lock")


def acquire_background_lock() -> bool:
    """Elect one process to run the periodic reconciler.

    gunicorn may start several workers; only the one holding the flock on
    BACKGROUND_LOCK_PATH runs background work. BACKGROUND_FORCE=1 skips the
    election. If the lock file cannot be opened, background work is allowed.
    """
    global _LOCK_FD
    if (os.environ.get("BACKGROUND_FORCE") or "").strip() == "1":
        return True
    if _LOCK_FD is not None:
        return True

    path = lock_path()
    try:
        lock_dir = os.path.dirname(path)
        if lock_dir:
            os.makedirs(lock_dir, exist_ok=True)
        fd = os.open(path, os.O_CREAT | os.O_RDWR, 0o644)
    except OSError:
        log_exception_throttled(
            logger,
            "background_guard.open",
            interval_seconds=300.0,
            message="Cannot open background lock file; allowing background tasks to start",
        )
        return True

    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        os.close(fd)
        logger.debug("Background lock %s held by another worker", path)
        return False
    except OSError:
        os.close(fd)
        return True

    _LOCK_FD = fd
    return True
