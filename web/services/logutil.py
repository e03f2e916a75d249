from __future__ import annotations

import logging
import threading
import time
from typing import Dict


_lock = threading.Lock()
_last_log: Dict[str, float] = {}


def should_log(key: str, *, interval_seconds: float) -> bool:
    now = time.monotonic()
    with _lock:
        last = _last_log.get(key)
        if last is not None and (now - last) < float(interval_seconds):
            return False
        _last_log[key] = now
        return True


def log_throttled(logger: logging.Logger, level: int, key: str, message: str, *args, interval_seconds: float) -> None:
    """Log at most once per interval per key.

    The periodic reconciler observes the same drift every cycle; this keeps one
    line per interval instead of one per cycle.
    """
    if should_log(key, interval_seconds=interval_seconds):
        logger.log(level, message, *args)


def log_exception_throttled(logger: logging.Logger, key: str, *args, interval_seconds: float, message: str) -> None:
    # Must be called from an except block. Never raises.
    try:
        if should_log(key, interval_seconds=interval_seconds):
            logger.exception(message, *args)
    except Exception:
        pass
