from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
from typing import Callable, Optional, Tuple

from services.audit_store import get_audit_store
from services.logutil import log_exception_throttled, log_throttled
from services.reconcile import FileStatus, ProcessStatus, ReconciliationEngine
from services.settings_store import ProxySettings, get_settings_store


logger = logging.getLogger(__name__)


DEFAULT_INTERVAL_SECONDS = 60
PRUNE_EVERY_SECONDS = 24 * 60 * 60

_started = False
_lock = threading.Lock()


def interval_from_env() -> int:
    try:
        v = int((os.environ.get("RECONCILE_INTERVAL_SECONDS") or "").strip() or DEFAULT_INTERVAL_SECONDS)
    except ValueError:
        v = DEFAULT_INTERVAL_SECONDS
    return max(5, v)


def _is_db_locked(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and "database is locked" in str(exc).lower()


def _run_with_db_lock_retry(fn, *, attempts: int = 5, base_sleep_seconds: float = 0.5) -> None:
    """Run `fn` with exponential backoff on transient SQLite lock errors."""
    for i in range(max(1, int(attempts))):
        try:
            fn()
            return
        except sqlite3.OperationalError as exc:
            if not _is_db_locked(exc) or i == attempts - 1:
                raise
            time.sleep(min(30.0, float(base_sleep_seconds) * (2 ** i)))


def reconcile_once(
    engine: ReconciliationEngine,
    settings: Optional[ProxySettings] = None,
) -> Tuple[FileStatus, ProcessStatus]:
    """Observe the configured file and process once. Never remediates."""
    s = settings or get_settings_store().get_proxy_settings()
    file_status = engine.check_file_compliance(s.nginx_config_path)
    process_status = engine.check_process_compliance(s.nginx_container_name)
    if not (file_status.is_compliant and process_status.is_compliant):
        log_throttled(
            logger,
            logging.INFO,
            "housekeeping.drift",
            "Reconcile: file compliant=%s, process compliant=%s (%s)",
            file_status.is_compliant,
            process_status.is_compliant,
            process_status.guidance or "ok",
            interval_seconds=600.0,
        )
    return file_status, process_status


def prune_once(*, retention_days: int = 30) -> None:
    _run_with_db_lock_retry(lambda: get_audit_store().prune_old_entries(retention_days=retention_days))


def start_housekeeping(
    engine_factory: Callable[[], ReconciliationEngine],
    *,
    interval_seconds: Optional[int] = None,
    retention_days: int = 30,
) -> None:
    """Start the periodic reconciler thread (once per process).

    Each cycle re-reads the proxy settings so a changed config path or
    container name takes effect without a restart. Audit history is pruned
    once a day.
    """
    global _started
    with _lock:
        if _started:
            return
        _started = True

    interval = float(interval_seconds or interval_from_env())

    def loop() -> None:
        last_prune = 0.0
        while True:
            try:
                reconcile_once(engine_factory())
            except Exception:
                log_exception_throttled(
                    logger,
                    "housekeeping.reconcile",
                    interval_seconds=300,
                    message="Reconcile run failed",
                )
            now = time.monotonic()
            if now - last_prune >= PRUNE_EVERY_SECONDS or last_prune == 0.0:
                try:
                    prune_once(retention_days=retention_days)
                    last_prune = now
                except Exception:
                    log_exception_throttled(
                        logger,
                        "housekeeping.prune",
                        interval_seconds=300,
                        message="Audit pruning failed",
                    )
            time.sleep(interval)

    t = threading.Thread(target=loop, name="nginx-reconciler", daemon=True)
    t.start()
    logger.info("Reconciler started (interval %ss)", int(interval))
