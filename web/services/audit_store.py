from __future__ import annotations

import hashlib
import os
import sqlite3
import threading
import time
from typing import Any, Dict, List, Optional

from services.paths import data_path


MAX_EVENTS = 500
MAX_DETAIL_CHARS = 4000

_LISTED_COLUMNS = ("id", "ts", "kind", "ok", "target", "username", "remote_addr", "detail", "config_sha256")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS whitelist_audit (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ts INTEGER NOT NULL,
        kind TEXT NOT NULL,
        ok INTEGER NOT NULL,
        target TEXT,
        username TEXT,
        remote_addr TEXT,
        detail TEXT,
        config_sha256 TEXT,
        config_text TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS whitelist_audit_ts ON whitelist_audit(ts DESC, id DESC)",
)


def _digest(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    return hashlib.sha256(text.encode("utf-8", errors="replace")).hexdigest()


def _event(row: sqlite3.Row) -> Dict[str, Any]:
    out = {col: row[col] for col in _LISTED_COLUMNS}
    out["ok"] = bool(out["ok"])
    return out


class AuditStore:
    """Bounded history of config saves, validations and remediations.

    Only the newest MAX_EVENTS rows are kept; saved config text is stored
    alongside its sha256 so a later reader can tell which file was deployed.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or os.environ.get("AUDIT_DB") or data_path("audit.db")
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        parent = os.path.dirname(self.db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=3)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=3000")
        with self._schema_lock:
            if not self._schema_ready:
                for stmt in _SCHEMA:
                    conn.execute(stmt)
                self._schema_ready = True
        return conn

    def record(
        self,
        kind: str,
        ok: bool,
        *,
        target: Optional[str] = None,
        username: Optional[str] = None,
        remote_addr: Optional[str] = None,
        detail: Optional[str] = None,
        config_text: Optional[str] = None,
    ) -> None:
        values = {
            "ts": int(time.time()),
            "kind": kind,
            "ok": int(bool(ok)),
            "target": target,
            "username": username,
            "remote_addr": remote_addr,
            "detail": (detail or "")[:MAX_DETAIL_CHARS] or None,
            "config_sha256": _digest(config_text),
            "config_text": config_text,
        }
        cols = ", ".join(values)
        marks = ", ".join(":" + k for k in values)
        with self._connect() as conn:
            conn.execute(f"INSERT INTO whitelist_audit({cols}) VALUES({marks})", values)
            conn.execute(
                "DELETE FROM whitelist_audit WHERE id NOT IN "
                "(SELECT id FROM whitelist_audit ORDER BY ts DESC, id DESC LIMIT ?)",
                (MAX_EVENTS,),
            )

    def list_recent(self, *, limit: int = 50, kind_prefix: str = "") -> List[Dict[str, Any]]:
        limit = max(1, min(MAX_EVENTS, int(limit or 50)))
        query = f"SELECT {', '.join(_LISTED_COLUMNS)} FROM whitelist_audit"
        params: List[Any] = []
        if kind_prefix:
            query += " WHERE substr(kind, 1, ?) = ?"
            params += [len(kind_prefix), kind_prefix]
        query += " ORDER BY ts DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            return [_event(r) for r in conn.execute(query, params)]

    def latest_config_save(self) -> Optional[Dict[str, Any]]:
        found = self.list_recent(limit=1, kind_prefix="config_save")
        return found[0] if found else None

    def prune_old_entries(self, *, retention_days: int = 30) -> int:
        days = max(1, int(retention_days or 30))
        cutoff = int(time.time()) - days * 86400
        with self._connect() as conn:
            return conn.execute("DELETE FROM whitelist_audit WHERE ts < ?", (cutoff,)).rowcount or 0


_store: Optional[AuditStore] = None


def get_audit_store() -> AuditStore:
    global _store
    if _store is None:
        _store = AuditStore()
    return _store
