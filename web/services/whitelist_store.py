from __future__ import annotations

import logging
import os
import sqlite3
import threading
from typing import Optional

from services.paths import data_path
from services.whitelist_model import WhitelistModel


logger = logging.getLogger(__name__)


KIND_ADDRESS = "address"
KIND_URL = "url"

# First-start seed, matching the proxy's out-of-the-box whitelist.
DEFAULT_GROUP = {
    "id": "default-group",
    "name": "Default Group",
    "description": "Default whitelist configuration",
    "addresses": [
        {"id": "ip-1", "value": "172.24.20.12/32"},
        {"id": "ip-2", "value": "172.24.20.16/32"},
        {"id": "ip-3", "value": "172.24.20.0/23"},
    ],
    "url_patterns": [
        {"id": "url-1", "value": "^.*\\.microsoft\\.com$"},
        {"id": "url-2", "value": "^.*\\.windowsupdate\\.com$"},
        {"id": "url-3", "value": "subscription.rhn.redhat.com"},
    ],
}


def _seed_enabled() -> bool:
    return (os.environ.get("SEED_DEFAULT_GROUP") or "1").strip().lower() not in ("0", "false", "no", "off")


class WhitelistStore:
    """SQLite persistence for the whitelist groups.

    The store holds the in-memory WhitelistModel used by the API; every
    successful mutation is written back with save(). Group and entry order is
    kept in `position` columns so compiled output stays stable across restarts.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or os.environ.get("WHITELIST_DB") or data_path("whitelist.db")
        self._lock = threading.RLock()
        self._model: Optional[WhitelistModel] = None

    def _connect(self) -> sqlite3.Connection:
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=30000;")
        conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    def init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS groups (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    description TEXT NOT NULL DEFAULT '',
                    position INTEGER NOT NULL
                );
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS entries (
                    id TEXT NOT NULL,
                    group_id TEXT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
                    kind TEXT NOT NULL,
                    value TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    PRIMARY KEY (group_id, kind, id)
                );
                """
            )
            conn.execute("CREATE TABLE IF NOT EXISTS meta(key TEXT PRIMARY KEY, value TEXT NOT NULL);")

    def _seeded(self, conn: sqlite3.Connection) -> bool:
        row = conn.execute("SELECT value FROM meta WHERE key='seeded'").fetchone()
        return bool(row and row[0] == "1")

    def ensure_seeded(self) -> None:
        """Seed the default group once, on an empty first-start database."""
        self.init_db()
        with self._lock, self._connect() as conn:
            if self._seeded(conn):
                return
            empty = conn.execute("SELECT 1 FROM groups LIMIT 1").fetchone() is None
            conn.execute("INSERT OR REPLACE INTO meta(key,value) VALUES('seeded','1')")
        if empty and _seed_enabled():
            self.save(WhitelistModel.from_dict({"groups": [DEFAULT_GROUP]}))
            logger.info("Seeded default whitelist group into %s", self.db_path)

    def load(self) -> WhitelistModel:
        self.init_db()
        with self._connect() as conn:
            groups = conn.execute("SELECT id, name, description FROM groups ORDER BY position ASC").fetchall()
            entries = conn.execute(
                "SELECT id, group_id, kind, value FROM entries ORDER BY group_id, kind, position ASC"
            ).fetchall()

        by_group = {}
        for e in entries:
            key = "addresses" if e["kind"] == KIND_ADDRESS else "url_patterns"
            by_group.setdefault(e["group_id"], {"addresses": [], "url_patterns": []})[key].append(
                {"id": e["id"], "value": e["value"]}
            )
        data = {
            "groups": [
                {
                    "id": g["id"],
                    "name": g["name"],
                    "description": g["description"],
                    **by_group.get(g["id"], {"addresses": [], "url_patterns": []}),
                }
                for g in groups
            ]
        }
        return WhitelistModel.from_dict(data)

    def save(self, model: WhitelistModel) -> None:
        self.init_db()
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM entries")
            conn.execute("DELETE FROM groups")
            for gpos, g in enumerate(model.groups()):
                conn.execute(
                    "INSERT INTO groups(id, name, description, position) VALUES(?,?,?,?)",
                    (g.id, g.name, g.description, gpos),
                )
                for pos, e in enumerate(g.addresses):
                    conn.execute(
                        "INSERT INTO entries(id, group_id, kind, value, position) VALUES(?,?,?,?,?)",
                        (e.id, g.id, KIND_ADDRESS, e.value, pos),
                    )
                for pos, e in enumerate(g.url_patterns):
                    conn.execute(
                        "INSERT INTO entries(id, group_id, kind, value, position) VALUES(?,?,?,?,?)",
                        (e.id, g.id, KIND_URL, e.value, pos),
                    )
            self._model = model

    def model(self) -> WhitelistModel:
        """The process-wide model, loaded from disk on first use."""
        with self._lock:
            if self._model is None:
                self.ensure_seeded()
                self._model = self.load()
            return self._model

    def reload(self) -> WhitelistModel:
        with self._lock:
            self._model = self.load()
            return self._model

    @property
    def lock(self) -> threading.RLock:
        # Held by callers around mutate-then-save sequences.
        return self._lock


_store: Optional[WhitelistStore] = None


def get_whitelist_store() -> WhitelistStore:
    global _store
    if _store is None:
        _store = WhitelistStore()
    return _store
