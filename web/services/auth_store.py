import logging
import os
import re
import secrets
import sqlite3
import tempfile
import time
from typing import Optional

from werkzeug.security import check_password_hash, generate_password_hash

from services.paths import data_path


logger = logging.getLogger(__name__)


DEFAULT_ADMIN = ("admin", "admin")
MIN_PASSWORD_LEN = 4

_USERNAME_RE = re.compile(r"[A-Za-z0-9_.-]{1,64}")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS operators (
    username TEXT PRIMARY KEY,
    password_hash TEXT NOT NULL,
    created_ts INTEGER NOT NULL,
    password_changed_ts INTEGER NOT NULL,
    last_login_ts INTEGER
)
"""


def normalize_username(username: str) -> str:
    u = (username or "").strip()
    if not u:
        raise ValueError("Username is required.")
    if not _USERNAME_RE.fullmatch(u):
        raise ValueError("Username may only include letters, numbers, underscore, dash, dot.")
    return u


def check_new_password(password: str) -> None:
    if not password:
        raise ValueError("Password is required.")
    if len(password) < MIN_PASSWORD_LEN:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LEN} characters.")


class AuthStore:
    """Local operator accounts for the management API, plus the session secret.

    Directory sign-in (LDAP/SAML) is configured in the settings store; this
    store only holds the built-in accounts.
    """

    def __init__(self, db_path: Optional[str] = None, secret_path: Optional[str] = None):
        self.db_path = db_path or os.environ.get("AUTH_DB") or data_path("auth.db")
        self.secret_path = secret_path or os.environ.get("FLASK_SECRET_PATH") or data_path("flask_secret.key")

    def _connect(self) -> sqlite3.Connection:
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        # gunicorn workers share this file.
        conn = sqlite3.connect(self.db_path, timeout=30)
        for pragma in ("journal_mode=WAL", "busy_timeout=30000"):
            conn.execute("PRAGMA " + pragma)
        conn.execute(_SCHEMA)
        return conn

    def ensure_default_admin(self) -> None:
        with self._connect() as conn:
            empty = conn.execute("SELECT COUNT(*) FROM operators").fetchone()[0] == 0
        if empty:
            self.add_user(*DEFAULT_ADMIN)
            logger.warning("Created default '%s' login; change its password", DEFAULT_ADMIN[0])

    def get_or_create_secret_key(self) -> str:
        try:
            with open(self.secret_path, encoding="utf-8") as fh:
                stored = fh.read().strip()
        except FileNotFoundError:
            stored = ""
        return stored or self._write_new_secret()

    def _write_new_secret(self) -> str:
        key = secrets.token_urlsafe(48)
        parent = os.path.dirname(self.secret_path) or "."
        os.makedirs(parent, exist_ok=True)
        fd, staging = tempfile.mkstemp(prefix=".secret-", dir=parent)
        # mkstemp creates the file 0600.
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(key + "\n")
        os.replace(staging, self.secret_path)
        logger.info("Generated a new session secret at %s", self.secret_path)
        return key

    def verify_user(self, username: str, password: str) -> bool:
        u = (username or "").strip()
        if not u:
            return False
        with self._connect() as conn:
            row = conn.execute("SELECT password_hash FROM operators WHERE username = ?", (u,)).fetchone()
            if not row or not check_password_hash(row[0], password or ""):
                return False
            conn.execute("UPDATE operators SET last_login_ts = ? WHERE username = ?", (int(time.time()), u))
        return True

    def add_user(self, username: str, password: str) -> None:
        u = normalize_username(username)
        check_new_password(password)
        now = int(time.time())
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO operators(username, password_hash, created_ts, password_changed_ts) VALUES (?,?,?,?)",
                    (u, generate_password_hash(password), now, now),
                )
        except sqlite3.IntegrityError:
            raise ValueError("User already exists.")

    def set_password(self, username: str, new_password: str) -> None:
        check_new_password(new_password)
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE operators SET password_hash = ?, password_changed_ts = ? WHERE username = ?",
                (generate_password_hash(new_password), int(time.time()), (username or "").strip()),
            )
            if cur.rowcount < 1:
                raise ValueError("User not found.")


_auth_store: Optional[AuthStore] = None


def get_auth_store() -> AuthStore:
    global _auth_store
    if _auth_store is None:
        _auth_store = AuthStore()
    return _auth_store
