from __future__ import annotations

import os
import sqlite3
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from services.nginx_compiler import CompileOptions
from services.paths import data_path


DEFAULT_CONFIG_PATH = "/etc/nginx/nginx.conf"
DEFAULT_CONTAINER_NAME = "nginx-forward-proxy"


@dataclass(frozen=True)
class ProxySettings:
    nginx_config_path: str
    nginx_container_name: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


@dataclass(frozen=True)
class LdapSettings:
    enabled: bool = False
    server: str = ""
    port: int = 636
    base_dn: str = ""
    bind_dn: str = ""
    bind_password: str = ""


@dataclass(frozen=True)
class SamlSettings:
    enabled: bool = False
    idp_url: str = ""
    metadata_path: str = ""
    cert_path: str = ""
    key_path: str = ""


@dataclass(frozen=True)
class AuthSettings:
    ldap: LdapSettings
    saml: SamlSettings

    def to_dict(self, *, redact: bool = True) -> Dict[str, Any]:
        ldap = asdict(self.ldap)
        if redact:
            ldap["bind_password"] = "********" if self.ldap.bind_password else ""
        return {"ldap": ldap, "saml": asdict(self.saml)}


def _as_bool(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    return str(v or "").strip().lower() in ("1", "true", "yes", "on")


def validate_auth_settings(auth: AuthSettings) -> None:
    """Raise ValueError when an enabled section is incomplete."""
    if auth.ldap.enabled:
        ld = auth.ldap
        if not (ld.server and ld.base_dn and ld.bind_dn and ld.bind_password):
            raise ValueError("Please fill in all required LDAP fields")
        if not (1 <= int(ld.port) <= 65535):
            raise ValueError("LDAP port must be between 1 and 65535")
    if auth.saml.enabled:
        s = auth.saml
        if not (s.idp_url and s.metadata_path and s.cert_path and s.key_path):
            raise ValueError("Please fill in all required SAML fields")


class SettingsStore:
    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or os.environ.get("SETTINGS_DB") or data_path("settings.db")

    def _connect(self) -> sqlite3.Connection:
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=3)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS settings(key TEXT PRIMARY KEY, value TEXT NOT NULL);")

    def _set_settings(self, values: Dict[str, str]) -> None:
        self.init_db()
        with self._connect() as conn:
            for key, value in values.items():
                conn.execute(
                    "INSERT INTO settings(key,value) VALUES(?,?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                    (key, value),
                )

    def _get_all(self, prefix: str) -> Dict[str, str]:
        self.init_db()
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM settings WHERE key LIKE ?", (prefix + "%",)).fetchall()
        return {str(r[0])[len(prefix):]: str(r[1]) for r in rows}

    # Proxy target

    def get_proxy_settings(self) -> ProxySettings:
        v = self._get_all("proxy.")
        return ProxySettings(
            nginx_config_path=v.get("nginx_config_path")
            or (os.environ.get("NGINX_CONFIG_PATH") or "").strip()
            or DEFAULT_CONFIG_PATH,
            nginx_container_name=v.get("nginx_container_name")
            or (os.environ.get("NGINX_CONTAINER_NAME") or "").strip()
            or DEFAULT_CONTAINER_NAME,
        )

    def set_proxy_settings(self, *, nginx_config_path: Optional[str] = None, nginx_container_name: Optional[str] = None) -> ProxySettings:
        values: Dict[str, str] = {}
        if nginx_config_path is not None:
            p = nginx_config_path.strip()
            if not p:
                raise ValueError("Config path is required.")
            if not p.startswith("/"):
                raise ValueError("Config path must be absolute.")
            values["proxy.nginx_config_path"] = p
        if nginx_container_name is not None:
            n = nginx_container_name.strip()
            if not n:
                raise ValueError("Container name is required.")
            values["proxy.nginx_container_name"] = n
        if values:
            self._set_settings(values)
        return self.get_proxy_settings()

    # Compile options

    def get_compile_options(self) -> CompileOptions:
        return CompileOptions.from_mapping(self._get_all("compile."))

    def set_compile_options(self, data: Dict[str, Any]) -> CompileOptions:
        opts = CompileOptions.from_mapping(data)
        self._set_settings(
            {
                "compile.listen_port": str(opts.listen_port),
                "compile.resolver": opts.resolver,
                "compile.resolver_timeout": opts.resolver_timeout,
                "compile.worker_connections": str(opts.worker_connections),
                "compile.access_log": opts.access_log,
                "compile.deny_status": str(opts.deny_status),
            }
        )
        return opts

    # Authentication

    def get_auth_settings(self) -> AuthSettings:
        v = self._get_all("auth.")
        try:
            port = int(v.get("ldap.port") or 636)
        except ValueError:
            port = 636
        return AuthSettings(
            ldap=LdapSettings(
                enabled=v.get("ldap.enabled") == "1",
                server=v.get("ldap.server", ""),
                port=port,
                base_dn=v.get("ldap.base_dn", ""),
                bind_dn=v.get("ldap.bind_dn", ""),
                bind_password=v.get("ldap.bind_password", ""),
            ),
            saml=SamlSettings(
                enabled=v.get("saml.enabled") == "1",
                idp_url=v.get("saml.idp_url", ""),
                metadata_path=v.get("saml.metadata_path", ""),
                cert_path=v.get("saml.cert_path", ""),
                key_path=v.get("saml.key_path", ""),
            ),
        )

    def set_auth_settings(self, data: Dict[str, Any]) -> AuthSettings:
        current = self.get_auth_settings()
        ldap_in = dict(data.get("ldap") or {})
        saml_in = dict(data.get("saml") or {})

        def s(src: Dict[str, Any], key: str, default: str) -> str:
            return str(src.get(key, default) or "").strip()

        try:
            port = int(ldap_in.get("port", current.ldap.port) or 636)
        except (TypeError, ValueError):
            raise ValueError("LDAP port must be a number")

        # A blank password keeps the stored one (the API never returns it).
        password = str(ldap_in.get("bind_password") or "") or current.ldap.bind_password

        auth = AuthSettings(
            ldap=LdapSettings(
                enabled=_as_bool(ldap_in.get("enabled", current.ldap.enabled)),
                server=s(ldap_in, "server", current.ldap.server),
                port=port,
                base_dn=s(ldap_in, "base_dn", current.ldap.base_dn),
                bind_dn=s(ldap_in, "bind_dn", current.ldap.bind_dn),
                bind_password=password,
            ),
            saml=SamlSettings(
                enabled=_as_bool(saml_in.get("enabled", current.saml.enabled)),
                idp_url=s(saml_in, "idp_url", current.saml.idp_url),
                metadata_path=s(saml_in, "metadata_path", current.saml.metadata_path),
                cert_path=s(saml_in, "cert_path", current.saml.cert_path),
                key_path=s(saml_in, "key_path", current.saml.key_path),
            ),
        )
        validate_auth_settings(auth)
        self._set_settings(
            {
                "auth.ldap.enabled": "1" if auth.ldap.enabled else "0",
                "auth.ldap.server": auth.ldap.server,
                "auth.ldap.port": str(auth.ldap.port),
                "auth.ldap.base_dn": auth.ldap.base_dn,
                "auth.ldap.bind_dn": auth.ldap.bind_dn,
                "auth.ldap.bind_password": auth.ldap.bind_password,
                "auth.saml.enabled": "1" if auth.saml.enabled else "0",
                "auth.saml.idp_url": auth.saml.idp_url,
                "auth.saml.metadata_path": auth.saml.metadata_path,
                "auth.saml.cert_path": auth.saml.cert_path,
                "auth.saml.key_path": auth.saml.key_path,
            }
        )
        return auth


_store: Optional[SettingsStore] = None


def get_settings_store() -> SettingsStore:
    global _store
    if _store is None:
        _store = SettingsStore()
        _store.init_db()
    return _store
