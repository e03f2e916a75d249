import time

import pytest

from services.audit_store import AuditStore
from services.auth_store import AuthStore
from services.settings_store import SettingsStore
from services.whitelist_model import WhitelistModel
from services.whitelist_store import DEFAULT_GROUP, WhitelistStore


def test_first_start_seeds_default_group_once(tmp_path, monkeypatch):
    monkeypatch.delenv("SEED_DEFAULT_GROUP", raising=False)
    store = WhitelistStore(db_path=str(tmp_path / "wl.db"))
    model = store.model()
    assert [g.name for g in model.groups()] == ["Default Group"]
    g = model.get_group("default-group")
    assert [e.value for e in g.addresses] == [a["value"] for a in DEFAULT_GROUP["addresses"]]

    # Deleting the seed must stick across restarts.
    model.remove_group("default-group")
    store.save(model)
    again = WhitelistStore(db_path=str(tmp_path / "wl.db"))
    assert len(again.model()) == 0


def test_seed_can_be_disabled(tmp_path, monkeypatch):
    monkeypatch.setenv("SEED_DEFAULT_GROUP", "0")
    store = WhitelistStore(db_path=str(tmp_path / "wl.db"))
    assert len(store.model()) == 0


def test_save_and_load_preserve_order_and_ids(tmp_path, monkeypatch):
    monkeypatch.setenv("SEED_DEFAULT_GROUP", "0")
    store = WhitelistStore(db_path=str(tmp_path / "wl.db"))
    m = WhitelistModel()
    b = m.add_group("B", group_id="g-b")
    a = m.add_group("A", "first", group_id="g-a")
    m.add_address(a, "10.0.0.2", entry_id="ip-2")
    m.add_address(a, "10.0.0.1", entry_id="ip-1")
    m.add_url_pattern(b, "example.com", entry_id="url-1")
    store.save(m)

    loaded = store.load()
    assert [g.id for g in loaded.groups()] == ["g-b", "g-a"]
    assert [e.id for e in loaded.get_group("g-a").addresses] == ["ip-2", "ip-1"]
    assert loaded.to_dict() == m.to_dict()


def test_proxy_settings_defaults_and_validation(tmp_path, monkeypatch):
    monkeypatch.delenv("NGINX_CONFIG_PATH", raising=False)
    monkeypatch.setenv("NGINX_CONTAINER_NAME", "edge-proxy")
    s = SettingsStore(db_path=str(tmp_path / "settings.db"))
    p = s.get_proxy_settings()
    assert p.nginx_config_path == "/etc/nginx/nginx.conf"
    assert p.nginx_container_name == "edge-proxy"

    p = s.set_proxy_settings(nginx_config_path="/srv/nginx/nginx.conf")
    assert p.nginx_config_path == "/srv/nginx/nginx.conf"
    with pytest.raises(ValueError):
        s.set_proxy_settings(nginx_config_path="relative.conf")
    with pytest.raises(ValueError):
        s.set_proxy_settings(nginx_container_name="  ")


def test_compile_options_round_trip(tmp_path):
    s = SettingsStore(db_path=str(tmp_path / "settings.db"))
    assert s.get_compile_options().listen_port == 3128
    s.set_compile_options({"listen_port": 8080, "resolver": "1.1.1.1"})
    opts = s.get_compile_options()
    assert opts.listen_port == 8080
    assert opts.resolver == "1.1.1.1"
    assert opts.deny_status == 403


def test_auth_settings_require_fields_when_enabled(tmp_path):
    s = SettingsStore(db_path=str(tmp_path / "settings.db"))
    with pytest.raises(ValueError, match="LDAP"):
        s.set_auth_settings({"ldap": {"enabled": True, "server": "ldap.example.com"}})
    with pytest.raises(ValueError, match="SAML"):
        s.set_auth_settings({"saml": {"enabled": "on", "idp_url": "https://idp"}})
    # Nothing was stored by the failed attempts.
    assert s.get_auth_settings().ldap.enabled is False


def test_auth_settings_keep_password_and_redact(tmp_path):
    s = SettingsStore(db_path=str(tmp_path / "settings.db"))
    s.set_auth_settings(
        {
            "ldap": {
                "enabled": True,
                "server": "ldap.example.com",
                "port": 389,
                "base_dn": "dc=example,dc=com",
                "bind_dn": "cn=svc,dc=example,dc=com",
                "bind_password": "s3cret",
            }
        }
    )
    auth = s.set_auth_settings({"ldap": {"server": "ldap2.example.com", "bind_password": ""}})
    assert auth.ldap.bind_password == "s3cret"
    assert auth.ldap.server == "ldap2.example.com"
    assert auth.ldap.port == 389
    d = auth.to_dict()
    assert d["ldap"]["bind_password"] == "********"
    assert "s3cret" not in str(d)

    with pytest.raises(ValueError, match="port"):
        s.set_auth_settings({"ldap": {"port": 70000}})


def test_audit_store_records_and_lists(tmp_path):
    a = AuditStore(db_path=str(tmp_path / "audit.db"))
    a.record("config_validate", True, detail="ok")
    a.record("config_save", False, target="/etc/nginx/nginx.conf", username="admin", config_text="events { }")
    rows = a.list_recent(limit=10)
    assert [r["kind"] for r in rows] == ["config_save", "config_validate"]
    assert rows[0]["ok"] is False
    assert rows[0]["config_sha256"]
    assert a.latest_config_save()["target"] == "/etc/nginx/nginx.conf"
    assert [r["kind"] for r in a.list_recent(kind_prefix="config_v")] == ["config_validate"]


def test_audit_prune(tmp_path, monkeypatch):
    a = AuditStore(db_path=str(tmp_path / "audit.db"))
    a.record("config_save", True)
    real = time.time()
    monkeypatch.setattr(time, "time", lambda: real + 40 * 24 * 3600)
    assert a.prune_old_entries(retention_days=30) == 1
    assert a.list_recent() == []


def test_auth_store_users_and_secret(tmp_path):
    s = AuthStore(db_path=str(tmp_path / "auth.db"), secret_path=str(tmp_path / "secret.key"))
    s.ensure_default_admin()
    assert s.verify_user("admin", "admin")
    assert not s.verify_user("admin", "wrong")
    s.set_password("admin", "better-password")
    assert s.verify_user("admin", "better-password")
    with pytest.raises(ValueError):
        s.set_password("admin", "x")
    with pytest.raises(ValueError):
        s.add_user("admin", "whatever")
    with pytest.raises(ValueError):
        s.add_user("bad name", "whatever")

    key = s.get_or_create_secret_key()
    assert key
    assert s.get_or_create_secret_key() == key
