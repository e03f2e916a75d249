import threading

import pytest

from fakes import FakeFiles, FakeProcesses
from services.gateways import PermissionObservation, ProcessInfo
from services.nginx_validator import validate_config
from services.reconcile import (
    GUIDANCE_PROVISION,
    GUIDANCE_START,
    GUIDANCE_UNREACHABLE,
    ReconciliationEngine,
)


CONF = "/etc/nginx/nginx.conf"


def _engine(files=None, procs=None):
    files = files or FakeFiles()
    procs = procs or FakeProcesses([])
    return ReconciliationEngine(files, procs, validate=lambda t: validate_config(t, native=False)), files, procs


def _perm(mode, owner="nginx", group="nginx"):
    return PermissionObservation(path=CONF, mode=mode, owner=owner, group=group)


def test_unchecked_until_observed():
    engine, _, _ = _engine()
    st = engine.file_status(CONF)
    assert st.checked is False
    assert st.is_compliant is False
    assert engine.process_status("nginx-forward-proxy").checked is False


def test_file_644_nginx_is_compliant():
    engine, files, _ = _engine()
    files.perms[CONF] = _perm("644")
    st = engine.check_file_compliance(CONF)
    assert st.checked is True
    assert st.is_compliant is True
    assert st.details == "File permissions are correct"
    assert engine.file_status(CONF) == st


@pytest.mark.parametrize("mode,owner", [("664", "root"), ("644", "root")])
def test_file_other_allowed_combinations(mode, owner):
    engine, files, _ = _engine()
    files.perms[CONF] = _perm(mode, owner)
    assert engine.check_file_compliance(CONF).is_compliant is True


def test_file_777_is_not_compliant():
    engine, files, _ = _engine()
    files.perms[CONF] = _perm("777")
    st = engine.check_file_compliance(CONF)
    assert st.is_compliant is False
    assert st.details == "File permissions need adjustment: 777, owner: nginx"


def test_wrong_owner_is_not_compliant():
    engine, files, _ = _engine()
    files.perms[CONF] = _perm("644", owner="www-data")
    assert engine.check_file_compliance(CONF).is_compliant is False


def test_missing_file_is_never_reported_safe():
    engine, _, _ = _engine()
    st = engine.check_file_compliance(CONF)
    assert st.checked is True
    assert st.is_compliant is False
    assert "does not exist" in st.details


def test_remediation_reobserves_instead_of_trusting_cache():
    engine, files, _ = _engine()
    files.perms[CONF] = _perm("777")
    engine.check_file_compliance(CONF)
    calls = files.stat_calls

    res = engine.remediate_file(CONF)
    assert res.ok is True
    assert res.status.is_compliant is True
    assert files.stat_calls == calls + 1
    assert files.perms[CONF].mode == "644"
    assert engine.file_status(CONF).is_compliant is True


def test_failed_remediation_reports_error_and_fresh_status():
    engine, files, _ = _engine()
    files.perms[CONF] = _perm("777")
    files.fail_chmod = True
    res = engine.remediate_file(CONF)
    assert res.ok is False
    assert "not permitted" in res.error
    assert res.status.is_compliant is False
    assert res.status.checked is True


def test_reset_returns_to_unchecked():
    engine, files, _ = _engine()
    files.perms[CONF] = _perm("644")
    engine.check_file_compliance(CONF)
    engine.reset_file(CONF)
    assert engine.file_status(CONF).checked is False


def test_stale_result_is_discarded_after_reset():
    files = FakeFiles()
    files.perms[CONF] = _perm("777")
    entered = threading.Event()
    release = threading.Event()
    original_stat = files.stat_file

    def slow_stat(path):
        entered.set()
        release.wait(5)
        return original_stat(path)

    files.stat_file = slow_stat
    engine, _, _ = _engine(files=files)

    t = threading.Thread(target=engine.check_file_compliance, args=(CONF,))
    t.start()
    assert entered.wait(5)
    engine.reset_file(CONF)
    release.set()
    t.join(5)

    # The in-flight observation belonged to the old identity.
    assert engine.file_status(CONF).checked is False


def test_process_running():
    procs = FakeProcesses([ProcessInfo("abc123", "nginx-forward-proxy", "running")])
    engine, _, _ = _engine(procs=procs)
    st = engine.check_process_compliance("nginx-forward-proxy")
    assert st.is_compliant is True
    assert st.exists is True
    assert st.guidance == ""


def test_process_matched_by_id():
    procs = FakeProcesses([ProcessInfo("abc123", "other-name", "running")])
    engine, _, _ = _engine(procs=procs)
    assert engine.check_process_compliance("abc123").is_compliant is True


def test_process_stopped_gets_start_guidance():
    procs = FakeProcesses([ProcessInfo("abc123", "nginx-forward-proxy", "exited")])
    engine, _, _ = _engine(procs=procs)
    st = engine.check_process_compliance("nginx-forward-proxy")
    assert st.exists is True
    assert st.running is False
    assert st.guidance == GUIDANCE_START
    assert "exited" in st.details


def test_process_missing_gets_provision_guidance():
    engine, _, _ = _engine()
    st = engine.check_process_compliance("nginx-forward-proxy")
    assert st.exists is False
    assert st.guidance == GUIDANCE_PROVISION
    assert "doesn't exist" in st.details


def test_unreachable_backend_is_distinct_from_missing():
    procs = FakeProcesses([])
    procs.fail_list = True
    engine, _, _ = _engine(procs=procs)
    st = engine.check_process_compliance("nginx-forward-proxy")
    assert st.checked is True
    assert st.is_compliant is False
    assert st.guidance == GUIDANCE_UNREACHABLE


def test_restart_reobserves():
    procs = FakeProcesses([ProcessInfo("abc123", "nginx-forward-proxy", "exited")])
    engine, _, _ = _engine(procs=procs)
    res = engine.remediate_process("nginx-forward-proxy")
    assert res.ok is True
    assert procs.restarted == ["nginx-forward-proxy"]
    assert engine.process_status("nginx-forward-proxy").running is True


def test_restart_failure_is_reported():
    procs = FakeProcesses([ProcessInfo("abc123", "nginx-forward-proxy", "exited")])
    procs.fail_restart = True
    engine, _, _ = _engine(procs=procs)
    res = engine.remediate_process("nginx-forward-proxy")
    assert res.ok is False
    assert res.error == "restart failed"
    assert res.status.guidance == GUIDANCE_START


def test_save_rejects_invalid_text_without_writing():
    engine, files, _ = _engine()
    res = engine.save(CONF, "http { server { } ")
    assert res.ok is False
    assert res.validation.valid is False
    assert CONF not in files.contents
    assert res.file_status is None


def test_save_writes_then_reassesses_permissions():
    engine, files, _ = _engine()
    files.perms[CONF] = _perm("600")
    res = engine.save(CONF, "http { server { } }")
    assert res.ok is True
    assert files.contents[CONF] == "http { server { } }"
    assert res.file_status is not None
    assert res.file_status.is_compliant is False
    assert engine.file_status(CONF).checked is True


def test_save_write_failure_still_observes():
    engine, files, _ = _engine()
    files.perms[CONF] = _perm("644")
    files.fail_write = True
    res = engine.save(CONF, "http { }")
    assert res.ok is False
    assert "Permission denied" in res.error
    assert res.file_status.is_compliant is True


def test_load():
    engine, files, _ = _engine()
    assert engine.load(CONF).ok is False
    files.contents[CONF] = "events { }"
    loaded = engine.load(CONF)
    assert loaded.ok is True
    assert loaded.text == "events { }"


def test_failed_save_keeps_live_config_on_disk(tmp_path):
    from services.gateways import LocalFileGateway

    path = tmp_path / "nginx.conf"
    path.write_text("events { }\nhttp { }\n")
    engine = ReconciliationEngine(LocalFileGateway(), FakeProcesses([]), validate=lambda t: validate_config(t, native=False))

    res = engine.save(str(path), "http { # \ud800 }\n}")
    assert res.validation.valid is True
    assert res.ok is False
    assert "encode" in res.error
    assert path.read_text() == "events { }\nhttp { }\n"


def test_forgotten_identity_is_dropped_and_late_result_discarded():
    files = FakeFiles()
    files.perms[CONF] = _perm("644")
    entered = threading.Event()
    release = threading.Event()
    original_stat = files.stat_file

    def slow_stat(path):
        entered.set()
        release.wait(5)
        return original_stat(path)

    files.stat_file = slow_stat
    engine, _, _ = _engine(files=files)

    t = threading.Thread(target=engine.check_file_compliance, args=(CONF,))
    t.start()
    assert entered.wait(5)
    engine.reset_file(CONF, forget=True)
    assert ("file", CONF) not in engine._resources
    release.set()
    t.join(5)

    assert engine.file_status(CONF).checked is False
    assert ("file", CONF) not in engine._resources


def test_status_reads_do_not_track_new_identities():
    engine, _, _ = _engine()
    engine.file_status("/tmp/never-checked.conf")
    engine.process_status("never-checked")
    engine.reset_process("never-checked")
    assert engine._resources == {}
