import os
from types import SimpleNamespace

import docker.errors
import pytest

from services import gateways
from services.errors import NotFound, ObservationError, OperationError, PermissionChangeError, WriteError


def test_local_file_read_write_and_backup(tmp_path):
    path = tmp_path / "nginx.conf"
    g = gateways.LocalFileGateway()
    with pytest.raises(NotFound):
        g.read_text_file(str(path))

    g.write_text_file(str(path), "events { }\n")
    assert g.read_text_file(str(path)) == "events { }\n"
    assert not (tmp_path / "nginx.conf.bak").exists()

    g.write_text_file(str(path), "http { }\n")
    assert (tmp_path / "nginx.conf.bak").read_text() == "events { }\n"


def test_failed_write_keeps_existing_config(tmp_path):
    path = tmp_path / "nginx.conf"
    path.write_text("events { }\nhttp { }\n")
    g = gateways.LocalFileGateway(keep_backup=False)

    with pytest.raises(WriteError):
        g.write_text_file(str(path), "http { # \ud800 }\n}")
    assert path.read_text() == "events { }\nhttp { }\n"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["nginx.conf"]


def test_replace_failure_leaves_no_partial_file(tmp_path, monkeypatch):
    path = tmp_path / "nginx.conf"
    path.write_text("events { }\n")

    def no_space(src, dst):
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(gateways.os, "replace", no_space)
    with pytest.raises(WriteError, match="No space left"):
        gateways.LocalFileGateway(keep_backup=False).write_text_file(str(path), "http { }\n")
    assert path.read_text() == "events { }\n"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["nginx.conf"]


def test_write_keeps_mode_of_replaced_file(tmp_path):
    path = tmp_path / "nginx.conf"
    path.write_text("events { }\n")
    os.chmod(path, 0o640)
    g = gateways.LocalFileGateway()
    g.write_text_file(str(path), "http { }\n")
    assert g.stat_file(str(path)).mode == "640"

    fresh = tmp_path / "fresh.conf"
    g.write_text_file(str(fresh), "events { }\n")
    assert g.stat_file(str(fresh)).mode == "644"


def test_local_file_stat_and_chmod(tmp_path):
    path = tmp_path / "nginx.conf"
    path.write_text("events { }\n")
    os.chmod(path, 0o600)
    g = gateways.LocalFileGateway()

    obs = g.stat_file(str(path))
    assert obs.mode == "600"
    assert obs.owner

    # Empty owner/group only changes the mode.
    g.chmod_chown(str(path), "644", "", "")
    assert g.stat_file(str(path)).mode == "644"

    with pytest.raises(NotFound):
        g.stat_file(str(tmp_path / "missing.conf"))


def test_chmod_chown_unknown_user_is_permission_change_error(tmp_path):
    path = tmp_path / "nginx.conf"
    path.write_text("")
    with pytest.raises(PermissionChangeError):
        gateways.LocalFileGateway().chmod_chown(str(path), "644", "no-such-user-xyz", "no-such-group-xyz")


class _FakeContainer:
    def __init__(self, cid, name, status):
        self.id = cid
        self.name = name
        self.status = status
        self.restarts = 0

    def restart(self, timeout=10):
        self.restarts += 1
        self.status = "running"


class _FakeContainers:
    def __init__(self, items, fail=False):
        self.items = items
        self.fail = fail

    def list(self, all=False):
        if self.fail:
            raise docker.errors.DockerException("Error while fetching server API version")
        return list(self.items)

    def get(self, id_or_name):
        for c in self.items:
            if id_or_name in (c.id, c.name):
                return c
        raise docker.errors.NotFound("No such container")


def test_docker_list_and_restart():
    c = _FakeContainer("abc123", "nginx-forward-proxy", "exited")
    g = gateways.DockerProcessGateway(client=SimpleNamespace(containers=_FakeContainers([c])))

    procs = g.list_processes()
    assert [(p.id, p.name, p.state) for p in procs] == [("abc123", "nginx-forward-proxy", "exited")]

    g.restart_process("nginx-forward-proxy")
    assert c.restarts == 1

    with pytest.raises(OperationError):
        g.restart_process("missing")


def test_docker_unreachable_is_observation_error():
    g = gateways.DockerProcessGateway(client=SimpleNamespace(containers=_FakeContainers([], fail=True)))
    with pytest.raises(ObservationError):
        g.list_processes()


def test_supervisor_status_parsing(monkeypatch):
    out = (
        b"nginx                            RUNNING   pid 12, uptime 0:01:00\n"
        b"webui                            STOPPED   Not started\n"
    )

    def fake_run(cmd, **kwargs):
        assert cmd[-1] == "status"
        return SimpleNamespace(returncode=3, stdout=out, stderr=b"")

    monkeypatch.setattr(gateways, "run", fake_run)
    procs = gateways.SupervisorProcessGateway().list_processes()
    assert [(p.name, p.state) for p in procs] == [("nginx", "running"), ("webui", "exited")]


def test_supervisor_unreachable(monkeypatch):
    monkeypatch.setattr(
        gateways,
        "run",
        lambda cmd, **kw: SimpleNamespace(returncode=2, stdout=b"", stderr=b"unix:///var/run/supervisor.sock no such file"),
    )
    with pytest.raises(ObservationError):
        gateways.SupervisorProcessGateway().list_processes()


def test_supervisor_restart_failure(monkeypatch):
    monkeypatch.setattr(
        gateways,
        "run",
        lambda cmd, **kw: SimpleNamespace(returncode=1, stdout=b"nginx: ERROR (no such process)", stderr=b""),
    )
    with pytest.raises(OperationError, match="no such process"):
        gateways.SupervisorProcessGateway().restart_process("nginx")


def test_make_process_gateway(monkeypatch):
    monkeypatch.setenv("PROCESS_BACKEND", "supervisor")
    assert isinstance(gateways.make_process_gateway(), gateways.SupervisorProcessGateway)
    monkeypatch.delenv("PROCESS_BACKEND")
    assert isinstance(gateways.make_process_gateway(), gateways.DockerProcessGateway)
