from __future__ import annotations

import grp
import logging
import os
import pwd
import shutil
import stat
import tempfile
from dataclasses import dataclass
from subprocess import run
from typing import Any, Dict, List, Optional, Protocol

import docker
from docker.errors import DockerException, NotFound as DockerNotFound

from services.errors import NotFound, ObservationError, OperationError, PermissionChangeError, WriteError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PermissionObservation:
    path: str
    mode: str  # 3-digit octal, e.g. "644"
    owner: str
    group: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "mode": self.mode, "owner": self.owner, "group": self.group}


@dataclass(frozen=True)
class ProcessInfo:
    id: str
    name: str
    state: str  # running | exited | unknown | backend-specific

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "name": self.name, "state": self.state}


class FileGateway(Protocol):
    def read_text_file(self, path: str) -> str: ...

    def write_text_file(self, path: str, text: str) -> None: ...

    def stat_file(self, path: str) -> PermissionObservation: ...

    def chmod_chown(self, path: str, mode: str, owner: str, group: str) -> None: ...


class ProcessGateway(Protocol):
    def list_processes(self) -> List[ProcessInfo]: ...

    def restart_process(self, id_or_name: str) -> None: ...


class LocalFileGateway:
    """Filesystem access for a proxy whose config lives on a local/bind-mounted path."""

    def __init__(self, keep_backup: bool = True):
        self.keep_backup = keep_backup

    def read_text_file(self, path: str) -> str:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError as e:
            raise NotFound(f"Failed to read file: {path} does not exist") from e
        except OSError as e:
            raise ObservationError(f"Failed to read file: {e}") from e

    def write_text_file(self, path: str, text: str) -> None:
        """Replace the file atomically; a failed write leaves the old content in place.

        The replacement inherits the old file's mode and owner where the process
        is allowed to set them. Symlinks are followed so the link itself survives.
        """
        try:
            data = text.encode("utf-8")
        except UnicodeEncodeError as e:
            raise WriteError(f"Failed to write file: {e}") from e

        target = os.path.realpath(path)
        try:
            old = os.stat(target)
        except FileNotFoundError:
            old = None
        except OSError as e:
            raise WriteError(f"Failed to write file: {e}") from e

        if self.keep_backup and old is not None:
            try:
                shutil.copyfile(target, target + ".bak")
            except OSError:
                logger.warning("Could not write backup of %s", target, exc_info=True)

        tmp = None
        try:
            fd, tmp = tempfile.mkstemp(prefix=".nginx-", suffix=".tmp", dir=os.path.dirname(target) or ".")
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            if old is None:
                # mkstemp files are 0600.
                os.chmod(tmp, 0o644)
            else:
                os.chmod(tmp, stat.S_IMODE(old.st_mode))
                try:
                    os.chown(tmp, old.st_uid, old.st_gid)
                except PermissionError:
                    logger.warning("Could not keep owner of %s; the new file is owned by this process", target)
            os.replace(tmp, target)
            tmp = None
        except (OSError, ValueError) as e:
            raise WriteError(f"Failed to write file: {e}") from e
        finally:
            if tmp is not None:
                try:
                    os.unlink(tmp)
                except OSError:
                    logger.warning("Could not remove temporary file %s", tmp)

    def stat_file(self, path: str) -> PermissionObservation:
        try:
            st = os.stat(path)
        except FileNotFoundError as e:
            raise NotFound(f"Failed to check permissions: {path} does not exist") from e
        except OSError as e:
            raise ObservationError(f"Failed to check permissions: {e}") from e

        try:
            owner = pwd.getpwuid(st.st_uid).pw_name
        except KeyError:
            owner = str(st.st_uid)
        try:
            group = grp.getgrgid(st.st_gid).gr_name
        except KeyError:
            group = str(st.st_gid)
        mode = format(stat.S_IMODE(st.st_mode) & 0o777, "03o")
        return PermissionObservation(path=path, mode=mode, owner=owner, group=group)

    def chmod_chown(self, path: str, mode: str, owner: str, group: str) -> None:
        try:
            if mode:
                os.chmod(path, int(mode, 8))
            if owner and group:
                shutil.chown(path, user=owner, group=group)
        except (OSError, LookupError, ValueError) as e:
            raise PermissionChangeError(f"Failed to change permissions: {e}") from e


class DockerProcessGateway:
    """Container lifecycle through the Docker Engine API (DOCKER_HOST / socket)."""

    def __init__(self, client: Any = None, timeout: Optional[int] = None):
        self._docker = client
        if timeout is None:
            try:
                timeout = int((os.environ.get("DOCKER_TIMEOUT") or "30").strip())
            except ValueError:
                timeout = 30
        self.timeout = timeout

    def _client(self) -> Any:
        if self._docker is None:
            self._docker = docker.from_env(timeout=self.timeout)
        return self._docker

    def list_processes(self) -> List[ProcessInfo]:
        try:
            containers = self._client().containers.list(all=True)
        except DockerException as e:
            raise ObservationError(f"Docker connection error: {e}") from e
        out = []
        for c in containers:
            out.append(ProcessInfo(id=str(c.id), name=str(c.name).lstrip("/"), state=str(c.status or "unknown")))
        return out

    def restart_process(self, id_or_name: str) -> None:
        try:
            self._client().containers.get(id_or_name).restart(timeout=10)
        except DockerNotFound as e:
            raise OperationError(f"Failed to restart container: {id_or_name} does not exist") from e
        except DockerException as e:
            raise OperationError(f"Failed to restart container: {id_or_name}: {e}") from e


_SUPERVISOR_STATES = {
    "RUNNING": "running",
    "STARTING": "starting",
    "STOPPED": "exited",
    "STOPPING": "stopping",
    "EXITED": "exited",
    "FATAL": "exited",
    "BACKOFF": "exited",
}


def _decode_completed(p: Any) -> str:
    out = getattr(p, "stdout", b"")
    err = getattr(p, "stderr", b"")
    if isinstance(out, bytes):
        out_s = out.decode("utf-8", errors="replace")
    else:
        out_s = str(out or "")
    if isinstance(err, bytes):
        err_s = err.decode("utf-8", errors="replace")
    else:
        err_s = str(err or "")
    if out_s and err_s:
        return (out_s + "\n" + err_s).strip()
    return (out_s or err_s).strip()


class SupervisorProcessGateway:
    """Process lifecycle through supervisord when NGINX runs in this container."""

    def __init__(self, conf_path: str = "/etc/supervisord.conf", timeout: float = 12):
        self.conf_path = conf_path
        self.timeout = timeout

    def list_processes(self) -> List[ProcessInfo]:
        try:
            p = run(["supervisorctl", "-c", self.conf_path, "status"], capture_output=True, timeout=self.timeout)
        except Exception as e:
            raise ObservationError(f"supervisorctl status failed: {e}") from e
        text = _decode_completed(p)
        out: List[ProcessInfo] = []
        for line in text.splitlines():
            parts = line.split()
            if len(parts) < 2 or not parts[1].isupper():
                continue
            out.append(ProcessInfo(id=parts[0], name=parts[0], state=_SUPERVISOR_STATES.get(parts[1], "unknown")))
        # supervisorctl exits non-zero when any program is not running.
        if not out and p.returncode != 0:
            raise ObservationError(text or "supervisorctl status failed")
        return out

    def restart_process(self, id_or_name: str) -> None:
        try:
            p = run(["supervisorctl", "-c", self.conf_path, "restart", id_or_name], capture_output=True, timeout=self.timeout)
        except Exception as e:
            raise OperationError(f"Failed to restart {id_or_name}: {e}") from e
        if p.returncode != 0:
            raise OperationError(_decode_completed(p) or f"supervisorctl restart {id_or_name} failed")


def make_process_gateway(backend: Optional[str] = None) -> ProcessGateway:
    b = (backend or os.environ.get("PROCESS_BACKEND") or "docker").strip().lower()
    if b == "supervisor":
        return SupervisorProcessGateway(conf_path=(os.environ.get("SUPERVISOR_CONF") or "/etc/supervisord.conf").strip())
    return DockerProcessGateway()
