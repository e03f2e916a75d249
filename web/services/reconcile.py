from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from services.gateways import FileGateway, PermissionObservation, ProcessGateway
from services.logutil import log_throttled
from services.nginx_validator import ValidationResult, validate_config


logger = logging.getLogger(__name__)


DRIFT_LOG_INTERVAL = 300.0

GUIDANCE_NONE = ""
GUIDANCE_START = "start"
GUIDANCE_PROVISION = "provision"
GUIDANCE_UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class FileTarget:
    """Declared-correct permissions for the proxy config file."""

    allowed_modes: Tuple[str, ...] = ("644", "664")
    allowed_owners: Tuple[str, ...] = ("nginx", "root")
    mode: str = "644"
    owner: str = "nginx"
    group: str = "nginx"

    def is_compliant(self, obs: PermissionObservation) -> bool:
        return obs.mode in self.allowed_modes and obs.owner in self.allowed_owners


@dataclass(frozen=True)
class FileStatus:
    path: str
    checked: bool
    is_compliant: bool
    details: str
    observation: Optional[PermissionObservation] = None
    checked_at: float = 0.0

    @classmethod
    def unchecked(cls, path: str) -> "FileStatus":
        return cls(path=path, checked=False, is_compliant=False, details="")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "checked": self.checked,
            "is_compliant": self.is_compliant,
            "details": self.details,
            "observation": self.observation.to_dict() if self.observation else None,
            "checked_at": int(self.checked_at),
        }


@dataclass(frozen=True)
class ProcessStatus:
    name: str
    checked: bool
    exists: bool
    running: bool
    is_compliant: bool
    details: str
    guidance: str = GUIDANCE_NONE
    state: str = "unknown"
    checked_at: float = 0.0

    @classmethod
    def unchecked(cls, name: str) -> "ProcessStatus":
        return cls(name=name, checked=False, exists=False, running=False, is_compliant=False, details="")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "checked": self.checked,
            "exists": self.exists,
            "running": self.running,
            "is_compliant": self.is_compliant,
            "details": self.details,
            "guidance": self.guidance,
            "state": self.state,
            "checked_at": int(self.checked_at),
        }


@dataclass(frozen=True)
class RemediationResult:
    ok: bool
    error: str
    status: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "error": self.error, "status": self.status.to_dict()}


@dataclass(frozen=True)
class SaveResult:
    ok: bool
    validation: ValidationResult
    error: str = ""
    file_status: Optional[FileStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "error": self.error,
            "validation": self.validation.to_dict(),
            "file_status": self.file_status.to_dict() if self.file_status else None,
        }


@dataclass(frozen=True)
class LoadResult:
    ok: bool
    text: str = ""
    error: str = ""


@dataclass
class _Resource:
    op_lock: threading.Lock = field(default_factory=threading.Lock)
    generation: int = 0
    next_seq: int = 0
    committed_seq: int = -1
    status: Any = None


class ReconciliationEngine:
    """Desired-vs-observed state for the proxy config file and process.

    Each resource (a file path or a process name) is Unchecked until observed,
    then Checked with a compliance verdict; reset_*() puts it back to Unchecked.
    Requests for the same resource are serialized, and a result is only
    committed if no newer result (or reset) happened in the meantime.
    The config path and process name are always passed in, never stored, so
    one engine can serve several proxy instances.
    """

    def __init__(
        self,
        files: FileGateway,
        processes: ProcessGateway,
        *,
        file_target: Optional[FileTarget] = None,
        validate: Callable[[str], ValidationResult] = validate_config,
        clock: Callable[[], float] = time.time,
    ):
        self.files = files
        self.processes = processes
        self.file_target = file_target or FileTarget()
        self.validate = validate
        self.clock = clock
        self._lock = threading.Lock()
        self._resources: Dict[Tuple[str, str], _Resource] = {}

    def _resource(self, kind: str, ident: str) -> _Resource:
        key = (kind, ident)
        with self._lock:
            res = self._resources.get(key)
            if res is None:
                res = _Resource()
                self._resources[key] = res
            return res

    def _begin(self, res: _Resource) -> Tuple[int, int]:
        with self._lock:
            seq = res.next_seq
            res.next_seq += 1
            return res.generation, seq

    def _commit(self, res: _Resource, ticket: Tuple[int, int], status: Any) -> bool:
        generation, seq = ticket
        with self._lock:
            if generation != res.generation or seq <= res.committed_seq:
                logger.debug("Discarding stale observation (generation=%s seq=%s)", generation, seq)
                return False
            res.committed_seq = seq
            res.status = status
            return True

    def _reset(self, kind: str, ident: str, forget: bool) -> None:
        with self._lock:
            res = self._resources.pop((kind, ident), None) if forget else self._resources.get((kind, ident))
            if res is not None:
                # In-flight observations of this identity hold the old generation.
                res.generation += 1
                res.status = None

    def reset_file(self, path: str, *, forget: bool = False) -> None:
        """Back to Unchecked. forget=True also drops the entry for a path no longer in use."""
        self._reset("file", path, forget)

    def reset_process(self, name: str, *, forget: bool = False) -> None:
        self._reset("process", name, forget)

    def _committed(self, kind: str, ident: str) -> Any:
        with self._lock:
            res = self._resources.get((kind, ident))
            return res.status if res is not None else None

    def file_status(self, path: str) -> FileStatus:
        return self._committed("file", path) or FileStatus.unchecked(path)

    def process_status(self, name: str) -> ProcessStatus:
        return self._committed("process", name) or ProcessStatus.unchecked(name)

    # Files

    def _observe_file(self, path: str, res: _Resource) -> FileStatus:
        ticket = self._begin(res)
        now = self.clock()
        try:
            obs = self.files.stat_file(path)
        except Exception as e:
            # An unverifiable file is never reported as safe.
            status = FileStatus(path=path, checked=True, is_compliant=False, details=str(e) or type(e).__name__, checked_at=now)
        else:
            ok = self.file_target.is_compliant(obs)
            if ok:
                details = "File permissions are correct"
            else:
                details = f"File permissions need adjustment: {obs.mode}, owner: {obs.owner}"
            status = FileStatus(path=path, checked=True, is_compliant=ok, details=details, observation=obs, checked_at=now)

        if not status.is_compliant:
            log_throttled(
                logger, logging.WARNING, f"drift.file.{path}", "Config file drift on %s: %s", path, status.details,
                interval_seconds=DRIFT_LOG_INTERVAL,
            )
        self._commit(res, ticket, status)
        return status

    def check_file_compliance(self, path: str) -> FileStatus:
        res = self._resource("file", path)
        with res.op_lock:
            return self._observe_file(path, res)

    def remediate_file(self, path: str) -> RemediationResult:
        """Set the target mode/ownership, then re-observe to confirm."""
        t = self.file_target
        res = self._resource("file", path)
        with res.op_lock:
            error = ""
            try:
                self.files.chmod_chown(path, t.mode, t.owner, t.group)
                logger.info("Set %s to %s %s:%s", path, t.mode, t.owner, t.group)
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.warning("Permission fix failed for %s: %s", path, error)
            status = self._observe_file(path, res)
        return RemediationResult(ok=(not error and status.is_compliant), error=error, status=status)

    # Processes

    def _observe_process(self, name: str, res: _Resource) -> ProcessStatus:
        ticket = self._begin(res)
        now = self.clock()
        try:
            procs = self.processes.list_processes()
        except Exception as e:
            status = ProcessStatus(
                name=name,
                checked=True,
                exists=False,
                running=False,
                is_compliant=False,
                details=str(e) or type(e).__name__,
                guidance=GUIDANCE_UNREACHABLE,
                checked_at=now,
            )
        else:
            match = next((p for p in procs if p.name == name), None)
            if match is None:
                match = next((p for p in procs if p.id == name), None)
            if match is None:
                status = ProcessStatus(
                    name=name,
                    checked=True,
                    exists=False,
                    running=False,
                    is_compliant=False,
                    details=f'The container "{name}" doesn\'t exist.',
                    guidance=GUIDANCE_PROVISION,
                    checked_at=now,
                )
            elif match.state != "running":
                status = ProcessStatus(
                    name=name,
                    checked=True,
                    exists=True,
                    running=False,
                    is_compliant=False,
                    details=f'The container "{name}" exists but is not running (state: {match.state}).',
                    guidance=GUIDANCE_START,
                    state=match.state,
                    checked_at=now,
                )
            else:
                status = ProcessStatus(
                    name=name,
                    checked=True,
                    exists=True,
                    running=True,
                    is_compliant=True,
                    details=f"The {name} container is running.",
                    state=match.state,
                    checked_at=now,
                )

        if not status.is_compliant:
            log_throttled(
                logger, logging.WARNING, f"drift.process.{name}", "Process drift on %s: %s", name, status.details,
                interval_seconds=DRIFT_LOG_INTERVAL,
            )
        self._commit(res, ticket, status)
        return status

    def check_process_compliance(self, name: str) -> ProcessStatus:
        res = self._resource("process", name)
        with res.op_lock:
            return self._observe_process(name, res)

    def remediate_process(self, name: str) -> RemediationResult:
        """Restart the process, then re-observe; a restart is not assumed to work."""
        res = self._resource("process", name)
        with res.op_lock:
            error = ""
            try:
                self.processes.restart_process(name)
                logger.info("Restart requested for %s", name)
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.warning("Restart failed for %s: %s", name, error)
            status = self._observe_process(name, res)
        return RemediationResult(ok=(not error and status.is_compliant), error=error, status=status)

    # Config content

    def load(self, path: str) -> LoadResult:
        try:
            return LoadResult(ok=True, text=self.files.read_text_file(path))
        except Exception as e:
            return LoadResult(ok=False, error=str(e) or type(e).__name__)

    def save(self, path: str, text: str) -> SaveResult:
        """Validate, write, then re-assess the file's permissions.

        Structural validation failures block the write. A non-compliant file
        after the write does not fail the save; it shows up in file_status.
        """
        validation = self.validate(text)
        if not validation.valid:
            return SaveResult(ok=False, validation=validation, error=f"Invalid configuration: {validation.summary()}")

        res = self._resource("file", path)
        with res.op_lock:
            try:
                self.files.write_text_file(path, text)
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.warning("Config write to %s failed: %s", path, error)
                status = self._observe_file(path, res)
                return SaveResult(ok=False, validation=validation, error=error, file_status=status)
            logger.info("Wrote %d bytes of configuration to %s", len(text), path)
            status = self._observe_file(path, res)
        return SaveResult(ok=True, validation=validation, file_status=status)
