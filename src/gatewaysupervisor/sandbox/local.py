"""Local-host sandbox: runs the gateway as a child process group of the supervisor.

Used when the supervisor runs next to the gateway (single container/VM) instead of behind a
platform sandbox API. Object-storage mounts are bound to a local directory under the data dir.

Spawned processes are recorded in `<base_dir>/processes.json`, so a later supervisor (or a
one-shot CLI run) sharing the same data dir can still find and kill a gateway it did not start.
"""

from __future__ import annotations

import datetime
import json
import logging
import os
import re
import signal
import socket
import subprocess
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse, urlunparse

import httpx

from .base import ACTIVE_STATUSES, PortWaitTimeout, ProcessExitedError, ProcessLogs, SandboxError


logger = logging.getLogger(__name__)

_LOG_TAIL_BYTES = 80_000
_LOG_RETENTION_FILES = 40
_SAFE_ID_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def _now_utc_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def _ts_compact_utc() -> str:
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _default_shell() -> str:
    return str(os.environ.get("SHELL") or "/bin/sh")


def _is_pid_running(pid: int) -> bool:
    if not isinstance(pid, int) or pid <= 0:
        return False
    # Reap it first if it happens to be our own exited child (a zombie still answers kill(0)).
    try:
        done, _ = os.waitpid(pid, os.WNOHANG)
        if done == pid:
            return False
    except ChildProcessError:
        pass
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _leads_process_group(pid: int) -> bool:
    # Every spawned command runs in a new session, so a recorded pid that no longer leads its
    # own group has been reused by something else.
    try:
        return os.getpgid(pid) == pid
    except OSError:
        return False


def _read_tail(path: Path, *, max_bytes: int = _LOG_TAIL_BYTES) -> str:
    if not path.exists():
        return ""
    try:
        with open(path, "rb") as f:
            f.seek(0, os.SEEK_END)
            size = int(f.tell() or 0)
            f.seek(max(0, size - int(max_bytes)), os.SEEK_SET)
            data = f.read(int(max_bytes))
    except OSError:
        return ""
    return data.decode("utf-8", errors="replace")


class LocalProcess:
    """A process group started by a LocalSandbox.

    `proc` is None for processes adopted from the state file of an earlier sandbox; those are
    tracked by pid only and report no exit code.
    """

    def __init__(
        self,
        *,
        process_id: str,
        command: str,
        pid: int,
        stdout_path: Path,
        stderr_path: Path,
        host: str,
        proc: Optional[subprocess.Popen[bytes]] = None,
        started_at: Optional[str] = None,
        kill_timeout_s: float = 5.0,
    ) -> None:
        self._id = process_id
        self._command = command
        self._pid = int(pid)
        self._proc = proc
        self._stdout_path = stdout_path
        self._stderr_path = stderr_path
        self._host = host
        self._started_at = started_at or _now_utc_iso()
        self._kill_timeout_s = float(kill_timeout_s)
        self._killed = False

    def __repr__(self) -> str:
        return f"LocalProcess(id={self._id!r}, pid={self._pid}, status={self.status!r})"

    @property
    def id(self) -> str:
        return self._id

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def command(self) -> str:
        return self._command

    @property
    def log_paths(self) -> Tuple[Path, Path]:
        return self._stdout_path, self._stderr_path

    @property
    def adopted(self) -> bool:
        return self._proc is None

    def _poll(self) -> Tuple[bool, Optional[int]]:
        if self._proc is not None:
            rc = self._proc.poll()
            return rc is None, rc
        return _is_pid_running(self._pid), None

    @property
    def status(self) -> str:
        alive, rc = self._poll()
        if alive:
            return "running"
        if self._killed:
            return "killed"
        return "failed" if rc not in (None, 0) else "completed"

    @property
    def exit_code(self) -> Optional[int]:
        return self._poll()[1]

    def to_record(self) -> Dict[str, Any]:
        return {
            "pid": self._pid,
            "command": self._command,
            "stdout_path": str(self._stdout_path),
            "stderr_path": str(self._stderr_path),
            "started_at": self._started_at,
        }

    def _signal(self, sig: signal.Signals) -> bool:
        """Signal the whole group; False when the process is already gone."""
        try:
            os.killpg(self._pid, sig)
        except ProcessLookupError:
            return False
        except OSError:
            try:
                os.kill(self._pid, sig)
            except ProcessLookupError:
                return False
            except OSError as e:
                raise SandboxError(f"Failed to signal process {self._id} (pid={self._pid}): {e}") from e
        return True

    def _wait_exit(self, timeout_s: float) -> bool:
        if self._proc is not None:
            try:
                self._proc.wait(timeout=timeout_s)
                return True
            except subprocess.TimeoutExpired:
                return False
        end = time.time() + timeout_s
        while time.time() < end:
            if not _is_pid_running(self._pid):
                return True
            time.sleep(0.05)
        return not _is_pid_running(self._pid)

    def kill(self) -> None:
        """Terminate the process group (SIGTERM, then SIGKILL after the kill timeout)."""
        if not self._poll()[0]:
            return
        self._killed = True
        if not self._signal(signal.SIGTERM):
            return
        if self._wait_exit(max(0.25, self._kill_timeout_s)):
            return
        if not self._signal(signal.SIGKILL):
            return
        if not self._wait_exit(2.0):
            raise SandboxError(f"Process {self._id} (pid={self._pid}) survived SIGKILL")

    def wait_for_port(self, port: int, *, timeout_s: float) -> None:
        end = time.time() + max(0.0, float(timeout_s))
        while True:
            alive, rc = self._poll()
            if not alive:
                raise ProcessExitedError(self._id, rc)
            try:
                with socket.create_connection((self._host, int(port)), timeout=0.5):
                    return
            except OSError:
                pass
            if time.time() >= end:
                raise PortWaitTimeout(int(port), float(timeout_s))
            time.sleep(0.1)

    def get_logs(self) -> ProcessLogs:
        return ProcessLogs(stdout=_read_tail(self._stdout_path), stderr=_read_tail(self._stderr_path))


class LocalSandbox:
    def __init__(self, *, base_dir: Path, host: str = "127.0.0.1", kill_timeout_s: float = 5.0) -> None:
        self._base_dir = Path(base_dir).expanduser().resolve()
        self._host = str(host or "127.0.0.1")
        self._kill_timeout_s = float(kill_timeout_s)
        self._lock = threading.Lock()

        self._logs_dir = (self._base_dir / "process_logs").resolve()
        self._buckets_dir = (self._base_dir / "buckets").resolve()
        self._state_path = (self._base_dir / "processes.json").resolve()
        self._logs_dir.mkdir(parents=True, exist_ok=True)

        self._procs: Dict[str, LocalProcess] = self._load_state()
        with self._lock:
            self._save_state_locked()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    # ----------------------------
    # State I/O
    # ----------------------------

    def _load_state(self) -> Dict[str, LocalProcess]:
        if not self._state_path.exists():
            return {}
        try:
            obj = json.loads(self._state_path.read_text(encoding="utf-8", errors="replace"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable process state %s: %s", self._state_path, e)
            return {}
        procs = obj.get("processes") if isinstance(obj, dict) else None
        if not isinstance(procs, dict):
            return {}
        out: Dict[str, LocalProcess] = {}
        for process_id, rec in procs.items():
            if not _SAFE_ID_RE.match(str(process_id)) or not isinstance(rec, dict):
                continue
            pid = rec.get("pid")
            if not isinstance(pid, int) or not _is_pid_running(pid) or not _leads_process_group(pid):
                continue
            out[str(process_id)] = LocalProcess(
                process_id=str(process_id),
                command=str(rec.get("command") or ""),
                pid=pid,
                stdout_path=Path(str(rec.get("stdout_path") or "")),
                stderr_path=Path(str(rec.get("stderr_path") or "")),
                host=self._host,
                started_at=rec.get("started_at"),
                kill_timeout_s=self._kill_timeout_s,
            )
            logger.info("Adopted running process %s (pid=%s)", process_id, pid)
        return out

    def _save_state_locked(self) -> None:
        tmp = self._state_path.with_suffix(".tmp")
        obj = {
            "version": 1,
            "updated_at": _now_utc_iso(),
            "processes": {pid: p.to_record() for pid, p in self._procs.items()},
        }
        try:
            tmp.write_text(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True) + "\n", encoding="utf-8")
            tmp.replace(self._state_path)
        except OSError as e:
            logger.warning("Failed to persist process state %s: %s", self._state_path, e)

    def _prune_locked(self) -> bool:
        """Forget processes that have exited; returns True when anything was dropped."""
        finished = [pid for pid, p in self._procs.items() if p.status not in ACTIVE_STATUSES]
        for pid in finished:
            self._procs.pop(pid, None)
        return bool(finished)

    def _prune_logs_locked(self) -> None:
        keep = {path for p in self._procs.values() for path in p.log_paths}
        try:
            logs = sorted(self._logs_dir.glob("*.log"), key=lambda x: x.stat().st_mtime, reverse=True)
        except OSError:
            return
        for path in logs[_LOG_RETENTION_FILES:]:
            if path in keep:
                continue
            try:
                path.unlink()
            except OSError:
                pass

    # ----------------------------
    # Processes
    # ----------------------------

    def start_process(self, command: str, *, env: Optional[Dict[str, str]] = None) -> LocalProcess:
        cmd = str(command or "").strip()
        if not cmd:
            raise ValueError("command is required")

        process_id = f"proc_{uuid.uuid4().hex[:12]}"
        ts = _ts_compact_utc()
        stdout_path = (self._logs_dir / f"{process_id}.{ts}.stdout.log").resolve()
        stderr_path = (self._logs_dir / f"{process_id}.{ts}.stderr.log").resolve()

        full_env = dict(os.environ)
        for k, v in (env or {}).items():
            full_env[str(k)] = str(v)

        # Own process group so kill() can take down the whole tree.
        out_f = open(stdout_path, "ab", buffering=0)
        err_f = open(stderr_path, "ab", buffering=0)
        try:
            proc = subprocess.Popen(
                [_default_shell(), "-c", cmd],
                cwd=str(self._base_dir),
                env=full_env,
                stdin=subprocess.DEVNULL,
                stdout=out_f,
                stderr=err_f,
                start_new_session=True,
            )
        except OSError as e:
            raise SandboxError(f"Failed to start process {cmd!r}: {e}") from e
        finally:
            # The child keeps its own fds.
            out_f.close()
            err_f.close()

        lp = LocalProcess(
            process_id=process_id,
            command=cmd,
            pid=int(proc.pid),
            proc=proc,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            host=self._host,
            kill_timeout_s=self._kill_timeout_s,
        )
        with self._lock:
            self._prune_locked()
            self._procs[process_id] = lp
            self._save_state_locked()
            self._prune_logs_locked()
        logger.debug("Started %r as %s (pid=%s)", cmd, process_id, proc.pid)
        return lp

    def list_processes(self) -> List[LocalProcess]:
        """Live processes only; exited ones are dropped from the table as they are seen."""
        with self._lock:
            if self._prune_locked():
                self._save_state_locked()
            return list(self._procs.values())

    def shutdown(self) -> None:
        """Kill every process this sandbox tracks (best-effort)."""
        for proc in self.list_processes():
            try:
                proc.kill()
            except SandboxError as e:
                logger.warning("shutdown: %s", e)
        with self._lock:
            self._prune_locked()
            self._save_state_locked()

    # ----------------------------
    # Network
    # ----------------------------

    def container_fetch(self, url: str, *, port: int, timeout_s: float) -> httpx.Response:
        u = urlparse(str(url))
        target = urlunparse(u._replace(netloc=f"{self._host}:{int(port)}"))
        return httpx.get(target, timeout=float(timeout_s), follow_redirects=False)

    # ----------------------------
    # Storage
    # ----------------------------

    def is_mounted(self, mount_path: str) -> bool:
        path = Path(mount_path)
        if os.path.ismount(str(path)):
            return True
        if path.is_symlink():
            try:
                path.resolve().relative_to(self._buckets_dir)
            except ValueError:
                return False
            return path.exists()
        return False

    def mount_bucket(self, bucket: str, mount_path: str, *, endpoint: Optional[str], credentials: Dict[str, Any]) -> None:
        del endpoint, credentials
        name = str(bucket or "").strip()
        if not name or "/" in name or name in {".", ".."}:
            raise SandboxError(f"Invalid bucket name: {bucket!r}")
        target = (self._buckets_dir / name).resolve()
        path = Path(mount_path).expanduser()
        try:
            target.mkdir(parents=True, exist_ok=True)
            path.parent.mkdir(parents=True, exist_ok=True)
            if path.is_symlink() or path.exists():
                raise SandboxError(f"Mount path is already in use: {path}")
            path.symlink_to(target, target_is_directory=True)
        except OSError as e:
            raise SandboxError(f"Failed to mount bucket {name!r} at {path}: {e}") from e
