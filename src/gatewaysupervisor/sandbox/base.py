"""Capabilities the lifecycle engine consumes from the execution environment."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol


ACTIVE_STATUSES = frozenset({"starting", "running"})


class SandboxError(RuntimeError):
    """Base class for failures reported by a sandbox capability."""


class PortWaitTimeout(SandboxError, TimeoutError):
    def __init__(self, port: int, timeout_s: float) -> None:
        super().__init__(f"Port {port} did not open within {timeout_s:g}s")
        self.port = port
        self.timeout_s = timeout_s


class ProcessExitedError(SandboxError):
    def __init__(self, process_id: str, exit_code: Optional[int]) -> None:
        super().__init__(f"Process {process_id} exited (exit_code={exit_code}) before its port opened")
        self.process_id = process_id
        self.exit_code = exit_code


@dataclass(frozen=True)
class ProcessLogs:
    stdout: str = ""
    stderr: str = ""


class FetchResponse(Protocol):
    @property
    def status_code(self) -> int: ...


class SandboxProcess(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def command(self) -> str: ...

    @property
    def status(self) -> str:
        """One of: starting, running, completed, failed, killed."""
        ...

    def kill(self) -> None: ...

    def wait_for_port(self, port: int, *, timeout_s: float) -> None:
        """Block until `port` accepts TCP connections.

        Raises PortWaitTimeout, or ProcessExitedError when the process dies first.
        """
        ...

    def get_logs(self) -> ProcessLogs: ...


class Sandbox(Protocol):
    """Process, network and storage capabilities of one isolated environment."""

    def start_process(self, command: str, *, env: Optional[Dict[str, str]] = None) -> SandboxProcess: ...

    def list_processes(self) -> List[SandboxProcess]: ...

    def container_fetch(self, url: str, *, port: int, timeout_s: float) -> FetchResponse:
        """HTTP GET through the sandbox network; raises on connection failure or timeout."""
        ...

    def is_mounted(self, mount_path: str) -> bool: ...

    def mount_bucket(self, bucket: str, mount_path: str, *, endpoint: Optional[str], credentials: Dict[str, Any]) -> None: ...
