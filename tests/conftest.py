from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from gatewaysupervisor.config import SupervisorConfig
from gatewaysupervisor.events import LifecycleEvent
from gatewaysupervisor.sandbox.base import PortWaitTimeout, ProcessLogs


@pytest.fixture(autouse=True)
def _isolate_supervisor_env(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory) -> None:
    # Never let a developer's exported supervisor settings leak into tests.
    for key in list(os.environ):
        if key.startswith("GATEWAYSUPERVISOR_"):
            monkeypatch.delenv(key, raising=False)
    base = Path(str(tmp_path_factory.mktemp("gatewaysupervisor-test-env")))
    monkeypatch.setenv("GATEWAYSUPERVISOR_DATA_DIR", str(base / "runtime"))


class FakeProcess:
    def __init__(
        self,
        sandbox: "FakeSandbox",
        *,
        process_id: str,
        command: str,
        status: str = "running",
        opens_port: bool = True,
        stderr: str = "",
        logs_error: Optional[Exception] = None,
        kill_error: Optional[Exception] = None,
    ) -> None:
        self._sandbox = sandbox
        self.id = process_id
        self.command = command
        self.status = status
        self.opens_port = opens_port
        self.stderr = stderr
        self.logs_error = logs_error
        self.kill_error = kill_error
        self.kill_calls = 0
        self.wait_calls = 0

    def kill(self) -> None:
        self.kill_calls += 1
        self._sandbox.calls.append(("kill", self.id))
        if self.kill_error is not None:
            raise self.kill_error
        self.status = "killed"
        if self._sandbox.listener_process_id == self.id:
            self._sandbox.listener_status = None
            self._sandbox.listener_process_id = None

    def wait_for_port(self, port: int, *, timeout_s: float) -> None:
        self.wait_calls += 1
        self._sandbox.calls.append(("wait_for_port", self.id))
        if not self.opens_port:
            raise PortWaitTimeout(port, timeout_s)
        self.status = "running"
        self._sandbox.listener_status = 200
        self._sandbox.listener_process_id = self.id

    def get_logs(self) -> ProcessLogs:
        if self.logs_error is not None:
            raise self.logs_error
        return ProcessLogs(stdout="", stderr=self.stderr)


class FakeSandbox:
    """In-memory sandbox: one gateway port, a process table, and a bucket mount."""

    def __init__(self, config: SupervisorConfig) -> None:
        self._cfg = config
        self._lock = threading.Lock()
        self._seq = 0
        self.processes: List[FakeProcess] = []
        self.calls: List[tuple] = []
        self.spawned: List[Dict[str, Any]] = []

        self.listener_status: Optional[int] = None
        self.listener_process_id: Optional[str] = None
        self.fetch_count = 0

        self.next_start_opens_port = True
        self.next_start_stderr = ""
        self.next_start_logs_error: Optional[Exception] = None
        self.spawn_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self.graceful_stop_works = True

        self.mounted = False
        self.mount_calls = 0
        self.mount_error: Optional[Exception] = None

        self.delay_s = 0.0
        self.active = 0
        self.max_active = 0

    def _enter(self) -> None:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        if self.delay_s:
            time.sleep(self.delay_s)

    def _exit(self) -> None:
        with self._lock:
            self.active -= 1

    def add_process(self, *, command: Optional[str] = None, status: str = "running", **kwargs: Any) -> FakeProcess:
        with self._lock:
            self._seq += 1
            pid = f"proc-{self._seq}"
        proc = FakeProcess(self, process_id=pid, command=command or self._cfg.start_command, status=status, **kwargs)
        self.processes.append(proc)
        return proc

    def start_process(self, command: str, *, env: Optional[Dict[str, str]] = None) -> FakeProcess:
        self._enter()
        try:
            self.calls.append(("start_process", command))
            self.spawned.append({"command": command, "env": env})
            if command == self._cfg.stop_command:
                if self.graceful_stop_works and self.listener_status is not None:
                    for p in self.processes:
                        if p.id == self.listener_process_id:
                            p.status = "completed"
                    self.listener_status = None
                    self.listener_process_id = None
                return self.add_process(command=command, status="completed")
            if command.startswith("rm -f"):
                return self.add_process(command=command, status="completed")
            if self.spawn_error is not None:
                raise self.spawn_error
            return self.add_process(
                command=command,
                status="starting",
                opens_port=self.next_start_opens_port,
                stderr=self.next_start_stderr,
                logs_error=self.next_start_logs_error,
            )
        finally:
            self._exit()

    def list_processes(self) -> List[FakeProcess]:
        self.calls.append(("list_processes",))
        if self.list_error is not None:
            raise self.list_error
        return list(self.processes)

    def container_fetch(self, url: str, *, port: int, timeout_s: float) -> Any:
        self._enter()
        try:
            self.fetch_count += 1
            self.calls.append(("fetch", url, port))
            if self.listener_status is None:
                raise ConnectionRefusedError(f"nothing listening on {port}")
            return SimpleNamespace(status_code=self.listener_status)
        finally:
            self._exit()

    def is_mounted(self, mount_path: str) -> bool:
        return self.mounted

    def mount_bucket(self, bucket: str, mount_path: str, *, endpoint: Optional[str], credentials: Dict[str, Any]) -> None:
        self.mount_calls += 1
        self.calls.append(("mount_bucket", bucket, mount_path))
        if self.mount_error is not None:
            raise self.mount_error
        self.mounted = True

    def gateway_starts(self) -> List[Dict[str, Any]]:
        return [s for s in self.spawned if s["command"] == self._cfg.start_command]

    def side_effect_calls(self) -> List[tuple]:
        return [c for c in self.calls if c[0] in {"start_process", "kill", "mount_bucket", "wait_for_port"}]


class RecordingEventSink:
    def __init__(self) -> None:
        self.events: List[LifecycleEvent] = []

    def emit(self, event: LifecycleEvent) -> None:
        self.events.append(event)

    def names(self) -> List[str]:
        return [e.name for e in self.events]

    def first(self, name: str) -> LifecycleEvent:
        for e in self.events:
            if e.name == name:
                return e
        raise AssertionError(f"no {name} event in {self.names()}")


@pytest.fixture
def supervisor_config(tmp_path: Path) -> SupervisorConfig:
    return SupervisorConfig(
        data_dir=tmp_path / "runtime",
        startup_timeout_s=0.1,
        stop_graceful_timeout_s=0.1,
        port_free_initial_delay_s=0.0,
        port_free_poll_interval_s=0.01,
        port_free_deadline_s=0.05,
        process_discovery_retry_delay_s=0.0,
        process_exit_poll_interval_s=0.01,
        event_log_enabled=False,
    )


@pytest.fixture
def fake_sandbox(supervisor_config: SupervisorConfig) -> FakeSandbox:
    return FakeSandbox(supervisor_config)


@pytest.fixture
def events() -> RecordingEventSink:
    return RecordingEventSink()
