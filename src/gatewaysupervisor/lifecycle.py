"""Gateway lifecycle engine: health probe, ensure running, stop, restart.

The caller (GatewayStateOwner) holds the lifecycle lock for the whole duration of
`ensure_running` / `restart`; the engine mutates the passed GatewayState in place.

Failure policy:
- Probe failures mean "unreachable" and are never raised.
- Cleanup steps (graceful stop, kills, lock-file removal, port-free wait) return a StepOutcome
  and never abort the surrounding sequence.
- Only a failed start (spawn error, or port never opening) is raised to the caller.
"""

from __future__ import annotations

import enum
import logging
import shlex
import time
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from .config import SupervisorConfig
from .env import build_env_vars, redact_env_vars
from .events import EventSink, LifecycleEvent, LoggingEventSink
from .outcome import StepOutcome
from .sandbox.base import ACTIVE_STATUSES, Sandbox, SandboxProcess
from .state import GatewayState
from .storage import mount_backing_storage


logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 2000
LOCK_CLEAR_TIMEOUT_S = 5.0


class PortProbe(str, enum.Enum):
    HEALTHY = "healthy"
    LISTENING_UNHEALTHY = "listening_unhealthy"
    UNREACHABLE = "unreachable"


class GatewayStartError(RuntimeError):
    def __init__(self, message: str, *, process_id: Optional[str] = None, stderr: Optional[str] = None) -> None:
        super().__init__(message)
        self.process_id = process_id
        self.stderr = stderr


@dataclass(frozen=True)
class StopReport:
    outcomes: Tuple[StepOutcome, ...]

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)


def _tail(text: str, limit: int = STDERR_TAIL_CHARS) -> str:
    s = str(text or "")
    if len(s) <= limit:
        return s
    return "..." + s[-limit:]


class GatewayLifecycle:
    def __init__(self, *, sandbox: Sandbox, config: SupervisorConfig, events: Optional[EventSink] = None) -> None:
        self._sandbox = sandbox
        self._cfg = config
        self._events: EventSink = events or LoggingEventSink()

    @property
    def sandbox(self) -> Sandbox:
        return self._sandbox

    def _emit(self, name: str, **fields: Any) -> None:
        try:
            self._events.emit(LifecycleEvent(name=name, fields=fields))
        except Exception:
            logger.exception("Failed to emit lifecycle event %s", name)

    def _emit_outcome(self, name: str, outcome: StepOutcome, **fields: Any) -> StepOutcome:
        self._emit(name, ok=outcome.ok, error=outcome.error, detail=outcome.detail, **fields)
        return outcome

    # ----------------------------
    # Probes
    # ----------------------------

    def probe(self) -> PortProbe:
        """Bounded-time GET against the gateway port.

        2xx-4xx means healthy; a 5xx means something is listening but not serving.
        """
        try:
            res = self._sandbox.container_fetch(
                self._cfg.health_url,
                port=int(self._cfg.gateway_port),
                timeout_s=float(self._cfg.health_check_timeout_s),
            )
            status = int(res.status_code)
        except Exception as e:
            logger.debug("Health probe failed: %s", e)
            return PortProbe.UNREACHABLE
        if status >= 500:
            return PortProbe.LISTENING_UNHEALTHY
        if status > 0:
            return PortProbe.HEALTHY
        return PortProbe.UNREACHABLE

    def is_healthy(self) -> bool:
        return self.probe() is PortProbe.HEALTHY

    def find_existing_process(self) -> Optional[SandboxProcess]:
        """First live process whose command matches the gateway signature."""
        try:
            processes = list(self._sandbox.list_processes())
        except Exception as e:
            logger.warning("Could not list sandbox processes: %s", e)
            return None
        for proc in processes:
            try:
                command = str(proc.command or "")
                status = str(proc.status or "")
            except Exception:
                continue
            if status not in ACTIVE_STATUSES:
                continue
            if any(x in command for x in self._cfg.process_signature_excludes):
                continue
            if any(sig in command for sig in self._cfg.process_signatures):
                return proc
        return None

    def _discover_process(self) -> Optional[SandboxProcess]:
        # Process listings can lag behind a fresh start; retry once after a fixed delay.
        found = self.find_existing_process()
        if found is None:
            time.sleep(float(self._cfg.process_discovery_retry_delay_s))
            found = self.find_existing_process()
        return found

    def wait_for_process_exit(self, proc: SandboxProcess, *, timeout_s: float) -> None:
        end = time.time() + max(0.0, float(timeout_s))
        while str(proc.status) in ACTIVE_STATUSES:
            if time.time() >= end:
                raise TimeoutError(f"Process {proc.id} still {proc.status} after {timeout_s:g}s")
            time.sleep(float(self._cfg.process_exit_poll_interval_s))

    # ----------------------------
    # Ensure
    # ----------------------------

    def ensure_running(self, state: GatewayState) -> None:
        if state.ready:
            self._emit("ensure.fast_path", process_id=state.process_id)
            return

        probe = self.probe()
        self._emit("health.probe", result=probe.value)
        if probe is PortProbe.HEALTHY:
            self._adopt_healthy(state)
            return

        existing = self.find_existing_process()
        if existing is not None:
            self._emit("ensure.existing_process", process_id=existing.id, status=str(existing.status))
            try:
                existing.wait_for_port(int(self._cfg.gateway_port), timeout_s=float(self._cfg.startup_timeout_s))
            except Exception as e:
                self._emit("ensure.existing_process_unreachable", process_id=existing.id, error=str(e))
                self._emit_outcome("ensure.kill_existing", self._kill(existing, step="ensure.kill_existing"), process_id=existing.id)
            else:
                now = time.time()
                state.last_start_attempt = now
                state.mark_ready(now=now, process_id=existing.id)
                self._emit("start.ready", process_id=existing.id, reused=True)
                return

        recheck = self.probe()
        if recheck is PortProbe.HEALTHY:
            self._adopt_healthy(state)
            return
        if recheck is PortProbe.LISTENING_UNHEALTHY:
            self._emit("ensure.port_busy", process_id=state.process_id)
            self.stop(state.process_id)
            self.wait_for_port_free()
            state.mark_lost()

        self._emit_outcome("storage.mount", mount_backing_storage(self._sandbox, self._cfg.storage))

        self._start_fresh(state)

    def _adopt_healthy(self, state: GatewayState) -> None:
        found = self._discover_process()
        now = time.time()
        if found is not None:
            state.last_start_attempt = now
        state.mark_ready(now=now, process_id=found.id if found is not None else None)
        self._emit("ensure.already_healthy", process_id=state.process_id)

    def _start_fresh(self, state: GatewayState) -> None:
        state.last_start_attempt = time.time()
        env_vars = build_env_vars(self._cfg)
        command = self._cfg.start_command
        try:
            proc = self._sandbox.start_process(command, env=env_vars or None)
        except Exception as e:
            logger.error("Failed to start gateway process %r: %s", command, e)
            self._emit("start.failed", stage="spawn", error=str(e))
            raise

        state.process_id = proc.id
        self._emit("start.spawned", process_id=proc.id, status=str(proc.status), env=redact_env_vars(env_vars))

        try:
            proc.wait_for_port(int(self._cfg.gateway_port), timeout_s=float(self._cfg.startup_timeout_s))
        except Exception as e:
            self._emit("start.failed", stage="wait_for_port", process_id=proc.id, error=str(e))
            try:
                logs = proc.get_logs()
            except Exception as log_err:
                logger.error("Failed to fetch logs for %s: %s", proc.id, log_err)
                raise GatewayStartError(f"Gateway failed to start: {e}", process_id=proc.id) from e
            stderr = _tail(logs.stderr)
            logger.error("Gateway %s stderr: %s", proc.id, stderr)
            raise GatewayStartError(
                f"Gateway failed to start. Stderr: {stderr or '(empty)'}",
                process_id=proc.id,
                stderr=stderr,
            ) from e

        state.mark_ready(now=time.time(), process_id=proc.id)
        self._emit("start.ready", process_id=proc.id, reused=False)

    # ----------------------------
    # Stop / restart
    # ----------------------------

    def _kill(self, proc: SandboxProcess, *, step: str) -> StepOutcome:
        try:
            proc.kill()
        except Exception as e:
            logger.warning("%s: kill of %s failed: %s", step, proc.id, e)
            return StepOutcome.failure(step, e)
        return StepOutcome.success(step, detail="killed")

    def _stop_graceful(self) -> StepOutcome:
        step = "stop.graceful"
        try:
            proc = self._sandbox.start_process(self._cfg.stop_command)
            self.wait_for_process_exit(proc, timeout_s=float(self._cfg.stop_graceful_timeout_s))
            logs = proc.get_logs()
        except Exception as e:
            return StepOutcome.failure(step, e)
        if str(proc.status) == "failed":
            return StepOutcome.failure(step, _tail(logs.stderr, 200) or "stop command failed")
        return StepOutcome.success(step, detail=str(logs.stdout or "")[:200])

    def _stop_tracked(self, process_id: str) -> StepOutcome:
        step = "stop.force_kill"
        try:
            match = next((p for p in self._sandbox.list_processes() if p.id == process_id), None)
        except Exception as e:
            return StepOutcome.failure(step, e)
        if match is None or str(match.status) not in ACTIVE_STATUSES:
            return StepOutcome.success(step, detail="not_running")
        return self._kill(match, step=step)

    def stop(self, process_id: Optional[str]) -> StopReport:
        """Graceful control command, then kill by id, then kill by signature.

        Never raises; every layer runs regardless of the previous one.
        """
        outcomes = [self._emit_outcome("stop.graceful", self._stop_graceful(), process_id=process_id)]

        if process_id:
            outcomes.append(self._emit_outcome("stop.force_kill", self._stop_tracked(process_id), process_id=process_id))

        remaining = self.find_existing_process()
        if remaining is not None:
            outcomes.append(
                self._emit_outcome(
                    "stop.signature_kill",
                    self._kill(remaining, step="stop.signature_kill"),
                    process_id=remaining.id,
                )
            )
        return StopReport(outcomes=tuple(outcomes))

    def clear_lock_files(self) -> StepOutcome:
        """Remove the enumerated lock files (only call once the gateway has exited)."""
        step = "restart.lock_files"
        paths = [p for p in self._cfg.lock_file_paths if str(p).strip()]
        if not paths:
            return self._emit_outcome(step, StepOutcome.success(step, detail="none"))
        command = "rm -f " + " ".join(shlex.quote(p) for p in paths)
        try:
            proc = self._sandbox.start_process(command)
            self.wait_for_process_exit(proc, timeout_s=LOCK_CLEAR_TIMEOUT_S)
            if str(proc.status) == "failed":
                outcome = StepOutcome.failure(step, _tail(proc.get_logs().stderr, 200) or "rm failed")
            else:
                outcome = StepOutcome.success(step, detail=" ".join(paths))
        except Exception as e:
            outcome = StepOutcome.failure(step, e)
        return self._emit_outcome(step, outcome)

    def wait_for_port_free(self) -> StepOutcome:
        """Poll until nothing answers on the gateway port; elapsing the deadline is not fatal."""
        step = "restart.port_free"
        time.sleep(float(self._cfg.port_free_initial_delay_s))
        deadline = time.time() + float(self._cfg.port_free_deadline_s)
        while True:
            if self.probe() is PortProbe.UNREACHABLE:
                return self._emit_outcome(step, StepOutcome.success(step))
            if time.time() >= deadline:
                break
            time.sleep(float(self._cfg.port_free_poll_interval_s))
        outcome = StepOutcome.failure(step, f"port {self._cfg.gateway_port} still in use after {self._cfg.port_free_deadline_s:g}s")
        return self._emit_outcome(step, outcome)

    def restart(self, state: GatewayState) -> None:
        previous = state.process_id
        self._emit("restart.begin", process_id=previous)

        self.stop(previous)
        state.mark_lost()

        self.clear_lock_files()
        self.wait_for_port_free()

        self.ensure_running(state)
        self._emit("restart.complete", previous_process_id=previous, process_id=state.process_id)
