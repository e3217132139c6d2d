"""Single owner of the gateway lifecycle state and its start/restart lock.

All ensure/restart calls for one gateway go through one GatewayStateOwner, so only one
lifecycle transition runs at a time. `get_state()` never takes the lock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from .config import SupervisorConfig
from .events import EventSink, LifecycleEvent, LoggingEventSink
from .lifecycle import GatewayLifecycle
from .sandbox.base import Sandbox
from .state import GatewayState


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class LifecycleResult:
    ok: bool
    ready: bool
    process_id: Optional[str]
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.ok:
            return {"ok": False, "error": self.error or "unknown error"}
        return {"ok": True, "ready": self.ready, "processId": self.process_id}


class GatewayStateOwner:
    def __init__(
        self,
        *,
        config: SupervisorConfig,
        sandbox_factory: Callable[[], Sandbox],
        events: Optional[EventSink] = None,
    ) -> None:
        self._cfg = config
        self._sandbox_factory = sandbox_factory
        self._events: EventSink = events or LoggingEventSink()
        self._state = GatewayState()

        # Single in-flight slot guarded by a condition: waiters re-check the slot after every
        # wakeup, and the holder clears it in `finally`.
        self._cond = threading.Condition()
        self._inflight: Optional[str] = None

    @property
    def config(self) -> SupervisorConfig:
        return self._cfg

    @property
    def busy(self) -> bool:
        return self._inflight is not None

    def _lifecycle(self) -> GatewayLifecycle:
        return GatewayLifecycle(sandbox=self._sandbox_factory(), config=self._cfg, events=self._events)

    def _run_with_lock(self, op: str, fn: Callable[[], T]) -> T:
        with self._cond:
            while self._inflight is not None:
                self._cond.wait()
            self._inflight = op
        try:
            return fn()
        finally:
            with self._cond:
                self._inflight = None
                self._cond.notify_all()

    def _run(self, op: str, fn: Callable[[GatewayLifecycle, GatewayState], None]) -> LifecycleResult:
        try:
            self._run_with_lock(op, lambda: fn(self._lifecycle(), self._state))
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.exception("%s failed: %s", op, message)
            try:
                self._events.emit(LifecycleEvent(name="owner.failed", fields={"op": op, "error": message}))
            except Exception:
                logger.exception("Failed to emit owner.failed event")
            return LifecycleResult(ok=False, ready=self._state.ready, process_id=self._state.process_id, error=message)
        return LifecycleResult(ok=True, ready=self._state.ready, process_id=self._state.process_id)

    def ensure(self) -> LifecycleResult:
        return self._run("ensure", lambda lc, st: lc.ensure_running(st))

    def restart(self) -> LifecycleResult:
        return self._run("restart", lambda lc, st: lc.restart(st))

    def get_state(self) -> Dict[str, Any]:
        return self._state.snapshot()

    def handle(self, path: str) -> Tuple[int, Dict[str, Any]]:
        """Transport-agnostic request boundary: returns (status_code, json_body)."""
        p = str(path or "").strip().strip("/") or "ensure"
        if p == "ensure":
            res = self.ensure()
            return (200 if res.ok else 503), res.to_dict()
        if p == "restart":
            res = self.restart()
            return (200 if res.ok else 503), res.to_dict()
        if p == "state":
            return 200, self.get_state()
        return 404, {"error": "Not found"}
