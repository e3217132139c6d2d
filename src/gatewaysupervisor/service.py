from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional

from .config import SupervisorConfig
from .events import EventSink, FanoutEventSink, JsonlEventSink, LoggingEventSink
from .owner import GatewayStateOwner
from .sandbox.base import Sandbox
from .sandbox.local import LocalSandbox


@dataclass(frozen=True)
class SupervisorService:
    """Composition root: config + sandbox + the single state owner."""

    config: SupervisorConfig
    sandbox: Sandbox
    owner: GatewayStateOwner
    events: EventSink


_service: Optional[SupervisorService] = None
_service_lock = threading.Lock()


def build_event_sink(config: SupervisorConfig) -> EventSink:
    sinks: list[EventSink] = [LoggingEventSink()]
    if config.event_log_enabled:
        sinks.append(JsonlEventSink(config.data_dir / "lifecycle_events.jsonl"))
    return FanoutEventSink(sinks)


def create_supervisor_service(
    config: Optional[SupervisorConfig] = None,
    *,
    sandbox: Optional[Sandbox] = None,
) -> SupervisorService:
    cfg = config or SupervisorConfig.from_env()
    sb: Sandbox = sandbox if sandbox is not None else LocalSandbox(base_dir=cfg.data_dir, host=cfg.gateway_host)
    events = build_event_sink(cfg)
    owner = GatewayStateOwner(config=cfg, sandbox_factory=lambda: sb, events=events)
    return SupervisorService(config=cfg, sandbox=sb, owner=owner, events=events)


def get_supervisor_service() -> SupervisorService:
    global _service
    with _service_lock:
        if _service is None:
            _service = create_supervisor_service()
        return _service


def set_supervisor_service(service: Optional[SupervisorService]) -> None:
    """Install (or clear) the process-wide service; used by embedders and tests."""
    global _service
    with _service_lock:
        _service = service
