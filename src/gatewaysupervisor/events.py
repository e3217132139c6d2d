"""Structured lifecycle events.

Each lifecycle decision (probe result, kill attempt, start attempt, ...) is emitted as a
`LifecycleEvent` so operators can reconstruct the decision trail from logs or from the
append-only `lifecycle_events.jsonl` file under the supervisor data dir.
"""

from __future__ import annotations

import datetime
import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Protocol


logger = logging.getLogger(__name__)


def _now_utc_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


@dataclass(frozen=True)
class LifecycleEvent:
    name: str
    fields: Dict[str, Any] = field(default_factory=dict)
    at: str = field(default_factory=_now_utc_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.name, "at": self.at, **self.fields}


class EventSink(Protocol):
    def emit(self, event: LifecycleEvent) -> None: ...


class LoggingEventSink:
    """One log line per event; failures and kills at WARNING, the rest at INFO."""

    _WARN_SUFFIXES = ("failed", "unreachable", "port_busy", "timeout")

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def emit(self, event: LifecycleEvent) -> None:
        level = logging.INFO
        if event.name.endswith(self._WARN_SUFFIXES) or event.fields.get("ok") is False:
            level = logging.WARNING
        self._log.log(level, "%s %s", event.name, json.dumps(event.fields, ensure_ascii=False, sort_keys=True, default=str))


class JsonlEventSink:
    """Append-only JSONL audit trail (best-effort: write errors are logged, never raised)."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path).expanduser().resolve()
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def emit(self, event: LifecycleEvent) -> None:
        line = json.dumps(event.to_dict(), ensure_ascii=False, sort_keys=True, default=str) + "\n"
        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with open(self._path, "a", encoding="utf-8") as f:
                    f.write(line)
            except OSError as e:
                logger.warning("Failed to append lifecycle event to %s: %s", self._path, e)


class FanoutEventSink:
    def __init__(self, sinks: Iterable[EventSink]) -> None:
        self._sinks: List[EventSink] = list(sinks)

    def emit(self, event: LifecycleEvent) -> None:
        for sink in self._sinks:
            try:
                sink.emit(event)
            except Exception:
                logger.exception("Event sink %r failed for %s", sink, event.name)
