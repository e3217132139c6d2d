from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Any, Dict, Optional


def _iso_or_none(ts: float) -> Optional[str]:
    if not ts:
        return None
    return datetime.datetime.fromtimestamp(float(ts), tz=datetime.timezone.utc).isoformat()


@dataclass
class GatewayState:
    """Cached lifecycle state for one supervised gateway.

    Owned by a single GatewayStateOwner and mutated in place by the lifecycle engine
    while the owner's lock is held. Readers take `snapshot()` without locking, so the
    mutators order their writes: `process_id` is written before `ready` goes true, and
    `ready` goes false before `process_id` is cleared.
    """

    process_id: Optional[str] = None
    last_start_attempt: float = 0.0
    ready: bool = False
    last_health_check: float = 0.0

    def mark_ready(self, *, now: float, process_id: Optional[str]) -> None:
        # Always overwrite: an id left over from a failed start must not survive into ready=True.
        self.process_id = process_id
        self.last_health_check = now
        self.ready = True

    def mark_lost(self) -> None:
        self.ready = False
        self.process_id = None

    def snapshot(self) -> Dict[str, Any]:
        ready = bool(self.ready)
        process_id = self.process_id
        return {
            "ready": ready,
            "processId": process_id,
            "lastStartAttempt": _iso_or_none(self.last_start_attempt),
            "lastHealthCheck": _iso_or_none(self.last_health_check),
        }
