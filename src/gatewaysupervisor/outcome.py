from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class StepOutcome:
    """Result of one best-effort lifecycle step (never raised, always returned)."""

    step: str
    ok: bool
    error: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def success(cls, step: str, detail: Optional[str] = None) -> "StepOutcome":
        return cls(step=step, ok=True, detail=detail)

    @classmethod
    def failure(cls, step: str, error: BaseException | str) -> "StepOutcome":
        return cls(step=step, ok=False, error=str(error) or type(error).__name__)
