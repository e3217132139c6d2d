from .base import (
    ACTIVE_STATUSES,
    PortWaitTimeout,
    ProcessExitedError,
    ProcessLogs,
    Sandbox,
    SandboxError,
    SandboxProcess,
)
from .local import LocalProcess, LocalSandbox

__all__ = [
    "ACTIVE_STATUSES",
    "LocalProcess",
    "LocalSandbox",
    "PortWaitTimeout",
    "ProcessExitedError",
    "ProcessLogs",
    "Sandbox",
    "SandboxError",
    "SandboxProcess",
]
