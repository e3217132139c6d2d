"""Single-owner lifecycle supervisor for a sandboxed gateway process."""

from .config import SupervisorConfig
from .lifecycle import GatewayLifecycle, GatewayStartError
from .owner import GatewayStateOwner, LifecycleResult
from .state import GatewayState

__version__ = "0.1.0"

__all__ = [
    "GatewayLifecycle",
    "GatewayStartError",
    "GatewayState",
    "GatewayStateOwner",
    "LifecycleResult",
    "SupervisorConfig",
    "__version__",
]
