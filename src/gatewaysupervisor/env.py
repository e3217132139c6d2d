from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from .config import SupervisorConfig


@dataclass(frozen=True)
class ManagedEnvVarSpec:
    key: str
    secret: bool = False
    # Name inside the gateway environment when it differs from the supervisor's.
    target: Optional[str] = None

    @property
    def gateway_key(self) -> str:
        return self.target or self.key


def managed_env_var_allowlist() -> Dict[str, ManagedEnvVarSpec]:
    """Environment variables the supervisor forwards to the gateway process.

    Security rationale:
    - Never forward the supervisor's whole environment (PATH, LD_PRELOAD, cloud credentials, etc).
    - Storage credentials stay with the supervisor; the gateway only sees the mounted path.
    """
    specs = [
        # providers
        ManagedEnvVarSpec(key="ANTHROPIC_API_KEY", secret=True),
        ManagedEnvVarSpec(key="ANTHROPIC_BASE_URL"),
        ManagedEnvVarSpec(key="OPENAI_API_KEY", secret=True),
        # gateway
        ManagedEnvVarSpec(key="MOLTBOT_GATEWAY_TOKEN", secret=True, target="CLAWDBOT_GATEWAY_TOKEN"),
        ManagedEnvVarSpec(key="DEV_MODE", target="CLAWDBOT_DEV_MODE"),
        ManagedEnvVarSpec(key="CLAWDBOT_BIND_MODE"),
        # channels
        ManagedEnvVarSpec(key="TELEGRAM_BOT_TOKEN", secret=True),
        ManagedEnvVarSpec(key="TELEGRAM_DM_POLICY"),
        ManagedEnvVarSpec(key="DISCORD_BOT_TOKEN", secret=True),
        ManagedEnvVarSpec(key="DISCORD_DM_POLICY"),
        ManagedEnvVarSpec(key="SLACK_BOT_TOKEN", secret=True),
        ManagedEnvVarSpec(key="SLACK_APP_TOKEN", secret=True),
        # tools
        ManagedEnvVarSpec(key="CDP_SECRET", secret=True),
    ]
    return {s.key: s for s in specs}


def build_env_vars(config: SupervisorConfig) -> Dict[str, str]:
    """Assemble the gateway process environment from the supervisor config.

    Pure: reads only `config.gateway_env`; empty values are dropped.
    """
    allow = managed_env_var_allowlist()
    out: Dict[str, str] = {}
    for key, raw in (config.gateway_env or {}).items():
        spec = allow.get(str(key))
        if spec is None:
            continue
        value = str(raw if raw is not None else "").strip()
        if not value:
            continue
        if spec.key == "DEV_MODE":
            value = "true" if value.lower() in {"1", "true", "yes", "on"} else "false"
        out[spec.gateway_key] = value
    return out


def redact_env_vars(env: Dict[str, str]) -> Dict[str, str]:
    """Gateway env safe for logs and events: secret values are masked, the rest kept."""
    secret_keys = {s.gateway_key for s in managed_env_var_allowlist().values() if s.secret}
    return {k: ("***" if k in secret_keys else v) for k, v in sorted(env.items())}
