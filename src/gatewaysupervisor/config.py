from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple


GATEWAY_PORT = 18789
GATEWAY_WS_URL = f"ws://localhost:{GATEWAY_PORT}"
STARTUP_TIMEOUT_S = 180.0
STOP_GRACEFUL_TIMEOUT_S = 10.0
HEALTH_CHECK_TIMEOUT_S = 5.0
PORT_FREE_INITIAL_DELAY_S = 3.0
PORT_FREE_POLL_INTERVAL_S = 1.0
PORT_FREE_DEADLINE_S = 15.0
PROCESS_DISCOVERY_RETRY_DELAY_S = 1.0
PROCESS_EXIT_POLL_INTERVAL_S = 0.5

START_COMMAND = "/usr/local/bin/start-moltbot.sh"
STOP_COMMAND = f"clawdbot gateway stop --url {GATEWAY_WS_URL}"

# Exact paths only: the data dir is shared with unrelated state.
LOCK_FILE_PATHS: Tuple[str, ...] = (
    "/tmp/clawdbot-gateway.lock",
    "/root/.clawdbot/gateway.lock",
)

PROCESS_SIGNATURES: Tuple[str, ...] = ("start-moltbot.sh", "clawdbot gateway")
PROCESS_SIGNATURE_EXCLUDES: Tuple[str, ...] = ("gateway stop",)

STORAGE_MOUNT_PATH = "/data/moltbot"


def _env(name: str, fallback: Optional[str] = None, *, environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    src = os.environ if environ is None else environ
    v = src.get(name)
    if v is not None and str(v).strip():
        return str(v).strip()
    if fallback:
        v2 = src.get(fallback)
        if v2 is not None and str(v2).strip():
            return str(v2).strip()
    return None


def _env_float(name: str, default: float, *, environ: Optional[Mapping[str, str]] = None) -> float:
    raw = _env(name, environ=environ)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number (got {raw!r})")
    if value < 0:
        raise ValueError(f"{name} must be >= 0 (got {raw!r})")
    return value


def _env_int(name: str, default: int, *, environ: Optional[Mapping[str, str]] = None) -> int:
    raw = _env(name, environ=environ)
    if raw is None:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer (got {raw!r})")


def _env_list(name: str, default: Tuple[str, ...], *, environ: Optional[Mapping[str, str]] = None) -> Tuple[str, ...]:
    raw = _env(name, environ=environ)
    if raw is None:
        return tuple(default)
    parts = [p.strip() for p in raw.replace(";", ",").split(",") if p.strip()]
    return tuple(parts)


@dataclass(frozen=True)
class StorageConfig:
    """Object-storage bucket mounted into the sandbox before the gateway starts."""

    bucket: Optional[str] = None
    endpoint: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    mount_path: str = STORAGE_MOUNT_PATH

    @property
    def configured(self) -> bool:
        return bool(self.bucket and self.access_key_id and self.secret_access_key)


@dataclass(frozen=True)
class SupervisorConfig:
    data_dir: Path = Path("./runtime/gatewaysupervisor")
    gateway_port: int = GATEWAY_PORT
    gateway_host: str = "127.0.0.1"
    start_command: str = START_COMMAND
    stop_command: str = STOP_COMMAND
    startup_timeout_s: float = STARTUP_TIMEOUT_S
    stop_graceful_timeout_s: float = STOP_GRACEFUL_TIMEOUT_S
    health_check_timeout_s: float = HEALTH_CHECK_TIMEOUT_S
    port_free_initial_delay_s: float = PORT_FREE_INITIAL_DELAY_S
    port_free_poll_interval_s: float = PORT_FREE_POLL_INTERVAL_S
    port_free_deadline_s: float = PORT_FREE_DEADLINE_S
    process_discovery_retry_delay_s: float = PROCESS_DISCOVERY_RETRY_DELAY_S
    process_exit_poll_interval_s: float = PROCESS_EXIT_POLL_INTERVAL_S
    lock_file_paths: Tuple[str, ...] = LOCK_FILE_PATHS
    process_signatures: Tuple[str, ...] = PROCESS_SIGNATURES
    process_signature_excludes: Tuple[str, ...] = PROCESS_SIGNATURE_EXCLUDES
    storage: StorageConfig = field(default_factory=StorageConfig)
    # Secrets and settings forwarded to the gateway (see env.build_env_vars).
    gateway_env: Dict[str, str] = field(default_factory=dict)
    event_log_enabled: bool = True

    @property
    def health_url(self) -> str:
        return f"http://localhost:{int(self.gateway_port)}/"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SupervisorConfig":
        src = os.environ if environ is None else environ
        data_dir = Path(_env("GATEWAYSUPERVISOR_DATA_DIR", environ=src) or "./runtime/gatewaysupervisor").expanduser()

        port = _env_int("GATEWAYSUPERVISOR_GATEWAY_PORT", GATEWAY_PORT, environ=src)
        if port <= 0 or port > 65535:
            raise ValueError(f"GATEWAYSUPERVISOR_GATEWAY_PORT out of range: {port}")
        stop_default = f"clawdbot gateway stop --url ws://localhost:{port}"

        storage = StorageConfig(
            bucket=_env("GATEWAYSUPERVISOR_R2_BUCKET", "R2_BUCKET_NAME", environ=src),
            endpoint=_env("GATEWAYSUPERVISOR_R2_ENDPOINT", environ=src) or _r2_endpoint_from_account(src),
            access_key_id=_env("GATEWAYSUPERVISOR_R2_ACCESS_KEY_ID", "R2_ACCESS_KEY_ID", environ=src),
            secret_access_key=_env("GATEWAYSUPERVISOR_R2_SECRET_ACCESS_KEY", "R2_SECRET_ACCESS_KEY", environ=src),
            mount_path=_env("GATEWAYSUPERVISOR_STORAGE_MOUNT_PATH", environ=src) or STORAGE_MOUNT_PATH,
        )

        from .env import managed_env_var_allowlist

        gateway_env: Dict[str, str] = {}
        for key in managed_env_var_allowlist():
            value = _env(key, environ=src)
            if value is not None:
                gateway_env[key] = value

        event_log_raw = str(_env("GATEWAYSUPERVISOR_EVENT_LOG", environ=src) or "1").lower()

        return cls(
            data_dir=data_dir,
            gateway_port=port,
            gateway_host=_env("GATEWAYSUPERVISOR_GATEWAY_HOST", environ=src) or "127.0.0.1",
            start_command=_env("GATEWAYSUPERVISOR_START_COMMAND", environ=src) or START_COMMAND,
            stop_command=_env("GATEWAYSUPERVISOR_STOP_COMMAND", environ=src) or stop_default,
            startup_timeout_s=_env_float("GATEWAYSUPERVISOR_STARTUP_TIMEOUT_S", STARTUP_TIMEOUT_S, environ=src),
            stop_graceful_timeout_s=_env_float(
                "GATEWAYSUPERVISOR_STOP_GRACEFUL_TIMEOUT_S", STOP_GRACEFUL_TIMEOUT_S, environ=src
            ),
            health_check_timeout_s=_env_float(
                "GATEWAYSUPERVISOR_HEALTH_CHECK_TIMEOUT_S", HEALTH_CHECK_TIMEOUT_S, environ=src
            ),
            port_free_initial_delay_s=_env_float(
                "GATEWAYSUPERVISOR_PORT_FREE_INITIAL_DELAY_S", PORT_FREE_INITIAL_DELAY_S, environ=src
            ),
            port_free_poll_interval_s=_env_float(
                "GATEWAYSUPERVISOR_PORT_FREE_POLL_INTERVAL_S", PORT_FREE_POLL_INTERVAL_S, environ=src
            ),
            port_free_deadline_s=_env_float("GATEWAYSUPERVISOR_PORT_FREE_DEADLINE_S", PORT_FREE_DEADLINE_S, environ=src),
            process_discovery_retry_delay_s=_env_float(
                "GATEWAYSUPERVISOR_PROCESS_DISCOVERY_RETRY_DELAY_S", PROCESS_DISCOVERY_RETRY_DELAY_S, environ=src
            ),
            process_exit_poll_interval_s=_env_float(
                "GATEWAYSUPERVISOR_PROCESS_EXIT_POLL_INTERVAL_S", PROCESS_EXIT_POLL_INTERVAL_S, environ=src
            ),
            lock_file_paths=_env_list("GATEWAYSUPERVISOR_LOCK_FILES", LOCK_FILE_PATHS, environ=src),
            process_signatures=_env_list("GATEWAYSUPERVISOR_PROCESS_SIGNATURES", PROCESS_SIGNATURES, environ=src),
            process_signature_excludes=_env_list(
                "GATEWAYSUPERVISOR_PROCESS_SIGNATURE_EXCLUDES", PROCESS_SIGNATURE_EXCLUDES, environ=src
            ),
            storage=storage,
            gateway_env=gateway_env,
            event_log_enabled=event_log_raw not in {"0", "false", "no", "off"},
        )


def _r2_endpoint_from_account(environ: Mapping[str, str]) -> Optional[str]:
    account_id = _env("CF_ACCOUNT_ID", environ=environ)
    if not account_id:
        return None
    return f"https://{account_id}.r2.cloudflarestorage.com"
