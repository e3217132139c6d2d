from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest

from gatewaysupervisor.config import LOCK_FILE_PATHS, SupervisorConfig
from gatewaysupervisor.env import build_env_vars, managed_env_var_allowlist, redact_env_vars


@pytest.mark.basic
def test_defaults_match_gateway_constants() -> None:
    cfg = SupervisorConfig.from_env({})

    assert cfg.gateway_port == 18789
    assert cfg.startup_timeout_s == 180.0
    assert cfg.stop_graceful_timeout_s == 10.0
    assert cfg.health_check_timeout_s == 5.0
    assert cfg.port_free_initial_delay_s == 3.0
    assert cfg.port_free_poll_interval_s == 1.0
    assert cfg.port_free_deadline_s == 15.0
    assert cfg.start_command == "/usr/local/bin/start-moltbot.sh"
    assert cfg.stop_command == "clawdbot gateway stop --url ws://localhost:18789"
    assert cfg.lock_file_paths == LOCK_FILE_PATHS == ("/tmp/clawdbot-gateway.lock", "/root/.clawdbot/gateway.lock")
    assert cfg.health_url == "http://localhost:18789/"
    assert cfg.storage.configured is False


@pytest.mark.basic
def test_from_env_overrides(tmp_path: Path) -> None:
    cfg = SupervisorConfig.from_env(
        {
            "GATEWAYSUPERVISOR_DATA_DIR": str(tmp_path),
            "GATEWAYSUPERVISOR_GATEWAY_PORT": "19000",
            "GATEWAYSUPERVISOR_STARTUP_TIMEOUT_S": "30",
            "GATEWAYSUPERVISOR_LOCK_FILES": "/tmp/a.lock, /tmp/b.lock",
            "GATEWAYSUPERVISOR_EVENT_LOG": "off",
            "R2_BUCKET_NAME": "moltbot-data",
            "R2_ACCESS_KEY_ID": "ak",
            "R2_SECRET_ACCESS_KEY": "sk",
            "CF_ACCOUNT_ID": "acct",
            "ANTHROPIC_API_KEY": "sk-ant",
            "HOME": "/root",
        }
    )

    assert cfg.data_dir == tmp_path
    assert cfg.gateway_port == 19000
    assert cfg.stop_command.endswith("ws://localhost:19000")
    assert cfg.startup_timeout_s == 30.0
    assert cfg.lock_file_paths == ("/tmp/a.lock", "/tmp/b.lock")
    assert cfg.event_log_enabled is False
    assert cfg.storage.configured is True
    assert cfg.storage.endpoint == "https://acct.r2.cloudflarestorage.com"
    assert cfg.gateway_env == {"ANTHROPIC_API_KEY": "sk-ant"}


@pytest.mark.basic
@pytest.mark.parametrize(
    "key,value",
    [
        ("GATEWAYSUPERVISOR_GATEWAY_PORT", "abc"),
        ("GATEWAYSUPERVISOR_GATEWAY_PORT", "70000"),
        ("GATEWAYSUPERVISOR_STARTUP_TIMEOUT_S", "-1"),
        ("GATEWAYSUPERVISOR_HEALTH_CHECK_TIMEOUT_S", "soon"),
    ],
)
def test_invalid_numeric_settings_fail_fast(key: str, value: str) -> None:
    with pytest.raises(ValueError):
        SupervisorConfig.from_env({key: value})


@pytest.mark.basic
def test_build_env_vars_renames_and_filters() -> None:
    cfg = SupervisorConfig(
        gateway_env={
            "MOLTBOT_GATEWAY_TOKEN": "tok",
            "DEV_MODE": "1",
            "TELEGRAM_BOT_TOKEN": "  ",
            "LD_PRELOAD": "/evil.so",
            "OPENAI_API_KEY": "sk-oai",
        }
    )

    env = build_env_vars(cfg)

    assert env == {"CLAWDBOT_GATEWAY_TOKEN": "tok", "CLAWDBOT_DEV_MODE": "true", "OPENAI_API_KEY": "sk-oai"}


@pytest.mark.basic
def test_build_env_vars_is_pure() -> None:
    cfg = SupervisorConfig(gateway_env={"ANTHROPIC_API_KEY": "sk-ant"})
    snapshot = dataclasses.asdict(cfg)

    assert build_env_vars(cfg) == build_env_vars(cfg)
    assert dataclasses.asdict(cfg) == snapshot


@pytest.mark.basic
def test_storage_credentials_are_never_forwarded() -> None:
    allow = managed_env_var_allowlist()
    assert not any(k.startswith("R2_") for k in allow)
    assert all(spec.gateway_key for spec in allow.values())


@pytest.mark.basic
def test_from_env_reads_exit_poll_and_signature_excludes() -> None:
    cfg = SupervisorConfig.from_env(
        {
            "GATEWAYSUPERVISOR_PROCESS_EXIT_POLL_INTERVAL_S": "0.2",
            "GATEWAYSUPERVISOR_PROCESS_SIGNATURE_EXCLUDES": "gateway stop; gateway status",
        }
    )

    assert cfg.process_exit_poll_interval_s == 0.2
    assert cfg.process_signature_excludes == ("gateway stop", "gateway status")
    assert SupervisorConfig.from_env({}).process_signature_excludes == ("gateway stop",)


@pytest.mark.basic
def test_redact_env_vars_masks_secrets_by_gateway_name() -> None:
    cfg = SupervisorConfig(gateway_env={"MOLTBOT_GATEWAY_TOKEN": "tok", "CLAWDBOT_BIND_MODE": "lan"})

    redacted = redact_env_vars(build_env_vars(cfg))

    assert redacted == {"CLAWDBOT_BIND_MODE": "lan", "CLAWDBOT_GATEWAY_TOKEN": "***"}
