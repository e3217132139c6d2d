from __future__ import annotations

import json
import sys
import types

import pytest

from gatewaysupervisor.service import create_supervisor_service, set_supervisor_service


@pytest.mark.basic
def test_cli_serve_invokes_uvicorn(monkeypatch: pytest.MonkeyPatch) -> None:
    from gatewaysupervisor import cli as supervisor_cli

    called: dict[str, object] = {}

    uvicorn = types.ModuleType("uvicorn")

    def _run(app: str, *, host: str, port: int, log_config) -> None:
        called["app"] = app
        called["host"] = host
        called["port"] = port
        called["log_config"] = log_config

    uvicorn.run = _run  # type: ignore[attr-defined]
    monkeypatch.setitem(sys.modules, "uvicorn", uvicorn)

    supervisor_cli.main(["serve", "--host", "127.0.0.1", "--port", "9999"])

    assert called["app"] == "gatewaysupervisor.app:app"
    assert called["host"] == "127.0.0.1"
    assert called["port"] == 9999
    assert called["log_config"] is None


@pytest.mark.basic
def test_cli_ensure_prints_json_and_exits_zero(fake_sandbox, supervisor_config, capsys: pytest.CaptureFixture[str]) -> None:
    from gatewaysupervisor import cli as supervisor_cli

    set_supervisor_service(create_supervisor_service(supervisor_config, sandbox=fake_sandbox))
    try:
        supervisor_cli.main(["ensure"])
        out = json.loads(capsys.readouterr().out)
        assert out == {"ok": True, "ready": True, "processId": "proc-1"}

        supervisor_cli.main(["state"])
        st = json.loads(capsys.readouterr().out)
        assert st["ready"] is True
    finally:
        set_supervisor_service(None)


@pytest.mark.basic
def test_cli_failure_exits_nonzero(fake_sandbox, supervisor_config, capsys: pytest.CaptureFixture[str]) -> None:
    from gatewaysupervisor import cli as supervisor_cli

    fake_sandbox.spawn_error = RuntimeError("spawn refused")
    set_supervisor_service(create_supervisor_service(supervisor_config, sandbox=fake_sandbox))
    try:
        with pytest.raises(SystemExit) as ei:
            supervisor_cli.main(["restart"])
        assert ei.value.code == 1
        out = json.loads(capsys.readouterr().out)
        assert out["ok"] is False
        assert "spawn refused" in out["error"]
    finally:
        set_supervisor_service(None)


@pytest.mark.basic
def test_cli_reports_invalid_configuration(monkeypatch: pytest.MonkeyPatch) -> None:
    from gatewaysupervisor import cli as supervisor_cli

    set_supervisor_service(None)
    monkeypatch.setenv("GATEWAYSUPERVISOR_GATEWAY_PORT", "not-a-port")

    with pytest.raises(SystemExit) as ei:
        supervisor_cli.main(["state"])
    assert ei.value.code == 2
