from __future__ import annotations

import argparse
import copy
import json
import logging
import sys


def _stderr(line: str) -> None:
    print(str(line), file=sys.stderr)


_LOG_FMT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_LOG_DATEFMT = "%H:%M:%S"


def _configure_console_logging(level: int = logging.INFO) -> None:
    """Console logging shared by the CLI commands and the uvicorn server."""
    formatter = logging.Formatter(_LOG_FMT, datefmt=_LOG_DATEFMT)
    root = logging.getLogger()
    if root.handlers:
        for h in list(root.handlers):
            h.setFormatter(formatter)
        root.setLevel(int(level))
        return
    logging.basicConfig(level=int(level), format=_LOG_FMT, datefmt=_LOG_DATEFMT)


def _build_uvicorn_log_config(*, uvicorn) -> dict:
    """Return a uvicorn log_config dict that matches the console format."""
    base = getattr(getattr(uvicorn, "config", None), "LOGGING_CONFIG", None)
    if not isinstance(base, dict):
        return {}
    log_config = copy.deepcopy(base)

    access_fmt = '%(asctime)s [%(levelname)s] %(name)s: %(client_addr)s - "%(request_line)s" %(status_code)s'
    fmts = log_config.setdefault("formatters", {})
    fmts["default"] = {"()": "logging.Formatter", "fmt": _LOG_FMT, "datefmt": _LOG_DATEFMT}
    fmts["access"] = {"()": "uvicorn.logging.AccessFormatter", "fmt": access_fmt, "datefmt": _LOG_DATEFMT, "use_colors": False}
    return log_config


def _print_json(obj: dict) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="gatewaysupervisor", description="Gateway supervisor (ensure / restart / state)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="cmd", required=True)

    serve = sub.add_parser("serve", help="Run the supervisor HTTP API")
    serve.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8787, help="Bind port (default: 8787)")

    sub.add_parser("ensure", help="Ensure the gateway is running (starts it when needed)")
    sub.add_parser("restart", help="Stop the gateway, clear lock files, and start it again")
    sub.add_parser("state", help="Print the cached gateway state")

    args = parser.parse_args(argv)
    _configure_console_logging(logging.DEBUG if args.verbose else logging.INFO)

    if args.cmd == "serve":
        import uvicorn

        host = str(args.host or "")
        if host in {"0.0.0.0", "::"}:
            _stderr(
                "[WARN] Supervisor is binding to a non-loopback address. "
                "The restart endpoint is unauthenticated; restrict access at the network layer."
            )
        uvicorn.run(
            "gatewaysupervisor.app:app",
            host=host,
            port=int(args.port),
            log_config=_build_uvicorn_log_config(uvicorn=uvicorn) or None,
        )
        return

    from .service import get_supervisor_service

    try:
        owner = get_supervisor_service().owner
    except ValueError as e:
        _stderr(f"Invalid configuration: {e}")
        raise SystemExit(2)

    status, body = owner.handle(args.cmd)
    _print_json(body)
    if status != 200:
        raise SystemExit(1)


if __name__ == "__main__":  # pragma: no cover
    main()
