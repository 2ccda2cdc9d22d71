"""
ClearMail command line.

    clearmail run [--since ISO]     process the inbox once
    clearmail watch                 process every `refresh_interval` seconds
    clearmail serve [--host H] [--port N]
                                    HTTP trigger (/health, /process-emails)
    clearmail config                print the effective configuration

Without a command, `settings.run_mode` decides: "script" watches, "server"
serves.
"""

import argparse
import json
import logging
import sys
import time
from typing import Callable, List, Optional

from .__version__ import __version__
from .core.orchestrator import Orchestrator, SessionResult
from .errors import ConfigError
from .server import serve
from .utils.config import load_config, settings_from_config
from .utils.logger import setup_logger

logger = logging.getLogger(__name__)

_REDACTED_KEYS = {"api_key", "password"}
_RUN_MODE_COMMANDS = {"script": "watch", "server": "serve"}


def _redact(value):
    if isinstance(value, dict):
        return {k: ("***" if k in _REDACTED_KEYS and v else _redact(v)) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact(v) for v in value]
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="clearmail", description="LLM-powered IMAP inbox triage")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="Path to config.json (default: CLEARMAIL_CONFIG or clearmail/config.json)")
    parser.add_argument("--log-level", help="Override the configured log level")

    sub = parser.add_subparsers(dest="command")
    run = sub.add_parser("run", help="Process the inbox once")
    run.add_argument("--since", help="Process messages since this ISO-8601 timestamp")
    sub.add_parser("watch", help="Process the inbox periodically")
    serve_parser = sub.add_parser("serve", help="Run the HTTP trigger server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Interface to bind (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, help="Port to listen on (default: settings.port_number)")
    sub.add_parser("config", help="Print the effective configuration")
    return parser


def _print_result(result: SessionResult) -> None:
    print(json.dumps({"statusCode": result.status_code, "message": result.message, "stats": result.stats}, indent=2))


def watch(orchestrator: Orchestrator, interval: float, sleep: Callable[[float], None] = time.sleep,
          max_sessions: Optional[int] = None) -> int:
    """Run sessions back to back, `interval` seconds apart, until interrupted."""
    logger.info(f"Setting up periodic checks every {interval:g} seconds")
    sessions = 0
    try:
        while max_sessions is None or sessions < max_sessions:
            result = orchestrator.run_session()
            sessions += 1
            logger.info(f"Session {sessions} finished: {result.status_code} {result.message}")
            if max_sessions is not None and sessions >= max_sessions:
                break
            sleep(interval)
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping periodic checks")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        cfg = load_config(args.config)
        settings = settings_from_config(cfg)
    except ConfigError as e:
        print(f"clearmail: {e}", file=sys.stderr)
        return 2

    command = args.command or _RUN_MODE_COMMANDS[settings.run_mode]

    setup_logger(level=args.log_level or settings.log_level)
    logger.info(f"ClearMail {__version__} started ({command})")

    if command == "config":
        print(json.dumps(_redact(cfg), indent=2, ensure_ascii=False))
        return 0

    try:
        orchestrator = Orchestrator(settings)
    except (ConfigError, ValueError) as e:
        logger.error(f"Could not start: {e}")
        return 2

    try:
        if command == "watch":
            return watch(orchestrator, settings.refresh_interval)
        if command == "serve":
            host = getattr(args, "host", "127.0.0.1")
            return serve(orchestrator, host=host, port=getattr(args, "port", None) or settings.port_number)

        result = orchestrator.run_session(since=getattr(args, "since", None))
        _print_result(result)
        return 0 if result.ok else 1
    finally:
        orchestrator.close()


if __name__ == "__main__":
    sys.exit(main())
