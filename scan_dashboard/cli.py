"""Command-line entry point for the security dashboard.

Subcommands
-----------
serve         Run the HTTP server (default).
ingest        Pull code-scanning results from GitHub into the store once.
seed FILE     Register the repositories listed in a YAML fleet file.
trigger ID    Dispatch the CodeQL workflow for one repository.
trigger-all   Dispatch the CodeQL workflow for every scan-enabled repository.

``trigger`` and ``trigger-all`` accept ``--wait`` to block until the poll
loop reports ``refresh`` or ``timed_out``.
"""

from __future__ import annotations

import argparse
import json
import logging
import pathlib
import sys
import threading

from dotenv import load_dotenv

from scan_dashboard.config import AppConfig
from scan_dashboard.database import db_connection
from scan_dashboard.errors import DashboardError
from scan_dashboard.ingestion import IngestionJob, seed_repositories
from scan_dashboard.log_utils import configure_logging
from scan_dashboard.orchestrator import ScanOrchestrator

log = logging.getLogger(__name__)


def _load_env() -> None:
    for candidate in (pathlib.Path.cwd() / ".env", pathlib.Path(__file__).parent / ".env"):
        if candidate.exists():
            load_dotenv(candidate)
            return


def cmd_serve(config: AppConfig, args: argparse.Namespace) -> int:
    from scan_dashboard.app import create_app

    app = create_app(config)
    app.run(host=config.server_host, port=config.server_port, debug=config.debug)
    return 0


def cmd_ingest(config: AppConfig, args: argparse.Namespace) -> int:
    summary = IngestionJob(config).run(disconnect_after=True)
    print(json.dumps(summary, indent=2))
    return 1 if summary["errors"] else 0


def cmd_seed(config: AppConfig, args: argparse.Namespace) -> int:
    with db_connection(config.db_path) as conn:
        count = seed_repositories(conn, args.file, default_owner=config.github_org)
    print(f"Registered {count} repositories from {args.file}")
    return 0


def _run_trigger(config: AppConfig, args: argparse.Namespace, start) -> int:
    finished = threading.Event()
    outcome: dict = {}

    def _listener(scope: str, signal: str, status: dict) -> None:
        outcome.update(status)
        finished.set()

    orchestrator = ScanOrchestrator(config)
    orchestrator.add_listener(_listener)
    try:
        result = start(orchestrator)
        print(json.dumps(result, indent=2))
        if args.wait and orchestrator.sessions.active_scopes():
            finished.wait()
            print(json.dumps(outcome, indent=2))
            # Let the ingestion started on completion finish before exiting.
            for task in orchestrator.background_tasks:
                task.join()
    finally:
        orchestrator.shutdown()
    return 0


def cmd_trigger(config: AppConfig, args: argparse.Namespace) -> int:
    return _run_trigger(config, args, lambda o: o.trigger_scan(args.repository))


def cmd_trigger_all(config: AppConfig, args: argparse.Namespace) -> int:
    return _run_trigger(config, args, lambda o: o.trigger_all_scans())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scan-dashboard",
        description="CodeQL security dashboard backend",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Run the HTTP server")
    sub.add_parser("ingest", help="Ingest code-scanning results once")

    p_seed = sub.add_parser("seed", help="Register repositories from a YAML file")
    p_seed.add_argument("file")

    p_trigger = sub.add_parser("trigger", help="Trigger a scan for one repository")
    p_trigger.add_argument("repository", help="Repository id or name")
    p_trigger.add_argument("--wait", action="store_true")

    p_all = sub.add_parser("trigger-all", help="Trigger scans for all enabled repositories")
    p_all.add_argument("--wait", action="store_true")
    return parser


_COMMANDS = {
    "serve": cmd_serve,
    "ingest": cmd_ingest,
    "seed": cmd_seed,
    "trigger": cmd_trigger,
    "trigger-all": cmd_trigger_all,
}


def main(argv: list[str] | None = None) -> int:
    _load_env()
    args = build_parser().parse_args(argv)
    config = AppConfig.from_env()
    configure_logging(config.log_level, config.log_format)

    handler = _COMMANDS[args.command or "serve"]
    try:
        return handler(config, args)
    except DashboardError as exc:
        log.error("%s", exc.message)
        return 1


if __name__ == "__main__":
    sys.exit(main())
