"""Configuration for the security dashboard backend.

All settings are loaded from environment variables (optionally seeded from a
``.env`` file by the entry point).  Nothing is strictly required to start
the server: a missing ``GITHUB_TOKEN`` only surfaces when a scan operation
needs to dispatch a workflow, as a ``ConfigurationError``.
"""

from __future__ import annotations

import os
import pathlib
from dataclasses import dataclass

DEFAULT_DB_PATH = str(pathlib.Path(__file__).resolve().parent / "dashboard.db")


@dataclass(frozen=True)
class AppConfig:
    github_token: str = ""
    github_org: str = "Web-Security-Repos"
    default_branch: str = "main"
    workflow_file: str = "codeql.yml"
    correlation_input: str = ""

    db_path: str = DEFAULT_DB_PATH

    poll_interval: float = 30.0
    max_poll_attempts: int = 40
    settle_delay: float = 3.0
    dispatch_throttle: float = 0.5

    server_host: str = "0.0.0.0"
    server_port: int = 3001
    debug: bool = False
    rate_limit_enabled: bool = True

    log_level: str = "INFO"
    log_format: str = "text"

    @property
    def has_credential(self) -> bool:
        return bool(self.github_token)

    @classmethod
    def from_env(cls) -> AppConfig:
        return cls(
            github_token=os.environ.get("GITHUB_TOKEN", ""),
            github_org=os.environ.get("GITHUB_ORG", "Web-Security-Repos"),
            default_branch=os.environ.get("DEFAULT_BRANCH", "main"),
            workflow_file=os.environ.get("WORKFLOW_FILE", "codeql.yml"),
            correlation_input=os.environ.get("DISPATCH_CORRELATION_INPUT", ""),
            db_path=os.environ.get("DASHBOARD_DB_PATH", DEFAULT_DB_PATH),
            poll_interval=float(os.environ.get("POLL_INTERVAL_SECONDS", "30")),
            max_poll_attempts=int(os.environ.get("MAX_POLL_ATTEMPTS", "40")),
            settle_delay=float(os.environ.get("SETTLE_DELAY_SECONDS", "3")),
            dispatch_throttle=float(os.environ.get("DISPATCH_THROTTLE_SECONDS", "0.5")),
            server_host=os.environ.get("SERVER_HOST", "0.0.0.0"),
            server_port=int(os.environ.get("PORT", "3001")),
            debug=os.environ.get("FLASK_DEBUG", "false").lower() == "true",
            rate_limit_enabled=os.environ.get("RATELIMIT_ENABLED", "true").lower() == "true",
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_format=os.environ.get("LOG_FORMAT", "text"),
        )
