"""Ingestion job: pull finished code-scanning results from GitHub into the store.

A run walks the organisation's repositories, then for each stored
repository fetches its code-scanning analyses and alerts and upserts them.
Every write is keyed on upstream identifiers, so running the job again (or
concurrently from a poll completion and a manual "fetch latest") never
creates duplicate rows.

A fleet can also be declared up front in a YAML file::

    repositories:
      - name: sqli-demo
        owner: Web-Security-Repos
        vulnerability_type: sql-injection
        language: JavaScript
        codeql_enabled: true
"""

from __future__ import annotations

import logging
import pathlib
import sqlite3
import threading

import requests
import yaml

from scan_dashboard.config import AppConfig
from scan_dashboard.database import (
    get_connection,
    list_repositories,
    save_repository,
    upsert_alert,
    upsert_analysis,
    upsert_repository,
)
from scan_dashboard.errors import ConfigurationError
from scan_dashboard.github_client import GitHubClient
from scan_dashboard.log_utils import sanitize_log

log = logging.getLogger(__name__)


class IngestionJob:
    def __init__(
        self,
        config: AppConfig,
        client: GitHubClient | None = None,
        db_path: str | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._db_path = db_path or config.db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    @property
    def client(self) -> GitHubClient:
        if self._client is None:
            self._client = GitHubClient(self._config.github_token)
        return self._client

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = get_connection(self._db_path)
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def run(self, disconnect_after: bool = False) -> dict:
        """Ingest everything once and return a summary of what changed.

        Runs are serialised; a second caller waits for the first to finish.
        With *disconnect_after* the job's connection is closed at the end,
        which is what one-shot CLI runs want.
        """
        if not self._config.has_credential:
            raise ConfigurationError("GITHUB_TOKEN not configured")

        with self._lock:
            try:
                return self._run_once(self._connection())
            finally:
                if disconnect_after:
                    self.close()

    def _run_once(self, conn: sqlite3.Connection) -> dict:
        summary = {"repositories": 0, "analyses": 0, "alerts": 0, "errors": []}
        self._sync_repositories(conn)

        for repo in list_repositories(conn):
            try:
                new_analyses, new_alerts = self._ingest_repository(conn, repo)
            except (requests.RequestException, KeyError, ValueError) as exc:
                log.warning(
                    "Ingestion failed for %s: %s",
                    sanitize_log(repo["full_name"]), exc,
                    extra={"repo": repo["full_name"]},
                )
                summary["errors"].append({"repo": repo["full_name"], "error": str(exc)})
                continue
            summary["repositories"] += 1
            summary["analyses"] += new_analyses
            summary["alerts"] += new_alerts

        log.info(
            "Ingestion finished: %d repos, %d new analyses, %d new alerts, %d errors",
            summary["repositories"], summary["analyses"], summary["alerts"], len(summary["errors"]),
        )
        return summary

    def _sync_repositories(self, conn: sqlite3.Connection) -> None:
        org = self._config.github_org
        if not org:
            return
        try:
            remote = self.client.list_org_repos(org)
        except requests.RequestException as exc:
            log.warning("Could not list repositories for %s: %s", sanitize_log(org), exc)
            return
        for r in remote:
            upsert_repository(conn, {
                "owner": (r.get("owner") or {}).get("login", org),
                "name": r.get("name", ""),
                "full_name": r.get("full_name", ""),
                "description": r.get("description") or "",
                "language": r.get("language") or "",
                "html_url": r.get("html_url") or "",
                "default_branch": r.get("default_branch") or "",
            })

    def _ingest_repository(self, conn: sqlite3.Connection, repo: dict) -> tuple[int, int]:
        owner, name = repo["owner"], repo["name"]
        analyses = self.client.list_code_scanning_analyses(owner, name)
        if analyses is None:
            if repo["codeql_enabled"]:
                repo["codeql_enabled"] = False
                save_repository(conn, repo)
            return 0, 0

        if not repo["codeql_enabled"]:
            repo["codeql_enabled"] = True
            save_repository(conn, repo)

        new_analyses = sum(1 for a in analyses if upsert_analysis(conn, repo["id"], a))
        alerts = self.client.list_code_scanning_alerts(owner, name)
        new_alerts = sum(1 for a in alerts if upsert_alert(conn, repo["id"], a))
        return new_analyses, new_alerts


def seed_repositories(conn: sqlite3.Connection, path: str | pathlib.Path, default_owner: str = "") -> int:
    """Register the repositories listed in a YAML fleet file; returns the count."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    entries = data.get("repositories", []) if isinstance(data, dict) else data
    count = 0
    for entry in entries or []:
        if isinstance(entry, str):
            owner, _, name = entry.rpartition("/")
            entry = {"owner": owner, "name": name}
        name = entry.get("name", "")
        if not name:
            log.warning("Skipping fleet entry without a name: %s", sanitize_log(entry))
            continue
        upsert_repository(conn, {
            **entry,
            "owner": entry.get("owner") or default_owner,
            "codeql_enabled": bool(entry.get("codeql_enabled", True)),
        })
        count += 1
    return count
