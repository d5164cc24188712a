"""Tests for scan_dashboard/config.py, scan_dashboard/log_utils.py and the CLI."""

import json
import logging
import os
import sys
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from conftest import add_repo
from scan_dashboard import cli
from scan_dashboard.config import AppConfig
from scan_dashboard.database import get_repository
from scan_dashboard.log_utils import JSONFormatter, configure_logging, sanitize_log


class TestAppConfig:
    def test_defaults(self, monkeypatch):
        for name in ("GITHUB_TOKEN", "POLL_INTERVAL_SECONDS", "MAX_POLL_ATTEMPTS", "PORT"):
            monkeypatch.delenv(name, raising=False)
        cfg = AppConfig.from_env()
        assert cfg.poll_interval == 30.0
        assert cfg.max_poll_attempts == 40
        assert cfg.settle_delay == 3.0
        assert cfg.dispatch_throttle == 0.5
        assert cfg.server_port == 3001
        assert cfg.has_credential is False

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_x")
        monkeypatch.setenv("POLL_INTERVAL_SECONDS", "5")
        monkeypatch.setenv("WORKFLOW_FILE", "scan.yml")
        monkeypatch.setenv("DISPATCH_CORRELATION_INPUT", "request_id")
        monkeypatch.setenv("RATELIMIT_ENABLED", "false")
        cfg = AppConfig.from_env()
        assert cfg.has_credential is True
        assert cfg.poll_interval == 5.0
        assert cfg.workflow_file == "scan.yml"
        assert cfg.correlation_input == "request_id"
        assert cfg.rate_limit_enabled is False

    def test_frozen(self):
        cfg = AppConfig()
        with pytest.raises(AttributeError):
            cfg.github_token = "x"


class TestSanitizeLog:
    def test_strips_newlines(self):
        assert sanitize_log("repo\nFAKE ENTRY\r") == "repoFAKE ENTRY"

    def test_non_string(self):
        assert sanitize_log(42) == "42"


class TestJSONFormatter:
    def test_includes_extra_fields(self):
        record = logging.LogRecord("scan", logging.INFO, __file__, 1, "dispatched %s", ("x",), None)
        record.scope = "12"
        record.request_id = "abc"
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "dispatched x"
        assert entry["level"] == "INFO"
        assert entry["scope"] == "12"
        assert entry["request_id"] == "abc"
        assert "repo" not in entry


class TestConfigureLogging:
    def test_replaces_previous_handler(self):
        root = logging.getLogger()
        before = list(root.handlers)
        try:
            configure_logging("DEBUG", "text")
            configure_logging("WARNING", "json")
            ours = [h for h in root.handlers if h not in before]
            assert len(ours) == 1
            assert isinstance(ours[0].formatter, JSONFormatter)
            assert root.level == logging.WARNING
        finally:
            for h in list(root.handlers):
                if h not in before:
                    root.removeHandler(h)

    def test_writes_to_stderr(self, capsys):
        root = logging.getLogger()
        before = list(root.handlers)
        try:
            configure_logging("INFO", "text")
            logging.getLogger("scan_dashboard.test").info("hello dashboard")
            assert "hello dashboard" in capsys.readouterr().err
        finally:
            for h in list(root.handlers):
                if h not in before:
                    root.removeHandler(h)


class TestCli:
    @pytest.fixture(autouse=True)
    def _env(self, monkeypatch, config):
        monkeypatch.setattr(cli, "_load_env", lambda: None)
        monkeypatch.setattr(cli.AppConfig, "from_env", classmethod(lambda cls: config))
        monkeypatch.setattr(cli, "configure_logging", lambda *a, **kw: None)

    def test_seed(self, config, conn, tmp_path, capsys):
        fleet = tmp_path / "fleet.yml"
        fleet.write_text("repositories:\n  - name: demo\n")
        assert cli.main(["seed", str(fleet)]) == 0
        assert "Registered 1 repositories" in capsys.readouterr().out
        assert get_repository(conn, "demo")["codeql_enabled"] is True

    def test_trigger_prints_result(self, conn, capsys):
        repo_id = add_repo(conn, "repo-a")
        fake = MagicMock()
        fake.trigger_scan.return_value = {"success": True, "message": "CodeQL workflow triggered for repo-a"}
        fake.sessions.active_scopes.return_value = []
        with patch.object(cli, "ScanOrchestrator", return_value=fake):
            assert cli.main(["trigger", str(repo_id)]) == 0
        fake.trigger_scan.assert_called_once_with(str(repo_id))
        fake.shutdown.assert_called_once()
        assert "CodeQL workflow triggered for repo-a" in capsys.readouterr().out

    def test_dashboard_error_exits_nonzero(self, conn):
        assert cli.main(["trigger", "999"]) == 1

    def test_ingest_reports_errors(self, capsys):
        job = MagicMock()
        job.run.return_value = {"repositories": 1, "analyses": 0, "alerts": 0, "errors": [{"repo": "x", "error": "y"}]}
        with patch.object(cli, "IngestionJob", return_value=job):
            assert cli.main(["ingest"]) == 1
        job.run.assert_called_once_with(disconnect_after=True)
