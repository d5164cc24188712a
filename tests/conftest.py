"""Shared fixtures: a temporary store, a manual timer scheduler, fake collaborators."""

import os
import sys
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from scan_dashboard.config import AppConfig
from scan_dashboard.database import get_connection, upsert_analysis, upsert_repository
from scan_dashboard.ingestion import IngestionJob
from scan_dashboard.orchestrator import ScanOrchestrator


class FakeTimer:
    def __init__(self, delay, fn):
        self.delay = delay
        self.fn = fn
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Collects timers instead of starting threads; tests fire them by hand."""

    def __init__(self):
        self.timers = []
        self.now = 0.0

    def __call__(self, delay, fn):
        timer = FakeTimer(delay, fn)
        self.timers.append(timer)
        return timer

    def pending(self):
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def fire_next(self):
        timer = self.pending()[0]
        timer.fired = True
        self.now += timer.delay
        timer.fn()
        return timer

    def run_until_idle(self, limit=500):
        fired = 0
        while self.pending() and fired < limit:
            self.fire_next()
            fired += 1
        return fired


_next_analysis_id = [1000]


def add_repo(conn, name, owner="Web-Security-Repos", codeql_enabled=True, **extra):
    return upsert_repository(conn, {
        "owner": owner,
        "name": name,
        "codeql_enabled": codeql_enabled,
        **extra,
    })


def add_analyses(conn, repository_id, count=1, created_at="2026-10-01T12:00:00+00:00"):
    for _ in range(count):
        _next_analysis_id[0] += 1
        upsert_analysis(conn, repository_id, {
            "id": _next_analysis_id[0],
            "tool": {"name": "CodeQL", "version": "2.19.0"},
            "ref": "refs/heads/main",
            "commit_sha": "abc123",
            "results_count": 3,
            "rules_count": 40,
            "created_at": created_at,
        })


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        github_token="test-token",
        db_path=str(tmp_path / "dashboard.db"),
        rate_limit_enabled=False,
    )


@pytest.fixture
def conn(config):
    c = get_connection(config.db_path)
    yield c
    c.close()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def ingestion():
    job = MagicMock(spec=IngestionJob)
    job.run.return_value = {"repositories": 0, "analyses": 0, "alerts": 0, "errors": []}
    return job


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(config, client, ingestion, scheduler, sleeps):
    orch = ScanOrchestrator(
        config,
        client=client,
        ingestion=ingestion,
        schedule=scheduler,
        sleep=sleeps.append,
    )
    yield orch
    orch.shutdown()
    for task in orch.background_tasks:
        task.join(5)
