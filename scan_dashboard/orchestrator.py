"""Scan orchestration: trigger a CodeQL workflow, poll for its result, ingest.

Lifecycle per scope (one repository id, or ``"*"`` for the whole fleet)::

    idle -> dispatching -> polling -> completed | timed_out

* ``dispatching`` moves to ``polling`` only when at least one dispatch
  succeeded; a failed dispatch returns the scope to ``idle`` with the error.
* ``polling`` re-counts the scope's analyses every ``poll_interval`` seconds
  for at most ``max_poll_attempts`` checks.  The first count above the
  baseline starts one ingestion run and, ``settle_delay`` seconds later,
  signals ``refresh``.  Running out of attempts signals ``timed_out``
  without ingesting anything.  A failing check is logged and the loop
  carries on.
* Triggering a scope again while it is polling cancels the running session
  before the new dispatch starts.

Completion is detected by analysis-count growth alone, so a scan started
elsewhere for the same scope (another operator, a scheduled workflow) is
indistinguishable from ours.  When ``DISPATCH_CORRELATION_INPUT`` is set,
every dispatch carries the request id as a workflow input so runs can at
least be matched up after the fact.

Timers are ``threading.Timer`` objects by default; tests inject a manual
scheduler to drive the loop deterministically.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from scan_dashboard.config import AppConfig
from scan_dashboard.database import (
    ALL_REPOSITORIES,
    count_analyses,
    db_connection,
    get_repository,
    insert_audit_log,
    list_repositories,
    stamp_last_scan,
)
from scan_dashboard.errors import (
    ConfigurationError,
    DashboardError,
    NotFoundError,
    TransientPollError,
    WorkflowNotConfigured,
)
from scan_dashboard.github_client import GitHubClient
from scan_dashboard.ingestion import IngestionJob
from scan_dashboard.log_utils import sanitize_log

log = logging.getLogger(__name__)

SIGNAL_REFRESH = "refresh"
SIGNAL_TIMED_OUT = "timed_out"

Scheduler = Callable[[float, Callable[[], None]], Any]
Listener = Callable[[str, str, dict], None]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def thread_timer(delay: float, fn: Callable[[], None]) -> threading.Timer:
    t = threading.Timer(delay, fn)
    t.daemon = True
    t.start()
    return t


class ScanState(str, Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    POLLING = "polling"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ScanRequest:
    """What a poll loop needs to know about the trigger that started it.

    ``baseline_count`` is read before the dispatch call is made, so any
    analysis produced by the dispatched run shows up as growth.
    """

    scope: str
    baseline_count: int
    repository_id: int | None = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: str = field(default_factory=_now)


class PollSession:
    """One bounded poll loop driven by a chain of one-shot timers.

    At most one timer is pending at any time.  ``cancel()`` clears it under
    the session lock, and every tick re-checks the cancelled flag under the
    same lock before counting, so no check starts after cancellation.
    """

    def __init__(
        self,
        request: ScanRequest,
        count: Callable[[], int],
        *,
        interval: float,
        max_attempts: int,
        settle_delay: float,
        schedule: Scheduler,
        on_check: Callable[[PollSession], None],
        on_growth: Callable[[PollSession], None],
        on_complete: Callable[[PollSession], None],
        on_timeout: Callable[[PollSession], None],
    ) -> None:
        self.request = request
        self.attempts = 0
        self.last_count: int | None = None
        self._count = count
        self._interval = interval
        self._max_attempts = max_attempts
        self._settle_delay = settle_delay
        self._schedule = schedule
        self._on_check = on_check
        self._on_growth = on_growth
        self._on_complete = on_complete
        self._on_timeout = on_timeout
        self._lock = threading.Lock()
        self._timer: Any = None
        self._cancelled = False
        self._done = False

    @property
    def scope(self) -> str:
        return self.request.scope

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        return not (self._cancelled or self._done)

    def start(self) -> None:
        with self._lock:
            if self.active and self._timer is None:
                self._timer = self._schedule(self._interval, self._tick)

    def cancel(self) -> bool:
        """Stop the loop; returns ``False`` if it had already ended."""
        with self._lock:
            if not self.active:
                return False
            self._cancelled = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        log.info("Poll session cancelled", extra={"scope": self.scope, "request_id": self.request.request_id})
        return True

    def _tick(self) -> None:
        with self._lock:
            if not self.active:
                return
            self._timer = None
            self.attempts += 1
            attempt = self.attempts

        current: int | None
        try:
            current = self._count()
        except Exception as exc:
            err = TransientPollError(f"completion check {attempt} failed: {exc}")
            log.warning("%s", err.message, extra={"scope": self.scope})
            current = None

        with self._lock:
            if self._cancelled:
                return
            if current is not None:
                self.last_count = current
            if current is not None and current > self.request.baseline_count:
                outcome = "growth"
            elif attempt >= self._max_attempts:
                self._done = True
                outcome = "timeout"
            else:
                self._timer = self._schedule(self._interval, self._tick)
                outcome = "pending"

        if outcome == "growth":
            self._on_growth(self)
            with self._lock:
                if not self._cancelled:
                    self._timer = self._schedule(self._settle_delay, self._settled)
        elif outcome == "timeout":
            self._on_timeout(self)
        else:
            self._on_check(self)

    def _settled(self) -> None:
        with self._lock:
            if not self.active:
                return
            self._timer = None
            self._done = True
        self._on_complete(self)


class SessionRegistry:
    """Maps a scope to its single live poll session."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, PollSession] = {}

    def replace(self, scope: str, session: PollSession) -> PollSession | None:
        """Install *session* for *scope*, cancelling whatever was there."""
        with self._lock:
            previous = self._sessions.get(scope)
            self._sessions[scope] = session
            if previous is not None:
                previous.cancel()
        return previous

    def cancel(self, scope: str) -> bool:
        with self._lock:
            previous = self._sessions.pop(scope, None)
            return previous.cancel() if previous is not None else False

    def cancel_all(self) -> int:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            return sum(1 for s in sessions if s.cancel())

    def get(self, scope: str) -> PollSession | None:
        with self._lock:
            return self._sessions.get(scope)

    def is_current(self, session: PollSession) -> bool:
        with self._lock:
            return self._sessions.get(session.scope) is session

    def discard(self, session: PollSession) -> None:
        with self._lock:
            if self._sessions.get(session.scope) is session:
                del self._sessions[session.scope]

    def active_scopes(self) -> list[str]:
        with self._lock:
            return sorted(s for s, sess in self._sessions.items() if sess.active)


class BackgroundTask:
    """A detached thread whose failure is reported rather than lost."""

    def __init__(
        self,
        name: str,
        scope: str,
        target: Callable[[], Any],
        on_error: Callable[[BackgroundTask, Exception], None],
    ) -> None:
        self.name = name
        self.scope = scope
        self.started_at = _now()
        self.result: Any = None
        self.error: Exception | None = None
        self._target = target
        self._on_error = on_error
        self._thread = threading.Thread(target=self._run, name=f"{name}:{scope}", daemon=True)

    def start(self) -> BackgroundTask:
        self._thread.start()
        return self

    def join(self, timeout: float | None = None) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def done(self) -> bool:
        return self._thread.ident is not None and not self._thread.is_alive()

    def _run(self) -> None:
        try:
            self.result = self._target()
        except Exception as exc:
            self.error = exc
            self._on_error(self, exc)


class ScanOrchestrator:
    def __init__(
        self,
        config: AppConfig,
        *,
        client: GitHubClient | None = None,
        ingestion: IngestionJob | None = None,
        db_path: str | None = None,
        schedule: Scheduler = thread_timer,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._client = client
        self._db_path = db_path or config.db_path
        self._ingestion = ingestion or IngestionJob(config, client=client, db_path=self._db_path)
        self._schedule = schedule
        self._sleep = sleep
        self._sessions = SessionRegistry()
        self._status: dict[str, dict] = {}
        self._status_lock = threading.Lock()
        self._listeners: list[Listener] = []
        self._tasks: list[BackgroundTask] = []
        self._tasks_lock = threading.Lock()

    @property
    def client(self) -> GitHubClient:
        if self._client is None:
            self._client = GitHubClient(self._config.github_token)
        return self._client

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    @property
    def background_tasks(self) -> list[BackgroundTask]:
        with self._tasks_lock:
            return list(self._tasks)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self, scope: str) -> dict:
        with self._status_lock:
            current = self._status.get(scope)
            if current is None:
                return {"scope": scope, "state": ScanState.IDLE.value}
            return dict(current)

    def statuses(self) -> list[dict]:
        with self._status_lock:
            return [dict(s) for _, s in sorted(self._status.items())]

    def _set_status(self, scope: str, state: ScanState, **fields: Any) -> dict:
        with self._status_lock:
            entry = self._status.get(scope, {"scope": scope})
            entry.update(fields)
            entry["state"] = state.value
            entry["updated_at"] = _now()
            self._status[scope] = entry
            return dict(entry)

    def _emit(self, scope: str, signal: str, status: dict) -> None:
        for listener in list(self._listeners):
            try:
                listener(scope, signal, status)
            except Exception:
                log.exception("Scan listener failed for signal %s", signal, extra={"scope": scope})

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------

    def _require_credential(self) -> None:
        if not self._config.has_credential:
            raise ConfigurationError("GITHUB_TOKEN not configured")

    def _dispatch(self, repo: dict, request: ScanRequest) -> None:
        inputs = None
        if self._config.correlation_input:
            inputs = {self._config.correlation_input: request.request_id}
        self.client.dispatch_workflow(
            repo.get("owner") or self._config.github_org,
            repo["name"],
            self._config.workflow_file,
            repo.get("default_branch") or self._config.default_branch,
            inputs=inputs,
        )

    def trigger_scan(self, repository_id: int | str) -> dict:
        """Dispatch the scan workflow for one repository and start polling.

        Returns as soon as the dispatch call resolves.
        """
        self._require_credential()

        with db_connection(self._db_path) as conn:
            repo = get_repository(conn, repository_id)
            if repo is None:
                raise NotFoundError("Repository not found")
            scope = str(repo["id"])

            if not repo["codeql_enabled"]:
                self._set_status(scope, ScanState.IDLE, error=WorkflowNotConfigured.DEFAULT_MESSAGE)
                raise WorkflowNotConfigured()

            request = ScanRequest(
                scope=scope,
                baseline_count=count_analyses(conn, repo["id"]),
                repository_id=repo["id"],
            )
            self._sessions.cancel(scope)
            self._set_status(
                scope, ScanState.DISPATCHING,
                request_id=request.request_id, baseline_count=request.baseline_count,
                attempts=0, last_count=None, signal=None, error=None,
                message=f"Triggering CodeQL scan for {repo['name']}",
            )

            try:
                self._dispatch(repo, request)
            except DashboardError as exc:
                self._set_status(scope, ScanState.IDLE, error=exc.message, message="Scan was not started")
                log.warning(
                    "Dispatch failed for %s: %s", sanitize_log(repo["full_name"]), exc.message,
                    extra={"repo": repo["full_name"], "scope": scope},
                )
                raise

            repo["last_scan_at"] = stamp_last_scan(conn, repo["id"])

        self._audit("scan_triggered", scope, {"repo": repo["full_name"], "request_id": request.request_id})
        self.poll_for_completion(request)
        return {
            "success": True,
            "message": f"CodeQL workflow triggered for {repo['name']}",
            "timestamp": _now(),
            "scope": scope,
            "request_id": request.request_id,
        }

    def trigger_all_scans(self) -> dict:
        """Dispatch every scan-enabled repository, one at a time.

        Individual failures are reported in ``results`` and never stop the
        batch.  Only a missing credential aborts, before any dispatch.
        """
        self._require_credential()
        scope = ALL_REPOSITORIES

        with db_connection(self._db_path) as conn:
            repos = list_repositories(conn, codeql_enabled=True)
            request = ScanRequest(scope=scope, baseline_count=count_analyses(conn, ALL_REPOSITORIES))
            self._sessions.cancel(scope)
            self._set_status(
                scope, ScanState.DISPATCHING,
                request_id=request.request_id, baseline_count=request.baseline_count,
                attempts=0, last_count=None, signal=None, error=None,
                message=f"Triggering CodeQL scans for {len(repos)} repositories",
            )

            results: list[dict] = []
            for i, repo in enumerate(repos):
                if i:
                    self._sleep(self._config.dispatch_throttle)
                try:
                    self._dispatch(repo, request)
                except WorkflowNotConfigured:
                    results.append({"repo": repo["name"], "status": "error", "error": "Workflow not found"})
                    continue
                except DashboardError as exc:
                    results.append({"repo": repo["name"], "status": "error", "error": exc.message})
                    continue
                stamp_last_scan(conn, repo["id"])
                results.append({"repo": repo["name"], "status": "success"})

        succeeded = sum(1 for r in results if r["status"] == "success")
        failed = len(results) - succeeded
        log.info(
            "Triggered %d/%d repositories (%d failed)", succeeded, len(results), failed,
            extra={"scope": scope, "request_id": request.request_id},
        )
        self._audit("scan_trigger_all", scope, {
            "request_id": request.request_id, "succeeded": succeeded, "failed": failed,
        })

        if succeeded:
            self.poll_for_completion(request)
        else:
            self._set_status(
                scope, ScanState.IDLE,
                error="No workflow could be dispatched" if results else None,
                message="No scans were started",
            )

        return {
            "success": True,
            "message": f"Triggered workflows for {len(repos)} repositories",
            "results": results,
            "succeeded": succeeded,
            "failed": failed,
            "timestamp": _now(),
            "request_id": request.request_id,
        }

    # ------------------------------------------------------------------
    # Poll
    # ------------------------------------------------------------------

    def _current_count(self, request: ScanRequest) -> int:
        target = request.repository_id if request.repository_id is not None else ALL_REPOSITORIES
        with db_connection(self._db_path) as conn:
            return count_analyses(conn, target)

    def poll_for_completion(self, request: ScanRequest) -> PollSession:
        session = PollSession(
            request,
            lambda: self._current_count(request),
            interval=self._config.poll_interval,
            max_attempts=self._config.max_poll_attempts,
            settle_delay=self._config.settle_delay,
            schedule=self._schedule,
            on_check=self._on_check,
            on_growth=self._on_growth,
            on_complete=self._on_complete,
            on_timeout=self._on_timeout,
        )
        self._sessions.replace(request.scope, session)
        self._set_status(
            request.scope, ScanState.POLLING,
            request_id=request.request_id, baseline_count=request.baseline_count,
            attempts=0, max_attempts=session.max_attempts, last_count=None,
            signal=None, error=None,
            message="Scan will take 5-10 minutes to complete.",
        )
        session.start()
        return session

    def _on_check(self, session: PollSession) -> None:
        if not self._sessions.is_current(session):
            return
        self._set_status(
            session.scope, ScanState.POLLING,
            attempts=session.attempts, last_count=session.last_count,
        )

    def _on_growth(self, session: PollSession) -> None:
        if not self._sessions.is_current(session):
            return
        noun = "Scans" if session.scope == ALL_REPOSITORIES else "Scan"
        self._set_status(
            session.scope, ScanState.POLLING,
            attempts=session.attempts, last_count=session.last_count,
            message=f"{noun} completed! Fetching latest results...",
        )
        log.info(
            "Analysis count grew %s -> %s", session.request.baseline_count, session.last_count,
            extra={"scope": session.scope, "request_id": session.request.request_id},
        )
        self.fetch_latest(scope=session.scope)

    def _on_complete(self, session: PollSession) -> None:
        if not self._sessions.is_current(session):
            return
        self._sessions.discard(session)
        status = self._set_status(
            session.scope, ScanState.COMPLETED,
            signal=SIGNAL_REFRESH, message="Scan results updated successfully!",
        )
        self._emit(session.scope, SIGNAL_REFRESH, status)

    def _on_timeout(self, session: PollSession) -> None:
        if not self._sessions.is_current(session):
            return
        self._sessions.discard(session)
        status = self._set_status(
            session.scope, ScanState.TIMED_OUT,
            attempts=session.attempts, last_count=session.last_count, signal=SIGNAL_TIMED_OUT,
            message='Polling stopped. Scan may still be running. Click "Fetch Latest" to check for results.',
        )
        log.info("Poll attempts exhausted after %d checks", session.attempts, extra={"scope": session.scope})
        self._emit(session.scope, SIGNAL_TIMED_OUT, status)

    def cancel(self, scope: str) -> bool:
        cancelled = self._sessions.cancel(scope)
        if cancelled:
            self._set_status(scope, ScanState.IDLE, message="Polling cancelled")
        return cancelled

    def shutdown(self) -> None:
        stopped = self._sessions.cancel_all()
        if stopped:
            log.info("Stopped %d poll session(s) on shutdown", stopped)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def fetch_latest(self, scope: str = ALL_REPOSITORIES) -> BackgroundTask:
        """Start one ingestion run in the background and return its handle."""
        task = BackgroundTask(
            "ingestion", scope, lambda: self._ingestion.run(disconnect_after=False), self._on_task_failed,
        )
        with self._tasks_lock:
            self._tasks = [t for t in self._tasks if not t.done]
            self._tasks.append(task)
        self._audit("fetch_data", scope, {"started_at": task.started_at})
        return task.start()

    def _on_task_failed(self, task: BackgroundTask, exc: Exception) -> None:
        log.error(
            "Background %s failed: %s", task.name, exc,
            exc_info=(type(exc), exc, exc.__traceback__),
            extra={"scope": task.scope, "task": task.name},
        )
        self._audit("background_task_failed", task.scope, {
            "task": task.name,
            "error": str(exc),
            "started_at": task.started_at,
            "failed_at": _now(),
        })

    def _audit(self, action: str, resource: str, details: dict) -> None:
        try:
            with db_connection(self._db_path) as conn:
                insert_audit_log(conn, action, resource, json.dumps(details))
        except Exception:
            log.warning("audit log write failed: action=%s", action, exc_info=True)
