"""GitHub REST client: workflow dispatch plus the code-scanning reads.

Dispatch is sent exactly once per call (no automatic retry) because a
retried ``workflow_dispatch`` that actually reached GitHub would start a
second run.  The paginated reads used by ingestion go through
``request_with_retry``.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from scan_dashboard.errors import DispatchError, WorkflowNotConfigured
from scan_dashboard.log_utils import sanitize_log
from scan_dashboard.retry_utils import request_with_retry

log = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"
PER_PAGE = 100


def gh_headers(token: str = "") -> dict[str, str]:
    """Return standard GitHub API request headers.

    When *token* is empty the ``Authorization`` header is omitted.
    """
    h: dict[str, str] = {"Accept": "application/vnd.github+json"}
    if token:
        h["Authorization"] = f"token {token}"
    return h


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    snippet = (resp.text or "").strip().replace("\n", " ")[:200]
    return snippet or f"GitHub API returned {resp.status_code}"


class GitHubClient:
    def __init__(self, token: str, api_base: str = GITHUB_API_BASE, timeout: int = 30) -> None:
        self._token = token
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout

    def dispatch_workflow(
        self,
        owner: str,
        repo: str,
        workflow: str,
        ref: str,
        inputs: dict[str, str] | None = None,
    ) -> None:
        """Ask GitHub Actions to start *workflow* on *ref*.

        Raises ``WorkflowNotConfigured`` on 404 and ``DispatchError`` for any
        other non-2xx response or network failure.
        """
        url = f"{self._api_base}/repos/{owner}/{repo}/actions/workflows/{workflow}/dispatches"
        payload: dict[str, Any] = {"ref": ref}
        if inputs:
            payload["inputs"] = inputs
        try:
            resp = requests.post(
                url, headers=gh_headers(self._token), json=payload, timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise DispatchError(f"Dispatch request failed: {exc}") from exc

        if resp.status_code == 404:
            raise WorkflowNotConfigured()
        if resp.status_code >= 300:
            raise DispatchError(_error_message(resp), status=resp.status_code)
        log.info(
            "Dispatched %s on %s/%s@%s",
            sanitize_log(workflow), sanitize_log(owner), sanitize_log(repo), sanitize_log(ref),
        )

    def _get_pages(self, path: str, params: dict | None = None) -> list[dict]:
        items: list[dict] = []
        page = 1
        while True:
            resp = request_with_retry(
                "GET",
                f"{self._api_base}{path}",
                headers=gh_headers(self._token),
                params={**(params or {}), "per_page": PER_PAGE, "page": page},
                timeout=self._timeout,
            )
            resp.raise_for_status()
            batch = resp.json()
            if not batch:
                break
            items.extend(batch)
            if len(batch) < PER_PAGE:
                break
            page += 1
        return items

    def list_org_repos(self, org: str) -> list[dict]:
        return self._get_pages(f"/orgs/{org}/repos", {"type": "all"})

    def list_code_scanning_analyses(self, owner: str, repo: str) -> list[dict] | None:
        """Return the repository's analyses, or ``None`` when code scanning is off.

        GitHub answers 403 when code scanning is not enabled for the
        repository, and 404 when it is enabled but no analysis exists yet
        (before the first run).
        """
        try:
            return self._get_pages(f"/repos/{owner}/{repo}/code-scanning/analyses")
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else None
            if status == 403:
                return None
            if status == 404:
                return []
            raise

    def list_code_scanning_alerts(self, owner: str, repo: str) -> list[dict]:
        try:
            return self._get_pages(f"/repos/{owner}/{repo}/code-scanning/alerts")
        except requests.HTTPError as exc:
            if exc.response is not None and exc.response.status_code in (403, 404):
                return []
            raise
