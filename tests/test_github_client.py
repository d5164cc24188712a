"""Tests for scan_dashboard/github_client.py and scan_dashboard/retry_utils.py."""

import os
import sys
from unittest.mock import MagicMock, patch

import pytest
import requests

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from scan_dashboard.errors import DispatchError, WorkflowNotConfigured
from scan_dashboard.github_client import GitHubClient, gh_headers
from scan_dashboard.retry_utils import exponential_backoff_delay, request_with_retry


def _resp(status, json_body=None, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    if json_body is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = json_body
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(response=resp)
    else:
        resp.raise_for_status.return_value = None
    return resp


class TestHeaders:
    def test_with_token(self):
        h = gh_headers("abc")
        assert h["Authorization"] == "token abc"
        assert h["Accept"] == "application/vnd.github+json"

    def test_without_token(self):
        assert "Authorization" not in gh_headers("")


class TestDispatchWorkflow:
    def test_posts_ref_to_dispatch_endpoint(self):
        with patch("scan_dashboard.github_client.requests.post", return_value=_resp(204)) as post:
            GitHubClient("tok").dispatch_workflow("org", "repo", "codeql.yml", "main")
        url = post.call_args[0][0]
        assert url == "https://api.github.com/repos/org/repo/actions/workflows/codeql.yml/dispatches"
        assert post.call_args.kwargs["json"] == {"ref": "main"}
        assert post.call_args.kwargs["headers"]["Authorization"] == "token tok"

    def test_inputs_are_forwarded(self):
        with patch("scan_dashboard.github_client.requests.post", return_value=_resp(204)) as post:
            GitHubClient("tok").dispatch_workflow("org", "repo", "codeql.yml", "main", inputs={"request_id": "r1"})
        assert post.call_args.kwargs["json"] == {"ref": "main", "inputs": {"request_id": "r1"}}

    def test_404_means_workflow_missing(self):
        with patch("scan_dashboard.github_client.requests.post", return_value=_resp(404, {"message": "Not Found"})):
            with pytest.raises(WorkflowNotConfigured) as exc_info:
                GitHubClient("tok").dispatch_workflow("org", "repo", "codeql.yml", "main")
        assert exc_info.value.http_status == 404

    def test_other_status_carries_provider_message(self):
        body = {"message": "Workflow does not have 'workflow_dispatch' trigger"}
        with patch("scan_dashboard.github_client.requests.post", return_value=_resp(422, body)):
            with pytest.raises(DispatchError) as exc_info:
                GitHubClient("tok").dispatch_workflow("org", "repo", "codeql.yml", "main")
        assert exc_info.value.message == body["message"]
        assert exc_info.value.status == 422

    def test_non_json_error_uses_body_text(self):
        with patch("scan_dashboard.github_client.requests.post", return_value=_resp(500, text="upstream\nboom")):
            with pytest.raises(DispatchError, match="upstream boom"):
                GitHubClient("tok").dispatch_workflow("org", "repo", "codeql.yml", "main")

    def test_network_error_is_not_retried(self):
        with patch(
            "scan_dashboard.github_client.requests.post",
            side_effect=requests.ConnectionError("reset"),
        ) as post:
            with pytest.raises(DispatchError, match="reset"):
                GitHubClient("tok").dispatch_workflow("org", "repo", "codeql.yml", "main")
        assert post.call_count == 1


class TestCodeScanningReads:
    def test_paginates_until_short_page(self):
        full = [{"id": i} for i in range(100)]
        short = [{"id": 100}]
        with patch(
            "scan_dashboard.retry_utils.requests.request",
            side_effect=[_resp(200, full), _resp(200, short)],
        ) as req:
            items = GitHubClient("tok").list_code_scanning_analyses("org", "repo")
        assert len(items) == 101
        assert req.call_count == 2
        assert req.call_args.kwargs["params"]["page"] == 2

    def test_disabled_code_scanning_returns_none(self):
        with patch("scan_dashboard.retry_utils.requests.request", return_value=_resp(403, {"message": "Forbidden"})):
            assert GitHubClient("tok").list_code_scanning_analyses("org", "repo") is None

    def test_no_analysis_yet_returns_empty_list(self):
        with patch("scan_dashboard.retry_utils.requests.request", return_value=_resp(404, {"message": "no analysis found"})):
            assert GitHubClient("tok").list_code_scanning_analyses("org", "repo") == []

    def test_missing_alerts_return_empty(self):
        with patch("scan_dashboard.retry_utils.requests.request", return_value=_resp(404, {"message": "no"})):
            assert GitHubClient("tok").list_code_scanning_alerts("org", "repo") == []

    def test_server_error_propagates(self):
        with patch("scan_dashboard.retry_utils.requests.request", return_value=_resp(500, {"message": "x"})):
            with pytest.raises(requests.HTTPError):
                GitHubClient("tok").list_code_scanning_alerts("org", "repo")

    def test_org_repos(self):
        with patch("scan_dashboard.retry_utils.requests.request", return_value=_resp(200, [{"name": "a"}])) as req:
            repos = GitHubClient("tok").list_org_repos("Web-Security-Repos")
        assert repos == [{"name": "a"}]
        assert req.call_args[0][1].endswith("/orgs/Web-Security-Repos/repos")


class TestExponentialBackoffDelay:
    def test_delay_doubles(self):
        assert exponential_backoff_delay(1, base=2.0, max_jitter=0.0) == 4.0
        assert exponential_backoff_delay(2, base=2.0, max_jitter=0.0) == 8.0

    def test_jitter_within_bounds(self):
        for _ in range(50):
            assert 4.0 <= exponential_backoff_delay(1, base=2.0, max_jitter=1.0) <= 5.0


class TestRequestWithRetry:
    def test_success_on_first_try(self):
        with patch("scan_dashboard.retry_utils.requests.request", return_value=_resp(200, {})) as req:
            assert request_with_retry("GET", "https://example.com").status_code == 200
        assert req.call_count == 1

    @patch("scan_dashboard.retry_utils.time.sleep")
    def test_retries_on_502(self, mock_sleep):
        with patch(
            "scan_dashboard.retry_utils.requests.request",
            side_effect=[_resp(502), _resp(200, {})],
        ) as req:
            resp = request_with_retry("GET", "https://example.com", base_delay=0.01, max_jitter=0)
        assert resp.status_code == 200
        assert req.call_count == 2
        mock_sleep.assert_called_once()

    @patch("scan_dashboard.retry_utils.time.sleep")
    def test_returns_last_response_when_exhausted(self, mock_sleep):
        with patch("scan_dashboard.retry_utils.requests.request", return_value=_resp(503)) as req:
            resp = request_with_retry("GET", "https://example.com", max_retries=3, base_delay=0.01)
        assert resp.status_code == 503
        assert req.call_count == 3
        assert mock_sleep.call_count == 2

    @patch("scan_dashboard.retry_utils.time.sleep")
    def test_raises_after_repeated_connection_errors(self, mock_sleep):
        with patch(
            "scan_dashboard.retry_utils.requests.request",
            side_effect=requests.exceptions.ConnectionError("down"),
        ) as req:
            with pytest.raises(requests.exceptions.ConnectionError):
                request_with_retry("GET", "https://example.com", max_retries=2, base_delay=0.01)
        assert req.call_count == 2

    def test_client_errors_are_not_retried(self):
        with patch("scan_dashboard.retry_utils.requests.request", return_value=_resp(404)) as req:
            assert request_with_retry("GET", "https://example.com").status_code == 404
        assert req.call_count == 1

    def test_uses_given_session(self):
        session = MagicMock()
        session.request.return_value = _resp(200, {})
        request_with_retry("GET", "https://example.com", session=session, timeout=5)
        session.request.assert_called_once_with("GET", "https://example.com", timeout=5)
