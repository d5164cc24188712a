"""Read-only data blueprint -- repositories, analyses, alerts, statistics, export.

Listing endpoints degrade to an empty result when the store is unavailable
so the dashboard still renders; the failure is logged.
"""

import csv
import io
import json
import logging
import sqlite3
from datetime import datetime, timezone

from flask import Blueprint, Response, jsonify, request as flask_request

from scan_dashboard.database import (
    EMPTY_SUMMARY,
    get_alerts,
    get_alerts_for_repository,
    get_analyses_for_repository,
    get_historical_trends,
    get_repository,
    get_summary_stats,
    get_tool_stats,
    get_vulnerability_distribution,
    list_repositories,
    query_audit_logs,
)
from scan_dashboard.helpers import _bool_arg, _db, _get_pagination, _int_arg

log = logging.getLogger(__name__)

data_bp = Blueprint("data", __name__)

CSV_HEADERS = [
    "Rule ID", "Rule Description", "Repository", "Severity",
    "State", "Location", "Message", "Created",
]


def _alert_filters() -> dict:
    return {
        "repository": flask_request.args.get("repository", ""),
        "severity": flask_request.args.get("severity", ""),
        "state": flask_request.args.get("state", ""),
        "rule_id": flask_request.args.get("rule_id", ""),
        "limit": _int_arg("limit"),
        "search": flask_request.args.get("q", "").strip(),
    }


@data_bp.route("/api/health")
def api_health():
    return jsonify({"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()})


@data_bp.route("/api/repositories")
def api_repositories():
    try:
        with _db() as conn:
            repos = list_repositories(
                conn,
                codeql_enabled=_bool_arg("codeql_enabled"),
                vulnerability_type=flask_request.args.get("vulnerability_type", ""),
            )
    except sqlite3.Error:
        log.exception("Error fetching repositories")
        return jsonify([])
    log.debug("Retrieved %d repositories", len(repos))
    return jsonify(repos)


@data_bp.route("/api/repositories/<repo_id>")
def api_repository(repo_id):
    try:
        with _db() as conn:
            repo = get_repository(conn, repo_id)
    except sqlite3.Error:
        log.exception("Error fetching repository")
        repo = None
    if repo is None:
        return jsonify({"error": "Repository not found"}), 404
    return jsonify(repo)


@data_bp.route("/api/repositories/<repo_id>/analyses")
def api_repository_analyses(repo_id):
    try:
        with _db() as conn:
            repo = get_repository(conn, repo_id)
            if repo is None:
                return jsonify({"error": "Repository not found"}), 404
            return jsonify(get_analyses_for_repository(conn, repo["id"], limit=_int_arg("limit")))
    except sqlite3.Error:
        log.exception("Error fetching analyses")
        return jsonify([])


@data_bp.route("/api/repositories/<repo_id>/alerts")
def api_repository_alerts(repo_id):
    try:
        with _db() as conn:
            repo = get_repository(conn, repo_id)
            if repo is None:
                return jsonify({"error": "Repository not found"}), 404
            return jsonify(get_alerts_for_repository(
                conn,
                repo["id"],
                severity=flask_request.args.get("severity", ""),
                state=flask_request.args.get("state", ""),
                limit=_int_arg("limit"),
            ))
    except sqlite3.Error:
        log.exception("Error fetching repository alerts")
        return jsonify([])


@data_bp.route("/api/alerts")
def api_alerts():
    try:
        with _db() as conn:
            return jsonify(get_alerts(conn, **_alert_filters()))
    except sqlite3.Error:
        log.exception("Error fetching alerts")
        return jsonify([])


def _alerts_csv(alerts: list[dict]) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for alert in alerts:
        location = alert["location"]
        where = location["path"] or ""
        if location["start_line"]:
            where += f":{location['start_line']}"
        writer.writerow([
            alert["rule_id"],
            alert["rule_description"],
            alert["repository"]["name"] or "Unknown",
            alert["security_severity"],
            alert["state"],
            where,
            alert["message"],
            alert["created_at"],
        ])
    return buf.getvalue()


@data_bp.route("/api/alerts/export")
def api_alerts_export():
    fmt = flask_request.args.get("format", "csv").lower()
    if fmt not in ("csv", "json"):
        return jsonify({"error": "format must be csv or json"}), 400

    try:
        with _db() as conn:
            alerts = get_alerts(conn, **_alert_filters())
    except sqlite3.Error:
        log.exception("Error exporting alerts")
        alerts = []

    day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    if fmt == "csv":
        body, mimetype = _alerts_csv(alerts), "text/csv"
    else:
        body, mimetype = json.dumps(alerts, indent=2), "application/json"
    return Response(
        body,
        mimetype=mimetype,
        headers={"Content-Disposition": f"attachment; filename=alerts-{day}.{fmt}"},
    )


@data_bp.route("/api/stats/summary")
def api_stats_summary():
    try:
        with _db() as conn:
            return jsonify(get_summary_stats(conn))
    except sqlite3.Error:
        log.exception("Error fetching summary stats")
        return jsonify(EMPTY_SUMMARY)


@data_bp.route("/api/stats/trends")
def api_stats_trends():
    try:
        with _db() as conn:
            return jsonify(get_historical_trends(conn, days=_int_arg("days", 30) or 30))
    except sqlite3.Error:
        log.exception("Error fetching trends")
        return jsonify([])


@data_bp.route("/api/stats/vulnerability-distribution")
def api_vulnerability_distribution():
    try:
        with _db() as conn:
            return jsonify(get_vulnerability_distribution(conn))
    except sqlite3.Error:
        log.exception("Error fetching vulnerability distribution")
        return jsonify([])


@data_bp.route("/api/tools/stats")
def api_tool_stats():
    try:
        with _db() as conn:
            return jsonify(get_tool_stats(conn))
    except sqlite3.Error:
        log.exception("Error fetching tool stats")
        return jsonify({"alerts_by_tool": []})


@data_bp.route("/api/audit-log")
def api_audit_log():
    page, per_page = _get_pagination()
    with _db() as conn:
        return jsonify(query_audit_logs(
            conn,
            page=page,
            per_page=per_page,
            action_filter=flask_request.args.get("action", ""),
        ))
