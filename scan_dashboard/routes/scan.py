"""Scan blueprint -- trigger CodeQL workflows, fetch results, inspect poll status.

Errors raised by the orchestrator are ``DashboardError`` subclasses and are
turned into ``{"error": ...}`` bodies by the handler registered in
``create_app``.
"""

from datetime import datetime, timezone

from flask import Blueprint, jsonify

from scan_dashboard.extensions import SCAN_LIMIT, limiter
from scan_dashboard.helpers import _orchestrator

scan_bp = Blueprint("scan", __name__)


@scan_bp.route("/api/scan/trigger/<repo_id>", methods=["POST"])
@limiter.limit(SCAN_LIMIT)
def api_trigger_scan(repo_id):
    result = _orchestrator().trigger_scan(repo_id)
    return jsonify({
        "success": result["success"],
        "message": result["message"],
        "timestamp": result["timestamp"],
    })


@scan_bp.route("/api/scan/trigger-all", methods=["POST"])
@limiter.limit(SCAN_LIMIT)
def api_trigger_all():
    result = _orchestrator().trigger_all_scans()
    return jsonify({
        "success": result["success"],
        "message": result["message"],
        "results": result["results"],
        "timestamp": result["timestamp"],
    })


@scan_bp.route("/api/scan/fetch-data", methods=["POST"])
@limiter.limit(SCAN_LIMIT)
def api_fetch_data():
    _orchestrator().fetch_latest()
    return jsonify({
        "success": True,
        "message": "Data fetch started. This may take a few minutes.",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


@scan_bp.route("/api/scan/status")
def api_scan_status_all():
    orchestrator = _orchestrator()
    return jsonify({
        "sessions": orchestrator.statuses(),
        "active_scopes": orchestrator.sessions.active_scopes(),
    })


@scan_bp.route("/api/scan/status/<scope>")
def api_scan_status(scope):
    return jsonify(_orchestrator().status(scope))


@scan_bp.route("/api/scan/status/<scope>", methods=["DELETE"])
def api_scan_cancel(scope):
    orchestrator = _orchestrator()
    cancelled = orchestrator.cancel(scope)
    return jsonify({"cancelled": cancelled, **orchestrator.status(scope)})
