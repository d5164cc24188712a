"""Flask server for the security dashboard.

Serves aggregated code-scanning data and lets an operator trigger CodeQL
workflows across the repository fleet.

Endpoints
---------
GET    /api/health
GET    /api/repositories                       ``?codeql_enabled=&vulnerability_type=``
GET    /api/repositories/<id>
GET    /api/repositories/<id>/analyses         ``?limit=``
GET    /api/repositories/<id>/alerts           ``?severity=&state=&limit=``
GET    /api/alerts                             ``?repository=&severity=&state=&rule_id=&limit=&q=``
GET    /api/alerts/export                      ``?format=csv|json`` plus the alert filters
GET    /api/stats/summary
GET    /api/stats/trends                       ``?days=30``
GET    /api/stats/vulnerability-distribution
GET    /api/tools/stats
GET    /api/audit-log                          ``?page=&per_page=&action=``
POST   /api/scan/trigger/<id>
POST   /api/scan/trigger-all
POST   /api/scan/fetch-data
GET    /api/scan/status
GET    /api/scan/status/<scope>
DELETE /api/scan/status/<scope>
"""

from __future__ import annotations

import atexit
import logging
import sqlite3
import weakref

from flask import Flask, jsonify, request as flask_request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from scan_dashboard.config import AppConfig
from scan_dashboard.database import db_connection
from scan_dashboard.errors import DashboardError
from scan_dashboard.extensions import limiter
from scan_dashboard.log_utils import configure_logging
from scan_dashboard.orchestrator import ScanOrchestrator
from scan_dashboard.routes import data_bp, scan_bp

log = logging.getLogger(__name__)

_live_orchestrators: weakref.WeakSet[ScanOrchestrator] = weakref.WeakSet()


@atexit.register
def _shutdown_orchestrators() -> None:
    for orchestrator in list(_live_orchestrators):
        orchestrator.shutdown()


def create_app(
    config: AppConfig | None = None,
    orchestrator: ScanOrchestrator | None = None,
) -> Flask:
    if config is None:
        config = AppConfig.from_env()

    configure_logging(config.log_level, config.log_format)

    app = Flask(__name__)
    CORS(app)
    app.config["APP_CONFIG"] = config
    app.config["DB_PATH"] = config.db_path
    app.config["RATELIMIT_ENABLED"] = config.rate_limit_enabled

    try:
        with db_connection(config.db_path):
            log.info("Database ready at %s", config.db_path)
    except sqlite3.Error as exc:
        log.warning("Database unavailable (%s); the dashboard will show empty data", exc)

    if not config.has_credential:
        log.warning("GITHUB_TOKEN is not set; scan triggers will be rejected")

    if orchestrator is None:
        orchestrator = ScanOrchestrator(config)
    app.extensions["scan_orchestrator"] = orchestrator
    _live_orchestrators.add(orchestrator)

    limiter.init_app(app)

    app.register_blueprint(data_bp)
    app.register_blueprint(scan_bp)

    @app.after_request
    def _set_security_headers(response):
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if flask_request.is_secure:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    @app.errorhandler(DashboardError)
    def _dashboard_error(exc: DashboardError):
        return jsonify({"error": exc.message}), exc.http_status

    @app.errorhandler(Exception)
    def _unhandled_error(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc
        log.exception("Unhandled error on %s %s", flask_request.method, flask_request.path)
        return jsonify({"error": "Internal server error"}), 500

    return app
