"""Shared helpers for the dashboard route blueprints."""

from __future__ import annotations

from flask import current_app, request as flask_request

from scan_dashboard.database import db_connection


def _db():
    return db_connection(current_app.config["DB_PATH"])


def _orchestrator():
    return current_app.extensions["scan_orchestrator"]


def _int_arg(name: str, default: int | None = None) -> int | None:
    raw = flask_request.args.get(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _bool_arg(name: str) -> bool | None:
    raw = flask_request.args.get(name, "")
    if raw == "true":
        return True
    if raw == "false":
        return False
    return None


def _get_pagination() -> tuple[int, int]:
    page = max(1, _int_arg("page", 1) or 1)
    per_page = min(200, max(1, _int_arg("per_page", 50) or 50))
    return page, per_page
