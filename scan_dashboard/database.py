"""SQLite store for repositories, scan analyses, alerts and the audit log.

This is the query facade the API and the scan orchestrator read through.
Writers (``upsert_*``) are idempotent so the ingestion job can re-run over
the same upstream data without creating duplicates.  WAL mode is enabled
so the HTTP handlers can read while a background ingestion writes.
"""

from __future__ import annotations

import pathlib
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from scan_dashboard.config import DEFAULT_DB_PATH

ALL_REPOSITORIES = "*"

_INITIALIZED_DBS: set[str] = set()
_INIT_LOCK = threading.Lock()

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS repositories (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    owner              TEXT    NOT NULL,
    name               TEXT    NOT NULL,
    full_name          TEXT    NOT NULL,
    description        TEXT    NOT NULL DEFAULT '',
    language           TEXT    NOT NULL DEFAULT '',
    vulnerability_type TEXT    NOT NULL DEFAULT '',
    html_url           TEXT    NOT NULL DEFAULT '',
    default_branch     TEXT    NOT NULL DEFAULT '',
    codeql_enabled     INTEGER NOT NULL DEFAULT 0,
    last_scan_at       TEXT,
    created_at         TEXT    NOT NULL,
    updated_at         TEXT    NOT NULL,
    UNIQUE(full_name)
);

CREATE INDEX IF NOT EXISTS idx_repositories_codeql ON repositories(codeql_enabled);
CREATE INDEX IF NOT EXISTS idx_repositories_vuln   ON repositories(vulnerability_type);

CREATE TABLE IF NOT EXISTS analyses (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    repository_id  INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
    github_id      INTEGER NOT NULL,
    tool_name      TEXT    NOT NULL DEFAULT 'CodeQL',
    tool_version   TEXT    NOT NULL DEFAULT '',
    ref            TEXT    NOT NULL DEFAULT '',
    commit_sha     TEXT    NOT NULL DEFAULT '',
    category       TEXT    NOT NULL DEFAULT '',
    results_count  INTEGER NOT NULL DEFAULT 0,
    rules_count    INTEGER NOT NULL DEFAULT 0,
    created_at     TEXT    NOT NULL,
    ingested_at    TEXT    NOT NULL,
    UNIQUE(github_id)
);

CREATE INDEX IF NOT EXISTS idx_analyses_repository ON analyses(repository_id);
CREATE INDEX IF NOT EXISTS idx_analyses_created_at ON analyses(created_at);

CREATE TABLE IF NOT EXISTS alerts (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    repository_id     INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
    number            INTEGER NOT NULL,
    tool_name         TEXT    NOT NULL DEFAULT 'CodeQL',
    rule_id           TEXT    NOT NULL DEFAULT '',
    rule_description  TEXT    NOT NULL DEFAULT '',
    severity          TEXT    NOT NULL DEFAULT '',
    security_severity TEXT    NOT NULL DEFAULT '',
    state             TEXT    NOT NULL DEFAULT 'open',
    path              TEXT    NOT NULL DEFAULT '',
    start_line        INTEGER NOT NULL DEFAULT 0,
    message           TEXT    NOT NULL DEFAULT '',
    html_url          TEXT    NOT NULL DEFAULT '',
    created_at        TEXT    NOT NULL DEFAULT '',
    updated_at        TEXT    NOT NULL DEFAULT '',
    UNIQUE(repository_id, number, tool_name)
);

CREATE INDEX IF NOT EXISTS idx_alerts_repository ON alerts(repository_id);
CREATE INDEX IF NOT EXISTS idx_alerts_severity   ON alerts(security_severity);
CREATE INDEX IF NOT EXISTS idx_alerts_state      ON alerts(state);
CREATE INDEX IF NOT EXISTS idx_alerts_rule_id    ON alerts(rule_id);

CREATE TABLE IF NOT EXISTS audit_log (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT    NOT NULL,
    action    TEXT    NOT NULL,
    resource  TEXT    NOT NULL DEFAULT '',
    details   TEXT    NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_audit_log_timestamp ON audit_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_audit_log_action    ON audit_log(action);
"""

EMPTY_SUMMARY = {
    "repositories": {"total": 0, "with_codeql": 0},
    "analyses": {"total": 0},
    "alerts": {"total": 0, "by_severity": {}, "by_state": {}},
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_connection(db_path: str | pathlib.Path | None = None) -> sqlite3.Connection:
    path = str(db_path or DEFAULT_DB_PATH)
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    with _INIT_LOCK:
        if path not in _INITIALIZED_DBS:
            init_db(conn)
            _INITIALIZED_DBS.add(path)
    return conn


@contextmanager
def db_connection(db_path: str | pathlib.Path | None = None):
    """Context manager that yields a DB connection and closes it on exit."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------

def _repo_row_to_dict(row: sqlite3.Row) -> dict:
    d = dict(row)
    d["codeql_enabled"] = bool(d["codeql_enabled"])
    return d


_REPO_SELECT = """SELECT r.*,
       (SELECT COUNT(*) FROM alerts a
         WHERE a.repository_id = r.id AND a.state = 'open') AS open_alerts,
       (SELECT COUNT(*) FROM analyses n WHERE n.repository_id = r.id) AS analyses_count
  FROM repositories r"""


def get_repository(conn: sqlite3.Connection, repository_id: int | str) -> dict | None:
    """Look a repository up by numeric id, or by ``name`` / ``owner/name``."""
    key = str(repository_id).strip()
    if key.isdigit():
        row = conn.execute(f"{_REPO_SELECT} WHERE r.id = ?", (int(key),)).fetchone()
    else:
        row = conn.execute(
            f"{_REPO_SELECT} WHERE r.full_name = ? OR r.name = ? ORDER BY r.id LIMIT 1",
            (key, key),
        ).fetchone()
    return _repo_row_to_dict(row) if row else None


def list_repositories(
    conn: sqlite3.Connection,
    codeql_enabled: bool | None = None,
    vulnerability_type: str = "",
) -> list[dict]:
    conditions: list[str] = []
    params: list = []
    if codeql_enabled is not None:
        conditions.append("r.codeql_enabled = ?")
        params.append(1 if codeql_enabled else 0)
    if vulnerability_type:
        conditions.append("r.vulnerability_type = ?")
        params.append(vulnerability_type)
    where = ("WHERE " + " AND ".join(conditions)) if conditions else ""
    rows = conn.execute(f"{_REPO_SELECT} {where} ORDER BY r.name", params).fetchall()
    return [_repo_row_to_dict(r) for r in rows]


def save_repository(conn: sqlite3.Connection, repo: dict) -> None:
    """Persist the mutable fields of an existing repository record."""
    conn.execute(
        """UPDATE repositories
              SET description = ?, language = ?, vulnerability_type = ?,
                  html_url = ?, default_branch = ?, codeql_enabled = ?,
                  last_scan_at = ?, updated_at = ?
            WHERE id = ?""",
        (
            repo.get("description", ""),
            repo.get("language", ""),
            repo.get("vulnerability_type", ""),
            repo.get("html_url", ""),
            repo.get("default_branch", ""),
            1 if repo.get("codeql_enabled") else 0,
            repo.get("last_scan_at"),
            _now(),
            repo["id"],
        ),
    )
    conn.commit()


def stamp_last_scan(conn: sqlite3.Connection, repository_id: int, timestamp: str = "") -> str:
    """Set ``last_scan_at`` alone, leaving every other column as stored."""
    ts = timestamp or _now()
    conn.execute(
        "UPDATE repositories SET last_scan_at = ?, updated_at = ? WHERE id = ?",
        (ts, _now(), repository_id),
    )
    conn.commit()
    return ts


def upsert_repository(conn: sqlite3.Connection, data: dict) -> int:
    """Insert or refresh a repository keyed by ``owner/name``; returns its id.

    ``last_scan_at`` is never touched here: only a successful dispatch
    stamps it.  ``codeql_enabled`` and ``vulnerability_type`` are only
    overwritten when the caller supplies them.
    """
    owner = data.get("owner", "")
    name = data.get("name", "")
    full_name = data.get("full_name") or f"{owner}/{name}"
    now = _now()
    existing = conn.execute(
        "SELECT * FROM repositories WHERE full_name = ?", (full_name,)
    ).fetchone()
    if existing is None:
        cur = conn.execute(
            """INSERT INTO repositories
               (owner, name, full_name, description, language, vulnerability_type,
                html_url, default_branch, codeql_enabled, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                owner,
                name,
                full_name,
                data.get("description") or "",
                data.get("language") or "",
                data.get("vulnerability_type") or "",
                data.get("html_url") or "",
                data.get("default_branch") or "",
                1 if data.get("codeql_enabled") else 0,
                now,
                now,
            ),
        )
        conn.commit()
        return cur.lastrowid or 0

    codeql = existing["codeql_enabled"]
    if data.get("codeql_enabled") is not None:
        codeql = 1 if data["codeql_enabled"] else 0
    conn.execute(
        """UPDATE repositories
              SET description = ?, language = ?, vulnerability_type = ?,
                  html_url = ?, default_branch = ?, codeql_enabled = ?, updated_at = ?
            WHERE id = ?""",
        (
            data.get("description") or existing["description"],
            data.get("language") or existing["language"],
            data.get("vulnerability_type") or existing["vulnerability_type"],
            data.get("html_url") or existing["html_url"],
            data.get("default_branch") or existing["default_branch"],
            codeql,
            now,
            existing["id"],
        ),
    )
    conn.commit()
    return existing["id"]


# ---------------------------------------------------------------------------
# Analyses
# ---------------------------------------------------------------------------

def count_analyses(conn: sqlite3.Connection, repository_id: int | str = ALL_REPOSITORIES) -> int:
    if repository_id == ALL_REPOSITORIES:
        row = conn.execute("SELECT COUNT(*) FROM analyses").fetchone()
    else:
        row = conn.execute(
            "SELECT COUNT(*) FROM analyses WHERE repository_id = ?", (int(repository_id),)
        ).fetchone()
    return row[0]


def upsert_analysis(conn: sqlite3.Connection, repository_id: int, data: dict) -> bool:
    """Store one upstream analysis; returns ``True`` when it was new."""
    github_id = data["id"]
    existing = conn.execute(
        "SELECT id FROM analyses WHERE github_id = ?", (github_id,)
    ).fetchone()
    if existing:
        return False
    tool = data.get("tool") or {}
    conn.execute(
        """INSERT INTO analyses
           (repository_id, github_id, tool_name, tool_version, ref, commit_sha,
            category, results_count, rules_count, created_at, ingested_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            repository_id,
            github_id,
            tool.get("name") or "CodeQL",
            tool.get("version") or "",
            data.get("ref") or "",
            data.get("commit_sha") or "",
            data.get("category") or "",
            data.get("results_count") or 0,
            data.get("rules_count") or 0,
            data.get("created_at") or _now(),
            _now(),
        ),
    )
    conn.commit()
    return True


def get_analyses_for_repository(
    conn: sqlite3.Connection, repository_id: int, limit: int | None = None,
) -> list[dict]:
    sql = "SELECT * FROM analyses WHERE repository_id = ? ORDER BY created_at DESC"
    params: list = [repository_id]
    if limit:
        sql += " LIMIT ?"
        params.append(limit)
    return [dict(r) for r in conn.execute(sql, params).fetchall()]


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

def upsert_alert(conn: sqlite3.Connection, repository_id: int, data: dict) -> bool:
    """Insert or refresh one upstream alert; returns ``True`` when it was new."""
    rule = data.get("rule") or {}
    tool = data.get("tool") or {}
    instance = data.get("most_recent_instance") or {}
    location = instance.get("location") or {}
    message = (instance.get("message") or {}).get("text", "")
    tool_name = tool.get("name") or "CodeQL"
    values = (
        rule.get("id") or "",
        rule.get("description") or "",
        rule.get("severity") or "",
        rule.get("security_severity_level") or "",
        data.get("state") or "open",
        location.get("path") or "",
        location.get("start_line") or 0,
        message,
        data.get("html_url") or "",
        data.get("created_at") or "",
        data.get("updated_at") or "",
    )
    existing = conn.execute(
        "SELECT id FROM alerts WHERE repository_id = ? AND number = ? AND tool_name = ?",
        (repository_id, data["number"], tool_name),
    ).fetchone()
    if existing:
        conn.execute(
            """UPDATE alerts
                  SET rule_id = ?, rule_description = ?, severity = ?,
                      security_severity = ?, state = ?, path = ?, start_line = ?,
                      message = ?, html_url = ?, created_at = ?, updated_at = ?
                WHERE id = ?""",
            (*values, existing["id"]),
        )
        conn.commit()
        return False
    conn.execute(
        """INSERT INTO alerts
           (repository_id, number, tool_name, rule_id, rule_description, severity,
            security_severity, state, path, start_line, message, html_url,
            created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (repository_id, data["number"], tool_name, *values),
    )
    conn.commit()
    return True


def _build_alert_item(row: sqlite3.Row) -> dict:
    d = dict(row)
    d["repository"] = {
        "id": d.pop("repository_id"),
        "name": d.pop("repository_name"),
        "owner": d.pop("repository_owner"),
    }
    d["location"] = {"path": d.pop("path"), "start_line": d.pop("start_line")}
    return d


def get_alerts(
    conn: sqlite3.Connection,
    repository: str = "",
    severity: str = "",
    state: str = "",
    rule_id: str = "",
    limit: int | None = None,
    search: str = "",
) -> list[dict]:
    conditions: list[str] = []
    params: list = []
    if repository:
        if str(repository).isdigit():
            conditions.append("a.repository_id = ?")
            params.append(int(repository))
        else:
            conditions.append("(r.name = ? OR r.full_name = ?)")
            params.extend([repository, repository])
    if severity:
        conditions.append("a.security_severity = ?")
        params.append(severity)
    if state:
        conditions.append("a.state = ?")
        params.append(state)
    if rule_id:
        conditions.append("a.rule_id = ?")
        params.append(rule_id)
    if search:
        like = f"%{search.lower()}%"
        conditions.append(
            "(LOWER(a.rule_id) LIKE ? OR LOWER(a.rule_description) LIKE ? OR LOWER(a.message) LIKE ?)"
        )
        params.extend([like, like, like])

    where = ("WHERE " + " AND ".join(conditions)) if conditions else ""
    sql = f"""SELECT a.*, r.name AS repository_name, r.owner AS repository_owner
                FROM alerts a JOIN repositories r ON r.id = a.repository_id
                {where}
               ORDER BY a.created_at DESC, a.id DESC"""
    if limit:
        sql += " LIMIT ?"
        params.append(limit)
    return [_build_alert_item(r) for r in conn.execute(sql, params).fetchall()]


def get_alerts_for_repository(
    conn: sqlite3.Connection,
    repository_id: int,
    severity: str = "",
    state: str = "",
    limit: int | None = None,
) -> list[dict]:
    return get_alerts(
        conn, repository=str(repository_id), severity=severity, state=state, limit=limit,
    )


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

def _grouped_counts(conn: sqlite3.Connection, column: str) -> dict[str, int]:
    rows = conn.execute(
        f"""SELECT COALESCE(NULLIF({column}, ''), 'unknown') AS k, COUNT(*) AS n
              FROM alerts GROUP BY k"""
    ).fetchall()
    return {r["k"]: r["n"] for r in rows}


def get_summary_stats(conn: sqlite3.Connection) -> dict:
    repo_row = conn.execute(
        "SELECT COUNT(*) AS total, COALESCE(SUM(codeql_enabled), 0) AS with_codeql FROM repositories"
    ).fetchone()
    alerts_total = conn.execute("SELECT COUNT(*) FROM alerts").fetchone()[0]
    return {
        "repositories": {"total": repo_row["total"], "with_codeql": repo_row["with_codeql"]},
        "analyses": {"total": count_analyses(conn)},
        "alerts": {
            "total": alerts_total,
            "by_severity": _grouped_counts(conn, "security_severity"),
            "by_state": _grouped_counts(conn, "state"),
        },
    }


def get_historical_trends(conn: sqlite3.Connection, days: int = 30) -> list[dict]:
    """Per-day analysis counts and result totals over the last *days* days."""
    cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()
    rows = conn.execute(
        """SELECT substr(created_at, 1, 10) AS date,
                  COUNT(*) AS count,
                  COALESCE(SUM(results_count), 0) AS results
             FROM analyses
            WHERE created_at >= ?
            GROUP BY date
            ORDER BY date""",
        (cutoff,),
    ).fetchall()
    return [dict(r) for r in rows]


def get_vulnerability_distribution(conn: sqlite3.Connection) -> list[dict]:
    rows = conn.execute(
        """SELECT COALESCE(NULLIF(r.vulnerability_type, ''), 'unknown') AS vulnerability_type,
                  COUNT(DISTINCT r.id) AS repositories,
                  COUNT(a.id) AS alerts
             FROM repositories r
             LEFT JOIN alerts a ON a.repository_id = r.id
            GROUP BY 1
            ORDER BY alerts DESC, vulnerability_type"""
    ).fetchall()
    return [dict(r) for r in rows]


def get_tool_stats(conn: sqlite3.Connection) -> dict:
    rows = conn.execute(
        """SELECT tool_name,
                  COALESCE(NULLIF(security_severity, ''), 'unknown') AS sev,
                  COUNT(*) AS n
             FROM alerts
            GROUP BY tool_name, sev"""
    ).fetchall()
    by_tool: dict[str, dict] = {}
    for row in rows:
        entry = by_tool.setdefault(row["tool_name"], {
            "tool_name": row["tool_name"],
            "total_alerts": 0,
            "by_severity": {"critical": 0, "high": 0, "medium": 0, "low": 0},
        })
        entry["total_alerts"] += row["n"]
        entry["by_severity"][row["sev"]] = entry["by_severity"].get(row["sev"], 0) + row["n"]
    return {
        "alerts_by_tool": sorted(by_tool.values(), key=lambda t: t["total_alerts"], reverse=True),
    }


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

def insert_audit_log(
    conn: sqlite3.Connection,
    action: str,
    resource: str = "",
    details: str = "",
    timestamp: str = "",
) -> int:
    cur = conn.execute(
        """INSERT INTO audit_log (timestamp, action, resource, details)
           VALUES (?, ?, ?, ?)""",
        (timestamp or _now(), action, resource, details),
    )
    conn.commit()
    return cur.lastrowid or 0


def query_audit_logs(
    conn: sqlite3.Connection,
    page: int = 1,
    per_page: int = 50,
    action_filter: str = "",
) -> dict:
    where = ""
    params: list = []
    if action_filter:
        where = "WHERE action = ?"
        params.append(action_filter)

    total = conn.execute(f"SELECT COUNT(*) FROM audit_log {where}", params).fetchone()[0]
    offset = (page - 1) * per_page
    rows = conn.execute(
        f"""SELECT * FROM audit_log {where}
            ORDER BY timestamp DESC, id DESC
            LIMIT ? OFFSET ?""",
        params + [per_page, offset],
    ).fetchall()

    items = [dict(r) for r in rows]
    pages = max(1, (total + per_page - 1) // per_page)
    return {"items": items, "page": page, "per_page": per_page, "total": total, "pages": pages}
