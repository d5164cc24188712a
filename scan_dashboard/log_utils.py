"""Logging helpers: safe formatting of user values and output configuration.

Two output formats are supported.  ``text`` is the classic one-line
``asctime level [logger] message`` format; ``json`` emits every record as a
single JSON object so the server can feed log aggregators directly.

Usage
-----
::

    from scan_dashboard.log_utils import configure_logging

    configure_logging("INFO", "json")
    log.info("dispatched", extra={"repo": "owner/name", "scope": "12"})
"""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone

_CONTROL_CHAR_RE = re.compile(r"[\r\n\x00-\x1f\x7f]")

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_EXTRA_KEYS = ("repo", "scope", "request_id", "task")


def sanitize_log(value: object) -> str:
    """Sanitize a value for safe inclusion in log messages.

    Strips newlines and other ASCII control characters that could be
    used to forge log entries (CWE-117 / py/log-injection).
    """
    return _CONTROL_CHAR_RE.sub("", str(value))


class JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        for key in _EXTRA_KEYS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val
        return json.dumps(log_entry, default=str)


class _StderrHandler(logging.Handler):
    """Handler that resolves ``sys.stderr`` at emit time.

    Unlike ``StreamHandler(sys.stderr)`` which captures the reference once,
    this handler always uses the *current* ``sys.stderr`` so that pytest's
    ``capsys`` fixture can intercept log output.
    """

    terminator = "\n"

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            sys.stderr.write(msg + self.terminator)
            sys.stderr.flush()
        except Exception:
            self.handleError(record)


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Install a single stderr handler on the root logger.

    Calling it again replaces the handler installed by a previous call, so
    the app factory and the CLI can both call it safely.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(root.handlers):
        if isinstance(handler, _StderrHandler):
            root.removeHandler(handler)

    handler = _StderrHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)
