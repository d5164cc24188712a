"""Shared Flask extensions initialised with the ``init_app`` pattern."""

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

DEFAULT_LIMITS = ["120/minute"]
SCAN_LIMIT = "20/minute"

limiter = Limiter(
    get_remote_address,
    default_limits=DEFAULT_LIMITS,
    storage_uri="memory://",
)
