"""Route blueprints for the dashboard Flask application."""

from .data import data_bp
from .scan import scan_bp

__all__ = ["data_bp", "scan_bp"]
