"""Routes package for API endpoints."""

from routes.cron import cron_bp
from routes.debug import debug_bp
from routes.gmail import gmail_bp
from routes.health import health_bp
from routes.parser import parser_bp
from routes.rules import rules_bp

__all__ = [
    "health_bp",
    "gmail_bp",
    "parser_bp",
    "rules_bp",
    "debug_bp",
    "cron_bp",
]
