"""
Minimal health check endpoint

Probes get a bare {"status": "ok"}; ``?detail=true`` adds database and lock
backend checks without exposing error messages or internal state.
"""

from datetime import UTC, datetime

from flask import Blueprint, jsonify, request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from database import get_session
from ingest import locks

# Create health blueprint
health_bp = Blueprint("health", __name__, url_prefix="/api")


def check_db_connection() -> bool:
    """Test database connectivity.

    Returns:
        True if database is accessible
    """
    try:
        with get_session() as session:
            return session.execute(text("SELECT 1")).scalar() == 1
    except SQLAlchemyError:
        return False


def check_redis_connection() -> bool:
    """Test Redis connectivity (always true with the local lock backend).

    Returns:
        True if Redis is accessible
    """
    if locks.LOCK_BACKEND == "local":
        return True
    try:
        return bool(locks.get_redis_client().ping())
    except locks.redis.exceptions.RedisError:
        return False


@health_bp.route("/health", methods=["GET"])
def health_check():
    """Minimal health check endpoint.

    Returns:
        200: Service is healthy
        503: Service is degraded (detail view only)
    """
    if request.args.get("detail", "false").lower() != "true":
        return jsonify({"status": "ok"}), 200

    health = {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat(),
        "checks": {
            "database": check_db_connection(),
            "redis": check_redis_connection(),
        },
    }

    # Overall status: healthy only if all checks pass
    all_healthy = all(health["checks"].values())
    health["status"] = "ok" if all_healthy else "degraded"

    return jsonify(health), 200 if all_healthy else 503


@health_bp.route("/ping", methods=["GET"])
def ping():
    """Ultra-minimal ping endpoint for basic uptime checks.

    Returns:
        200: {"pong": true}
    """
    return jsonify({"pong": True}), 200
