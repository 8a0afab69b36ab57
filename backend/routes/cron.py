"""
Cron Routes - Flask Blueprint

HTTP trigger for the scheduled sync, for schedulers that call a URL instead of
running Celery beat. Requires ``Authorization: Bearer $CRON_SECRET``.
"""

import hmac
import os

from dotenv import load_dotenv
from flask import Blueprint, jsonify, request

from ingest.logging_config import get_logger
from routes.helpers import error_response
from services import gmail_service

load_dotenv(override=False)

logger = get_logger(__name__)

cron_bp = Blueprint("cron", __name__, url_prefix="/api/cron")


def is_authorized(auth_header: str) -> bool:
    """Constant-time check of the bearer token against CRON_SECRET."""
    secret = os.getenv("CRON_SECRET")
    if not secret or not auth_header:
        return False
    expected = f"Bearer {secret}"
    return hmac.compare_digest(auth_header.encode(), expected.encode())


@cron_bp.route("/sync-gmail", methods=["GET", "POST"])
def sync_gmail():
    """
    Sync every connected account with the scheduled fetch cap.

    Headers:
        Authorization: Bearer <CRON_SECRET>

    Returns:
        Per-account results; 401 when the secret is missing or wrong
    """
    if not is_authorized(request.headers.get("Authorization", "")):
        logger.warning(f"Rejected cron trigger from {request.remote_addr}")
        return jsonify({"error": "Unauthorized"}), 401

    try:
        return jsonify(gmail_service.run_scheduled_sync())
    except Exception as e:
        return error_response(e, "Scheduled sync")
