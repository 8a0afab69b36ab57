"""
Debug Routes - Flask Blueprint

Read-mostly diagnostics over ingested emails. The only writes are the
explicit resets (orphans or all emails back to unparsed).
"""

from flask import Blueprint, jsonify, request

from routes.helpers import error_response, get_account_id
from services import debug_service

debug_bp = Blueprint("debug", __name__, url_prefix="/api/debug")


@debug_bp.route("/integrity", methods=["GET"])
def integrity():
    """
    Run the integrity audit.

    Query params:
        account_id (int): Mail account ID
        limit (int): Maximum sample rows per check (default: 50)

    Returns:
        Counts, healthy flag and per-check samples
    """
    try:
        limit = request.args.get("limit", 50, type=int)
        return jsonify(debug_service.audit(get_account_id(), sample_limit=limit))
    except Exception as e:
        return error_response(e, "Integrity audit")


@debug_bp.route("/parse-status", methods=["GET"])
def parse_status():
    """Email counts by parse state plus rule, purchase and card totals."""
    try:
        return jsonify(debug_service.parse_status(get_account_id()))
    except Exception as e:
        return error_response(e, "Parse status")


@debug_bp.route("/orphaned-emails", methods=["GET"])
def orphaned_emails():
    """
    List parsed_ok emails without a purchase.

    Query params:
        account_id (int): Mail account ID
        reset (bool): Also reset them to unparsed (default: false)
    """
    try:
        reset = request.args.get("reset", "false").lower() == "true"
        return jsonify(debug_service.orphaned_emails(get_account_id(), reset=reset))
    except Exception as e:
        return error_response(e, "Orphaned emails")


@debug_bp.route("/reset-emails", methods=["POST"])
def reset_emails():
    """
    Reset every email of an account to unparsed.

    Request body:
        account_id (int): Mail account ID
    """
    try:
        return jsonify(debug_service.reset_emails(get_account_id()))
    except Exception as e:
        return error_response(e, "Reset emails")


@debug_bp.route("/card-extraction", methods=["GET"])
def card_extraction():
    """Card-suffix extraction check over the five most recent emails."""
    try:
        return jsonify(debug_service.card_extraction(get_account_id()))
    except Exception as e:
        return error_response(e, "Card extraction")
