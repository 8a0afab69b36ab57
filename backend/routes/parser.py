"""
Parser Routes - Flask Blueprint

Parse modes, dry runs, the rule tester and batch cancellation.
"""

from flask import Blueprint, jsonify, request

from routes.helpers import error_response, get_account_id
from services import parsing_service

parser_bp = Blueprint("parser", __name__, url_prefix="/api/parser")


@parser_bp.route("/parse", methods=["POST"])
def parse():
    """
    Parse stored emails.

    Request body:
        account_id (int): Mail account ID
        mode (str): quick | smart-full | full-reparse | force-full (default: quick)
        async (bool): Queue on a Celery worker

    Returns:
        Run summary (202 with task ID when queued)
    """
    try:
        data = request.get_json(silent=True) or {}
        mode = data.get("mode", "quick")
        run_async = bool(data.get("async", False))
        result = parsing_service.run_parse(get_account_id(), mode, run_async=run_async)
        return jsonify(result), 202 if run_async else 200
    except Exception as e:
        return error_response(e, "Parse")


@parser_bp.route("/dry-run", methods=["POST"])
def dry_run():
    """
    Parse emails without writing anything.

    Request body:
        account_id (int): Mail account ID
        message_ids (list): Stored email IDs to try (optional)
        unparsed (bool): Try unparsed emails when no IDs are given
        limit (int): Maximum emails when selecting automatically (default: 10)
    """
    try:
        data = request.get_json(silent=True) or {}
        result = parsing_service.dry_run(
            get_account_id(),
            email_ids=data.get("message_ids"),
            unparsed=bool(data.get("unparsed", False)),
            limit=int(data.get("limit", 10)),
        )
        return jsonify(result)
    except Exception as e:
        return error_response(e, "Dry run")


@parser_bp.route("/test-rule", methods=["POST"])
def try_rule():
    """
    Try a rule against pasted sample text.

    Request body:
        rule (dict): Rule fields
        sample_text (str): Email text to test against
    """
    try:
        data = request.get_json(silent=True) or {}
        result = parsing_service.try_rule(data.get("sample_text"), data.get("rule"))
        return jsonify(result)
    except Exception as e:
        return error_response(e, "Rule test")


@parser_bp.route("/cancel", methods=["POST"])
def cancel():
    """Stop the account's running batch at the next page or message."""
    try:
        return jsonify(parsing_service.cancel(get_account_id()))
    except Exception as e:
        return error_response(e, "Cancel")
