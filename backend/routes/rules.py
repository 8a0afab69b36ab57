"""
Rules Routes - Flask Blueprint

Handles parsing-rule management endpoints. Create and update validate every
pattern before anything is stored.

Routes are thin controllers that delegate to rules_service for business logic.
"""

from flask import Blueprint, jsonify, request

from routes.helpers import error_response
from services import rules_service

rules_bp = Blueprint("rules", __name__, url_prefix="/api/rules")


@rules_bp.route("", methods=["GET"])
def list_rules():
    """
    Get parsing rules in evaluation order.

    Query params:
        account_id (int): Include this account's rules alongside global ones
        active_only (bool): Filter to active rules only (default: false)

    Returns:
        List of rules
    """
    try:
        account_id = request.args.get("account_id", type=int)
        active_only = request.args.get("active_only", "false").lower() == "true"
        return jsonify(rules_service.list_rules(account_id, active_only=active_only))
    except Exception as e:
        return error_response(e, "List rules")


@rules_bp.route("/<int:rule_id>", methods=["GET"])
def get_rule(rule_id):
    try:
        return jsonify(rules_service.get_rule(rule_id))
    except Exception as e:
        return error_response(e, "Get rule")


@rules_bp.route("", methods=["POST"])
def create_rule():
    """
    Create a parsing rule.

    Request body:
        name (str): Rule name (required)
        amount_pattern (str): Regex with a capture group (required)
        sender_pattern, subject_pattern, body_pattern (str): Matching patterns
        merchant_pattern, date_pattern, card_last_four_pattern (str): Extraction patterns
        date_format (str): Date format for date_pattern captures (default: MMM dd, yyyy)
        priority (int): Higher wins (default: 0)
        is_active (bool): Default true
        account_id (int): Owning account; omit for a global rule

    Returns:
        Created rule (201)
    """
    try:
        rule = rules_service.create_rule(request.get_json(silent=True) or {})
        return jsonify(rule), 201
    except Exception as e:
        return error_response(e, "Create rule")


@rules_bp.route("/<int:rule_id>", methods=["PUT"])
def update_rule(rule_id):
    """
    Update a parsing rule.

    Request body:
        Any rule fields to change

    Returns:
        Updated rule
    """
    try:
        rule = rules_service.update_rule(rule_id, request.get_json(silent=True) or {})
        return jsonify(rule)
    except Exception as e:
        return error_response(e, "Update rule")


@rules_bp.route("/<int:rule_id>", methods=["DELETE"])
def delete_rule(rule_id):
    try:
        return jsonify(rules_service.delete_rule(rule_id))
    except Exception as e:
        return error_response(e, "Delete rule")
