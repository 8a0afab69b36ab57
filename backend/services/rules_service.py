"""
Rules Service - Business Logic

Orchestrates parsing-rule management:
- CRUD over user-authored rules
- Pattern validation on create and update (compile check, amount capture group)

Invalid rules are refused here; rules that still reach the parser broken are
skipped at parse time. Separates business logic from HTTP routing concerns.
"""

import database

from ingest.logging_config import get_logger
from ingest.rule_matcher import DEFAULT_DATE_FORMAT, validate_rule_patterns

logger = get_logger(__name__)


def _serialize(rule: dict) -> dict:
    data = dict(rule)
    for key in ("created_at", "updated_at"):
        if data.get(key):
            data[key] = data[key].isoformat()
    return data


def _validate(data: dict):
    if not (data.get("name") or "").strip():
        raise ValueError("name is required")

    priority = data.get("priority", 0)
    if priority is not None and not isinstance(priority, int):
        try:
            data["priority"] = int(priority)
        except (TypeError, ValueError):
            raise ValueError("priority must be an integer") from None

    problems = validate_rule_patterns(data)
    if problems:
        raise ValueError("; ".join(problems))


def list_rules(account_id: int = None, active_only: bool = False) -> list:
    """
    Get parsing rules in evaluation order.

    Args:
        account_id: Include this account's rules alongside global ones
        active_only: Only return active rules

    Returns:
        List of rule dicts
    """
    return [_serialize(r) for r in database.get_parsing_rules(account_id, active_only)]


def get_rule(rule_id: int) -> dict:
    """Get one rule; raises LookupError when it does not exist."""
    rule = database.get_parsing_rule(rule_id)
    if not rule:
        raise LookupError(f"Rule {rule_id} not found")
    return _serialize(rule)


def create_rule(data: dict) -> dict:
    """
    Create a parsing rule.

    Args:
        data: Rule fields (name and amount_pattern required)

    Returns:
        Created rule dict

    Raises:
        ValueError: Missing fields or invalid patterns
    """
    data = dict(data or {})
    _validate(data)
    data.setdefault("date_format", DEFAULT_DATE_FORMAT)

    rule = database.create_parsing_rule(data)
    logger.info(f"Parsing rule created: {rule['name']}", extra={"rule_id": rule["id"]})
    return _serialize(rule)


def update_rule(rule_id: int, data: dict) -> dict:
    """
    Update a parsing rule. The merged result must still validate.

    Raises:
        LookupError: Unknown rule
        ValueError: Invalid patterns
    """
    existing = database.get_parsing_rule(rule_id)
    if not existing:
        raise LookupError(f"Rule {rule_id} not found")

    changes = dict(data or {})
    merged = {**existing, **changes}
    _validate(merged)
    if "priority" in changes:
        changes["priority"] = merged["priority"]

    rule = database.update_parsing_rule(rule_id, changes)
    logger.info(f"Parsing rule updated: {rule['name']}", extra={"rule_id": rule_id})
    return _serialize(rule)


def delete_rule(rule_id: int) -> dict:
    """Delete a parsing rule; emails and purchases keep a NULL rule reference."""
    if not database.delete_parsing_rule(rule_id):
        raise LookupError(f"Rule {rule_id} not found")
    logger.info("Parsing rule deleted", extra={"rule_id": rule_id})
    return {"deleted": True, "id": rule_id}
