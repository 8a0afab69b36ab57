"""
Parsing Rules - Database Operations

CRUD for user-authored parsing rules. Pattern validation happens in the
service layer before anything reaches these functions.
"""

from sqlalchemy import or_

from .base import get_session
from .models.rules import ParsingRule

RULE_FIELDS = (
    "account_id",
    "name",
    "description",
    "is_active",
    "priority",
    "sender_pattern",
    "subject_pattern",
    "body_pattern",
    "amount_pattern",
    "merchant_pattern",
    "date_pattern",
    "card_last_four_pattern",
    "date_format",
)


def _rule_to_dict(rule: ParsingRule) -> dict:
    data = {field: getattr(rule, field) for field in RULE_FIELDS}
    data["id"] = rule.id
    data["created_at"] = rule.created_at
    data["updated_at"] = rule.updated_at
    return data


def get_parsing_rules(account_id: int = None, active_only: bool = False) -> list:
    """
    Get parsing rules in evaluation order (priority desc, newest first on ties).

    Args:
        account_id: When given, the account's rules plus global (account-less) rules
        active_only: Only return active rules

    Returns:
        List of rule dicts
    """
    with get_session() as session:
        query = session.query(ParsingRule)
        if account_id is not None:
            query = query.filter(
                or_(ParsingRule.account_id == account_id, ParsingRule.account_id.is_(None))
            )
        if active_only:
            query = query.filter(ParsingRule.is_active.is_(True))
        rules = query.order_by(ParsingRule.priority.desc(), ParsingRule.id.desc()).all()
        return [_rule_to_dict(r) for r in rules]


def get_parsing_rule(rule_id: int) -> dict:
    """Get a parsing rule by ID."""
    with get_session() as session:
        rule = session.get(ParsingRule, rule_id)
        if not rule:
            return None
        return _rule_to_dict(rule)


def create_parsing_rule(data: dict) -> dict:
    """Create a parsing rule from a dict of rule fields."""
    with get_session() as session:
        rule = ParsingRule(**{k: v for k, v in data.items() if k in RULE_FIELDS})
        session.add(rule)
        session.commit()
        return _rule_to_dict(rule)


def update_parsing_rule(rule_id: int, data: dict) -> dict:
    """Update the given fields of a parsing rule. Returns None if not found."""
    with get_session() as session:
        rule = session.get(ParsingRule, rule_id)
        if not rule:
            return None
        for key, value in data.items():
            if key in RULE_FIELDS:
                setattr(rule, key, value)
        session.commit()
        return _rule_to_dict(rule)


def delete_parsing_rule(rule_id: int) -> bool:
    """Delete a parsing rule (emails and purchases keep a NULL rule reference)."""
    with get_session() as session:
        rule = session.get(ParsingRule, rule_id)
        if not rule:
            return False
        session.delete(rule)
        session.commit()
        return True


def count_rules(account_id: int = None) -> dict:
    """Count active and inactive rules."""
    rules = get_parsing_rules(account_id)
    active = sum(1 for r in rules if r["is_active"])
    return {"total": len(rules), "active": active, "inactive": len(rules) - active}
