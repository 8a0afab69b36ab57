"""
Rule Matcher

Decides which single parsing rule owns a message. Rules are user-authored
records holding regex strings; they are compiled once into ``CompiledRule``
objects and bad patterns are captured on the rule instead of raised, so one
broken rule can never fault a batch.

Selection is exclusive: active rules are ordered by priority (highest first),
equal priorities by most-recently-created-first, and the first rule whose
matching patterns all pass wins.
"""

import re
from dataclasses import dataclass, field
from functools import lru_cache

from ingest.errors import InvalidRulePattern
from ingest.logging_config import get_logger

logger = get_logger(__name__)

MATCH_FIELDS = ("sender", "subject", "body")
EXTRACT_FIELDS = ("amount", "merchant", "date", "card_last_four")

DEFAULT_DATE_FORMAT = "MMM dd, yyyy"


@lru_cache(maxsize=1024)
def compile_pattern(pattern: str) -> re.Pattern:
    """Compile a user pattern case-insensitively (cached by pattern text)."""
    return re.compile(pattern, re.IGNORECASE)


@dataclass(frozen=True)
class CompiledRule:
    """A parsing rule with its patterns compiled.

    ``error`` is set when any pattern failed to compile or the amount pattern
    is missing/has no capture group. Such rules never match.
    """

    id: int | None
    name: str
    priority: int = 0
    is_active: bool = True
    date_format: str = DEFAULT_DATE_FORMAT
    patterns: dict = field(default_factory=dict)
    error: InvalidRulePattern | None = None

    @property
    def is_valid(self) -> bool:
        return self.error is None

    @property
    def sort_key(self) -> tuple:
        # Higher priority first, then newer rules (higher id) first
        return (-(self.priority or 0), -(self.id or 0))

    def pattern(self, name: str) -> re.Pattern | None:
        return self.patterns.get(name)


def _rule_get(rule, key, default=None):
    if isinstance(rule, dict):
        return rule.get(key, default)
    return getattr(rule, key, default)


def _pattern_text(rule, name: str) -> str | None:
    value = _rule_get(rule, f"{name}_pattern")
    if value is None:
        return None
    value = str(value)
    return value if value.strip() else None


def compile_rule(rule) -> CompiledRule:
    """
    Compile a rule record (dict or model) into a CompiledRule.

    Never raises for bad patterns: the first problem found is stored on
    ``CompiledRule.error``.

    Args:
        rule: Rule dict with ``*_pattern`` keys, or a ParsingRule model

    Returns:
        CompiledRule
    """
    if isinstance(rule, CompiledRule):
        return rule

    rule_id = _rule_get(rule, "id")
    patterns = {}
    error = None

    for name in MATCH_FIELDS + EXTRACT_FIELDS:
        text = _pattern_text(rule, name)
        if text is None:
            continue
        try:
            patterns[name] = compile_pattern(text)
        except re.error as e:
            if error is None:
                error = InvalidRulePattern(
                    f"{name}_pattern", text, str(e), rule_id=rule_id
                )

    if error is None:
        amount = patterns.get("amount")
        if amount is None:
            error = InvalidRulePattern(
                "amount_pattern", "", "amount pattern is required", rule_id=rule_id
            )
        elif amount.groups < 1:
            error = InvalidRulePattern(
                "amount_pattern",
                amount.pattern,
                "amount pattern must contain a capture group",
                rule_id=rule_id,
            )

    if error is not None:
        logger.warning(
            f"Rule '{_rule_get(rule, 'name')}' is invalid and will be skipped: {error}",
            extra={"rule_id": rule_id},
        )

    is_active = _rule_get(rule, "is_active", True)
    return CompiledRule(
        id=rule_id,
        name=_rule_get(rule, "name") or "",
        priority=int(_rule_get(rule, "priority", 0) or 0),
        is_active=bool(is_active) if is_active is not None else True,
        date_format=_rule_get(rule, "date_format") or DEFAULT_DATE_FORMAT,
        patterns=patterns,
        error=error,
    )


def validate_rule_patterns(rule: dict) -> list[str]:
    """
    Validate a rule's patterns for create/update requests.

    Returns:
        List of human-readable problems (empty when the rule is valid)
    """
    problems = []
    for name in MATCH_FIELDS + EXTRACT_FIELDS:
        text = _pattern_text(rule, name)
        if text is None:
            continue
        try:
            compiled = compile_pattern(text)
        except re.error as e:
            problems.append(f"Invalid {name}_pattern: {e}")
            continue
        if name == "amount" and compiled.groups < 1:
            problems.append("amount_pattern must contain a capture group")

    if _pattern_text(rule, "amount") is None:
        problems.append("amount_pattern is required")

    return problems


def order_rules(rules) -> list[CompiledRule]:
    """Compile rules, keep active ones, and sort them into evaluation order."""
    compiled = [compile_rule(r) for r in rules or []]
    active = [r for r in compiled if r.is_active]
    return sorted(active, key=lambda r: r.sort_key)


def rule_matches(rule: CompiledRule, message: dict) -> bool:
    """
    Check a rule's matching patterns against a message.

    Patterns are AND-combined. An unset pattern always passes, and so does a
    pattern whose message field is empty.
    """
    if not rule.is_valid:
        return False

    for name in MATCH_FIELDS:
        pattern = rule.pattern(name)
        if pattern is None:
            continue
        value = message.get(name) or ""
        if not value:
            continue
        if not pattern.search(value):
            return False
    return True


class OrderedRules(list):
    """A list of compiled, active rules already in evaluation order."""

    @classmethod
    def from_rules(cls, rules) -> "OrderedRules":
        return cls(order_rules(rules))


def select_rule(message: dict, rules) -> CompiledRule | None:
    """
    Select the single rule that owns a message.

    Args:
        message: Dict with sender, subject and body
        rules: Rule dicts/models or CompiledRule objects (any order, any activity),
            or an OrderedRules list

    Returns:
        The first matching active rule in priority order, or None
    """
    ordered = rules if isinstance(rules, OrderedRules) else order_rules(rules)
    for rule in ordered:
        if rule_matches(rule, message):
            return rule
    return None
