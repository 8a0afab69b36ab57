# tests/unit/test_rule_matcher.py
"""Tests for rule compilation, ordering and exclusive selection."""

from ingest.errors import InvalidRulePattern
from ingest.rule_matcher import (
    DEFAULT_DATE_FORMAT,
    OrderedRules,
    compile_rule,
    order_rules,
    rule_matches,
    select_rule,
    validate_rule_patterns,
)

MESSAGE = {
    "sender": "Chase <alerts@chase.com>",
    "subject": "Your $42.50 transaction",
    "body": "A charge of $42.50 at Blue Bottle was made with card ending in 1234.",
}


def rule(rule_id, priority=0, **patterns):
    data = {
        "id": rule_id,
        "name": f"rule-{rule_id}",
        "priority": priority,
        "is_active": True,
        "amount_pattern": r"\$([\d,]+\.\d{2})",
    }
    data.update(patterns)
    return data


def test_higher_priority_wins():
    low = rule(1, priority=1, sender_pattern="chase")
    high = rule(2, priority=5, subject_pattern="transaction")

    assert select_rule(MESSAGE, [low, high]).id == 2


def test_equal_priority_prefers_newest_rule():
    """Ties resolve most-recently-created-first (higher ID)."""
    older = rule(3, priority=5, sender_pattern="chase")
    newer = rule(8, priority=5, sender_pattern="chase")

    assert select_rule(MESSAGE, [older, newer]).id == 8
    assert select_rule(MESSAGE, [newer, older]).id == 8


def test_matching_patterns_are_and_combined():
    both = rule(1, sender_pattern="chase", subject_pattern="refund")

    assert select_rule(MESSAGE, [both]) is None


def test_patterns_are_case_insensitive():
    r = compile_rule(rule(1, sender_pattern="ALERTS@CHASE", body_pattern="blue bottle"))

    assert rule_matches(r, MESSAGE)


def test_rule_without_matching_patterns_matches_everything():
    assert select_rule({"subject": "anything"}, [rule(1)]).id == 1


def test_empty_message_field_does_not_veto_rule():
    message = {**MESSAGE, "sender": ""}
    r = rule(1, sender_pattern="chase", subject_pattern="transaction")

    assert select_rule(message, [r]).id == 1


def test_inactive_rules_are_never_selected():
    inactive = rule(1, priority=100, sender_pattern="chase")
    inactive["is_active"] = False
    active = rule(2, priority=0, sender_pattern="chase")

    assert select_rule(MESSAGE, [inactive, active]).id == 2
    assert [r.id for r in order_rules([inactive, active])] == [2]


def test_invalid_pattern_is_captured_not_raised():
    broken = rule(1, priority=10, sender_pattern="(unclosed")

    compiled = compile_rule(broken)

    assert not compiled.is_valid
    assert isinstance(compiled.error, InvalidRulePattern)
    assert compiled.error.field == "sender_pattern"
    assert compiled.error.rule_id == 1


def test_invalid_rule_is_skipped_during_selection():
    broken = rule(1, priority=10, sender_pattern="(unclosed")
    fallback = rule(2, priority=0, sender_pattern="chase")

    assert select_rule(MESSAGE, [broken, fallback]).id == 2


def test_amount_pattern_requires_capture_group():
    compiled = compile_rule(rule(1, amount_pattern=r"\$\d+\.\d{2}"))

    assert not compiled.is_valid
    assert "capture group" in compiled.error.message


def test_missing_amount_pattern_makes_rule_invalid():
    data = rule(1)
    data["amount_pattern"] = "   "

    assert not compile_rule(data).is_valid


def test_blank_matching_pattern_counts_as_unset():
    r = compile_rule(rule(1, sender_pattern="", subject_pattern="  "))

    assert r.is_valid
    assert r.pattern("sender") is None
    assert rule_matches(r, {"sender": "someone@else.com", "subject": "x"})


def test_compile_rule_defaults():
    compiled = compile_rule({"name": "minimal", "amount_pattern": r"(\d+)"})

    assert compiled.priority == 0
    assert compiled.is_active
    assert compiled.date_format == DEFAULT_DATE_FORMAT


def test_ordered_rules_are_used_as_given():
    ordered = OrderedRules.from_rules(
        [rule(1, priority=1), rule(2, priority=3), rule(3, priority=3)]
    )

    assert [r.id for r in ordered] == [3, 2, 1]
    assert select_rule(MESSAGE, ordered).id == 3


def test_validate_rule_patterns_reports_every_problem():
    problems = validate_rule_patterns(
        {"sender_pattern": "[bad", "merchant_pattern": "(also bad", "amount_pattern": ""}
    )

    assert any(p.startswith("Invalid sender_pattern") for p in problems)
    assert any(p.startswith("Invalid merchant_pattern") for p in problems)
    assert "amount_pattern is required" in problems


def test_validate_rule_patterns_accepts_valid_rule():
    assert validate_rule_patterns(rule(1, sender_pattern="chase")) == []


def test_validate_rule_patterns_flags_missing_capture_group():
    assert validate_rule_patterns({"amount_pattern": r"\d+"}) == [
        "amount_pattern must contain a capture group"
    ]
