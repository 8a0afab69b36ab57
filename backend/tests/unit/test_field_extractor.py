# tests/unit/test_field_extractor.py
"""Tests for amount parsing and field extraction."""

import re
from decimal import Decimal

import pytest

from ingest.errors import ExtractionFailed
from ingest.field_extractor import (
    build_search_text,
    extract_fields,
    first_group,
    normalize_card_last_four,
    parse_amount,
)
from ingest.rule_matcher import compile_rule

RULE = compile_rule(
    {
        "id": 1,
        "name": "card alert",
        "amount_pattern": r"\$([\d,]+(?:\.\d+)?)",
        "merchant_pattern": r"at ([A-Za-z ]+?) on",
        "date_pattern": r"on (\w{3} \d{2}, \d{4})",
        "card_last_four_pattern": r"ending in (\d{3,4})",
    }
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("42.50", Decimal("42.50")),
        ("1,234.56", Decimal("1234.56")),
        ("12.5 USD", Decimal("12.50")),
        ("7", Decimal("7.00")),
        (" 19.999 ", Decimal("20.00")),
    ],
)
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


@pytest.mark.parametrize("raw", ["0", "0.00", "0.004", "-5.00", "abc", "", None])
def test_parse_amount_rejects_non_positive_or_non_numeric(raw):
    assert parse_amount(raw) is None


def test_search_text_joins_subject_and_body():
    assert build_search_text({"subject": "Hi", "body": "there"}) == "Hi\nthere"
    assert build_search_text({"subject": None, "body": "only body"}) == "\nonly body"


def test_extract_all_fields():
    message = {
        "subject": "Transaction alert",
        "body": "You spent $1,234.56 at Corner Store on Mar 05, 2024 with card ending in 9876.",
    }

    fields = extract_fields(message, RULE)

    assert fields == {
        "amount": Decimal("1234.56"),
        "merchant": "Corner Store",
        "date_text": "Mar 05, 2024",
        "card_last_four": "9876",
        "description": "Transaction alert",
    }


def test_amount_found_in_subject():
    message = {"subject": "You spent $8.00", "body": "No amount in the body."}

    assert extract_fields(message, RULE)["amount"] == Decimal("8.00")


def test_optional_fields_absent_when_not_matched():
    fields = extract_fields({"subject": "", "body": "Charge of $5.00"}, RULE)

    assert fields["merchant"] is None
    assert fields["date_text"] is None
    assert fields["card_last_four"] is None
    assert fields["description"] is None


def test_three_digit_card_suffix_gets_leading_zero():
    fields = extract_fields({"subject": "", "body": "$5.00 card ending in 123"}, RULE)

    assert fields["card_last_four"] == "0123"


def test_normalize_card_last_four():
    assert normalize_card_last_four("123") == "0123"
    assert normalize_card_last_four("4567") == "4567"
    assert normalize_card_last_four(None) is None


def test_missing_amount_raises_extraction_failed():
    with pytest.raises(ExtractionFailed):
        extract_fields({"subject": "Hello", "body": "No money here"}, RULE)


def test_zero_amount_raises_extraction_failed():
    with pytest.raises(ExtractionFailed, match="could not be parsed"):
        extract_fields({"subject": "", "body": "Charge of $0.00"}, RULE)


def test_first_group_returns_first_non_empty_group():
    pattern = re.compile(r"(?:at (\w+)|from (\w+))")

    assert first_group(pattern, "payment from Shop") == "Shop"
    assert first_group(pattern, "nothing") is None
    assert first_group(None, "anything") is None
