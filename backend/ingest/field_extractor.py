"""
Field Extractor

Applies a selected rule's extraction patterns to a message. The amount is
mandatory; merchant, date text and card suffix are best-effort and simply
come back as None when their pattern is unset or does not match.
"""

import re
from decimal import Decimal, InvalidOperation

from ingest.errors import ExtractionFailed
from ingest.rule_matcher import CompiledRule

# Leading numeric portion of an amount string (e.g. "1234.56 USD" -> "1234.56")
AMOUNT_NUMBER = re.compile(r"^[+]?(\d+(?:\.\d*)?|\.\d+)")

CENT = Decimal("0.01")


def build_search_text(message: dict) -> str:
    """Subject and body joined by a newline; patterns search this single text."""
    return f"{message.get('subject') or ''}\n{message.get('body') or ''}"


def parse_amount(raw: str) -> Decimal | None:
    """
    Parse a captured amount string into a positive Decimal.

    Thousands separators are stripped and any trailing text after the number
    is ignored.

    Returns:
        Amount rounded to cents, or None if it is not a positive number
    """
    if raw is None:
        return None

    cleaned = raw.replace(",", "").strip()
    match = AMOUNT_NUMBER.match(cleaned)
    if not match:
        return None

    try:
        amount = Decimal(match.group(1)).quantize(CENT)
    except InvalidOperation:
        return None

    # Checked after rounding: sub-cent values round to zero
    if amount <= 0:
        return None
    return amount


def first_group(pattern: re.Pattern | None, text: str) -> str | None:
    """Return the first non-empty capture group (left to right), trimmed."""
    if pattern is None:
        return None
    match = pattern.search(text)
    if not match:
        return None
    for group in match.groups():
        if group and group.strip():
            return group.strip()
    return None


def normalize_card_last_four(value: str | None) -> str | None:
    # Some issuers print only three digits; those get a single leading zero
    if value and len(value) == 3:
        return "0" + value
    return value


def extract_fields(message: dict, rule: CompiledRule) -> dict:
    """
    Extract transaction fields from a message using one rule.

    Args:
        message: Dict with subject and body
        rule: Compiled rule selected for the message

    Returns:
        Dict with amount (Decimal), merchant, date_text, card_last_four, description

    Raises:
        ExtractionFailed: Amount pattern did not match or the value is not positive
    """
    text = build_search_text(message)

    amount_match = rule.pattern("amount").search(text)
    if not amount_match:
        raise ExtractionFailed()

    amount = parse_amount(amount_match.group(1))
    if amount is None:
        raise ExtractionFailed(
            f"Amount could not be parsed from '{amount_match.group(1)}'"
        )

    subject = (message.get("subject") or "").strip()

    return {
        "amount": amount,
        "merchant": first_group(rule.pattern("merchant"), text),
        "date_text": first_group(rule.pattern("date"), text),
        "card_last_four": normalize_card_last_four(
            first_group(rule.pattern("card_last_four"), text)
        ),
        "description": subject or None,
    }
