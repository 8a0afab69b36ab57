"""
Parse Engine

Composes rule selection, field extraction and date resolution into a single
``parse(message) -> ParseOutcome`` call. Pure and synchronous: no database or
network access, so the same call backs production batches, dry runs and the
rule tester.

Usage:
    from ingest.parse_engine import EmailParser

    parser = EmailParser(rules)
    outcome = parser.parse({"sender": ..., "subject": ..., "body": ..., "received_at": ...})
    if outcome.success:
        save(outcome.fields)
"""

from dataclasses import dataclass
from datetime import UTC, date, datetime

from ingest.date_resolver import resolve_date
from ingest.errors import MailLedgerError, NoMatchingRule
from ingest.field_extractor import extract_fields
from ingest.rule_matcher import OrderedRules, compile_rule, select_rule


@dataclass(frozen=True)
class ParseOutcome:
    """Result of parsing one message. Not persisted."""

    success: bool
    fields: dict | None = None
    error: str | None = None
    error_code: str | None = None
    rule_id: int | None = None
    rule_name: str | None = None

    def to_dict(self) -> dict:
        fields = None
        if self.fields is not None:
            fields = {k: _jsonable(v) for k, v in self.fields.items()}
        return {
            "success": self.success,
            "fields": fields,
            "error": self.error,
            "error_code": self.error_code,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
        }


def _jsonable(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if value is not None and not isinstance(value, (str, int, float, bool)):
        return str(value)
    return value


class EmailParser:
    """Parses messages against a fixed rule set.

    Rules are compiled and ordered once at construction, so a batch reuses
    the same compiled patterns for every message.
    """

    def __init__(self, rules):
        if isinstance(rules, OrderedRules):
            self.rules = rules
        else:
            self.rules = OrderedRules.from_rules(rules)

    def parse(self, message: dict) -> ParseOutcome:
        """
        Parse a message into transaction fields.

        Args:
            message: Dict with sender, subject, body and received_at

        Returns:
            ParseOutcome with fields (amount, merchant, description,
            card_last_four, purchase_date, date_precision) on success, or an
            error code and reason on failure
        """
        rule = select_rule(message, self.rules)
        if rule is None:
            err = NoMatchingRule()
            return ParseOutcome(success=False, error=err.message, error_code=err.code)

        try:
            extracted = extract_fields(message, rule)
            purchase_date, precision = resolve_date(
                extracted.pop("date_text"), rule.date_format, message.get("received_at")
            )
        except MailLedgerError as e:
            return ParseOutcome(
                success=False,
                error=e.message,
                error_code=e.code,
                rule_id=rule.id,
                rule_name=rule.name,
            )

        extracted["purchase_date"] = purchase_date
        extracted["date_precision"] = precision
        return ParseOutcome(
            success=True, fields=extracted, rule_id=rule.id, rule_name=rule.name
        )


def parse_message(message: dict, rules) -> ParseOutcome:
    """Parse one message against a rule set (convenience wrapper)."""
    return EmailParser(rules).parse(message)


def try_rule(sample_text: str, rule) -> dict:
    """
    Try a single rule against pasted sample text.

    The first line of the sample becomes the subject and the whole text the
    body. The rule is evaluated even if it is marked inactive.

    Returns:
        Dict with matched flag, rule validity and the parse outcome
    """
    compiled = compile_rule(rule)
    sample_text = sample_text or ""
    lines = sample_text.splitlines()
    message = {
        "sender": "",
        "subject": lines[0] if lines else "",
        "body": sample_text,
        "received_at": datetime.now(UTC),
    }

    if not compiled.is_valid:
        return {
            "matched": False,
            "valid": False,
            "error": compiled.error.message,
            "outcome": None,
        }

    active = OrderedRules([compiled])
    matched = select_rule(message, active) is not None
    outcome = EmailParser(active).parse(message)
    return {
        "matched": matched,
        "valid": True,
        "error": None,
        "outcome": outcome.to_dict(),
    }

