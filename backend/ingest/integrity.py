"""
Integrity Auditor

Read-only reconciliation over an account's emails and purchases. Finds:
- orphaned emails (parsed_ok, zero purchases)
- duplicated emails (more than one purchase)
- emails flagged parsed_error, with reasons
- email-sourced purchases with no email link
- inactive rules still referenced by historical emails

Nothing here writes; repairs go through the smart-full parse mode.
"""

from datetime import UTC, datetime

import database

from ingest.logging_config import get_logger
from ingest.parse_engine import EmailParser

logger = get_logger(__name__)

DEFAULT_SAMPLE_LIMIT = 50


def audit_integrity(account_id: int, sample_limit: int = DEFAULT_SAMPLE_LIMIT) -> dict:
    """
    Run every integrity check for an account.

    Args:
        account_id: Mail account ID
        sample_limit: Maximum rows returned per check

    Returns:
        Dict with a 'counts' summary, per-check samples and a healthy flag
    """
    orphaned = database.get_orphaned_emails(account_id, limit=sample_limit)
    duplicated = database.get_duplicated_emails(account_id, limit=sample_limit)
    errors = database.get_error_emails(account_id, limit=sample_limit)
    broken_links = database.get_purchases_without_email(account_id, limit=sample_limit)
    dead_rules = database.get_inactive_rules_referenced(account_id, limit=sample_limit)

    counts = {
        "orphaned": orphaned["count"],
        "duplicated": duplicated["count"],
        "parse_errors": errors["count"],
        "purchases_without_email": broken_links["count"],
        "inactive_rules_referenced": dead_rules["count"],
    }

    # Parse errors and inactive rules are informational, not inconsistencies
    healthy = not (
        counts["orphaned"] or counts["duplicated"] or counts["purchases_without_email"]
    )

    logger.info(f"Integrity audit: {counts}", extra={"account_id": account_id})

    return {
        "account_id": account_id,
        "checked_at": datetime.now(UTC).isoformat(),
        "healthy": healthy,
        "counts": counts,
        "orphaned_emails": orphaned["sample"],
        "duplicated_emails": duplicated["sample"],
        "emails_with_parse_errors": errors["sample"],
        "purchases_without_email": broken_links["sample"],
        "inactive_rules_referenced": dead_rules["sample"],
    }


def parse_status(account_id: int) -> dict:
    """
    Parse-state statistics for an account.

    Returns:
        Dict with email counts by state, orphan count, rule, purchase and card counts
    """
    emails = database.count_emails_by_state(account_id)
    return {
        "account_id": account_id,
        "emails": emails,
        "orphaned": len(database.get_orphaned_email_ids(account_id)),
        "rules": database.count_rules(account_id),
        "purchases": database.count_purchases(account_id),
        "cards": database.count_cards(account_id),
    }


def card_extraction_report(account_id: int, limit: int = 5) -> dict:
    """
    Check card-suffix extraction on the most recent emails.

    For each email, reports the extracted suffix and whether it resolves to an
    active card. Parses in memory only.
    """
    parser = EmailParser(database.get_parsing_rules(account_id, active_only=True))
    results = []

    for email in database.get_recent_emails(account_id, limit=limit):
        outcome = parser.parse(email)
        last_four = outcome.fields.get("card_last_four") if outcome.success else None
        card = database.find_card_by_last_four(last_four, account_id)
        results.append(
            {
                "email_id": email["id"],
                "subject": email["subject"],
                "rule_id": outcome.rule_id,
                "rule_name": outcome.rule_name,
                "parsed": outcome.success,
                "error": outcome.error,
                "card_last_four": last_four,
                "card_found": card is not None,
                "card_id": card["card_id"] if card else None,
                "employee_id": card["employee_id"] if card else None,
            }
        )

    return {
        "account_id": account_id,
        "checked": len(results),
        "with_card_suffix": sum(1 for r in results if r["card_last_four"]),
        "matched_cards": sum(1 for r in results if r["card_found"]),
        "results": results,
    }
