"""
Debug Service - Business Logic

Diagnostics over an account's ingested emails: integrity audit, parse-state
statistics, orphan listing and reset, and card-suffix extraction checks.
"""

import database

from ingest import integrity
from ingest.logging_config import get_logger

logger = get_logger(__name__)


def _require_account(account_id: int):
    if not database.get_mail_account(account_id):
        raise ValueError(f"Mail account {account_id} not found")


def audit(account_id: int, sample_limit: int = integrity.DEFAULT_SAMPLE_LIMIT) -> dict:
    """Run the read-only integrity audit."""
    _require_account(account_id)
    return integrity.audit_integrity(account_id, sample_limit=sample_limit)


def parse_status(account_id: int) -> dict:
    _require_account(account_id)
    return integrity.parse_status(account_id)


def orphaned_emails(account_id: int, reset: bool = False, limit: int = 100) -> dict:
    """
    List parsed_ok emails that have no purchase.

    Args:
        account_id: Mail account ID
        reset: Also reset the orphans to unparsed so the next quick parse retries them
        limit: Maximum emails listed

    Returns:
        Dict with the orphan count, a sample and how many were reset
    """
    _require_account(account_id)
    orphans = database.get_orphaned_emails(account_id, limit=limit)

    reset_count = 0
    if reset and orphans["count"]:
        reset_count = database.reset_emails_to_unparsed(
            account_id, database.get_orphaned_email_ids(account_id)
        )
        logger.info(f"Reset {reset_count} orphaned emails", extra={"account_id": account_id})

    return {
        "account_id": account_id,
        "count": orphans["count"],
        "emails": orphans["sample"],
        "reset": reset_count,
    }


def reset_emails(account_id: int) -> dict:
    """Reset every email of the account to unparsed (purchases are kept)."""
    _require_account(account_id)
    count = database.reset_emails_to_unparsed(account_id)
    logger.info(f"Reset {count} emails to unparsed", extra={"account_id": account_id})
    return {"account_id": account_id, "reset": count}


def card_extraction(account_id: int, limit: int = 5) -> dict:
    _require_account(account_id)
    return integrity.card_extraction_report(account_id, limit=limit)
