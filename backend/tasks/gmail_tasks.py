"""Celery tasks for Gmail sync and parsing.

Tasks call the same orchestrator entry points as the HTTP routes, so
scheduled and interactive runs behave identically.
"""

from celery_app import celery_app
from ingest import gmail_sync
from ingest.errors import MailLedgerError
from ingest.logging_config import get_logger

logger = get_logger(__name__)


def _failure(e: Exception) -> dict:
    return {
        "status": "failed",
        "error": str(e),
        "code": getattr(e, "code", "invalid_request"),
        "partial": getattr(e, "partial_summary", None),
    }


@celery_app.task(bind=True, time_limit=1800, soft_time_limit=1700)
def sync_account_task(self, account_id: int, max_messages: int = None):
    """
    Fetch new messages for one account and quick-parse them.

    Args:
        account_id: Mail account ID
        max_messages: Optional cap on listed messages

    Returns:
        dict: Fetch and parse summaries, or failure details
    """
    self.update_state(state="STARTED", meta={"account_id": account_id})
    try:
        result = gmail_sync.sync_account(account_id, max_messages=max_messages)
    except (MailLedgerError, ValueError) as e:
        logger.warning(f"Sync task failed: {e}", extra={"account_id": account_id})
        return _failure(e)
    return {"status": "completed", **result}


@celery_app.task(bind=True, time_limit=1800, soft_time_limit=1700)
def run_parse_task(self, account_id: int, mode: str = "quick"):
    """Run one parse mode over an account's stored emails."""
    self.update_state(state="STARTED", meta={"account_id": account_id, "mode": mode})
    try:
        summary = gmail_sync.run_parse(account_id, mode)
    except (MailLedgerError, ValueError) as e:
        logger.warning(f"Parse task failed: {e}", extra={"account_id": account_id})
        return _failure(e)
    return {"status": "completed", **summary.to_dict()}


@celery_app.task(time_limit=3600, soft_time_limit=3500)
def sync_all_accounts_task(max_messages: int = None):
    """Scheduled sync of every connected account."""
    if max_messages is None:
        max_messages = gmail_sync.SCHEDULED_FETCH_LIMIT
    result = gmail_sync.sync_all_accounts(max_messages=max_messages)
    logger.info(
        f"Scheduled sync: {result['synced']} accounts synced, {result['failed']} failed"
    )
    return result
