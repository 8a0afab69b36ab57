"""
Parsing Service - Business Logic

Runs parse modes, dry runs and the rule tester over stored emails.
"""

from ingest import gmail_sync
from ingest.parse_engine import try_rule as run_rule
from ingest.rule_matcher import validate_rule_patterns
from tasks.gmail_tasks import run_parse_task


def run_parse(account_id: int, mode: str = "quick", run_async: bool = False) -> dict:
    """
    Parse stored emails in one of the four modes.

    Args:
        account_id: Mail account ID
        mode: quick | smart-full | full-reparse | force-full
        run_async: Queue the run on a Celery worker

    Returns:
        Run summary dict, or the queued task ID

    Raises:
        ValueError: Unknown mode or account
        BatchInProgress: Another batch is running for the account
    """
    if run_async:
        gmail_sync.get_parse_mode(mode)
        task = run_parse_task.delay(account_id, mode)
        return {"account_id": account_id, "mode": mode, "status": "queued", "task_id": task.id}

    return gmail_sync.run_parse(account_id, mode).to_dict()


def dry_run(
    account_id: int, email_ids: list = None, unparsed: bool = False, limit: int = 10
) -> dict:
    """Parse emails without writing purchases or parse state."""
    if email_ids is not None and not isinstance(email_ids, list):
        raise ValueError("message_ids must be a list")
    return gmail_sync.dry_run_parse(
        account_id, email_ids=email_ids, unparsed=unparsed, limit=limit
    )


def try_rule(sample_text: str, rule: dict) -> dict:
    """
    Try a rule against pasted sample text.

    Raises:
        ValueError: Missing sample text or rule
    """
    if not sample_text:
        raise ValueError("sample_text is required")
    if not isinstance(rule, dict):
        raise ValueError("rule must be an object")

    result = run_rule(sample_text, rule)
    result["problems"] = validate_rule_patterns(rule)
    return result


def cancel(account_id: int) -> dict:
    """Ask the account's running batch to stop."""
    return gmail_sync.cancel_batch(account_id)
