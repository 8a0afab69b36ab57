"""
Gmail Sync Module

Drives the ingestion batch for one mailbox account:

    fetch  -> page through the selected label, store new messages as unparsed
    parse  -> run the parse engine over a mode-selected message set and write
              purchases / parse state one message at a time

Parse modes are rows in a single table (selection + write policy) and share
one driver:

    quick         unparsed messages               create purchase
    smart-full    orphaned parsed_ok messages     reset to unparsed, then quick
    full-reparse  all messages                    create unless one exists (skip)
    force-full    all messages                    always create (duplicates!)

Each message is committed on its own, so an aborted or cancelled run keeps
everything written before it stopped. At most one batch runs per account.
"""

import os
import uuid
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime

import database
from dotenv import load_dotenv
from sqlalchemy.exc import SQLAlchemyError

from ingest import locks
from ingest.errors import (
    DUPLICATE_SKIPPED,
    EXTRACTION_FAILED,
    STORAGE_FAILED,
    BatchInProgress,
    ErrorStage,
    ExternalAPIFailure,
    MailLedgerError,
    ProcessingError,
    ReauthorizationRequired,
)
from ingest.gmail_auth import token_vault
from ingest.gmail_client import GmailClient
from ingest.logging_config import get_logger
from ingest.parse_engine import EmailParser

load_dotenv(override=False)

logger = get_logger(__name__)

SCHEDULED_FETCH_LIMIT = int(os.getenv("SCHEDULED_FETCH_LIMIT", "50"))
BATCH_LOCK_TIMEOUT = 3600  # seconds; a crashed worker releases the batch after this
MAX_CONSECUTIVE_FETCH_FAILURES = 5
MAX_REPORTED_ERRORS = 100

# Write policies
CREATE = "create"
SKIP_IF_EXISTS = "skip_if_exists"
ALWAYS_CREATE = "always_create"


@dataclass
class RunSummary:
    """Statistics for one fetch or parse run."""

    account_id: int
    mode: str
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    transactions_created: int = 0
    reset: int = 0
    errors: list = field(default_factory=list)
    cancelled: bool = False
    aborted: bool = False
    abort_reason: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    def record_failure(self, item_id, code: str, reason: str):
        self.failed += 1
        if len(self.errors) < MAX_REPORTED_ERRORS:
            self.errors.append({"id": item_id, "code": code, "reason": reason})

    def finish(self):
        self.finished_at = datetime.now(UTC)
        return self

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "mode": self.mode,
            "run_id": self.run_id,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "transactions_created": self.transactions_created,
            "reset": self.reset,
            "errors": list(self.errors),
            "cancelled": self.cancelled,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass(frozen=True)
class ParseMode:
    """Selection predicate + write policy for one parse mode."""

    name: str
    select: Callable[[int], list]
    write_policy: str
    reset_selected: bool = False


def _select_unparsed(account_id: int) -> list:
    return database.get_raw_email_ids(account_id, parse_state="unparsed")


def _select_all(account_id: int) -> list:
    return database.get_raw_email_ids(account_id)


PARSE_MODES = {
    "quick": ParseMode("quick", _select_unparsed, CREATE),
    "smart-full": ParseMode(
        "smart-full", database.get_orphaned_email_ids, CREATE, reset_selected=True
    ),
    "full-reparse": ParseMode("full-reparse", _select_all, SKIP_IF_EXISTS),
    "force-full": ParseMode("force-full", _select_all, ALWAYS_CREATE),
}


def get_parse_mode(mode: str) -> ParseMode:
    try:
        return PARSE_MODES[mode]
    except KeyError:
        raise ValueError(
            f"Unknown parse mode '{mode}'. Expected one of: {', '.join(PARSE_MODES)}"
        ) from None


def _load_parser(account_id: int) -> EmailParser:
    return EmailParser(database.get_parsing_rules(account_id, active_only=True))


def _require_account(account_id: int) -> dict:
    account = database.get_mail_account(account_id)
    if not account:
        raise ValueError(f"Mail account {account_id} not found")
    return account


def _abort(summary: RunSummary, exc: MailLedgerError):
    """Attach partial progress to an infrastructure error before it propagates."""
    summary.aborted = True
    summary.abort_reason = str(exc)
    summary.finish()
    exc.partial_summary = summary.to_dict()
    ProcessingError.from_exception(
        exc,
        ErrorStage.AUTH if isinstance(exc, ReauthorizationRequired) else ErrorStage.FETCH,
    ).log(account_id=summary.account_id, run_id=summary.run_id)
    database.update_account_error(summary.account_id, str(exc))


class BatchRun:
    """Handle on an account's held batch lock.

    ``should_stop`` runs at every page and message boundary. It pushes the
    lock's expiry out by another BATCH_LOCK_TIMEOUT, so a long run keeps the
    lock for as long as it makes progress, and reports a pending cancel.
    """

    def __init__(self, account_id: int, lock):
        self.account_id = account_id
        self.lock = lock

    def should_stop(self) -> bool:
        if not locks.renew_lock(self.lock):
            raise BatchInProgress(
                f"Batch lock for account {self.account_id} expired mid-run; "
                "another batch may have started"
            )
        return locks.is_cancel_requested(self.account_id)


@contextmanager
def batch_guard(account_id: int):
    """Hold the account's batch lock; a second concurrent batch gets BatchInProgress."""
    with locks.named_lock(
        locks.batch_lock_name(account_id), timeout=BATCH_LOCK_TIMEOUT, blocking=False
    ) as lock:
        if lock is None:
            raise BatchInProgress(f"A batch is already running for account {account_id}")
        # Stale cancel requests from an earlier run do not apply to this one
        locks.clear_cancel(account_id)
        yield BatchRun(account_id, lock)


# ============================================================================
# PARSE
# ============================================================================


def _process_email(
    email: dict, parser: EmailParser, mode: ParseMode, summary: RunSummary
):
    """Parse one stored email and apply the mode's write policy."""
    account_id = summary.account_id
    outcome = parser.parse(email)

    if not outcome.success:
        # Never downgrades an email that is already parsed_ok
        database.mark_email_error(email["id"], outcome.error, outcome.rule_id)
        summary.record_failure(email["id"], outcome.error_code, outcome.error)
        logger.warning(
            f"Parse failed ({outcome.error_code}): {outcome.error}",
            extra={
                "account_id": account_id,
                "run_id": summary.run_id,
                "message_id": email["gmail_message_id"],
                "rule_id": outcome.rule_id,
            },
        )
        return

    if mode.write_policy == SKIP_IF_EXISTS and database.has_purchase_for_email(
        email["id"]
    ):
        summary.skipped += 1
        logger.debug(
            f"{DUPLICATE_SKIPPED}: email {email['id']} already has a purchase",
            extra={"account_id": account_id, "run_id": summary.run_id},
        )
        return

    fields = outcome.fields
    card = database.find_card_by_last_four(fields.get("card_last_four"), account_id)

    try:
        database.create_purchase(
            account_id=account_id,
            amount=fields["amount"],
            purchase_date=fields["purchase_date"],
            date_precision=fields["date_precision"],
            merchant=fields.get("merchant"),
            description=fields.get("description"),
            card_id=card["card_id"] if card else None,
            employee_id=card["employee_id"] if card else None,
            raw_email_id=email["id"],
            parsing_rule_id=outcome.rule_id,
            source="email",
        )
    except ValueError as e:
        # Values the purchase store refuses fail this email only
        database.mark_email_error(email["id"], str(e), outcome.rule_id)
        summary.record_failure(email["id"], EXTRACTION_FAILED, str(e))
        logger.warning(
            f"Purchase rejected: {e}",
            extra={
                "account_id": account_id,
                "run_id": summary.run_id,
                "message_id": email["gmail_message_id"],
                "rule_id": outcome.rule_id,
            },
        )
        return

    summary.transactions_created += 1
    database.mark_email_parsed(email["id"], outcome.rule_id)
    summary.succeeded += 1


def _parse_emails(
    email_ids: list, parser: EmailParser, mode: ParseMode, summary, batch: BatchRun
):
    for email_id in email_ids:
        if batch.should_stop():
            summary.cancelled = True
            logger.info(
                "Parse cancelled",
                extra={"account_id": summary.account_id, "run_id": summary.run_id},
            )
            return

        email = database.get_raw_email(email_id)
        if email is None:
            continue

        summary.processed += 1
        try:
            _process_email(email, parser, mode, summary)
        except SQLAlchemyError as e:
            ProcessingError.from_exception(
                e, ErrorStage.STORAGE, context={"message_id": email["gmail_message_id"]}
            ).log(account_id=summary.account_id, run_id=summary.run_id)
            summary.record_failure(email_id, STORAGE_FAILED, str(e).split("\n")[0])


def _run_parse(account_id: int, mode: ParseMode, batch: BatchRun) -> RunSummary:
    summary = RunSummary(account_id=account_id, mode=mode.name)
    logger.info(
        f"Starting {mode.name} parse",
        extra={"account_id": account_id, "run_id": summary.run_id},
    )

    parser = _load_parser(account_id)
    selected = mode.select(account_id)

    if mode.reset_selected:
        summary.reset = database.reset_emails_to_unparsed(account_id, selected)
        # Second pass: quick over everything now unparsed
        selected = _select_unparsed(account_id)

    _parse_emails(selected, parser, mode, summary, batch)
    summary.finish()

    if not summary.cancelled:
        database.update_last_synced(account_id)

    logger.info(
        f"{mode.name} parse complete: {summary.processed} processed, "
        f"{summary.succeeded} ok, {summary.failed} failed, {summary.skipped} skipped",
        extra={"account_id": account_id, "run_id": summary.run_id},
    )
    return summary


def run_parse(account_id: int, mode: str = "quick") -> RunSummary:
    """
    Parse an account's stored emails in the given mode.

    Args:
        account_id: Mail account ID
        mode: quick | smart-full | full-reparse | force-full

    Returns:
        RunSummary

    Raises:
        ValueError: Unknown mode or account
        BatchInProgress: Another batch is running for the account
    """
    parse_mode = get_parse_mode(mode)
    _require_account(account_id)
    with batch_guard(account_id) as batch:
        return _run_parse(account_id, parse_mode, batch)


# ============================================================================
# FETCH
# ============================================================================


def _fetch(
    account: dict,
    client: GmailClient,
    summary: RunSummary,
    max_messages,
    batch: BatchRun,
):
    account_id = account["id"]
    label_id = account.get("label_id")
    if not label_id:
        raise ValueError("No Gmail label selected for this account")

    consecutive_failures = 0

    for message_id in client.iter_message_ids(
        label_id, max_messages=max_messages, is_cancelled=batch.should_stop
    ):
        if batch.should_stop():
            break

        summary.processed += 1
        if database.get_existing_message_ids(account_id, [message_id]):
            summary.skipped += 1
            continue

        try:
            message = client.get_message(message_id)
        except ExternalAPIFailure as e:
            consecutive_failures += 1
            summary.record_failure(message_id, e.code, str(e))
            ProcessingError.from_exception(
                e, ErrorStage.FETCH, context={"message_id": message_id}
            ).log(account_id=account_id, run_id=summary.run_id)
            if consecutive_failures >= MAX_CONSECUTIVE_FETCH_FAILURES:
                raise ExternalAPIFailure(
                    f"{consecutive_failures} consecutive message fetches failed; "
                    f"last error: {e}",
                    status_code=e.status_code,
                ) from e
            continue

        consecutive_failures = 0
        try:
            stored_id = database.save_raw_email(account_id, message)
        except SQLAlchemyError as e:
            ProcessingError.from_exception(
                e, ErrorStage.STORAGE, context={"message_id": message_id}
            ).log(account_id=account_id, run_id=summary.run_id)
            summary.record_failure(message_id, STORAGE_FAILED, str(e).split("\n")[0])
            continue

        if stored_id is None:
            summary.skipped += 1
        else:
            summary.succeeded += 1

    summary.cancelled = locks.is_cancel_requested(account_id)


def fetch_new_messages(account_id: int, max_messages: int = None) -> RunSummary:
    """
    Fetch new messages from the account's selected label.

    Pages through the label to completion unless ``max_messages`` caps the
    number of listed messages. Messages already stored are skipped, and a
    single message's fetch failure is counted rather than failing the run.

    Raises:
        ValueError: Unknown account or no label selected
        BatchInProgress: Another batch is running for the account
        ReauthorizationRequired / ExternalAPIFailure: with ``partial_summary``
    """
    account = _require_account(account_id)
    with batch_guard(account_id) as batch:
        return _fetch_with_summary(account, max_messages, batch)


def _fetch_with_summary(account: dict, max_messages, batch: BatchRun) -> RunSummary:
    account_id = account["id"]
    summary = RunSummary(account_id=account_id, mode="fetch")
    logger.info(
        f"Starting fetch from label {account.get('label_name') or account.get('label_id')}",
        extra={"account_id": account_id, "run_id": summary.run_id},
    )

    try:
        # Token is re-checked before every request, so a long run refreshes mid-way
        client = GmailClient(lambda: token_vault.get_valid_token(account_id))
        _fetch(account, client, summary, max_messages, batch)
    except (ExternalAPIFailure, ReauthorizationRequired) as e:
        _abort(summary, e)
        raise

    summary.finish()
    logger.info(
        f"Fetch complete: {summary.succeeded} new, {summary.skipped} already stored, "
        f"{summary.failed} failed",
        extra={"account_id": account_id, "run_id": summary.run_id},
    )
    return summary


# ============================================================================
# ENTRY POINTS
# ============================================================================


def sync_account(account_id: int, max_messages: int = None) -> dict:
    """
    Sync one account: fetch new messages, then quick-parse the backlog.

    Interactive routes and the scheduler share this entry point.

    Returns:
        Dict with 'fetch' and 'parse' run summaries

    Raises:
        BatchInProgress, ValueError, or ReauthorizationRequired /
        ExternalAPIFailure carrying ``partial_summary``
    """
    account = _require_account(account_id)
    with batch_guard(account_id) as batch:
        try:
            fetch_summary = _fetch_with_summary(account, max_messages, batch)
        except (ExternalAPIFailure, ReauthorizationRequired) as e:
            e.partial_summary = {"fetch": e.partial_summary, "parse": None}
            raise

        if fetch_summary.cancelled:
            return {"account_id": account_id, "fetch": fetch_summary.to_dict(), "parse": None}

        parse_summary = _run_parse(account_id, PARSE_MODES["quick"], batch)

    database.update_account_error(account_id, None)
    return {
        "account_id": account_id,
        "fetch": fetch_summary.to_dict(),
        "parse": parse_summary.to_dict(),
    }


def sync_all_accounts(max_messages: int = SCHEDULED_FETCH_LIMIT) -> dict:
    """
    Sync every connected account (scheduled entry point).

    One account's failure is recorded and the loop moves on.

    Returns:
        Dict with per-account results and success/failure counts
    """
    results = []
    for account in database.get_connected_accounts():
        account_id = account["id"]
        try:
            result = sync_account(account_id, max_messages=max_messages)
            results.append({"account_id": account_id, "success": True, **result})
        except (MailLedgerError, ValueError) as e:
            logger.warning(
                f"Scheduled sync failed: {e}", extra={"account_id": account_id}
            )
            results.append(
                {
                    "account_id": account_id,
                    "success": False,
                    "error": str(e),
                    "code": getattr(e, "code", "invalid_request"),
                    "partial": getattr(e, "partial_summary", None),
                }
            )

    succeeded = sum(1 for r in results if r["success"])
    return {
        "accounts": results,
        "synced": succeeded,
        "failed": len(results) - succeeded,
    }


def cancel_batch(account_id: int) -> dict:
    """Ask the account's running batch to stop at the next page or message."""
    locks.request_cancel(account_id)
    logger.info("Batch cancellation requested", extra={"account_id": account_id})
    return {"account_id": account_id, "cancel_requested": True}


def dry_run_parse(
    account_id: int, email_ids: list = None, unparsed: bool = False, limit: int = 10
) -> dict:
    """
    Parse emails without writing anything.

    Args:
        account_id: Mail account ID
        email_ids: Specific emails to try
        unparsed: When no IDs are given, try up to ``limit`` unparsed emails
            (otherwise the most recent ``limit`` emails)
        limit: Maximum number of emails when selecting automatically

    Returns:
        Dict with per-email outcomes (including card resolution) and counts
    """
    _require_account(account_id)
    parser = _load_parser(account_id)

    if email_ids:
        emails = database.get_emails_by_ids(account_id, email_ids)
    elif unparsed:
        ids = _select_unparsed(account_id)[:limit]
        emails = database.get_emails_by_ids(account_id, ids)
    else:
        emails = database.get_recent_emails(account_id, limit=limit)

    results = []
    for email in emails:
        outcome = parser.parse(email)
        card = None
        if outcome.success:
            card = database.find_card_by_last_four(
                outcome.fields.get("card_last_four"), account_id
            )
        results.append(
            {
                "email_id": email["id"],
                "subject": email["subject"],
                "sender": email["sender"],
                "parse_state": email["parse_state"],
                "existing_purchases": database.count_purchases_for_email(email["id"]),
                "outcome": outcome.to_dict(),
                "card": card,
            }
        )

    succeeded = sum(1 for r in results if r["outcome"]["success"])
    return {
        "account_id": account_id,
        "processed": len(results),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "results": results,
    }
