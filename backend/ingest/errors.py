"""Error taxonomy and structured error tracking for the ingestion workflow.

Parse-level conditions (no matching rule, extraction failure, unresolvable date,
invalid rule pattern) are raised inside the parse engine and converted to a
``ParseOutcome`` before they reach a batch. Infrastructure conditions (external API
failure, reauthorization required) abort a run and carry the partial run summary.

Usage:
    from ingest.errors import ProcessingError, ErrorStage

    try:
        client.get_message(message_id)
    except ExternalAPIFailure as e:
        ProcessingError.from_exception(
            e, ErrorStage.FETCH, context={"message_id": message_id}
        ).log(account_id=account_id, run_id=run_id)
"""

from enum import Enum
from typing import Any

from ingest.logging_config import get_logger

logger = get_logger(__name__)

# Outcome codes (stored on messages and reported in run summaries)
NO_MATCHING_RULE = "no_matching_rule"
EXTRACTION_FAILED = "extraction_failed"
DATE_UNRESOLVABLE = "date_unresolvable"
INVALID_RULE_PATTERN = "invalid_rule_pattern"
EXTERNAL_API_FAILURE = "external_api_failure"
REAUTHORIZATION_REQUIRED = "reauthorization_required"
BATCH_IN_PROGRESS = "batch_in_progress"
DUPLICATE_SKIPPED = "duplicate_skipped"
STORAGE_FAILED = "storage_failed"


class MailLedgerError(Exception):
    """Base class for all ingestion errors."""

    code = "error"

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__doc__)
        self.partial_summary = None

    @property
    def message(self) -> str:
        return str(self)


class NoMatchingRule(MailLedgerError):
    """No matching parsing rule found"""

    code = NO_MATCHING_RULE


class ExtractionFailed(MailLedgerError):
    """Amount could not be extracted"""

    code = EXTRACTION_FAILED


class DateUnresolvable(MailLedgerError):
    """Cannot determine purchase date: no date in email and no received_at timestamp"""

    code = DATE_UNRESOLVABLE


class InvalidRulePattern(MailLedgerError):
    """Rule contains a pattern that does not compile"""

    code = INVALID_RULE_PATTERN

    def __init__(self, field: str, pattern: str, detail: str, rule_id=None):
        self.field = field
        self.pattern = pattern
        self.detail = detail
        self.rule_id = rule_id
        super().__init__(f"Invalid {field}: {detail}")


class ExternalAPIFailure(MailLedgerError):
    """External API call failed after exhausting retries"""

    code = EXTERNAL_API_FAILURE

    def __init__(self, message: str = None, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class ReauthorizationRequired(MailLedgerError):
    """Mailbox authorization is no longer valid; the account must be reconnected"""

    code = REAUTHORIZATION_REQUIRED


class AccountDisconnected(ReauthorizationRequired):
    """Mailbox account is not connected"""


class BatchInProgress(MailLedgerError):
    """Another batch is already running for this account"""

    code = BATCH_IN_PROGRESS


class ErrorStage(Enum):
    """Where in the workflow an error occurred."""

    FETCH = "fetch"  # Mailbox API list/get errors
    AUTH = "auth"  # OAuth token refresh errors
    STORAGE = "storage"  # Database writes


class ErrorType(Enum):
    """Error type classification for retry and debugging."""

    API_ERROR = "api_error"
    TIMEOUT = "timeout"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    AUTH_ERROR = "auth_error"
    PARSE_ERROR = "parse_error"
    DB_ERROR = "db_error"
    UNKNOWN = "unknown"


def classify_exception(exception: Exception) -> tuple[ErrorType, bool]:
    """Classify an exception into an ErrorType and a retryable flag.

    Args:
        exception: Exception to classify

    Returns:
        Tuple of (error_type, is_retryable)
    """
    if isinstance(exception, ReauthorizationRequired):
        return ErrorType.AUTH_ERROR, False

    if isinstance(exception, ExternalAPIFailure):
        if exception.status_code == 429:
            return ErrorType.RATE_LIMIT, True
        return ErrorType.API_ERROR, True

    if isinstance(exception, (NoMatchingRule, ExtractionFailed, DateUnresolvable)):
        return ErrorType.PARSE_ERROR, False

    error_str = str(exception).lower()
    exception_name = type(exception).__name__

    if "timeout" in error_str or exception_name in ("TimeoutError", "ReadTimeout"):
        return ErrorType.TIMEOUT, True

    if "connection" in error_str or exception_name in ("ConnectionError",):
        return ErrorType.NETWORK, True

    if exception_name in ("IntegrityError", "OperationalError", "DataError"):
        return ErrorType.DB_ERROR, False

    return ErrorType.UNKNOWN, False


class ProcessingError:
    """Structured per-item error with logging.

    Attributes:
        stage: Error stage (where in workflow error occurred)
        error_type: Error type (for retry and debugging decisions)
        message: Human-readable error message
        exception: Original exception (if any)
        context: Additional context (message_id, rule_id, etc.)
        is_retryable: Whether error should be retried
    """

    def __init__(
        self,
        stage: ErrorStage,
        error_type: ErrorType,
        message: str,
        exception: Exception | None = None,
        context: dict[str, Any] | None = None,
        is_retryable: bool = False,
    ):
        self.stage = stage
        self.error_type = error_type
        self.message = message
        self.exception = exception
        self.context = context or {}
        self.is_retryable = is_retryable

    def log(self, account_id: int | None = None, run_id: str | None = None) -> None:
        """Log the error with account and run context."""
        extra = {
            "account_id": account_id,
            "run_id": run_id,
            "message_id": self.context.get("message_id"),
            "rule_id": self.context.get("rule_id"),
        }
        text = f"[{self.stage.value}/{self.error_type.value}] {self.message}"

        if self.error_type in (ErrorType.DB_ERROR, ErrorType.UNKNOWN):
            logger.error(text, extra=extra, exc_info=self.exception)
        else:
            logger.warning(text, extra=extra)

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.value,
            "error_type": self.error_type.value,
            "message": self.message,
            "is_retryable": self.is_retryable,
            **self.context,
        }

    @classmethod
    def from_exception(
        cls,
        exception: Exception,
        stage: ErrorStage,
        context: dict[str, Any] | None = None,
    ) -> "ProcessingError":
        """Auto-classify error from exception."""
        error_type, is_retryable = classify_exception(exception)
        return cls(
            stage=stage,
            error_type=error_type,
            message=str(exception),
            exception=exception,
            context=context,
            is_retryable=is_retryable,
        )
