"""Shared request parsing and error responses for API blueprints."""

from flask import jsonify, request

from ingest.errors import (
    BatchInProgress,
    ExternalAPIFailure,
    MailLedgerError,
    ReauthorizationRequired,
)
from ingest.logging_config import get_logger

logger = get_logger(__name__)


def get_account_id() -> int:
    """
    Read account_id from the JSON body or the query string.

    Raises:
        ValueError: Missing or non-integer account_id
    """
    data = request.get_json(silent=True) or {}
    value = data.get("account_id", request.args.get("account_id"))
    if value is None or value == "":
        raise ValueError("account_id is required")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError("account_id must be an integer") from None


def error_response(e: Exception, context: str = "Request"):
    """
    Map an exception to a JSON error response.

    ReauthorizationRequired -> 401, ExternalAPIFailure -> 502,
    BatchInProgress -> 409, LookupError -> 404, ValueError -> 400,
    anything else -> 500.
    Partial run summaries carried by the exception are included.
    """
    body = {"error": str(e)}
    partial = getattr(e, "partial_summary", None)
    if partial is not None:
        body["partial"] = partial

    if isinstance(e, ReauthorizationRequired):
        body["reauthorization_required"] = True
        body["code"] = e.code
        status = 401
    elif isinstance(e, ExternalAPIFailure):
        body["code"] = e.code
        status = 502
    elif isinstance(e, BatchInProgress):
        body["code"] = e.code
        status = 409
    elif isinstance(e, LookupError):
        status = 404
    elif isinstance(e, ValueError):
        status = 400
    elif isinstance(e, MailLedgerError):
        body["code"] = e.code
        status = 500
    else:
        logger.exception(f"{context} failed: {e}")
        body = {"error": "Internal server error"}
        if partial is not None:
            body["partial"] = partial
        status = 500

    if status != 500:
        logger.warning(f"{context} failed ({status}): {e}")
    return jsonify(body), status
