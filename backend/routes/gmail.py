"""
Gmail Routes - Flask Blueprint

Handles mailbox connection endpoints: OAuth, labels, token refresh and sync.
Routes are thin controllers that delegate to gmail_service for business logic.
"""

from flask import Blueprint, jsonify, redirect, request

from routes.helpers import error_response, get_account_id
from services import gmail_service

gmail_bp = Blueprint("gmail", __name__, url_prefix="/api/gmail")


@gmail_bp.route("/authorize", methods=["GET"])
def authorize():
    """
    Initiate Gmail OAuth flow.

    Query params:
        user_id (int): User ID (default: 1)

    Returns:
        Redirect to Google OAuth consent screen
    """
    try:
        user_id = int(request.args.get("user_id", 1))
        result = gmail_service.get_authorization_url(user_id)
        return redirect(result["auth_url"])
    except Exception as e:
        return error_response(e, "Gmail authorization")


@gmail_bp.route("/callback", methods=["GET"])
def callback():
    """
    Handle Gmail OAuth callback.

    Query params:
        state (str): OAuth state parameter
        code (str): Authorization code
        error (str): OAuth error if any

    Returns:
        Redirect to frontend with success/error status
    """
    try:
        return gmail_service.handle_callback(request.args)
    except Exception as e:
        return error_response(e, "Gmail callback")


@gmail_bp.route("/connection", methods=["GET"])
def get_connection():
    """
    Get connection status for a mailbox account.

    Query params:
        account_id (int): Mail account ID

    Returns:
        Connection details (tokens excluded)
    """
    try:
        return jsonify(gmail_service.get_connection_status(get_account_id()))
    except Exception as e:
        return error_response(e, "Gmail connection")


@gmail_bp.route("/disconnect", methods=["POST"])
def disconnect():
    """
    Disconnect a mailbox account. Stored emails and purchases are kept.

    Request body:
        account_id (int): Mail account ID
    """
    try:
        return jsonify(gmail_service.disconnect(get_account_id()))
    except Exception as e:
        return error_response(e, "Gmail disconnect")


@gmail_bp.route("/labels", methods=["GET"])
def list_labels():
    """
    List selectable labels (user labels plus INBOX, STARRED, IMPORTANT).

    Query params:
        account_id (int): Mail account ID
    """
    try:
        return jsonify({"labels": gmail_service.list_labels(get_account_id())})
    except Exception as e:
        return error_response(e, "Gmail labels")


@gmail_bp.route("/label", methods=["POST"])
def select_label():
    """
    Select the label sync reads from.

    Request body:
        account_id (int): Mail account ID
        label_id (str): Gmail label ID
        label_name (str): Display name (optional)
    """
    try:
        data = request.get_json(silent=True) or {}
        result = gmail_service.select_label(
            get_account_id(), data.get("label_id"), data.get("label_name")
        )
        return jsonify(result)
    except Exception as e:
        return error_response(e, "Gmail label selection")


@gmail_bp.route("/sync", methods=["POST"])
def sync():
    """
    Fetch new messages and quick-parse them.

    Request body:
        account_id (int): Mail account ID
        max_messages (int): Optional cap on listed messages
        async (bool): Queue on a Celery worker instead of running inline

    Returns:
        Fetch and parse summaries (202 with task ID when queued)
    """
    try:
        data = request.get_json(silent=True) or {}
        max_messages = data.get("max_messages")
        if max_messages is not None:
            max_messages = int(max_messages)
            if max_messages <= 0:
                raise ValueError("max_messages must be positive")

        run_async = bool(data.get("async", False))
        result = gmail_service.sync(get_account_id(), max_messages, run_async=run_async)
        return jsonify(result), 202 if run_async else 200
    except Exception as e:
        return error_response(e, "Gmail sync")


@gmail_bp.route("/refresh-token", methods=["POST"])
def refresh_token():
    """
    Force an access-token refresh.

    Request body:
        account_id (int): Mail account ID
    """
    try:
        return jsonify(gmail_service.refresh_token(get_account_id()))
    except Exception as e:
        return error_response(e, "Gmail token refresh")
