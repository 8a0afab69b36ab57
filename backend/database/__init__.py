"""
Database Layer - Public API

This module provides the public interface for all database operations.
It imports and re-exports functions from domain-specific modules.

Usage:
    from database import get_session, save_raw_email, get_parsing_rules
    # or
    import database

Organization:
    - base.py: Engine, session factory and table creation
    - gmail.py: Mail account, OAuth state and raw email operations
    - rules.py: Parsing rule CRUD
    - purchases.py: Purchase creation and lookup
    - cards.py: Card lookup and card/employee creation
    - integrity.py: Read-only integrity queries
"""

from .base import Base, engine, get_session, init_db
from .cards import count_cards, create_card, create_employee, find_card_by_last_four
from .gmail import (
    cleanup_expired_gmail_oauth_states,
    count_emails_by_state,
    delete_gmail_oauth_state,
    disconnect_mail_account,
    get_connected_accounts,
    get_emails_by_ids,
    get_existing_message_ids,
    get_gmail_oauth_state,
    get_mail_account,
    get_orphaned_email_ids,
    get_raw_email,
    get_raw_email_ids,
    get_recent_emails,
    mark_email_error,
    mark_email_parsed,
    reset_emails_to_unparsed,
    save_mail_account,
    save_raw_email,
    set_account_label,
    store_gmail_oauth_state,
    update_account_error,
    update_account_tokens,
    update_last_synced,
)
from .integrity import (
    get_duplicated_emails,
    get_error_emails,
    get_inactive_rules_referenced,
    get_orphaned_emails,
    get_purchases_without_email,
)
from .purchases import (
    count_purchases,
    count_purchases_for_email,
    create_purchase,
    get_purchase,
    get_purchases_for_email,
    has_purchase_for_email,
)
from .rules import (
    count_rules,
    create_parsing_rule,
    delete_parsing_rule,
    get_parsing_rule,
    get_parsing_rules,
    update_parsing_rule,
)
