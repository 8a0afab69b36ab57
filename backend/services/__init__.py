"""
Services Package - Business Logic Layer

This package contains service modules that encapsulate business logic,
separating it from HTTP routing concerns.

Services can be called from:
- Flask routes (HTTP requests)
- Background tasks (Celery)
- Tests

Available services:
- gmail_service: Mailbox connection, labels, token refresh and sync
- parsing_service: Parse modes, dry runs and the rule tester
- rules_service: Parsing rule management and validation
- debug_service: Integrity audit and parse diagnostics
"""

from . import debug_service, gmail_service, parsing_service, rules_service

__all__ = [
    "gmail_service",
    "parsing_service",
    "rules_service",
    "debug_service",
]
