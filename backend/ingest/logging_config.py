"""Centralized logging configuration for the mail ingestion workflow.

This module provides structured logging with context fields for sync and parse runs.
Logs are written to both console (for container logs) and rotating files.

Usage:
    from ingest.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("Starting sync", extra={"account_id": account_id, "run_id": run_id})
"""

import logging
import os
from logging.handlers import RotatingFileHandler

# Log directory from environment or default
LOG_DIR = os.getenv("LOG_DIR", "./logs")


class StructuredFormatter(logging.Formatter):
    """Custom formatter that adds context fields to log records.

    Supports the following context fields via extra={} parameter:
    - account_id: Connected mailbox account ID
    - run_id: Batch run identifier
    - message_id: External (Gmail) message ID
    - rule_id: Parsing rule ID
    """

    def format(self, record):
        """Format log record with context fields."""
        record.account_id = getattr(record, "account_id", None)
        record.run_id = getattr(record, "run_id", None)
        record.message_id = getattr(record, "message_id", None)
        record.rule_id = getattr(record, "rule_id", None)

        return super().format(record)


def get_logger(name: str) -> logging.Logger:
    """Get configured logger for ingestion operations.

    Creates a logger with:
    - Console handler (INFO level)
    - Rotating file handler for all logs (DEBUG level)
    - Separate error file handler (ERROR level)

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logging.Logger instance
    """
    logger = logging.getLogger(name)

    # Skip if already configured (prevents duplicate handlers)
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    os.makedirs(LOG_DIR, exist_ok=True)

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(
        StructuredFormatter("[%(levelname)s] [account:%(account_id)s] %(message)s")
    )
    logger.addHandler(console)

    file_handler = RotatingFileHandler(
        os.path.join(LOG_DIR, "mailledger.log"),
        maxBytes=10 * 1024 * 1024,  # 10MB per file
        backupCount=30,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        StructuredFormatter(
            "[%(asctime)s] [%(levelname)s] [%(name)s] "
            "[account:%(account_id)s run:%(run_id)s msg:%(message_id)s] %(message)s"
        )
    )
    logger.addHandler(file_handler)

    error_handler = RotatingFileHandler(
        os.path.join(LOG_DIR, "mailledger_errors.log"),
        maxBytes=10 * 1024 * 1024,
        backupCount=30,
        encoding="utf-8",
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(
        StructuredFormatter(
            "[%(asctime)s] [%(levelname)s] [%(name)s] "
            "[account:%(account_id)s run:%(run_id)s rule:%(rule_id)s] %(message)s"
        )
    )
    logger.addHandler(error_handler)

    return logger
