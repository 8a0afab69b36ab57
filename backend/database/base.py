# backend/database/base.py
"""
SQLAlchemy Base and Engine Configuration

Provides the declarative base for all models and engine factory.

CRITICAL SAFETY: When TESTING=true, this module ONLY connects to the test
database (mailledger_test). Production database access is blocked during tests.
DATABASE_URL, when set, overrides the POSTGRES_* settings (tests use sqlite://).
"""

import logging
import os
from contextlib import contextmanager

from dotenv import load_dotenv
from sqlalchemy import URL, create_engine, event
from sqlalchemy.exc import OperationalError, TimeoutError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

load_dotenv(override=False)

logger = logging.getLogger(__name__)

# ============================================================================
# CRITICAL: TEST DATABASE SAFETY CHECK
# ============================================================================
IS_TESTING = os.getenv("TESTING", "").lower() in ("true", "1", "yes")
PRODUCTION_DB_NAME = "mailledger"
TEST_DB_NAME = os.getenv("POSTGRES_TEST_DB", "mailledger_test")

db_name = os.getenv("POSTGRES_DB", PRODUCTION_DB_NAME)

# SAFETY: If testing, FORCE use of test database
if IS_TESTING:
    if db_name == PRODUCTION_DB_NAME:
        db_name = TEST_DB_NAME
        logger.warning(
            f"TESTING=true but POSTGRES_DB was production. Forcing test database: {db_name}"
        )
    elif db_name != TEST_DB_NAME:
        logger.warning(f"TESTING=true with custom database: {db_name}")

# Database URL (using URL.create to avoid password exposure in logs)
DATABASE_URL = os.getenv("DATABASE_URL") or URL.create(
    "postgresql",
    username=os.getenv("POSTGRES_USER", "mailledger_user"),
    password=os.getenv("POSTGRES_PASSWORD", "mailledger_password"),
    host=os.getenv("POSTGRES_HOST", "localhost"),
    port=int(os.getenv("POSTGRES_PORT", "5432")),
    database=db_name,
)

IS_SQLITE = str(DATABASE_URL).startswith("sqlite")

# Declarative base for all models
Base = declarative_base()

if IS_SQLITE:
    # Single shared connection so an in-memory database survives across sessions
    engine = create_engine(
        DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False,
    )

    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

else:
    engine = create_engine(
        DATABASE_URL,
        poolclass=QueuePool,
        pool_size=10,
        max_overflow=0,
        pool_pre_ping=True,  # Verify connections before use
        echo=False,  # Set to True for SQL logging during development
        hide_parameters=True,  # Redact password in logs
    )

# Session factory
SessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
)


@contextmanager
def get_session():
    """Get a new SQLAlchemy session (context manager)."""
    try:
        db = SessionLocal()
    except TimeoutError:
        logger.error("Connection pool exhausted (all connections in use)")
        raise
    except OperationalError as e:
        logger.error(f"Database connection failed: {e}")
        raise

    try:
        yield db
    except Exception as e:
        logger.error(f"Session error: {e}")
        db.rollback()  # Explicit rollback on error
        raise
    finally:
        db.close()


def init_db():
    """Create all tables for registered models (development and tests)."""
    from database import models  # noqa: F401  (registers models on Base)

    Base.metadata.create_all(bind=engine)
