"""Celery application configuration for asynchronous task processing."""

import os

from celery import Celery
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv(override=False)

SYNC_SCHEDULE_MINUTES = int(os.getenv("SYNC_SCHEDULE_MINUTES", "15"))

# Initialize Celery
celery_app = Celery(
    "mailledger_tasks",
    broker=os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0"),
    backend=os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0"),
    include=["tasks.gmail_tasks"],
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=1800,  # 30 minutes hard limit (full-account fetches)
    task_soft_time_limit=1740,
    result_expires=3600,  # Keep results for 1 hour
    beat_schedule={
        "sync-all-gmail-accounts": {
            "task": "tasks.gmail_tasks.sync_all_accounts_task",
            "schedule": SYNC_SCHEDULE_MINUTES * 60.0,
        },
    },
)
