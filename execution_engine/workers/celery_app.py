"""
Celery Application Configuration for the execution engine

Architecture:
- Message Broker: Redis
- Result Backend: Redis
- Beat: triggers the due-check cycle at the top of every hour

A cycle is idempotent per record (claims + compare-and-persist), so an extra
or overlapping trigger never finalizes a record twice.
"""

import os
import logging
from celery import Celery
from celery.schedules import crontab
from ..core.logging_config import setup_logging

# Initialize structured logging for Celery workers
setup_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "true").lower() == "true",  # Default to JSON in workers
    log_file=os.getenv("LOG_FILE", None)
)

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL")
if not REDIS_URL:
    raise ValueError(
        "REDIS_URL environment variable not set. "
        "Required for Celery message broker and result backend."
    )

celery_app = Celery("execution_engine")

celery_app.conf.update(
    # ============================================================================
    # BROKER & BACKEND
    # ============================================================================
    broker_url=REDIS_URL,
    result_backend=REDIS_URL,
    broker_connection_retry_on_startup=True,

    # ============================================================================
    # SERIALIZATION
    # ============================================================================
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    # ============================================================================
    # TIMEZONE
    # ============================================================================
    timezone="UTC",
    enable_utc=True,

    # ============================================================================
    # TASK EXECUTION
    # ============================================================================
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,

    # A cycle is bounded by the slowest retry budget; claim leases cover the rest
    task_time_limit=1800,
    task_soft_time_limit=1500,

    # ============================================================================
    # RESULTS
    # ============================================================================
    result_expires=86400,  # 24 hours in seconds

    task_default_queue="executions",

    # ============================================================================
    # BEAT SCHEDULE
    # ============================================================================
    beat_schedule={
        "process-due-executions-hourly": {
            "task": "process_due_executions_task",
            "schedule": crontab(minute=0),
        },
    },
)

logger.info("Celery app configured successfully")
logger.info(f"Broker: {REDIS_URL.split('@')[1] if '@' in REDIS_URL else 'configured'}")

# This import MUST come AFTER celery_app is configured
from . import tasks  # noqa: F401, E402
