"""
Celery Application Configuration for PracticeFlow

Architecture:
- Message Broker: Redis
- Result Backend: Redis
- Workers: event handling and enrollment ticks
- Beat: periodic sweeps (due enrollments, appointment completions)

Key Features:
- Retry only for errors that allow it (provider outages, transient failures)
- Late acknowledgement so a crashed worker's task is redelivered
- JSON serialization (safe, debuggable)
- Separate queue for periodic sweeps
"""

import os
import logging
from celery import Celery
from kombu import Queue, Exchange
from ..core.logging_config import setup_logging

# Workers log JSON by default
setup_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "true").lower() == "true",
    log_file=os.getenv("LOG_FILE", None)
)

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL")
if not REDIS_URL:
    raise ValueError(
        "REDIS_URL environment variable not set. "
        "Required for Celery message broker and result backend."
    )

celery_app = Celery("practiceflow")

celery_app.conf.update(
    # ============================================================================
    # BROKER & BACKEND
    # ============================================================================
    broker_url=REDIS_URL,
    result_backend=REDIS_URL,
    broker_connection_retry_on_startup=True,
    broker_connection_retry=True,
    broker_connection_max_retries=10,

    # ============================================================================
    # SERIALIZATION
    # ============================================================================
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],

    timezone="UTC",
    enable_utc=True,

    # ============================================================================
    # TASK EXECUTION
    # ============================================================================
    task_track_started=True,
    # Acknowledge after execution; a re-delivered tick is made harmless by the version check
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_time_limit=300,
    task_soft_time_limit=270,

    # ============================================================================
    # RESULTS
    # ============================================================================
    result_expires=86400,

    # ============================================================================
    # TASK ROUTING
    # ============================================================================
    task_default_queue="workflows",
    task_default_exchange="workflows",
    task_default_routing_key="workflow.execute",
    task_queues=(
        Queue("workflows", Exchange("workflows"), routing_key="workflow.execute"),
        Queue("scheduler", Exchange("workflows"), routing_key="workflow.scheduler"),
    ),
    task_routes={
        "handle_event_task": {"queue": "workflows", "routing_key": "workflow.execute"},
        "tick_enrollment_task": {"queue": "workflows", "routing_key": "workflow.execute"},
        "process_due_enrollments_task": {"queue": "scheduler", "routing_key": "workflow.scheduler"},
        "process_appointment_completions_task": {"queue": "scheduler", "routing_key": "workflow.scheduler"},
    },

    # ============================================================================
    # WORKER CONFIGURATION
    # ============================================================================
    worker_concurrency=int(os.getenv("CELERY_CONCURRENCY", "2")),
    worker_max_tasks_per_child=1000,
    worker_send_task_events=True,
    task_send_sent_event=True,
    worker_log_format="[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
    worker_task_log_format="[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s",
)

# ============================================================================
# BEAT SCHEDULE (Periodic Tasks)
# ============================================================================
celery_app.conf.beat_schedule = {
    "process-due-enrollments": {
        "task": "process_due_enrollments_task",
        "schedule": 60.0,
    },
    "process-appointment-completions": {
        "task": "process_appointment_completions_task",
        "schedule": 300.0,
    },
}

logger.info("Celery app configured successfully")
logger.info(f"Broker: {REDIS_URL.split('@')[1] if '@' in REDIS_URL else 'configured'}")

# This import MUST come AFTER celery_app is configured
from . import tasks  # noqa: F401, E402
