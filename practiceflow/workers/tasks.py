"""
Celery Tasks for the PracticeFlow Workflow Engine

Main Tasks:
- handle_event_task: Match a business event to workflows and enroll the client
- tick_enrollment_task: Run the next step of one enrollment
- process_due_enrollments_task: Periodic sweep of due enrollments
- process_appointment_completions_task: Periodic sweep of finished appointments

Task Design Principles:
- Idempotent: a re-delivered tick loses the version check and does nothing
- Transactional: each step commits together with its execution log row
- Resilient: only errors that allow it are retried
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from .celery_app import celery_app
from ..database import get_db
from ..core.actions import get_message_sender
from ..core.config import EngineConfig
from ..core.engine import StepExecutor
from ..core.exceptions import PracticeFlowException
from ..core.scheduler import Scheduler
from ..core.triggers import BusinessEvent, TriggerMatcher

logger = logging.getLogger(__name__)


async def _with_sender(config: EngineConfig, run):
    # HTTP senders hold a connection pool that must be closed inside the loop
    sender = get_message_sender(config=config)
    try:
        return await run(sender)
    finally:
        close = getattr(sender, "close", None)
        if close is not None:
            await close()


def _retry_or_raise(task, task_id: str, error: Exception):
    if isinstance(error, PracticeFlowException) and not error.retry_allowed:
        logger.error(f"Task {task_id}: {type(error).__name__}: {error} (not retried)")
        raise error
    logger.warning(f"Task {task_id}: {type(error).__name__}: {error}; retrying in {task.default_retry_delay}s")
    raise task.retry(exc=error)


@celery_app.task(
    bind=True,
    name="handle_event_task",
    max_retries=3,
    default_retry_delay=60,
)
def handle_event_task(
    self,
    event_type: str,
    org_id: int,
    client_id: int,
    context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Handle a business event asynchronously.

    Per-workflow failures are reported in the result, not retried; the
    event is only retried when matching itself could not run.
    """
    task_id = self.request.id
    logger.info(f"Task {task_id}: Handling {event_type} for client {client_id} (org {org_id})")

    config = EngineConfig.from_env()
    event = BusinessEvent(type=event_type, org_id=org_id, client_id=client_id, context=context or {})

    try:
        with get_db() as db:
            async def run(sender):
                matcher = TriggerMatcher(db, executor=StepExecutor(db, message_sender=sender, config=config))
                return await matcher.handle_event(event)

            result = asyncio.run(_with_sender(config, run))
            return result.to_dict()

    except Exception as e:
        _retry_or_raise(self, task_id, e)


@celery_app.task(
    bind=True,
    name="tick_enrollment_task",
    max_retries=3,
    default_retry_delay=60,
)
def tick_enrollment_task(self, enrollment_id: int, expected_version: Optional[int] = None) -> Dict[str, Any]:
    """Run the next step of one enrollment."""
    task_id = self.request.id
    logger.info(f"Task {task_id}: Ticking enrollment {enrollment_id}")

    config = EngineConfig.from_env()
    try:
        with get_db() as db:
            async def run(sender):
                executor = StepExecutor(db, message_sender=sender, config=config)
                return await executor.tick(enrollment_id, expected_version=expected_version)

            outcome = asyncio.run(_with_sender(config, run))
            logger.info(f"Task {task_id}: Enrollment {enrollment_id} → {outcome.status}")
            return outcome.to_dict()

    except Exception as e:
        _retry_or_raise(self, task_id, e)


@celery_app.task(bind=True, name="process_due_enrollments_task")
def process_due_enrollments_task(self, batch_size: Optional[int] = None) -> Dict[str, Any]:
    """Tick every due enrollment (run by beat every minute)."""
    config = EngineConfig.from_env()
    with get_db() as db:
        async def run(sender):
            executor = StepExecutor(db, message_sender=sender, config=config)
            return await Scheduler(db, executor=executor, config=config).process_due_enrollments(batch_size)

        return asyncio.run(_with_sender(config, run))


@celery_app.task(bind=True, name="process_appointment_completions_task")
def process_appointment_completions_task(self, org_id: Optional[int] = None) -> Dict[str, Any]:
    """Complete finished appointments and emit their events (run by beat every 5 minutes)."""
    config = EngineConfig.from_env()
    with get_db() as db:
        async def run(sender):
            executor = StepExecutor(db, message_sender=sender, config=config)
            return await Scheduler(db, executor=executor, config=config).process_appointment_completions(org_id)

        return asyncio.run(_with_sender(config, run))
