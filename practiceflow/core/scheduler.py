"""
Scheduler sweeps, run periodically by Celery beat.

- process_due_enrollments: tick every active enrollment whose next step is due
- process_appointment_completions: mark recently finished appointments as
  completed and emit ``appointment_completed`` events for them
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..models.client import Appointment
from ..models.enrollment import WorkflowEnrollment
from .clock import MS_PER_HOUR, MS_PER_MINUTE, Clock, SystemClock
from .config import EngineConfig
from .engine import StepExecutor
from .triggers import BusinessEvent, TriggerMatcher

logger = logging.getLogger(__name__)

# Appointments have no end time; assume they last an hour
ESTIMATED_APPOINTMENT_DURATION_MS = MS_PER_HOUR
# Only appointments that started within this window are swept
COMPLETION_LOOKBACK_MS = 65 * MS_PER_MINUTE


class Scheduler:
    """
    Example:
        scheduler = Scheduler(db)
        stats = await scheduler.process_due_enrollments()
        # {"due": 12, "processed": 12, "executed": 9, "waiting": 2, "failed": 1, "errors": 0}
    """

    def __init__(
        self,
        db_session: Session,
        clock: Optional[Clock] = None,
        executor: Optional[StepExecutor] = None,
        matcher: Optional[TriggerMatcher] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.db = db_session
        self.clock = clock or SystemClock()
        self.config = config or EngineConfig.from_env()
        self.executor = executor or StepExecutor(db_session, clock=self.clock, config=self.config)
        self.matcher = matcher or TriggerMatcher(db_session, clock=self.clock, executor=self.executor)

    async def process_due_enrollments(self, batch_size: Optional[int] = None) -> Dict[str, Any]:
        """
        Tick due enrollments, oldest first. A failing enrollment is logged and
        counted; it does not stop the sweep.
        """
        now = self.clock.now_ms()
        limit = batch_size or self.config.scheduler_batch_size

        due = (
            self.db.query(WorkflowEnrollment.id, WorkflowEnrollment.version)
            .filter(
                WorkflowEnrollment.current_status == "active",
                WorkflowEnrollment.next_execution_at.isnot(None),
                WorkflowEnrollment.next_execution_at <= now,
                or_(WorkflowEnrollment.claimed_until.is_(None), WorkflowEnrollment.claimed_until <= now),
            )
            .order_by(WorkflowEnrollment.next_execution_at, WorkflowEnrollment.id)
            .limit(limit)
            .all()
        )

        stats: Dict[str, Any] = {"due": len(due), "processed": 0, "errors": 0}
        for enrollment_id, version in due:
            try:
                outcome = await self.executor.tick(enrollment_id, expected_version=version)
            except Exception as e:
                self.db.rollback()
                stats["errors"] += 1
                logger.error(
                    f"Tick failed for enrollment {enrollment_id}: {e}",
                    extra={"enrollment_id": enrollment_id, "error_type": type(e).__name__},
                )
                continue
            stats["processed"] += 1
            stats[outcome.status] = stats.get(outcome.status, 0) + 1

        if due:
            logger.info(f"Processed {stats['processed']}/{stats['due']} due enrollments", extra=stats)
        return stats

    async def process_appointment_completions(self, org_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Complete scheduled appointments whose estimated end has passed and
        that started within the look-back window, emitting an
        ``appointment_completed`` event for each.
        """
        now = self.clock.now_ms()
        query = self.db.query(Appointment).filter(
            Appointment.status == "scheduled",
            Appointment.date_time < now,
            Appointment.date_time > now - COMPLETION_LOOKBACK_MS,
            Appointment.date_time + ESTIMATED_APPOINTMENT_DURATION_MS <= now,
        )
        if org_id is not None:
            query = query.filter(Appointment.org_id == org_id)
        appointments = query.order_by(Appointment.date_time).all()

        stats = {"completed": 0, "enrollments": 0, "errors": 0}
        for appointment in appointments:
            appointment.status = "completed"
            self.db.commit()
            stats["completed"] += 1

            event = BusinessEvent(
                type="appointment_completed",
                org_id=appointment.org_id,
                client_id=appointment.client_id,
                context={"appointment": appointment.to_context()},
                reason="appointment_completed",
            )
            result = await self.matcher.handle_event(event)
            stats["enrollments"] += sum(1 for e in result.enrollments if not e["skipped"])
            stats["errors"] += len(result.errors)

        if appointments:
            logger.info(f"Completed {stats['completed']} appointments", extra=stats)
        return stats
