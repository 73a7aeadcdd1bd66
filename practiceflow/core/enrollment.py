"""
Enrollment Manager

Owns the WorkflowEnrollment lifecycle:

    active ⇄ paused
    active → completed | cancelled | failed
    paused → cancelled

Terminal states (completed, cancelled, failed) have no outgoing transitions
and never hold a ``next_execution_at``.

Also responsible for duplicate-enrollment suppression, superseding a running
enrollment when a new trigger of equal or higher priority arrives, and
shifting schedules on resume so paused time is not lost.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..models.client import Client
from ..models.enrollment import WorkflowEnrollment
from ..models.workflow import Workflow
from .clock import MS_PER_DAY, Clock, SystemClock
from .exceptions import (
    ClientNotFoundError,
    EnrollmentNotFoundError,
    InvalidTransitionError,
    WorkflowNotFoundError,
)
from .execution_log import ExecutionLogWriter, LogStatus
from .graph import START_STEP

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    "active": {"paused", "completed", "cancelled", "failed"},
    "paused": {"active", "cancelled"},
    "completed": set(),
    "cancelled": set(),
    "failed": set(),
}


@dataclass
class EnrollmentResult:
    """Outcome of ``EnrollmentManager.enroll``."""

    workflow_id: int
    client_id: int
    enrollment_id: Optional[int] = None
    skipped: bool = False
    reason: Optional[str] = None
    superseded_id: Optional[int] = None

    @property
    def created(self) -> bool:
        return self.enrollment_id is not None and not self.skipped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "client_id": self.client_id,
            "enrollment_id": self.enrollment_id,
            "skipped": self.skipped,
            "reason": self.reason,
            "superseded_id": self.superseded_id,
        }


def check_transition(enrollment: WorkflowEnrollment, to_status: str) -> None:
    """
    Raise InvalidTransitionError unless ``enrollment`` may move to ``to_status``.
    """
    from_status = enrollment.current_status
    if to_status not in ALLOWED_TRANSITIONS.get(from_status, set()):
        raise InvalidTransitionError(
            f"Enrollment {enrollment.id} cannot go from '{from_status}' to '{to_status}'",
            from_status=from_status,
            to_status=to_status,
        )


class EnrollmentManager:
    """
    Creates enrollments and moves them between states.

    Methods that act on their own (``enroll``, ``pause``, ``resume``,
    ``cancel``) commit. The finishing helpers (``complete``, ``mark_failed``)
    only stage changes so the Step Executor can commit them together with the
    step's log row.
    """

    def __init__(self, db_session: Session, clock: Optional[Clock] = None):
        self.db = db_session
        self.clock = clock or SystemClock()
        self.log_writer = ExecutionLogWriter(db_session)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def enroll(
        self,
        org_id: int,
        workflow_id: int,
        client_id: int,
        reason: str = "manual",
        priority: Optional[int] = None,
        event_context: Optional[Dict[str, Any]] = None,
    ) -> EnrollmentResult:
        """
        Enroll a client in a workflow.

        Returns a skipped result (not an error) when the client was already
        enrolled inside the duplicate-prevention window, or when a running
        enrollment came from a higher-priority trigger.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist in this org
            ClientNotFoundError: If the client does not exist in this org
        """
        workflow = self.db.get(Workflow, workflow_id)
        if workflow is None or workflow.org_id != org_id:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found", record_id=workflow_id)

        client = self.db.get(Client, client_id)
        if client is None or client.org_id != org_id:
            raise ClientNotFoundError(f"Client {client_id} not found", record_id=client_id)

        now = self.clock.now_ms()
        priority = workflow.priority if priority is None else priority
        result = EnrollmentResult(workflow_id=workflow_id, client_id=client_id)

        if workflow.prevent_duplicates:
            cutoff = now - workflow.duplicate_prevention_days * MS_PER_DAY
            recent = (
                self.db.query(WorkflowEnrollment)
                .filter(
                    WorkflowEnrollment.workflow_id == workflow_id,
                    WorkflowEnrollment.client_id == client_id,
                    WorkflowEnrollment.enrolled_at > cutoff,
                )
                .first()
            )
            if recent is not None:
                logger.debug(
                    f"Skipping enrollment of client {client_id} in workflow {workflow_id}: "
                    f"already enrolled ({recent.id}) within {workflow.duplicate_prevention_days} days"
                )
                result.skipped = True
                result.reason = "duplicate"
                result.enrollment_id = recent.id
                return result

        running = (
            self.db.query(WorkflowEnrollment)
            .filter(
                WorkflowEnrollment.workflow_id == workflow_id,
                WorkflowEnrollment.client_id == client_id,
                WorkflowEnrollment.current_status.in_(("active", "paused")),
            )
            .order_by(WorkflowEnrollment.enrolled_at.desc())
            .first()
        )
        if running is not None:
            if priority > running.priority:
                logger.debug(
                    f"Skipping enrollment of client {client_id} in workflow {workflow_id}: "
                    f"enrollment {running.id} has higher priority ({running.priority} < {priority})"
                )
                result.skipped = True
                result.reason = "lower_priority"
                result.enrollment_id = running.id
                return result
            self._supersede(running, now)
            result.superseded_id = running.id

        enrollment = WorkflowEnrollment(
            org_id=org_id,
            workflow_id=workflow_id,
            client_id=client_id,
            current_status="active",
            current_step=START_STEP,
            enrolled_at=now,
            next_execution_at=now,
            enrollment_reason=reason,
            priority=priority,
            version=0,
            attempts=0,
            waiting=False,
            event_context=event_context,
        )
        self.db.add(enrollment)
        self.db.flush()

        self.log_writer.write(
            enrollment,
            step_id=START_STEP,
            action="enroll_client",
            status=LogStatus.EXECUTED,
            message=f"Client enrolled in workflow '{workflow.name}' ({reason})",
            executed_at=now,
            details={"reason": reason, "priority": priority, "superseded_id": result.superseded_id},
        )
        self.db.commit()

        result.enrollment_id = enrollment.id
        logger.info(
            f"Enrolled client {client_id} in workflow {workflow_id}",
            extra={"enrollment_id": enrollment.id, "workflow_id": workflow_id, "reason": reason},
        )
        return result

    def supersede(self, workflow_id: int, client_id: int) -> Optional[int]:
        """
        Cancel the running (active or paused) enrollment of this client in this
        workflow. Returns the cancelled enrollment's id, or None.
        """
        running = (
            self.db.query(WorkflowEnrollment)
            .filter(
                WorkflowEnrollment.workflow_id == workflow_id,
                WorkflowEnrollment.client_id == client_id,
                WorkflowEnrollment.current_status.in_(("active", "paused")),
            )
            .first()
        )
        if running is None:
            return None
        self._supersede(running, self.clock.now_ms())
        self.db.commit()
        return running.id

    def _supersede(self, enrollment: WorkflowEnrollment, now: int) -> None:
        self._finish(enrollment, "cancelled", now)
        self.log_writer.write(
            enrollment,
            step_id=enrollment.current_step,
            action="supersede",
            status=LogStatus.CANCELLED,
            message="Superseded by a new enrollment",
            executed_at=now,
        )
        logger.info(f"Superseded enrollment {enrollment.id}")

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------

    def pause_enrollment(self, enrollment: WorkflowEnrollment, now: Optional[int] = None) -> None:
        check_transition(enrollment, "paused")
        enrollment.current_status = "paused"
        enrollment.paused_at = self.clock.now_ms() if now is None else now
        enrollment.version = enrollment.version + 1

    def resume_enrollment(self, enrollment: WorkflowEnrollment, now: Optional[int] = None) -> None:
        """
        Reactivate a paused enrollment, pushing its next step back by the
        time spent paused (never earlier than now).
        """
        check_transition(enrollment, "active")
        now = self.clock.now_ms() if now is None else now
        paused_at = enrollment.paused_at if enrollment.paused_at is not None else now
        next_at = enrollment.next_execution_at if enrollment.next_execution_at is not None else now

        enrollment.next_execution_at = max(now, next_at + (now - paused_at))
        enrollment.current_status = "active"
        enrollment.resumed_at = now
        enrollment.version = enrollment.version + 1

    def pause(self, workflow_id: int) -> int:
        """Pause every active enrollment of a workflow. Returns how many were paused."""
        now = self.clock.now_ms()
        enrollments = (
            self.db.query(WorkflowEnrollment)
            .filter(
                WorkflowEnrollment.workflow_id == workflow_id,
                WorkflowEnrollment.current_status == "active",
            )
            .all()
        )
        for enrollment in enrollments:
            self.pause_enrollment(enrollment, now)
        self.db.commit()

        logger.info(f"Paused {len(enrollments)} enrollments of workflow {workflow_id}")
        return len(enrollments)

    def resume(self, workflow_id: int) -> int:
        """Resume every paused enrollment of a workflow. Returns how many were resumed."""
        now = self.clock.now_ms()
        enrollments = (
            self.db.query(WorkflowEnrollment)
            .filter(
                WorkflowEnrollment.workflow_id == workflow_id,
                WorkflowEnrollment.current_status == "paused",
            )
            .all()
        )
        for enrollment in enrollments:
            self.resume_enrollment(enrollment, now)
        self.db.commit()

        logger.info(f"Resumed {len(enrollments)} enrollments of workflow {workflow_id}")
        return len(enrollments)

    # ------------------------------------------------------------------
    # Finishing
    # ------------------------------------------------------------------

    def cancel(self, enrollment_id: int, reason: str = "cancelled") -> WorkflowEnrollment:
        """
        Cancel an active or paused enrollment and commit.

        Raises:
            EnrollmentNotFoundError: If the enrollment does not exist
            InvalidTransitionError: If the enrollment already finished
        """
        enrollment = self.db.get(WorkflowEnrollment, enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(f"Enrollment {enrollment_id} not found", record_id=enrollment_id)

        now = self.clock.now_ms()
        self._finish(enrollment, "cancelled", now)
        self.log_writer.write(
            enrollment,
            step_id=enrollment.current_step,
            action="cancel",
            status=LogStatus.CANCELLED,
            message=f"Enrollment cancelled: {reason}",
            executed_at=now,
        )
        self.db.commit()
        return enrollment

    def complete(self, enrollment: WorkflowEnrollment, now: int) -> None:
        """Stage the move to ``completed`` and bump the workflow's counters."""
        self._finish(enrollment, "completed", now)
        self._record_run(enrollment.workflow_id, succeeded=True, now=now)

    def mark_failed(self, enrollment: WorkflowEnrollment, now: int, error: Optional[str] = None) -> None:
        """Stage the move to ``failed`` and bump the workflow's counters."""
        self._finish(enrollment, "failed", now)
        enrollment.last_error = error
        self._record_run(enrollment.workflow_id, succeeded=False, now=now)

    def _finish(self, enrollment: WorkflowEnrollment, status: str, now: int) -> None:
        check_transition(enrollment, status)
        enrollment.current_status = status
        enrollment.completed_at = now
        enrollment.next_execution_at = None
        enrollment.waiting = False
        enrollment.version = enrollment.version + 1

    def _record_run(self, workflow_id: int, succeeded: bool, now: int) -> None:
        outcome_column = Workflow.successful_runs if succeeded else Workflow.failed_runs
        self.db.execute(
            update(Workflow)
            .where(Workflow.id == workflow_id)
            .values(
                {
                    Workflow.total_runs: Workflow.total_runs + 1,
                    outcome_column: outcome_column + 1,
                    Workflow.last_run_at: now,
                }
            )
            .execution_options(synchronize_session=False)
        )
