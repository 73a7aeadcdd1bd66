"""
Step Executor for the PracticeFlow Workflow Engine

Walks one enrollment through its workflow graph, one step per tick:

1. Load enrollment, workflow and client (missing records raise, nothing is
   committed)
2. Claim the enrollment with a compare-and-swap on ``version`` plus a lease
   (``claimed_until``); a tick that loses the race, or finds another tick
   still running, writes a single "cancelled" row and does nothing else
3. Resolve ``current_step`` ("start" is the trigger block), passing through
   the trigger and any armed delay whose time has come
4. Execute the block:
   - action: call the message sender or tag service
   - delay: arm it and schedule ``next_execution_at``
   - conditional: evaluate and follow the "true"/"false" connection
5. Advance to the successor, or complete when there is none

The final commit only matches the version the tick claimed and releases the
lease. If another writer changed the enrollment in the meantime, the step's
changes and log row are rolled back and the tick reports "stale".

Every tick writes exactly one ExecutionLog row in the same transaction as the
enrollment change, except a tick that only walks off the end of an empty
graph, which completes silently.

Example:
    executor = StepExecutor(db, message_sender=LogMessageSender())
    outcome = await executor.tick(enrollment_id=42)
    print(outcome.status)  # "executed", "waiting", "failed", ...
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy import or_, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..models.client import Client
from ..models.enrollment import WorkflowEnrollment
from ..models.workflow import Workflow
from .actions import MessageSender, SqlTagService, TagService, get_message_sender
from .client_context import build_event_context
from .clock import Clock, SystemClock, ms_to_datetime
from .conditions import evaluate
from .config import EngineConfig
from .context import EventContext
from .enrollment import EnrollmentManager
from .exceptions import (
    ClientNotFoundError,
    EnrollmentNotFoundError,
    GraphValidationError,
    MessageDeliveryError,
    WorkflowNotFoundError,
)
from .execution_log import ExecutionLogWriter, LogStatus
from .graph import START_STEP, WorkflowGraph
from .logging_config import correlation_scope
from .nodes import ActionNode, ConditionalNode, DelayNode, NodeType, TriggerNode
from .templates import substitute_variables

logger = logging.getLogger(__name__)


@dataclass
class TickOutcome:
    """
    Result of one ``StepExecutor.tick``.

    status is one of:
        executed   an action or conditional ran
        failed     an action failed (enrollment may still be active for a retry)
        waiting    a delay was armed, or the current step is not due yet
        completed  the walk reached the end of the graph
        stale      another tick already claimed this version
        inactive   the enrollment is paused or finished
    """

    enrollment_id: int
    status: str
    step_id: Optional[str] = None
    enrollment_status: Optional[str] = None
    next_execution_at: Optional[int] = None
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enrollment_id": self.enrollment_id,
            "status": self.status,
            "step_id": self.step_id,
            "enrollment_status": self.enrollment_status,
            "next_execution_at": self.next_execution_at,
            "message": self.message,
            "details": self.details,
        }


class StepExecutor:
    """
    Executes workflow steps for enrollments.

    Collaborators are injected so tests can use a ManualClock and mocks:

        executor = StepExecutor(
            db,
            clock=ManualClock(0),
            message_sender=AsyncMock(),
            tag_service=AsyncMock(),
        )
    """

    def __init__(
        self,
        db_session: Session,
        clock: Optional[Clock] = None,
        message_sender: Optional[MessageSender] = None,
        tag_service: Optional[TagService] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.db = db_session
        self.clock = clock or SystemClock()
        self.config = config or EngineConfig.from_env()
        self.message_sender = message_sender or get_message_sender(config=self.config)
        self.tag_service = tag_service or SqlTagService(db_session)
        self.enrollments = EnrollmentManager(db_session, clock=self.clock)
        self.log_writer = ExecutionLogWriter(db_session)

    async def tick(self, enrollment_id: int, expected_version: Optional[int] = None) -> TickOutcome:
        """
        Run the next step of one enrollment.

        Args:
            enrollment_id: Enrollment to advance
            expected_version: Version the caller saw when it decided to tick.
                Defaults to the version loaded here.

        Returns:
            TickOutcome describing what happened

        Raises:
            EnrollmentNotFoundError, WorkflowNotFoundError, ClientNotFoundError:
                If a record the tick depends on is missing (nothing committed)
        """
        with correlation_scope(f"enrollment:{enrollment_id}"):
            enrollment = self.db.get(WorkflowEnrollment, enrollment_id)
            if enrollment is None:
                raise EnrollmentNotFoundError(f"Enrollment {enrollment_id} not found", record_id=enrollment_id)

            workflow = self.db.get(Workflow, enrollment.workflow_id)
            if workflow is None:
                raise WorkflowNotFoundError(
                    f"Workflow {enrollment.workflow_id} not found", record_id=enrollment.workflow_id
                )

            client = self.db.get(Client, enrollment.client_id)
            if client is None:
                raise ClientNotFoundError(f"Client {enrollment.client_id} not found", record_id=enrollment.client_id)

            now = self.clock.now_ms()

            if enrollment.current_status != "active":
                return self._skip(
                    enrollment, "inactive", now,
                    f"Enrollment is {enrollment.current_status}; nothing to do",
                )

            if not self._claim(enrollment, expected_version, now):
                if enrollment.claimed_until is not None and enrollment.claimed_until > now:
                    message = "Another tick is in progress for this enrollment"
                else:
                    message = "Stale tick: enrollment already advanced"
                return self._skip(enrollment, "stale", now, message)

            try:
                return await self._run_step(enrollment, workflow, client, now)
            except StaleDataError:
                # Another writer bumped the version after our claim
                self.db.rollback()
                self._release_lease(enrollment_id, now)
                logger.warning(f"Enrollment {enrollment_id} changed while its step ran; tick discarded")
                return self._skip(enrollment, "stale", now, "Enrollment changed while the step ran; tick discarded")

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def _claim(self, enrollment: WorkflowEnrollment, expected_version: Optional[int], now: int) -> bool:
        """
        Bump ``version`` and take the lease, provided nobody else has done so
        since ``expected_version`` and no other tick holds an unexpired lease.
        """
        expected = enrollment.version if expected_version is None else expected_version
        result = self.db.execute(
            update(WorkflowEnrollment)
            .where(
                WorkflowEnrollment.id == enrollment.id,
                WorkflowEnrollment.version == expected,
                WorkflowEnrollment.current_status == "active",
                or_(WorkflowEnrollment.claimed_until.is_(None), WorkflowEnrollment.claimed_until <= now),
            )
            .values(version=WorkflowEnrollment.version + 1, claimed_until=now + self.config.tick_lease_ms)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(enrollment)

        if result.rowcount != 1:
            logger.info(
                f"Enrollment {enrollment.id} claim lost (expected version {expected}, "
                f"found {enrollment.version}, claimed until {enrollment.claimed_until})"
            )
            return False
        return True

    def _release_lease(self, enrollment_id: int, now: int) -> None:
        self.db.execute(
            update(WorkflowEnrollment)
            .where(
                WorkflowEnrollment.id == enrollment_id,
                WorkflowEnrollment.claimed_until == now + self.config.tick_lease_ms,
            )
            .values(claimed_until=None)
            .execution_options(synchronize_session=False)
        )

    def _commit(self, enrollment: WorkflowEnrollment) -> None:
        """
        Commit the tick's changes and release its lease. The UPDATE only
        matches the version this tick claimed (StaleDataError otherwise).
        """
        enrollment.claimed_until = None
        self.db.commit()

    def _skip(self, enrollment: WorkflowEnrollment, status: str, now: int, message: str) -> TickOutcome:
        self.log_writer.write(
            enrollment,
            step_id=enrollment.current_step,
            action="tick",
            status=LogStatus.CANCELLED,
            message=message,
            executed_at=now,
            details={"version": enrollment.version},
        )
        self.db.commit()
        return self._outcome(enrollment, status, enrollment.current_step, message)

    # ------------------------------------------------------------------
    # Walking
    # ------------------------------------------------------------------

    async def _run_step(
        self,
        enrollment: WorkflowEnrollment,
        workflow: Workflow,
        client: Client,
        now: int,
    ) -> TickOutcome:
        try:
            graph = WorkflowGraph.from_definition(workflow.blocks, workflow.connections)
        except GraphValidationError as e:
            return self._fail_fatally(enrollment, enrollment.current_step, now, f"Workflow graph is invalid: {e.message}")

        step_id = enrollment.current_step
        node = graph.resolve_step(step_id)

        if node is None:
            if step_id == START_STEP:
                # No trigger block: nothing to run
                return self._complete_silently(enrollment, now)
            return self._fail_fatally(
                enrollment, step_id, now, f"Step '{step_id}' no longer exists in the workflow"
            )

        if enrollment.next_execution_at is not None and enrollment.next_execution_at > now:
            message = f"Step '{node.id}' not due until {ms_to_datetime(enrollment.next_execution_at).isoformat()}"
            self.log_writer.write(
                enrollment,
                step_id=node.id,
                action=node.type,
                status=LogStatus.WAITING,
                message=message,
                executed_at=now,
            )
            self._commit(enrollment)
            return self._outcome(enrollment, "waiting", node.id, message, not_due=True)

        # Pass through the trigger and any armed delay that is now due
        while isinstance(node, TriggerNode) or (isinstance(node, DelayNode) and enrollment.waiting):
            passed = node
            enrollment.waiting = False
            next_id = graph.next_block(passed.id)
            if next_id is None:
                if isinstance(passed, TriggerNode):
                    return self._complete_silently(enrollment, now)
                return self._finish_at(enrollment, passed, now, "Delay elapsed; workflow complete")
            node = graph.get(next_id)
            enrollment.current_step = node.id

        if isinstance(node, DelayNode):
            return self._arm_delay(enrollment, node, now)
        if isinstance(node, ConditionalNode):
            return self._branch(enrollment, node, graph, client, now)
        return await self._run_action(enrollment, node, graph, client, now)

    def _arm_delay(self, enrollment: WorkflowEnrollment, node: DelayNode, now: int) -> TickOutcome:
        enrollment.current_step = node.id
        enrollment.waiting = True
        enrollment.attempts = 0
        enrollment.next_execution_at = now + node.duration_ms

        message = f"Waiting {node.config.value:g} {node.config.unit}"
        self.log_writer.write(
            enrollment,
            step_id=node.id,
            action="delay",
            status=LogStatus.WAITING,
            message=message,
            executed_at=now,
            details={
                "value": node.config.value,
                "unit": node.config.unit,
                "delay_ms": node.duration_ms,
                "next_execution_at": enrollment.next_execution_at,
            },
        )
        self._commit(enrollment)
        return self._outcome(enrollment, "waiting", node.id, message)

    def _branch(
        self,
        enrollment: WorkflowEnrollment,
        node: ConditionalNode,
        graph: WorkflowGraph,
        client: Client,
        now: int,
    ) -> TickOutcome:
        context = build_event_context(self.db, client, enrollment.event_context)
        result = evaluate(node.config, context, now_ms=now)
        next_id = graph.branch_target(node.id, result)
        branch = "true" if result else "false"

        if next_id is None:
            message = f"Condition evaluated {branch}; no '{branch}' path, workflow complete"
            self.enrollments.complete(enrollment, now)
        else:
            message = f"Condition evaluated {branch}; continuing to '{next_id}'"
            self._advance_to(enrollment, next_id, now)

        self.log_writer.write(
            enrollment,
            step_id=node.id,
            action="conditional",
            status=LogStatus.EXECUTED,
            message=message,
            executed_at=now,
            details={"condition_met": result, "next_path": branch, "next_step": next_id},
        )
        self._commit(enrollment)
        return self._outcome(enrollment, "executed", node.id, message, condition_met=result)

    async def _run_action(
        self,
        enrollment: WorkflowEnrollment,
        node: ActionNode,
        graph: WorkflowGraph,
        client: Client,
        now: int,
    ) -> TickOutcome:
        enrollment.current_step = node.id
        context = build_event_context(self.db, client, enrollment.event_context)
        # A concurrent pause or re-claim surfaces here, before anything is sent
        self.db.flush()

        start_time = time.time()
        try:
            result = await self._perform(node, client, context)
        except Exception as e:
            execution_time_ms = int((time.time() - start_time) * 1000)
            logger.warning(f"Action '{node.action}' at step '{node.id}' failed: {e}")
            return self._record_failure(enrollment, node, now, e, execution_time_ms)
        execution_time_ms = int((time.time() - start_time) * 1000)

        enrollment.attempts = 0
        enrollment.last_error = None
        next_id = graph.next_block(node.id)
        if next_id is None:
            self.enrollments.complete(enrollment, now)
        else:
            self._advance_to(enrollment, next_id, now)

        message = f"Successfully executed {node.action}"
        self.log_writer.write(
            enrollment,
            step_id=node.id,
            action=node.action,
            status=LogStatus.EXECUTED,
            message=message,
            executed_at=now,
            details={"config": node.config, "result": result, "next_step": next_id},
            execution_time_ms=execution_time_ms,
        )
        self._commit(enrollment)

        logger.info(
            f"Executed {node.action} for enrollment {enrollment.id}",
            extra={"step_id": node.id, "execution_time_ms": execution_time_ms},
        )
        return self._outcome(enrollment, "executed", node.id, message, result=result)

    async def _perform(self, node: ActionNode, client: Client, context: EventContext) -> Dict[str, Any]:
        config = node.config
        appointment = context.get("appointment") if isinstance(context.get("appointment"), dict) else None
        client_data = context.get("client")

        if config.action == "send_sms":
            phones = client.phones or []
            if not phones:
                raise MessageDeliveryError("Client has no phone number for SMS", kind="sms")
            content = substitute_variables(config.message, client_data, appointment, self.config)
            sent = await self.message_sender.send("sms", phones[0], content)
            return {**sent, "recipient": phones[0], "content": content, "type": "sms"}

        if config.action == "send_email":
            if not client.email:
                raise MessageDeliveryError("Client has no email address", kind="email")
            subject = substitute_variables(config.subject, client_data, appointment, self.config)
            body = substitute_variables(config.body, client_data, appointment, self.config)
            sent = await self.message_sender.send("email", client.email, body, subject=subject)
            return {**sent, "recipient": client.email, "subject": subject, "type": "email"}

        if config.action == "add_tag":
            return await self.tag_service.add_tag(client.id, config.tag)

        return await self.tag_service.remove_tag(client.id, config.tag, remove_all=config.remove_all)

    def _record_failure(
        self,
        enrollment: WorkflowEnrollment,
        node: ActionNode,
        now: int,
        error: Exception,
        execution_time_ms: int,
    ) -> TickOutcome:
        enrollment.attempts = enrollment.attempts + 1
        error_text = str(error)
        max_attempts = self.config.max_step_attempts

        if enrollment.attempts >= max_attempts:
            message = f"Failed to execute {node.action}; giving up after {enrollment.attempts} attempts"
            self.enrollments.mark_failed(enrollment, now, error_text)
        else:
            enrollment.last_error = error_text
            enrollment.next_execution_at = now + self.config.step_retry_delay_ms
            message = (
                f"Failed to execute {node.action} (attempt {enrollment.attempts}/{max_attempts}); "
                f"retrying at {ms_to_datetime(enrollment.next_execution_at).isoformat()}"
            )

        self.log_writer.write(
            enrollment,
            step_id=node.id,
            action=node.action,
            status=LogStatus.FAILED,
            message=message,
            executed_at=now,
            error=error_text,
            details={"attempts": enrollment.attempts, "error_type": type(error).__name__},
            execution_time_ms=execution_time_ms,
        )
        self._commit(enrollment)
        return self._outcome(enrollment, "failed", node.id, message, attempts=enrollment.attempts)

    # ------------------------------------------------------------------
    # Endings
    # ------------------------------------------------------------------

    def _advance_to(self, enrollment: WorkflowEnrollment, next_id: str, now: int) -> None:
        enrollment.current_step = next_id
        enrollment.next_execution_at = now
        enrollment.waiting = False

    def _complete_silently(self, enrollment: WorkflowEnrollment, now: int) -> TickOutcome:
        self.enrollments.complete(enrollment, now)
        self._commit(enrollment)
        logger.info(f"Enrollment {enrollment.id} reached the end of the workflow")
        return self._outcome(enrollment, "completed", enrollment.current_step, "Workflow complete")

    def _finish_at(self, enrollment: WorkflowEnrollment, node: NodeType, now: int, message: str) -> TickOutcome:
        enrollment.current_step = node.id
        self.enrollments.complete(enrollment, now)
        self.log_writer.write(
            enrollment,
            step_id=node.id,
            action=node.type,
            status=LogStatus.EXECUTED,
            message=message,
            executed_at=now,
        )
        self._commit(enrollment)
        return self._outcome(enrollment, "completed", node.id, message)

    def _fail_fatally(self, enrollment: WorkflowEnrollment, step_id: str, now: int, message: str) -> TickOutcome:
        logger.error(f"Enrollment {enrollment.id} failed: {message}")
        self.enrollments.mark_failed(enrollment, now, message)
        self.log_writer.write(
            enrollment,
            step_id=step_id,
            action="tick",
            status=LogStatus.FAILED,
            message=message,
            executed_at=now,
            error=message,
        )
        self._commit(enrollment)
        return self._outcome(enrollment, "failed", step_id, message)

    def _outcome(self, enrollment: WorkflowEnrollment, status: str, step_id: Optional[str],
                 message: str, **details) -> TickOutcome:
        return TickOutcome(
            enrollment_id=enrollment.id,
            status=status,
            step_id=step_id,
            enrollment_status=enrollment.current_status,
            next_execution_at=enrollment.next_execution_at,
            message=message,
            details=details,
        )
