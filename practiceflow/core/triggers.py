"""
Trigger Matcher

Turns business events into enrollments:

    event → active workflows of the org with a matching trigger
          → entry conditions evaluated against the event context
          → priority-ordered matches → enroll → run step 0

Appointment events also match workflows whose trigger is the appointment's
canonical sub-type (morpheus8, toxins, filler, consultation).

``handle_event`` never raises: the business operation that emitted the event
must not fail because a workflow did.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..models.client import Client
from ..models.workflow import Workflow
from .client_context import build_event_context, normalize_appointment_type
from .clock import Clock, SystemClock
from .conditions import evaluate
from .enrollment import EnrollmentManager
from .engine import StepExecutor
from .exceptions import ClientNotFoundError

logger = logging.getLogger(__name__)

EVENT_TYPES = ("new_client", "appointment_completed", "appointment_scheduled", "manual")
APPOINTMENT_EVENTS = ("appointment_completed", "appointment_scheduled")


class BusinessEvent(BaseModel):
    """
    Something that happened in the practice.

    Example:
        BusinessEvent(
            type="appointment_completed",
            org_id=1,
            client_id=7,
            context={"appointment": {"id": 3, "type": "Botox - Forehead", "date_time": 1700000000000}},
        )
    """

    type: str = Field(..., min_length=1, description="Event type, e.g. appointment_completed")
    org_id: int
    client_id: int = Field(..., description="Client the event is about")
    context: Dict[str, Any] = Field(default_factory=dict, description="Event payload")
    reason: Optional[str] = Field(None, description="Enrollment reason (defaults to the event type)")

    class Config:
        frozen = True

    @property
    def appointment_type(self) -> Optional[str]:
        appointment = self.context.get("appointment")
        if self.type not in APPOINTMENT_EVENTS or not isinstance(appointment, dict):
            return None
        return normalize_appointment_type(appointment.get("type"))

    def event_data(self) -> Dict[str, Any]:
        """Snapshot stored on the enrollment and exposed to conditions."""
        data = dict(self.context)
        data["event_type"] = self.type
        if self.appointment_type:
            data["appointment_type"] = self.appointment_type
        return data


@dataclass
class EventHandlingResult:
    event_type: str
    org_id: int
    client_id: int
    matched_workflow_ids: List[int] = field(default_factory=list)
    enrollments: List[Dict[str, Any]] = field(default_factory=list)
    ticks: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "org_id": self.org_id,
            "client_id": self.client_id,
            "matched_workflow_ids": self.matched_workflow_ids,
            "enrollments": self.enrollments,
            "ticks": self.ticks,
            "errors": self.errors,
        }


class TriggerMatcher:
    """Matches events to workflows and enrolls the client in each match."""

    def __init__(
        self,
        db_session: Session,
        clock: Optional[Clock] = None,
        executor: Optional[StepExecutor] = None,
    ):
        self.db = db_session
        self.clock = clock or SystemClock()
        self.executor = executor or StepExecutor(db_session, clock=self.clock)
        self.enrollments = EnrollmentManager(db_session, clock=self.clock)

    def candidates(self, event: BusinessEvent) -> List[Workflow]:
        """Active workflows of the event's org whose trigger fits the event."""
        triggers = [event.type]
        if event.appointment_type:
            triggers.append(event.appointment_type)

        return (
            self.db.query(Workflow)
            .filter(
                Workflow.org_id == event.org_id,
                Workflow.status == "active",
                or_(*[Workflow.trigger == trigger for trigger in triggers]),
            )
            .order_by(Workflow.priority, Workflow.id)
            .all()
        )

    def match(self, event: BusinessEvent) -> List[Tuple[Workflow, int]]:
        """
        Return ``(workflow, priority)`` for every workflow the event should
        enroll the client in, highest priority (lowest number) first.

        Raises:
            ClientNotFoundError: If the event's client does not exist
        """
        client = self.db.get(Client, event.client_id)
        if client is None or client.org_id != event.org_id:
            raise ClientNotFoundError(f"Client {event.client_id} not found", record_id=event.client_id)

        context = build_event_context(self.db, client, event.event_data())
        now = self.clock.now_ms()

        matches = []
        for workflow in self.candidates(event):
            if evaluate(workflow.conditions, context, now_ms=now):
                matches.append((workflow, workflow.priority))
            else:
                logger.debug(f"Workflow {workflow.id} conditions not met for client {client.id}")

        logger.info(
            f"Event {event.type} for client {event.client_id} matched {len(matches)} workflow(s)",
            extra={"org_id": event.org_id, "workflow_ids": [w.id for w, _ in matches]},
        )
        return matches

    async def handle_event(self, event: BusinessEvent) -> EventHandlingResult:
        """
        Enroll the client in every matching workflow and run step 0 of each
        new enrollment. Failures are logged and reported, never raised.
        """
        result = EventHandlingResult(event_type=event.type, org_id=event.org_id, client_id=event.client_id)

        try:
            matches = self.match(event)
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Failed to match event {event.type} for client {event.client_id}")
            result.errors.append({"workflow_id": None, "error": str(e), "error_type": type(e).__name__})
            return result

        event_data = event.event_data()
        for workflow, priority in matches:
            result.matched_workflow_ids.append(workflow.id)
            try:
                enrollment = self.enrollments.enroll(
                    org_id=event.org_id,
                    workflow_id=workflow.id,
                    client_id=event.client_id,
                    reason=event.reason or event.type,
                    priority=priority,
                    event_context=event_data,
                )
                result.enrollments.append(enrollment.to_dict())

                if enrollment.created:
                    outcome = await self.executor.tick(enrollment.enrollment_id)
                    result.ticks.append(outcome.to_dict())
            except Exception as e:
                self.db.rollback()
                logger.exception(f"Workflow {workflow.id} failed for event {event.type}")
                result.errors.append({
                    "workflow_id": workflow.id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                })

        return result

    async def emit(
        self,
        event_type: str,
        org_id: int,
        entity_id: int,
        context: Optional[Dict[str, Any]] = None,
    ) -> EventHandlingResult:
        """Convenience wrapper: build a BusinessEvent and handle it."""
        event = BusinessEvent(type=event_type, org_id=org_id, client_id=entity_id, context=context or {})
        return await self.handle_event(event)
