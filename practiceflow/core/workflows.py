"""
Workflow Service

Saving workflows (with graph validation), status changes that pause or resume
their enrollments, and side-effect-free test runs.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from ..models.workflow import TRIGGER_TYPES, WORKFLOW_STATUSES, Workflow
from .clock import Clock, SystemClock
from .conditions import evaluate, parse_conditions
from .config import EngineConfig
from .context import EventContext
from .enrollment import EnrollmentManager
from .exceptions import GraphValidationError, WorkflowNotFoundError
from .graph import WorkflowGraph
from .nodes import ActionNode, ConditionalNode, DelayNode, TriggerNode
from .templates import substitute_variables

logger = logging.getLogger(__name__)

SAMPLE_CLIENT = {
    "first_name": "Jane",
    "last_name": "Doe",
    "full_name": "Jane Doe",
    "email": "jane.doe@example.com",
    "phones": ["(555) 010-0000"],
    "tags": [],
}


def validate_definition(
    trigger: str,
    blocks: List[Dict[str, Any]],
    connections: List[Dict[str, Any]],
    conditions: Optional[Any] = None,
) -> WorkflowGraph:
    """
    Check a workflow definition before it is stored.

    Raises:
        GraphValidationError: If the trigger, conditions or graph is invalid
    """
    if trigger not in TRIGGER_TYPES:
        raise GraphValidationError(
            f"Unknown trigger '{trigger}'. Valid triggers: {list(TRIGGER_TYPES)}"
        )
    try:
        parse_conditions(conditions)
    except ValidationError as e:
        raise GraphValidationError(f"Invalid entry conditions: {e}")

    return WorkflowGraph.from_definition(blocks, connections)


class WorkflowService:
    """CRUD and lifecycle operations on workflows."""

    def __init__(self, db_session: Session, clock: Optional[Clock] = None,
                 config: Optional[EngineConfig] = None):
        self.db = db_session
        self.clock = clock or SystemClock()
        self.config = config or EngineConfig.from_env()
        self.enrollments = EnrollmentManager(db_session, clock=self.clock)

    def get(self, workflow_id: int, org_id: Optional[int] = None) -> Workflow:
        workflow = self.db.get(Workflow, workflow_id)
        if workflow is None or (org_id is not None and workflow.org_id != org_id):
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found", record_id=workflow_id)
        return workflow

    def create(
        self,
        org_id: int,
        name: str,
        trigger: str,
        blocks: List[Dict[str, Any]],
        connections: List[Dict[str, Any]],
        conditions: Optional[List[Dict[str, Any]]] = None,
        description: Optional[str] = None,
        priority: int = 100,
        status: str = "draft",
        prevent_duplicates: bool = True,
        duplicate_prevention_days: Optional[int] = None,
    ) -> Workflow:
        """
        Validate and store a new workflow.

        Raises:
            GraphValidationError: If the definition is invalid
        """
        validate_definition(trigger, blocks, connections, conditions)
        self._check_status(status)

        workflow = Workflow(
            org_id=org_id,
            name=name,
            description=description,
            trigger=trigger,
            priority=priority,
            conditions=conditions or [],
            blocks=blocks,
            connections=connections,
            status=status,
            prevent_duplicates=prevent_duplicates,
            duplicate_prevention_days=(
                self.config.default_duplicate_prevention_days
                if duplicate_prevention_days is None else duplicate_prevention_days
            ),
            total_runs=0,
            successful_runs=0,
            failed_runs=0,
        )
        self.db.add(workflow)
        self.db.commit()
        self.db.refresh(workflow)

        logger.info(f"Created workflow {workflow.id} '{name}' (trigger={trigger}, status={status})")
        return workflow

    def update_definition(
        self,
        workflow_id: int,
        blocks: Optional[List[Dict[str, Any]]] = None,
        connections: Optional[List[Dict[str, Any]]] = None,
        conditions: Optional[List[Dict[str, Any]]] = None,
        trigger: Optional[str] = None,
    ) -> Workflow:
        """
        Replace parts of a workflow's definition. Running enrollments keep
        their ``current_step``; one pointing at a removed block fails on its
        next tick.
        """
        workflow = self.get(workflow_id)
        new_trigger = trigger if trigger is not None else workflow.trigger
        new_blocks = blocks if blocks is not None else workflow.blocks
        new_connections = connections if connections is not None else workflow.connections
        new_conditions = conditions if conditions is not None else workflow.conditions

        validate_definition(new_trigger, new_blocks, new_connections, new_conditions)

        workflow.trigger = new_trigger
        workflow.blocks = new_blocks
        workflow.connections = new_connections
        workflow.conditions = new_conditions
        self.db.commit()
        self.db.refresh(workflow)
        return workflow

    def set_status(self, workflow_id: int, status: str) -> Dict[str, Any]:
        """
        Change a workflow's status.

        Leaving ``active`` pauses its running enrollments; entering
        ``active`` resumes them with their schedules shifted by the paused time.
        """
        self._check_status(status)
        workflow = self.get(workflow_id)
        previous = workflow.status

        paused = resumed = 0
        if previous == "active" and status != "active":
            paused = self.enrollments.pause(workflow_id)
        elif previous != "active" and status == "active":
            resumed = self.enrollments.resume(workflow_id)

        workflow.status = status
        self.db.commit()

        logger.info(f"Workflow {workflow_id} status {previous} → {status}")
        return {
            "workflow_id": workflow_id,
            "previous_status": previous,
            "status": status,
            "paused_enrollments": paused,
            "resumed_enrollments": resumed,
        }

    @staticmethod
    def _check_status(status: str) -> None:
        if status not in WORKFLOW_STATUSES:
            raise GraphValidationError(
                f"Unknown workflow status '{status}'. Valid statuses: {list(WORKFLOW_STATUSES)}"
            )

    def test_workflow(
        self,
        workflow_id: int,
        sample_client: Optional[Dict[str, Any]] = None,
        sample_event: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Dry run: walk the graph from the trigger, render every action against
        a sample client and evaluate conditionals, without sending, tagging or
        writing anything.
        """
        workflow = self.get(workflow_id)
        graph = WorkflowGraph.from_definition(workflow.blocks, workflow.connections)

        client = {**SAMPLE_CLIENT, **(sample_client or {})}
        event_data = dict(sample_event or {})
        event_data["client"] = client
        context = EventContext(event_data)
        appointment = event_data.get("appointment")
        now = self.clock.now_ms()

        steps = []
        node = graph.trigger
        while node is not None:
            step: Dict[str, Any] = {"block_id": node.id, "type": node.type, "simulated": True}
            next_id = graph.next_block(node.id)

            if isinstance(node, ActionNode):
                step["action"] = node.action
                step.update(self._render(node, client, appointment))
            elif isinstance(node, DelayNode):
                step["delay_ms"] = node.duration_ms
                step["description"] = f"Wait {node.config.value:g} {node.config.unit}"
            elif isinstance(node, ConditionalNode):
                met = evaluate(node.config, context, now_ms=now)
                step["condition_met"] = met
                next_id = graph.branch_target(node.id, met)

            if not isinstance(node, TriggerNode):
                steps.append(step)
            node = graph.get(next_id) if next_id else None

        return {
            "workflow_id": workflow.id,
            "workflow_name": workflow.name,
            "entry_conditions_met": evaluate(workflow.conditions, context, now_ms=now),
            "steps": steps,
        }

    def _render(self, node: ActionNode, client: Dict[str, Any],
                appointment: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        config = node.config
        if config.action == "send_sms":
            return {"message": substitute_variables(config.message, client, appointment, self.config)}
        if config.action == "send_email":
            return {
                "subject": substitute_variables(config.subject, client, appointment, self.config),
                "body": substitute_variables(config.body, client, appointment, self.config),
            }
        if config.action == "add_tag":
            return {"tag": config.tag}
        return {"tag": config.tag, "remove_all": config.remove_all}
