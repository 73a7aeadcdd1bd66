"""
Metrics Collection for PracticeFlow

Provides:
- Per-workflow statistics (enrollments by status, executions, success rate,
  average execution time, last run)
- Step execution statistics from the execution log
- Enrollment backlog (how many steps are due right now)
- Messaging circuit breaker status
- Database connectivity
"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, text
from sqlalchemy.orm import Session

from ..models.enrollment import ENROLLMENT_STATUSES, WorkflowEnrollment
from ..models.execution_log import LOG_STATUSES, ExecutionLog
from ..models.workflow import Workflow
from .circuit_breaker import messaging_circuit_breaker
from .clock import MS_PER_HOUR, Clock, SystemClock
from .exceptions import WorkflowNotFoundError

logger = logging.getLogger(__name__)


class MetricsCollector:
    """
    Collects and aggregates metrics for PracticeFlow.

    Monitoring helpers (everything except ``get_workflow_stats``) never
    raise; a failing query is reported in an ``error`` field instead.
    """

    def __init__(self, db_session: Session, clock: Optional[Clock] = None):
        self.db_session = db_session
        self.clock = clock or SystemClock()

    def get_workflow_stats(self, workflow_id: int) -> Dict[str, Any]:
        """
        Statistics for one workflow.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
        """
        workflow = self.db_session.get(Workflow, workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found", record_id=workflow_id)

        by_status = dict(
            self.db_session.query(WorkflowEnrollment.current_status, func.count(WorkflowEnrollment.id))
            .filter(WorkflowEnrollment.workflow_id == workflow_id)
            .group_by(WorkflowEnrollment.current_status)
            .all()
        )
        enrollments = {status: by_status.get(status, 0) for status in ENROLLMENT_STATUSES}

        executions = dict(
            self.db_session.query(ExecutionLog.status, func.count(ExecutionLog.id))
            .filter(ExecutionLog.workflow_id == workflow_id)
            .group_by(ExecutionLog.status)
            .all()
        )

        average_time = (
            self.db_session.query(func.avg(ExecutionLog.execution_time_ms))
            .filter(
                ExecutionLog.workflow_id == workflow_id,
                ExecutionLog.execution_time_ms.isnot(None),
            )
            .scalar()
        )

        success_rate = 0.0
        if workflow.total_runs:
            success_rate = round(workflow.successful_runs / workflow.total_runs * 100, 2)

        return {
            "workflow_id": workflow.id,
            "name": workflow.name,
            "status": workflow.status,
            "total_enrollments": sum(enrollments.values()),
            "enrollments": enrollments,
            "executions": {status: executions.get(status, 0) for status in LOG_STATUSES},
            "total_runs": workflow.total_runs,
            "successful_runs": workflow.successful_runs,
            "failed_runs": workflow.failed_runs,
            "success_rate": success_rate,
            "average_execution_time_ms": round(float(average_time), 2) if average_time is not None else None,
            "last_run_at": workflow.last_run_at,
        }

    def get_execution_stats(self, hours: int = 24) -> Dict[str, Any]:
        """Execution log rows by status over the last ``hours``."""
        try:
            since = self.clock.now_ms() - hours * MS_PER_HOUR
            rows = (
                self.db_session.query(ExecutionLog.status, func.count(ExecutionLog.id))
                .filter(ExecutionLog.executed_at >= since)
                .group_by(ExecutionLog.status)
                .all()
            )
            result: Dict[str, Any] = {status: 0 for status in LOG_STATUSES}
            result.update(dict(rows))
            result["total"] = sum(result[status] for status in LOG_STATUSES)

            attempted = result["executed"] + result["failed"]
            result["error_rate"] = round(result["failed"] / attempted * 100, 2) if attempted else 0.0
            return result

        except Exception as e:
            logger.error(f"Failed to get execution stats: {e}")
            return {"total": 0, "error_rate": 0.0, "error": str(e)}

    def get_enrollment_stats(self) -> Dict[str, Any]:
        """Enrollments by status across all workflows, plus the due backlog."""
        try:
            rows = (
                self.db_session.query(WorkflowEnrollment.current_status, func.count(WorkflowEnrollment.id))
                .group_by(WorkflowEnrollment.current_status)
                .all()
            )
            result: Dict[str, Any] = {status: 0 for status in ENROLLMENT_STATUSES}
            result.update(dict(rows))

            result["due_now"] = (
                self.db_session.query(func.count(WorkflowEnrollment.id))
                .filter(
                    WorkflowEnrollment.current_status == "active",
                    WorkflowEnrollment.next_execution_at <= self.clock.now_ms(),
                )
                .scalar()
                or 0
            )
            return result

        except Exception as e:
            logger.error(f"Failed to get enrollment stats: {e}")
            return {"due_now": 0, "error": str(e)}

    def get_circuit_breaker_status(self) -> Dict[str, Any]:
        status = messaging_circuit_breaker.get_status()
        status["is_healthy"] = status["state"] == "closed"
        return status

    def get_database_health(self) -> Dict[str, Any]:
        try:
            start = time.time()
            self.db_session.execute(text("SELECT 1")).fetchone()
            return {"connected": True, "response_time_ms": round((time.time() - start) * 1000, 2)}

        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {"connected": False, "response_time_ms": None, "error": str(e)}

    def get_all_metrics(self) -> Dict[str, Any]:
        return {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "executions": self.get_execution_stats(hours=24),
            "enrollments": self.get_enrollment_stats(),
            "circuit_breaker": self.get_circuit_breaker_status(),
            "database": self.get_database_health(),
        }


def check_system_health(db_session: Session) -> Dict[str, Any]:
    """
    Overall health: database reachable, messaging breaker closed, step error
    rate under 50% over the last hour.
    """
    collector = MetricsCollector(db_session)

    database = collector.get_database_health()
    breaker = collector.get_circuit_breaker_status()
    error_rate = collector.get_execution_stats(hours=1)["error_rate"]

    components = {
        "database": database["connected"],
        "messaging": breaker["is_healthy"],
        "error_rate": error_rate < 50.0,
    }

    issues = []
    if not components["database"]:
        issues.append("Database connection failed")
    if not components["messaging"]:
        issues.append(f"Messaging circuit breaker is {breaker['state']}")
    if not components["error_rate"]:
        issues.append(f"High step error rate: {error_rate}%")

    return {
        "healthy": all(components.values()),
        "components": components,
        "issues": issues or None,
    }
