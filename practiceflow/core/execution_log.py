"""
Execution Log writer.

Adds audit rows to the caller's session without committing, so each row is
persisted in the same transaction as the enrollment change it describes.
Stored rows are never updated (see ``practiceflow.models.execution_log``).
"""

import base64
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models.execution_log import ExecutionLog

logger = logging.getLogger(__name__)


class LogStatus(str, Enum):
    EXECUTED = "executed"
    FAILED = "failed"
    WAITING = "waiting"
    CANCELLED = "cancelled"


def make_json_serializable(obj):
    """
    Recursively convert non-JSON-serializable objects to serializable format.

    Handles:
    - datetime → ISO 8601 string
    - bytes → base64 string
    - sets/tuples → lists
    - pydantic models → dicts
    - custom objects → str(obj)
    """
    if isinstance(obj, dict):
        return {k: make_json_serializable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple, set)):
        return [make_json_serializable(item) for item in obj]
    elif isinstance(obj, Enum):
        return obj.value
    elif isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, bytes):
        return base64.b64encode(obj).decode('ascii')
    elif hasattr(obj, 'model_dump'):
        return make_json_serializable(obj.model_dump(by_alias=True))
    elif hasattr(obj, '__dict__'):
        return str(obj)
    else:
        return obj


class ExecutionLogWriter:
    """
    Appends ExecutionLog rows to a session.

    Example:
        writer = ExecutionLogWriter(db)
        writer.write(enrollment, step_id="b2", action="send_email",
                     status=LogStatus.EXECUTED, message="Sent welcome email",
                     executed_at=now)
        db.commit()
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def write(
        self,
        enrollment,
        step_id: str,
        action: str,
        status: LogStatus,
        message: str,
        executed_at: int,
        error: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        execution_time_ms: Optional[int] = None,
    ) -> ExecutionLog:
        """Add one row for ``enrollment``. The caller commits."""
        return self.write_raw(
            org_id=enrollment.org_id,
            workflow_id=enrollment.workflow_id,
            enrollment_id=enrollment.id,
            client_id=enrollment.client_id,
            step_id=step_id,
            action=action,
            status=status,
            message=message,
            executed_at=executed_at,
            error=error,
            details=details,
            execution_time_ms=execution_time_ms,
        )

    def write_raw(
        self,
        org_id: int,
        workflow_id: int,
        enrollment_id: Optional[int],
        client_id: int,
        step_id: str,
        action: str,
        status: LogStatus,
        message: str,
        executed_at: int,
        error: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        execution_time_ms: Optional[int] = None,
    ) -> ExecutionLog:
        row = ExecutionLog(
            org_id=org_id,
            workflow_id=workflow_id,
            enrollment_id=enrollment_id,
            client_id=client_id,
            step_id=step_id,
            action=action,
            status=LogStatus(status).value,
            message=message,
            error=error,
            details=make_json_serializable(details) if details is not None else None,
            executed_at=executed_at,
            execution_time_ms=execution_time_ms,
        )
        self.db.add(row)

        logger.debug(
            f"Execution log: enrollment={enrollment_id} step={step_id} "
            f"action={action} status={row.status}"
        )
        return row

    def for_enrollment(self, enrollment_id: int) -> List[ExecutionLog]:
        return (
            self.db.query(ExecutionLog)
            .filter(ExecutionLog.enrollment_id == enrollment_id)
            .order_by(ExecutionLog.executed_at, ExecutionLog.id)
            .all()
        )

    def for_workflow(self, workflow_id: int, limit: int = 100, offset: int = 0) -> List[ExecutionLog]:
        return (
            self.db.query(ExecutionLog)
            .filter(ExecutionLog.workflow_id == workflow_id)
            .order_by(ExecutionLog.executed_at.desc(), ExecutionLog.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
