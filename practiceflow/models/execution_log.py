"""
ExecutionLog Model
Append-only audit trail of every workflow step attempt
"""

from sqlalchemy import Column, Integer, BigInteger, String, Text, JSON, ForeignKey, event
from . import Base
from ..core.exceptions import AppendOnlyViolationError

# Status: executed, failed, waiting, cancelled
LOG_STATUSES = ("executed", "failed", "waiting", "cancelled")


class ExecutionLog(Base):
    """
    ExecutionLog Model

    One row per step attempt. Rows are written in the same transaction as the
    enrollment change they describe and are never updated afterwards.
    """
    __tablename__ = "execution_logs"

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(Integer, nullable=False, index=True)
    workflow_id = Column(Integer, ForeignKey("workflows.id"), nullable=False, index=True)
    enrollment_id = Column(Integer, ForeignKey("workflow_enrollments.id"), nullable=True, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)

    step_id = Column(String(100), nullable=False)
    # enroll_client, send_sms, send_email, add_tag, remove_tag, delay, conditional, ...
    action = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, index=True)
    message = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)

    executed_at = Column(BigInteger, nullable=False, index=True)
    execution_time_ms = Column(Integer, nullable=True)

    def __repr__(self):
        return (
            f"<ExecutionLog(id={self.id}, enrollment_id={self.enrollment_id}, "
            f"step='{self.step_id}', action='{self.action}', status='{self.status}')>"
        )


@event.listens_for(ExecutionLog, "before_update")
def _reject_update(mapper, connection, target):
    raise AppendOnlyViolationError("Execution log rows cannot be updated", record_id=target.id)


@event.listens_for(ExecutionLog, "before_delete")
def _reject_delete(mapper, connection, target):
    raise AppendOnlyViolationError("Execution log rows cannot be deleted", record_id=target.id)
