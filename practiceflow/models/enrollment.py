"""
WorkflowEnrollment Model
One client's progress through one workflow
"""

from sqlalchemy import Column, Integer, BigInteger, String, Text, JSON, Boolean, ForeignKey, Index
from . import Base

ENROLLMENT_STATUSES = ("active", "paused", "completed", "cancelled", "failed")
TERMINAL_STATUSES = ("completed", "cancelled", "failed")


class WorkflowEnrollment(Base):
    """
    WorkflowEnrollment Model

    Tracks where a client is in a workflow and when the next step is due.
    All timestamps are epoch milliseconds.

    ``version`` is bumped by every tick that claims the enrollment and is
    checked on every UPDATE (``version_id_col``), so a tick whose enrollment
    changed under it cannot commit. ``claimed_until`` is the lease of the tick
    currently running; no other tick may claim the enrollment before it passes.
    """
    __tablename__ = "workflow_enrollments"

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(Integer, nullable=False, index=True)
    workflow_id = Column(Integer, ForeignKey("workflows.id"), nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)

    # Status: active, paused, completed, cancelled, failed
    current_status = Column(String(20), nullable=False, default="active", index=True)
    # Block id, or "start" before the trigger block has been walked
    current_step = Column(String(100), nullable=False, default="start")

    enrolled_at = Column(BigInteger, nullable=False)
    paused_at = Column(BigInteger, nullable=True)
    resumed_at = Column(BigInteger, nullable=True)
    completed_at = Column(BigInteger, nullable=True)
    next_execution_at = Column(BigInteger, nullable=True, index=True)

    enrollment_reason = Column(String(255), nullable=True)
    priority = Column(Integer, nullable=False, default=100)

    version = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    # True while a delay block at current_step is armed
    waiting = Column(Boolean, nullable=False, default=False)
    # Lease of the tick in flight (epoch ms), cleared when it commits
    claimed_until = Column(BigInteger, nullable=True)

    # Snapshot of the triggering event (appointment data and the like)
    event_context = Column(JSON, nullable=True)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_enrollments_workflow_client", "workflow_id", "client_id"),
        Index("ix_enrollments_due", "current_status", "next_execution_at"),
    )

    # The application sets the new version itself; the ORM adds
    # "WHERE version = <loaded>" to every UPDATE and raises StaleDataError on a miss
    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}

    @property
    def is_terminal(self) -> bool:
        return self.current_status in TERMINAL_STATUSES

    def __repr__(self):
        return (
            f"<WorkflowEnrollment(id={self.id}, workflow_id={self.workflow_id}, "
            f"client_id={self.client_id}, status='{self.current_status}', step='{self.current_step}')>"
        )
