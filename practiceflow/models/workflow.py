"""
Workflow Model
Database model for automation workflow definitions
"""

from sqlalchemy import Column, Integer, BigInteger, String, Text, JSON, DateTime, Boolean
from datetime import datetime
from . import Base

WORKFLOW_STATUSES = ("draft", "active", "inactive", "archived")

TRIGGER_TYPES = (
    "new_client",
    "appointment_completed",
    "appointment_scheduled",
    "manual",
    # Appointment sub-types, matched against the normalised appointment label
    "morpheus8",
    "toxins",
    "filler",
    "consultation",
)


class Workflow(Base):
    """
    Workflow Model

    Stores a workflow as a graph of blocks and connections, plus the trigger
    and entry conditions that decide which events enroll a client.
    """
    __tablename__ = "workflows"

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(Integer, nullable=False, index=True)
    name = Column(String(255), nullable=False, index=True)
    description = Column(Text, nullable=True)

    trigger = Column(String(50), nullable=False, index=True)
    # Lower number = higher priority when several workflows match one event
    priority = Column(Integer, nullable=False, default=100)

    # Entry conditions: [{"field": "tags", "operator": "has_tag", "value": "vip"}, ...]
    conditions = Column(JSON, nullable=False, default=list)

    # JSON structure:
    # blocks: [
    #   {"id": "b1", "type": "trigger", "config": {}},
    #   {"id": "b2", "type": "delay", "config": {"value": 2, "unit": "hours"}},
    #   {"id": "b3", "type": "action", "config": {"action": "send_email", "subject": "...", "body": "..."}},
    #   {"id": "b4", "type": "conditional", "config": {"match": "all", "conditions": [...]}}
    # ]
    # connections: [
    #   {"id": "c1", "from": "b1", "to": "b2"},
    #   {"id": "c2", "from": "b4", "to": "b3", "fromPort": "true"}
    # ]
    blocks = Column(JSON, nullable=False, default=list)
    connections = Column(JSON, nullable=False, default=list)

    # Status: draft, active, inactive, archived
    status = Column(String(20), nullable=False, default="draft", index=True)

    prevent_duplicates = Column(Boolean, nullable=False, default=True)
    duplicate_prevention_days = Column(Integer, nullable=False, default=30)

    # Monotonic counters, only ever changed with "x = x + 1" updates
    total_runs = Column(Integer, nullable=False, default=0)
    successful_runs = Column(Integer, nullable=False, default=0)
    failed_runs = Column(Integer, nullable=False, default=0)
    last_run_at = Column(BigInteger, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def __repr__(self):
        return f"<Workflow(id={self.id}, name='{self.name}', trigger='{self.trigger}', status='{self.status}')>"
