"""
Models module - SQLAlchemy database models
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Import models after Base is defined to avoid circular imports
from .workflow import Workflow
from .enrollment import WorkflowEnrollment
from .execution_log import ExecutionLog
from .client import Client, Appointment

__all__ = ["Base", "Workflow", "WorkflowEnrollment", "ExecutionLog", "Client", "Appointment"]
