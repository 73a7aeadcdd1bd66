"""
Client and Appointment Models
Practice records the workflow engine reads (and, for tags, writes)
"""

from sqlalchemy import Column, Integer, BigInteger, String, JSON, DateTime, ForeignKey
from datetime import datetime
from . import Base

APPOINTMENT_STATUSES = ("scheduled", "completed", "cancelled")


class Client(Base):
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(Integer, nullable=False, index=True)

    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phones = Column(JSON, nullable=False, default=list)
    # Reassign the list when changing tags; in-place mutation is not tracked
    tags = Column(JSON, nullable=False, default=list)
    portal_status = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_context(self) -> dict:
        """Plain dict exposed to conditions and templates as ``client``."""
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "email": self.email,
            "phones": list(self.phones or []),
            "tags": list(self.tags or []),
            "portal_status": self.portal_status,
            "client_status": self.portal_status,
        }

    def __repr__(self):
        return f"<Client(id={self.id}, full_name='{self.full_name}')>"


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(Integer, nullable=False, index=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=False, index=True)

    # Free-text label as booked ("Botox - Forehead", "Morpheus8 Face", ...)
    type = Column(String(255), nullable=False)
    date_time = Column(BigInteger, nullable=False, index=True)
    status = Column(String(20), nullable=False, default="scheduled", index=True)
    provider = Column(String(255), nullable=True)

    def to_context(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "date_time": self.date_time,
            "status": self.status,
            "provider": self.provider,
        }

    def __repr__(self):
        return f"<Appointment(id={self.id}, client_id={self.client_id}, type='{self.type}', status='{self.status}')>"
