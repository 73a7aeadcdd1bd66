"""
Builds the EventContext a client's conditions and templates are evaluated
against: the triggering event's data, the client record, and figures derived
from the client's appointment history.
"""

from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.client import Appointment, Client
from .context import EventContext

# Checked in order; first match wins
APPOINTMENT_TYPE_PATTERNS = (
    ("morpheus8", ("morpheus8", "morpheus")),
    ("toxins", ("botox", "toxin", "neurotoxin", "wrinkle treatment")),
    ("filler", ("filler", "dermal", "juvederm", "restylane")),
    ("consultation", ("consultation", "consult", "initial")),
)


def normalize_appointment_type(label: Optional[str]) -> Optional[str]:
    """
    Map a free-text appointment label to its canonical sub-type.

    Example:
        >>> normalize_appointment_type("Botox - Forehead")
        'toxins'
        >>> normalize_appointment_type("Hydrafacial") is None
        True
    """
    if not label:
        return None
    lowered = label.lower()
    for canonical, needles in APPOINTMENT_TYPE_PATTERNS:
        if any(needle in lowered for needle in needles):
            return canonical
    return None


def build_event_context(
    db: Session,
    client: Client,
    event_data: Optional[Dict[str, Any]] = None,
) -> EventContext:
    """
    Assemble the context for one client.

    Keys:
        client: ``Client.to_context()``
        appointment: the triggering appointment, when there is one
        appointment_type: canonical sub-type of that appointment
        appointment_count: the client's non-cancelled appointments
        last_appointment_date: epoch ms of the latest completed appointment
        ...plus whatever the triggering event carried
    """
    context = EventContext(event_data or {})
    context.set("client", client.to_context())

    appointment = context.get("appointment")
    if isinstance(appointment, dict) and not context.has("appointment_type"):
        canonical = normalize_appointment_type(appointment.get("type"))
        if canonical:
            context.set("appointment_type", canonical)

    appointment_count = (
        db.query(func.count(Appointment.id))
        .filter(Appointment.client_id == client.id, Appointment.status != "cancelled")
        .scalar()
    )
    context.set("appointment_count", appointment_count or 0)

    last_completed = (
        db.query(func.max(Appointment.date_time))
        .filter(Appointment.client_id == client.id, Appointment.status == "completed")
        .scalar()
    )
    if last_completed is not None:
        context.set("last_appointment_date", last_completed)

    return context
