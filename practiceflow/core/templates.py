"""
Message template rendering.

Replaces ``{{variable}}`` placeholders in SMS and email content with client,
appointment and business values. Unknown placeholders are left untouched.
"""

import re
from typing import Any, Dict, Optional

from .clock import ms_to_datetime
from .config import EngineConfig

_PLACEHOLDER = re.compile(r"\{\{\s*([a-z_]+)\s*\}\}")


def _client_variables(client: Dict[str, Any]) -> Dict[str, str]:
    full_name = (client.get("full_name") or "").strip()
    name_parts = full_name.split(" ") if full_name else []
    phones = client.get("phones") or []

    return {
        "first_name": client.get("first_name") or (name_parts[0] if name_parts else "") or "there",
        "last_name": client.get("last_name") or " ".join(name_parts[1:]),
        "client_name": full_name or "there",
        "phone": phones[0] if phones else "your phone",
        "email": client.get("email") or "your email",
    }


def _appointment_variables(appointment: Optional[Dict[str, Any]]) -> Dict[str, str]:
    if not appointment:
        return {}

    variables = {"appointment_type": appointment.get("type") or "appointment"}
    date_time = appointment.get("date_time")
    if date_time is not None:
        when = ms_to_datetime(int(date_time))
        variables["appointment_date"] = when.strftime("%m/%d/%Y")
        variables["appointment_time"] = when.strftime("%I:%M %p")
    return variables


def build_variables(
    client: Dict[str, Any],
    appointment: Optional[Dict[str, Any]] = None,
    config: Optional[EngineConfig] = None,
) -> Dict[str, str]:
    """Collect every template variable available for one client."""
    config = config or EngineConfig()
    variables = {
        "business_name": config.business_name,
        "business_phone": config.business_phone,
        "booking_link": config.booking_link,
        "google_review_link": config.google_review_link,
    }
    variables.update(_client_variables(client))
    variables.update(_appointment_variables(appointment))
    return variables


def substitute_variables(
    text: Optional[str],
    client: Dict[str, Any],
    appointment: Optional[Dict[str, Any]] = None,
    config: Optional[EngineConfig] = None,
) -> str:
    """
    Render a message template.

    Example:
        >>> substitute_variables("Hi {{first_name}}!", {"full_name": "Ana Diaz"})
        'Hi Ana!'
    """
    if not text:
        return ""

    variables = build_variables(client, appointment, config)

    def replace(match: "re.Match") -> str:
        name = match.group(1)
        return variables[name] if name in variables else match.group(0)

    return _PLACEHOLDER.sub(replace, text)
