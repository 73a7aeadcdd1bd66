"""
Event Context

Holds the data a workflow is evaluated against: the triggering event's fields,
the client record and, for appointment events, the appointment.

Field lookups use dotted paths ("client.tags", "appointment.type"). An
unqualified name is searched at the top level first, then under "client",
then under "appointment", so conditions can say "tags" instead of
"client.tags".
"""

import copy
from typing import Any, Dict, Optional


class _Missing:
    """Sentinel for a field that is absent from the context."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "MISSING"


MISSING = _Missing()

FALLBACK_SCOPES = ("client", "appointment")


class EventContext:
    """
    Read-mostly view over the data a condition or template may refer to.

    Example:
        >>> ctx = EventContext({"client": {"tags": ["vip"]}, "appointment_type": "filler"})
        >>> ctx.resolve("tags")
        ['vip']
        >>> ctx.resolve("client.email")
        MISSING
    """

    def __init__(self, initial_context: Optional[Dict[str, Any]] = None):
        self._context: Dict[str, Any] = dict(initial_context) if initial_context else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._context.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._context[key] = value

    def update(self, data: Dict[str, Any]) -> None:
        self._context.update(data)

    def has(self, path: str) -> bool:
        return self.resolve(path) is not MISSING

    def resolve(self, path: str) -> Any:
        """
        Resolve a dotted path, returning MISSING when any segment is absent.

        A present key whose value is None resolves to None, not MISSING.
        """
        if not path:
            return MISSING

        value = self._lookup(self._context, path.split("."))
        if value is not MISSING or "." in path:
            return value

        for scope in FALLBACK_SCOPES:
            scoped = self._context.get(scope)
            if isinstance(scoped, dict) and path in scoped:
                return scoped[path]
        return MISSING

    @staticmethod
    def _lookup(data: Any, segments) -> Any:
        current = data
        for segment in segments:
            if isinstance(current, dict):
                if segment not in current:
                    return MISSING
                current = current[segment]
            elif isinstance(current, (list, tuple)) and segment.isdigit():
                index = int(segment)
                if index >= len(current):
                    return MISSING
                current = current[index]
            else:
                return MISSING
        return current

    def get_all(self) -> Dict[str, Any]:
        """Shallow copy of the whole context."""
        return self._context.copy()

    def snapshot(self) -> Dict[str, Any]:
        """Deep copy, safe to persist alongside an audit row."""
        return copy.deepcopy(self._context)

    def __repr__(self) -> str:
        return f"<EventContext(keys={list(self._context.keys())})>"
