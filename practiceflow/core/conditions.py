"""
Condition Evaluator

Pure evaluation of declarative conditions against an EventContext.

A condition is ``{"field": ..., "operator": ..., "value": ...}``. A list of
conditions is ANDed. OR is written as a nested group:

    {"match": "any", "conditions": [
        {"field": "appointment_type", "operator": "equals", "value": "filler"},
        {"field": "appointment_type", "operator": "equals", "value": "toxins"}
    ]}

Evaluation never raises. A missing field is treated as absent: comparisons
fail closed, ``is_empty`` and ``not_has_tag`` succeed. Any error while
evaluating a condition makes that condition false.

Numeric operators on ``last_appointment_date`` compare the number of whole
days since that date, not the timestamp itself.
"""

import logging
import time
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from .clock import MS_PER_DAY, datetime_to_ms
from .context import MISSING, EventContext

logger = logging.getLogger(__name__)

OperatorName = Literal[
    "equals",
    "not_equals",
    "contains",
    "greater_than",
    "less_than",
    "greater_than_or_equal",
    "less_than_or_equal",
    "is_empty",
    "is_not_empty",
    "date_before",
    "date_after",
    "days_ago",
    "has_tag",
    "not_has_tag",
]

TAG_OPERATORS = ("has_tag", "not_has_tag")

# Operators whose result is True when the field is absent
_TRUE_WHEN_MISSING = ("is_empty", "not_has_tag")

NUMERIC_OPERATORS = ("greater_than", "less_than", "greater_than_or_equal", "less_than_or_equal")

# Date fields that numeric operators compare as whole days elapsed:
# last_appointment_date greater_than 30 means "not seen for over 30 days"
ELAPSED_DAYS_FIELDS = ("last_appointment_date",)


class Condition(BaseModel):
    """One ``field operator value`` test."""

    field: Optional[str] = Field(None, description="Dotted path into the event context")
    operator: OperatorName
    value: Any = None

    class Config:
        frozen = True
        extra = "forbid"

    @model_validator(mode="after")
    def default_tag_field(self) -> "Condition":
        if not self.field:
            if self.operator in TAG_OPERATORS:
                object.__setattr__(self, "field", "tags")
            else:
                raise ValueError(f"Condition with operator '{self.operator}' needs a field")
        return self


class ConditionGroup(BaseModel):
    """A set of conditions combined with AND (``all``) or OR (``any``)."""

    match: Literal["all", "any"] = "all"
    conditions: List[Union[Condition, "ConditionGroup"]] = Field(default_factory=list)

    class Config:
        frozen = True
        extra = "forbid"


ConditionGroup.model_rebuild()

ConditionsInput = Union[None, ConditionGroup, Condition, Dict[str, Any], List[Any]]


def parse_conditions(raw: ConditionsInput) -> ConditionGroup:
    """
    Normalise any accepted condition shape into a ConditionGroup.

    Accepts None, a list (ANDed), a single condition dict, a group dict, or
    already-built models.

    Raises:
        pydantic.ValidationError: If the shape is not a valid condition set
    """
    if raw is None:
        return ConditionGroup()
    if isinstance(raw, ConditionGroup):
        return raw
    if isinstance(raw, Condition):
        return ConditionGroup(conditions=[raw])
    if isinstance(raw, dict):
        if "conditions" in raw:
            return ConditionGroup.model_validate(raw)
        return ConditionGroup(conditions=[Condition.model_validate(raw)])
    return ConditionGroup.model_validate({"match": "all", "conditions": list(raw)})


# ============================================================================
# VALUE COERCION
# ============================================================================

def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _normalise(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip().lower()


def _to_epoch_ms(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, datetime):
        return datetime_to_ms(value)
    if isinstance(value, date):
        return datetime_to_ms(datetime(value.year, value.month, value.day))
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text)
        try:
            return datetime_to_ms(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def _is_empty(value: Any) -> bool:
    if value is MISSING or value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


# ============================================================================
# OPERATORS
# ============================================================================

def _equals(actual: Any, expected: Any, now_ms: int) -> bool:
    actual_num, expected_num = _to_number(actual), _to_number(expected)
    if actual_num is not None and expected_num is not None:
        return actual_num == expected_num
    return _normalise(actual) == _normalise(expected)


def _contains(actual: Any, expected: Any, now_ms: int) -> bool:
    if isinstance(actual, (list, tuple, set)):
        needle = _normalise(expected)
        return any(_normalise(item) == needle for item in actual)
    if isinstance(actual, dict):
        return expected in actual
    if isinstance(actual, str):
        return _normalise(expected) in actual.lower()
    return False


def _numeric(compare: Callable[[float, float], bool]):
    def operator(actual: Any, expected: Any, now_ms: int) -> bool:
        actual_num, expected_num = _to_number(actual), _to_number(expected)
        if actual_num is None or expected_num is None:
            return False
        return compare(actual_num, expected_num)
    return operator


def _date(compare: Callable[[int, int], bool]):
    def operator(actual: Any, expected: Any, now_ms: int) -> bool:
        actual_ms, expected_ms = _to_epoch_ms(actual), _to_epoch_ms(expected)
        if actual_ms is None or expected_ms is None:
            return False
        return compare(actual_ms, expected_ms)
    return operator


def _days_since(value: Any, now_ms: int) -> Optional[int]:
    value_ms = _to_epoch_ms(value)
    if value_ms is None:
        return None
    return (now_ms - value_ms) // MS_PER_DAY


def _days_ago(actual: Any, expected: Any, now_ms: int) -> bool:
    elapsed, days = _days_since(actual, now_ms), _to_number(expected)
    if elapsed is None or days is None:
        return False
    return elapsed >= days


def _has_tag(actual: Any, expected: Any, now_ms: int) -> bool:
    tag = str(expected).strip()
    if isinstance(actual, (list, tuple, set)):
        return tag in actual
    if isinstance(actual, str):
        return actual.strip() == tag
    return False


OPERATORS: Dict[str, Callable[[Any, Any, int], bool]] = {
    "equals": _equals,
    "not_equals": lambda a, e, now: not _equals(a, e, now),
    "contains": _contains,
    "greater_than": _numeric(lambda a, e: a > e),
    "less_than": _numeric(lambda a, e: a < e),
    "greater_than_or_equal": _numeric(lambda a, e: a >= e),
    "less_than_or_equal": _numeric(lambda a, e: a <= e),
    "is_empty": lambda a, e, now: _is_empty(a),
    "is_not_empty": lambda a, e, now: not _is_empty(a),
    "date_before": _date(lambda a, e: a < e),
    "date_after": _date(lambda a, e: a > e),
    "days_ago": _days_ago,
    "has_tag": _has_tag,
    "not_has_tag": lambda a, e, now: not _has_tag(a, e, now),
}


# ============================================================================
# EVALUATION
# ============================================================================

def _is_elapsed_days_field(field: Optional[str]) -> bool:
    return field is not None and field.rsplit(".", 1)[-1] in ELAPSED_DAYS_FIELDS


def evaluate_condition(condition: Condition, context: EventContext, now_ms: int) -> bool:
    """Evaluate a single condition. Never raises."""
    try:
        actual = context.resolve(condition.field)
        if actual is MISSING:
            return condition.operator in _TRUE_WHEN_MISSING
        if condition.operator in NUMERIC_OPERATORS and _is_elapsed_days_field(condition.field):
            actual = _days_since(actual, now_ms)
        return bool(OPERATORS[condition.operator](actual, condition.value, now_ms))
    except Exception as e:
        logger.debug(
            f"Condition {condition.field} {condition.operator} {condition.value!r} "
            f"raised {type(e).__name__}: {e}; treating as not met"
        )
        return False


def _evaluate_group(group: ConditionGroup, context: EventContext, now_ms: int) -> bool:
    if not group.conditions:
        return True

    results = (
        _evaluate_group(item, context, now_ms) if isinstance(item, ConditionGroup)
        else evaluate_condition(item, context, now_ms)
        for item in group.conditions
    )
    return any(results) if group.match == "any" else all(results)


def evaluate(
    conditions: ConditionsInput,
    context: Union[EventContext, Dict[str, Any], None],
    now_ms: Optional[int] = None,
) -> bool:
    """
    Return True when ``conditions`` hold for ``context``.

    Args:
        conditions: List (ANDed), group, single condition, or None
        context: EventContext or plain dict
        now_ms: Reference time for relative date operators (default: wall clock)

    Example:
        >>> evaluate([], {})
        True
        >>> evaluate([{"field": "tags", "operator": "has_tag", "value": "vip"}],
        ...          {"client": {"tags": ["vip"]}})
        True
    """
    if not isinstance(context, EventContext):
        context = EventContext(context or {})
    if now_ms is None:
        now_ms = int(time.time() * 1000)

    try:
        group = parse_conditions(conditions)
    except Exception as e:
        logger.warning(f"Malformed conditions treated as not met: {e}")
        return False

    return _evaluate_group(group, context, now_ms)
