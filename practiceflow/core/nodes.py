"""
Block System for the PracticeFlow Workflow Engine

This module defines the block types that compose a workflow graph:
- TriggerNode: Entry point, reached when an enrollment is created
- ActionNode: Sends a message or changes a client's tags
- DelayNode: Waits a fixed duration before continuing
- ConditionalNode: Evaluates conditions and branches on "true"/"false"

Blocks are stored as ``{id, type, config}`` dicts. Legacy block types
(``send_sms``, ``send_email``, ``add_tag``, ``remove_tag``, ``if``) are
accepted by the factory and mapped onto the variants above.

All nodes are immutable (frozen) Pydantic models with validation.
"""

from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .clock import DELAY_UNITS_MS, duration_to_ms
from .conditions import ConditionGroup, parse_conditions


# ============================================================================
# ACTION CONFIGS
# ============================================================================

class SendSmsConfig(BaseModel):
    """Text message to the client's first phone number."""

    action: Literal["send_sms"] = "send_sms"
    message: str = Field(..., min_length=1, description="Message template")

    class Config:
        frozen = True
        extra = "forbid"


class SendEmailConfig(BaseModel):
    """Email to the client's address."""

    action: Literal["send_email"] = "send_email"
    subject: str = Field(..., min_length=1, description="Subject template")
    body: str = Field(..., min_length=1, description="Body template")

    class Config:
        frozen = True
        extra = "forbid"


class AddTagConfig(BaseModel):
    action: Literal["add_tag"] = "add_tag"
    tag: str = Field(..., min_length=1)

    class Config:
        frozen = True
        extra = "forbid"


class RemoveTagConfig(BaseModel):
    """Remove one tag, or every tag when ``remove_all`` is set."""

    action: Literal["remove_tag"] = "remove_tag"
    tag: Optional[str] = None
    remove_all: bool = Field(False, alias="removeAll")

    class Config:
        frozen = True
        extra = "forbid"
        populate_by_name = True

    @model_validator(mode="after")
    def require_tag_unless_remove_all(self) -> "RemoveTagConfig":
        if not self.remove_all and not (self.tag and self.tag.strip()):
            raise ValueError("remove_tag needs a 'tag' unless 'remove_all' is set")
        return self


ActionConfig = Union[SendSmsConfig, SendEmailConfig, AddTagConfig, RemoveTagConfig]

ACTION_TYPES = ("send_sms", "send_email", "add_tag", "remove_tag")


# ============================================================================
# NODES
# ============================================================================

class BaseNode(BaseModel):
    """
    Base class for all workflow blocks.

    All blocks have:
    - id: Unique identifier within the workflow
    - type: Block type (trigger, action, delay, conditional)
    - label: Optional human-readable label

    Extra keys (editor positions and the like) are kept but ignored.
    """

    id: str = Field(..., min_length=1, description="Unique block identifier")
    type: Literal["trigger", "action", "delay", "conditional"]
    label: Optional[str] = Field(None, description="Human-readable label")

    class Config:
        frozen = True
        extra = "allow"

    @field_validator("id")
    @classmethod
    def validate_id_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Block ID cannot be empty")
        return v


class TriggerNode(BaseNode):
    """
    Entry point of the workflow.

    A workflow has at most one trigger block. Its config is informational;
    which events start the workflow is decided by ``Workflow.trigger``.
    """

    type: Literal["trigger"] = "trigger"
    config: Dict[str, Any] = Field(default_factory=dict)


class ActionNode(BaseNode):
    """
    Performs one side effect through a collaborator.

    Examples:
        {"id": "b2", "type": "action",
         "config": {"action": "send_email", "subject": "Hi", "body": "Hello {{first_name}}"}}
    """

    type: Literal["action"] = "action"
    config: ActionConfig = Field(..., discriminator="action")

    @property
    def action(self) -> str:
        return self.config.action


class DelayConfig(BaseModel):
    value: float = Field(..., ge=0, description="How many units to wait")
    unit: str = Field("days", description=f"One of {', '.join(DELAY_UNITS_MS)}")

    class Config:
        frozen = True
        extra = "forbid"


class DelayNode(BaseNode):
    """
    Waits ``value`` ``unit`` before the successor runs.

    Months count as 30 days; an unknown unit counts as days.
    """

    type: Literal["delay"] = "delay"
    config: DelayConfig

    @property
    def duration_ms(self) -> int:
        return duration_to_ms(self.config.value, self.config.unit)


class ConditionalNode(BaseNode):
    """
    Evaluates its conditions and follows the outgoing connection whose
    ``fromPort`` is "true" or "false".
    """

    type: Literal["conditional"] = "conditional"
    config: ConditionGroup = Field(default_factory=ConditionGroup)

    @field_validator("config", mode="before")
    @classmethod
    def parse_config(cls, v: Any) -> ConditionGroup:
        # Accept a group, a list, or a single legacy {field, operator, value}
        return parse_conditions(v)


NodeType = Union[TriggerNode, ActionNode, DelayNode, ConditionalNode]


# ============================================================================
# CONNECTIONS
# ============================================================================

BRANCH_PORTS = {"true": "true", "yes": "true", "false": "false", "no": "false"}


class Connection(BaseModel):
    """
    Directed edge between two blocks.

    Stored with the editor's keys (``from``, ``to``, ``fromPort``, ``toPort``).
    """

    id: Optional[str] = None
    source: str = Field(..., alias="from", min_length=1)
    target: str = Field(..., alias="to", min_length=1)
    from_port: Optional[str] = Field(None, alias="fromPort")
    to_port: Optional[str] = Field(None, alias="toPort")

    class Config:
        frozen = True
        extra = "ignore"
        populate_by_name = True

    @property
    def branch(self) -> Optional[str]:
        """Canonical branch ("true"/"false") for a conditional's outgoing edge."""
        if self.from_port is None:
            return None
        return BRANCH_PORTS.get(self.from_port.strip().lower())


# ============================================================================
# FACTORY
# ============================================================================

_NODE_CLASSES = {
    "trigger": TriggerNode,
    "action": ActionNode,
    "delay": DelayNode,
    "conditional": ConditionalNode,
}


def _normalise_legacy(block: Dict[str, Any]) -> Dict[str, Any]:
    block_type = block.get("type")
    config = block.get("config") or {}

    if block_type in ACTION_TYPES:
        return {**block, "type": "action", "config": {**config, "action": block_type}}
    if block_type == "if":
        return {**block, "type": "conditional", "config": config}
    return block


def create_node_from_dict(block: Dict[str, Any]) -> NodeType:
    """
    Factory function: Creates the appropriate node type from a stored block.

    Args:
        block: Block dict with at least ``id`` and ``type``

    Returns:
        Node instance of the appropriate type

    Raises:
        ValueError: If block type is unknown or validation fails

    Example:
        >>> node = create_node_from_dict(
        ...     {"id": "wait", "type": "delay", "config": {"value": 2, "unit": "hours"}}
        ... )
        >>> node.duration_ms
        7200000
        >>> create_node_from_dict(
        ...     {"id": "sms", "type": "send_sms", "config": {"message": "Hi"}}
        ... ).action
        'send_sms'
    """
    block = _normalise_legacy(block)
    block_type = block.get("type")

    node_class = _NODE_CLASSES.get(block_type)
    if not node_class:
        raise ValueError(
            f"Unknown block type: '{block_type}'. "
            f"Valid types: {list(_NODE_CLASSES.keys()) + list(ACTION_TYPES) + ['if']}"
        )

    try:
        return node_class(**block)
    except Exception as e:
        raise ValueError(f"Failed to create {block_type} block: {e}")
