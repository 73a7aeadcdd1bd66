"""
Pydantic schemas for API request/response validation
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime


# ============================================================================
# WORKFLOW SCHEMAS
# ============================================================================

class WorkflowCreate(BaseModel):
    """Schema for creating a new workflow"""
    org_id: int
    name: str = Field(..., min_length=1, max_length=255, description="Workflow name")
    description: Optional[str] = Field(None, description="Workflow description")
    trigger: str = Field(..., description="Event type or appointment sub-type that starts the workflow")
    priority: int = Field(100, description="Lower number wins when several workflows match")
    conditions: List[Dict[str, Any]] = Field(default_factory=list, description="Entry conditions (ANDed)")
    blocks: List[Dict[str, Any]] = Field(..., description="Graph blocks")
    connections: List[Dict[str, Any]] = Field(default_factory=list, description="Graph connections")
    status: str = Field("draft", description="draft, active, inactive or archived")
    prevent_duplicates: bool = True
    duplicate_prevention_days: Optional[int] = Field(None, ge=0)

    class Config:
        json_schema_extra = {
            "example": {
                "org_id": 1,
                "name": "Botox follow-up",
                "trigger": "toxins",
                "conditions": [{"field": "tags", "operator": "not_has_tag", "value": "do-not-contact"}],
                "blocks": [
                    {"id": "b1", "type": "trigger", "config": {}},
                    {"id": "b2", "type": "delay", "config": {"value": 2, "unit": "weeks"}},
                    {"id": "b3", "type": "action", "config": {
                        "action": "send_sms",
                        "message": "Hi {{first_name}}, how are your results? Book a touch-up: {{booking_link}}"
                    }}
                ],
                "connections": [
                    {"id": "c1", "from": "b1", "to": "b2"},
                    {"id": "c2", "from": "b2", "to": "b3"}
                ],
                "status": "active"
            }
        }


class WorkflowUpdate(BaseModel):
    """Schema for replacing parts of a workflow definition"""
    trigger: Optional[str] = None
    conditions: Optional[List[Dict[str, Any]]] = None
    blocks: Optional[List[Dict[str, Any]]] = None
    connections: Optional[List[Dict[str, Any]]] = None


class WorkflowStatusUpdate(BaseModel):
    status: str = Field(..., description="draft, active, inactive or archived")


class WorkflowResponse(BaseModel):
    """Schema for workflow response"""
    id: int
    org_id: int
    name: str
    description: Optional[str]
    trigger: str
    priority: int
    conditions: List[Any]
    blocks: List[Dict[str, Any]]
    connections: List[Dict[str, Any]]
    status: str
    is_active: bool
    prevent_duplicates: bool
    duplicate_prevention_days: int
    total_runs: int
    successful_runs: int
    failed_runs: int
    last_run_at: Optional[int]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class WorkflowTestRequest(BaseModel):
    """Sample data for a dry run"""
    sample_client: Optional[Dict[str, Any]] = None
    sample_event: Optional[Dict[str, Any]] = None


# ============================================================================
# EVENT & ENROLLMENT SCHEMAS
# ============================================================================

class EventRequest(BaseModel):
    """Schema for reporting a business event"""
    type: str = Field(..., min_length=1, description="new_client, appointment_completed, ...")
    org_id: int
    client_id: int
    context: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "type": "appointment_completed",
                "org_id": 1,
                "client_id": 7,
                "context": {"appointment": {"id": 3, "type": "Botox - Forehead", "date_time": 1700000000000}}
            }
        }


class EnrollRequest(BaseModel):
    """Schema for enrolling a client by hand"""
    client_id: int
    reason: str = Field("manual", max_length=255)
    context: Dict[str, Any] = Field(default_factory=dict)


class EnrollmentResultResponse(BaseModel):
    workflow_id: int
    client_id: int
    enrollment_id: Optional[int]
    skipped: bool
    reason: Optional[str]
    superseded_id: Optional[int]
    task_id: Optional[str] = None


class EnrollmentResponse(BaseModel):
    id: int
    org_id: int
    workflow_id: int
    client_id: int
    current_status: str
    current_step: str
    enrolled_at: int
    paused_at: Optional[int]
    resumed_at: Optional[int]
    completed_at: Optional[int]
    next_execution_at: Optional[int]
    enrollment_reason: Optional[str]
    attempts: int
    version: int
    last_error: Optional[str]

    class Config:
        from_attributes = True


class CancelRequest(BaseModel):
    reason: str = Field("cancelled", max_length=255)


# ============================================================================
# EXECUTION LOG SCHEMAS
# ============================================================================

class ExecutionLogResponse(BaseModel):
    id: int
    workflow_id: int
    enrollment_id: Optional[int]
    client_id: int
    step_id: str
    action: str
    status: str
    message: Optional[str]
    error: Optional[str]
    details: Optional[Dict[str, Any]]
    executed_at: int
    execution_time_ms: Optional[int]

    class Config:
        from_attributes = True


class ExecutionLogListResponse(BaseModel):
    logs: List[ExecutionLogResponse]
    total: int


class QueuedResponse(BaseModel):
    """Returned when work was handed to a Celery worker"""
    task_id: str
    status: str = "queued"
    message: str
