"""
FastAPI main application
REST API endpoints for PracticeFlow
"""

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
import os
import logging
import uuid

from ..database import get_db_session
from ..models.enrollment import WorkflowEnrollment
from ..core.enrollment import EnrollmentManager
from ..core.exceptions import (
    ConfigError,
    DataIntegrityError,
    EnrollmentNotFoundError,
    GraphValidationError,
    InvalidTransitionError,
)
from ..core.execution_log import ExecutionLogWriter
from ..core.logging_config import setup_logging, set_correlation_id, clear_correlation_id
from ..core.metrics import MetricsCollector, check_system_health
from ..core.workflows import WorkflowService
from .schemas import (
    WorkflowCreate, WorkflowUpdate, WorkflowStatusUpdate, WorkflowResponse, WorkflowTestRequest,
    EventRequest, EnrollRequest, EnrollmentResultResponse, EnrollmentResponse, CancelRequest,
    ExecutionLogResponse, ExecutionLogListResponse, QueuedResponse,
)

# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

setup_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "false").lower() == "true",
    log_file=os.getenv("LOG_FILE", None)
)

logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP CONFIGURATION
# ============================================================================

app = FastAPI(
    title="PracticeFlow API",
    description="""
# PracticeFlow Workflow Automation

Runs marketing and follow-up workflows for a practice: business events
(appointment completed, new client, manual enrollment) enroll clients in
workflows, which then walk a graph of delays, messages, tag changes and
conditional branches over time.

## Key Features

- **Event-driven enrollment** with priority ordering and duplicate suppression
- **Delays** measured in seconds to months, shifted on pause/resume
- **Append-only execution log** for every step attempt
- **Async execution** using Celery + Redis
    """,
    version="0.1.0",
    openapi_tags=[
        {"name": "health", "description": "Health checks and metrics"},
        {"name": "workflows", "description": "Create, update and inspect workflows"},
        {"name": "events", "description": "Report business events"},
        {"name": "enrollments", "description": "Enroll clients and drive enrollments"},
    ]
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Dependency: Get database session
def get_db():
    """Dependency for database session"""
    db = get_db_session()
    try:
        yield db
    finally:
        db.close()


# ============================================================================
# MIDDLEWARE - Request ID Tracking
# ============================================================================

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """
    Tag every log record of a request with its id and echo the id back in
    the X-Request-ID header.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    set_correlation_id(request_id)

    logger.info(
        f"{request.method} {request.url.path}",
        extra={
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
        }
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(f"Response {response.status_code}", extra={"status_code": response.status_code})
        return response

    except Exception as e:
        logger.exception("Unhandled exception in request", extra={"error": str(e)})
        raise

    finally:
        clear_correlation_id()


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": detail, "status_code": status_code})


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    return _error(exc.status_code, exc.detail)


@app.exception_handler(GraphValidationError)
async def graph_validation_handler(request, exc: GraphValidationError):
    content = {"error": exc.message, "status_code": 422}
    if exc.block_id:
        content["block_id"] = exc.block_id
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(DataIntegrityError)
async def data_integrity_handler(request, exc: DataIntegrityError):
    return _error(404, exc.message)


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request, exc: InvalidTransitionError):
    return _error(409, exc.message)


@app.exception_handler(ConfigError)
async def config_error_handler(request, exc: ConfigError):
    logger.error(f"Configuration error: {exc.message}", extra={"setting": exc.setting})
    return _error(500, exc.message)


# ============================================================================
# ROOT & HEALTH
# ============================================================================

@app.get("/", tags=["health"], summary="API root")
def root():
    return {
        "name": "PracticeFlow API",
        "version": "0.1.0",
        "status": "healthy",
        "docs": "/docs",
    }


@app.get("/health", tags=["health"], summary="Health check (lightweight)")
def health_check():
    """Just confirms the API process is alive"""
    return {"status": "healthy", "service": "PracticeFlow API", "version": "0.1.0"}


@app.get("/health/detailed", tags=["health"], summary="Component health check")
def detailed_health_check(db: Session = Depends(get_db)):
    """Database connectivity, messaging circuit breaker and step error rate"""
    health = check_system_health(db)
    if not health["healthy"]:
        raise HTTPException(status_code=503, detail={"status": "unhealthy", **health})
    return {"status": "healthy", **health}


@app.get("/metrics", tags=["health"], summary="System metrics")
def get_metrics(db: Session = Depends(get_db)):
    """
    Step executions (last 24 hours), enrollments by status and due backlog,
    messaging circuit breaker state, database health.
    """
    metrics = MetricsCollector(db).get_all_metrics()
    logger.info(
        "Metrics collected",
        extra={
            "due_now": metrics["enrollments"].get("due_now"),
            "circuit_breaker_state": metrics["circuit_breaker"]["state"],
        }
    )
    return metrics


# ============================================================================
# WORKFLOWS
# ============================================================================

@app.post("/workflows", response_model=WorkflowResponse, status_code=201, tags=["workflows"],
          summary="Create workflow")
def create_workflow(workflow: WorkflowCreate, db: Session = Depends(get_db)):
    """Validates the graph (cycles, dangling connections, duplicate ids, branch ports) before saving."""
    return WorkflowService(db).create(**workflow.model_dump())


@app.get("/workflows/{workflow_id}", response_model=WorkflowResponse, tags=["workflows"],
         summary="Get workflow")
def get_workflow(workflow_id: int, db: Session = Depends(get_db)):
    return WorkflowService(db).get(workflow_id)


@app.put("/workflows/{workflow_id}", response_model=WorkflowResponse, tags=["workflows"],
         summary="Update workflow definition")
def update_workflow(workflow_id: int, update: WorkflowUpdate, db: Session = Depends(get_db)):
    return WorkflowService(db).update_definition(workflow_id, **update.model_dump())


@app.patch("/workflows/{workflow_id}/status", tags=["workflows"], summary="Change workflow status")
def set_workflow_status(workflow_id: int, update: WorkflowStatusUpdate, db: Session = Depends(get_db)):
    """Deactivating pauses running enrollments; reactivating resumes them."""
    return WorkflowService(db).set_status(workflow_id, update.status)


@app.post("/workflows/{workflow_id}/test", tags=["workflows"], summary="Dry run")
def test_workflow(workflow_id: int, request: WorkflowTestRequest, db: Session = Depends(get_db)):
    """Renders every step against sample data without sending or changing anything."""
    return WorkflowService(db).test_workflow(workflow_id, request.sample_client, request.sample_event)


@app.get("/workflows/{workflow_id}/stats", tags=["workflows"], summary="Workflow statistics")
def get_workflow_stats(workflow_id: int, db: Session = Depends(get_db)):
    return MetricsCollector(db).get_workflow_stats(workflow_id)


@app.get("/workflows/{workflow_id}/logs", response_model=ExecutionLogListResponse, tags=["workflows"],
         summary="Execution log")
def get_workflow_logs(workflow_id: int, limit: int = 100, offset: int = 0, db: Session = Depends(get_db)):
    WorkflowService(db).get(workflow_id)
    logs = ExecutionLogWriter(db).for_workflow(workflow_id, limit=min(limit, 500), offset=offset)
    return ExecutionLogListResponse(
        logs=[ExecutionLogResponse.model_validate(log) for log in logs],
        total=len(logs),
    )


# ============================================================================
# EVENTS
# ============================================================================

@app.post("/events", response_model=QueuedResponse, status_code=202, tags=["events"],
          summary="Report a business event")
def report_event(event: EventRequest):
    """
    Queues the event for matching. Returns immediately; the business
    operation that reported the event never waits on workflows.
    """
    from ..workers.tasks import handle_event_task

    task = handle_event_task.delay(
        event_type=event.type,
        org_id=event.org_id,
        client_id=event.client_id,
        context=event.context,
    )
    return QueuedResponse(task_id=task.id, message=f"Event {event.type} queued for workflow matching")


# ============================================================================
# ENROLLMENTS
# ============================================================================

@app.post("/workflows/{workflow_id}/enrollments", response_model=EnrollmentResultResponse,
          status_code=201, tags=["enrollments"], summary="Enroll a client")
def enroll_client(workflow_id: int, request: EnrollRequest, db: Session = Depends(get_db)):
    """
    Enrolls the client (subject to duplicate prevention) and queues the
    first step. Only active workflows accept enrollments.
    """
    from ..workers.tasks import tick_enrollment_task

    workflow = WorkflowService(db).get(workflow_id)
    if not workflow.is_active:
        raise HTTPException(
            status_code=409,
            detail=f"Workflow {workflow_id} is {workflow.status}; activate it before enrolling clients",
        )
    result = EnrollmentManager(db).enroll(
        org_id=workflow.org_id,
        workflow_id=workflow_id,
        client_id=request.client_id,
        reason=request.reason,
        event_context={"event_type": "manual", **request.context},
    )

    task_id = None
    if result.created:
        task_id = tick_enrollment_task.delay(enrollment_id=result.enrollment_id).id
    return EnrollmentResultResponse(**result.to_dict(), task_id=task_id)


@app.get("/enrollments/{enrollment_id}", response_model=EnrollmentResponse, tags=["enrollments"],
         summary="Get enrollment")
def get_enrollment(enrollment_id: int, db: Session = Depends(get_db)):
    enrollment = db.get(WorkflowEnrollment, enrollment_id)
    if enrollment is None:
        raise EnrollmentNotFoundError(f"Enrollment {enrollment_id} not found", record_id=enrollment_id)
    return enrollment


@app.post("/enrollments/{enrollment_id}/tick", response_model=QueuedResponse, status_code=202,
          tags=["enrollments"], summary="Run the next step now")
def tick_enrollment(enrollment_id: int, db: Session = Depends(get_db)):
    from ..workers.tasks import tick_enrollment_task

    enrollment = db.get(WorkflowEnrollment, enrollment_id)
    if enrollment is None:
        raise EnrollmentNotFoundError(f"Enrollment {enrollment_id} not found", record_id=enrollment_id)

    task = tick_enrollment_task.delay(enrollment_id=enrollment_id, expected_version=enrollment.version)
    return QueuedResponse(task_id=task.id, message=f"Enrollment {enrollment_id} queued for its next step")


@app.post("/enrollments/{enrollment_id}/cancel", response_model=EnrollmentResponse, tags=["enrollments"],
          summary="Cancel enrollment")
def cancel_enrollment(enrollment_id: int, request: CancelRequest, db: Session = Depends(get_db)):
    return EnrollmentManager(db).cancel(enrollment_id, reason=request.reason)
