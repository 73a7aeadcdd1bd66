"""
Unit Tests for the Enrollment Manager

Tests cover:
- Duplicate prevention window (t=0 ok, t=15d skipped, t=31d ok)
- Supersede and priority
- Pause / resume schedule shift
- State machine transitions
- Missing records
"""

import pytest

from practiceflow.core.clock import MS_PER_DAY, MS_PER_HOUR, MS_PER_MINUTE
from practiceflow.core.enrollment import check_transition
from practiceflow.core.exceptions import (
    ClientNotFoundError,
    EnrollmentNotFoundError,
    InvalidTransitionError,
    WorkflowNotFoundError,
)
from practiceflow.core.execution_log import ExecutionLogWriter
from practiceflow.models.enrollment import WorkflowEnrollment


def enroll(manager, workflow, client, **kwargs):
    return manager.enroll(org_id=workflow.org_id, workflow_id=workflow.id, client_id=client.id, **kwargs)


# ============================================================================
# ENROLL TESTS
# ============================================================================

@pytest.mark.unit
def test_enroll_creates_active_enrollment(db_session, clock, manager, make_client, make_workflow, sms_only):
    client = make_client()
    workflow = make_workflow(**sms_only)

    result = enroll(manager, workflow, client, reason="appointment_completed", event_context={"a": 1})

    assert result.created
    enrollment = db_session.get(WorkflowEnrollment, result.enrollment_id)
    assert enrollment.current_status == "active"
    assert enrollment.current_step == "start"
    assert enrollment.enrolled_at == clock.now_ms()
    assert enrollment.next_execution_at == clock.now_ms()
    assert enrollment.enrollment_reason == "appointment_completed"
    assert enrollment.priority == workflow.priority
    assert enrollment.event_context == {"a": 1}

    rows = ExecutionLogWriter(db_session).for_enrollment(enrollment.id)
    assert [(r.action, r.status, r.step_id) for r in rows] == [("enroll_client", "executed", "start")]


@pytest.mark.unit
def test_duplicate_prevention_window(db_session, clock, manager, make_client, make_workflow, sms_only):
    """Scenario: 30-day window, enrollments at t=0, t=15d and t=31d"""
    client = make_client()
    workflow = make_workflow(**sms_only, duplicate_prevention_days=30)

    first = enroll(manager, workflow, client)
    assert first.created

    clock.advance(days=15)
    second = enroll(manager, workflow, client)
    assert second.skipped
    assert second.reason == "duplicate"
    assert second.enrollment_id == first.enrollment_id

    clock.advance(days=16)
    third = enroll(manager, workflow, client)
    assert third.created
    assert third.enrollment_id != first.enrollment_id


@pytest.mark.unit
def test_duplicate_window_boundary_is_exclusive(clock, manager, make_client, make_workflow, sms_only):
    client = make_client()
    workflow = make_workflow(**sms_only, duplicate_prevention_days=30)
    enroll(manager, workflow, client)

    clock.advance(days=30)

    assert enroll(manager, workflow, client).created


@pytest.mark.unit
def test_duplicate_prevention_disabled(db_session, manager, make_client, make_workflow, sms_only):
    client = make_client()
    workflow = make_workflow(**sms_only, prevent_duplicates=False)

    first = enroll(manager, workflow, client)
    second = enroll(manager, workflow, client)

    assert second.created
    assert second.superseded_id == first.enrollment_id
    superseded = db_session.get(WorkflowEnrollment, first.enrollment_id)
    assert superseded.current_status == "cancelled"
    assert superseded.next_execution_at is None
    assert superseded.completed_at is not None


@pytest.mark.unit
def test_lower_priority_trigger_is_skipped(db_session, manager, make_client, make_workflow, sms_only):
    client = make_client()
    workflow = make_workflow(**sms_only, prevent_duplicates=False)

    first = enroll(manager, workflow, client, priority=10)
    second = enroll(manager, workflow, client, priority=50)

    assert second.skipped
    assert second.reason == "lower_priority"
    assert db_session.get(WorkflowEnrollment, first.enrollment_id).current_status == "active"


@pytest.mark.unit
def test_enroll_missing_records(manager, make_client, make_workflow, sms_only):
    client = make_client(org_id=1)
    workflow = make_workflow(**sms_only, org_id=1)
    other_org_client = make_client(org_id=2)

    with pytest.raises(WorkflowNotFoundError):
        manager.enroll(org_id=1, workflow_id=999, client_id=client.id)
    with pytest.raises(ClientNotFoundError):
        manager.enroll(org_id=1, workflow_id=workflow.id, client_id=999)
    with pytest.raises(ClientNotFoundError):
        manager.enroll(org_id=1, workflow_id=workflow.id, client_id=other_org_client.id)


@pytest.mark.unit
def test_skipped_enrollment_logs_debug(capture_logs, manager, make_client, make_workflow, sms_only):
    client = make_client()
    workflow = make_workflow(**sms_only)
    enroll(manager, workflow, client)

    enroll(manager, workflow, client)

    records = [r for r in capture_logs.records if "already enrolled" in r.getMessage()]
    assert records and all(r.levelname == "DEBUG" for r in records)


# ============================================================================
# SUPERSEDE / CANCEL TESTS
# ============================================================================

@pytest.mark.unit
def test_supersede(db_session, manager, make_client, make_workflow, sms_only):
    client = make_client()
    workflow = make_workflow(**sms_only)
    result = enroll(manager, workflow, client)

    assert manager.supersede(workflow.id, client.id) == result.enrollment_id
    assert manager.supersede(workflow.id, client.id) is None

    enrollment = db_session.get(WorkflowEnrollment, result.enrollment_id)
    assert enrollment.current_status == "cancelled"
    rows = ExecutionLogWriter(db_session).for_enrollment(enrollment.id)
    assert (rows[-1].action, rows[-1].status) == ("supersede", "cancelled")


@pytest.mark.unit
def test_cancel_twice_is_rejected(manager, make_client, make_workflow, sms_only):
    client = make_client()
    workflow = make_workflow(**sms_only)
    result = enroll(manager, workflow, client)

    cancelled = manager.cancel(result.enrollment_id, reason="opted out")
    assert cancelled.current_status == "cancelled"

    with pytest.raises(InvalidTransitionError) as exc_info:
        manager.cancel(result.enrollment_id)
    assert exc_info.value.from_status == "cancelled"


@pytest.mark.unit
def test_cancel_missing(manager):
    with pytest.raises(EnrollmentNotFoundError):
        manager.cancel(999)


# ============================================================================
# PAUSE / RESUME TESTS
# ============================================================================

@pytest.mark.unit
def test_pause_resume_shifts_schedule(db_session, clock, start_ms, manager, make_client, make_workflow, sms_only):
    client = make_client()
    workflow = make_workflow(**sms_only)
    result = enroll(manager, workflow, client)

    enrollment = db_session.get(WorkflowEnrollment, result.enrollment_id)
    enrollment.next_execution_at = start_ms + 2 * MS_PER_HOUR
    db_session.commit()

    clock.advance(minutes=30)
    assert manager.pause(workflow.id) == 1

    enrollment = db_session.get(WorkflowEnrollment, result.enrollment_id)
    assert enrollment.current_status == "paused"
    assert enrollment.paused_at == start_ms + 30 * MS_PER_MINUTE
    assert enrollment.next_execution_at == start_ms + 2 * MS_PER_HOUR

    clock.advance(hours=1)
    assert manager.resume(workflow.id) == 1

    enrollment = db_session.get(WorkflowEnrollment, result.enrollment_id)
    assert enrollment.current_status == "active"
    assert enrollment.resumed_at == clock.now_ms()
    assert enrollment.next_execution_at == start_ms + 3 * MS_PER_HOUR


@pytest.mark.unit
def test_resume_never_schedules_before_now(db_session, clock, manager, make_client, make_workflow, sms_only):
    client = make_client()
    workflow = make_workflow(**sms_only)
    result = enroll(manager, workflow, client)

    clock.advance(hours=1)
    manager.pause(workflow.id)
    clock.advance(hours=1)
    manager.resume(workflow.id)

    enrollment = db_session.get(WorkflowEnrollment, result.enrollment_id)
    assert enrollment.next_execution_at == clock.now_ms()


@pytest.mark.unit
def test_pause_bumps_version(db_session, manager, make_client, make_workflow, sms_only):
    client = make_client()
    workflow = make_workflow(**sms_only)
    result = enroll(manager, workflow, client)
    version = db_session.get(WorkflowEnrollment, result.enrollment_id).version

    manager.pause(workflow.id)
    manager.resume(workflow.id)

    assert db_session.get(WorkflowEnrollment, result.enrollment_id).version == version + 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_paused_enrollment_is_not_ticked(db_session, clock, executor, manager, mock_sender,
                                               make_client, make_workflow, sms_only):
    client = make_client()
    workflow = make_workflow(**sms_only)
    result = enroll(manager, workflow, client)
    manager.pause(workflow.id)

    outcome = await executor.tick(result.enrollment_id)

    assert outcome.status == "inactive"
    mock_sender.send.assert_not_awaited()


# ============================================================================
# STATE MACHINE TESTS
# ============================================================================

@pytest.mark.unit
@pytest.mark.parametrize("from_status,to_status,allowed", [
    ("active", "paused", True),
    ("paused", "active", True),
    ("active", "completed", True),
    ("paused", "cancelled", True),
    ("paused", "completed", False),
    ("completed", "active", False),
    ("cancelled", "paused", False),
    ("failed", "active", False),
])
def test_transitions(from_status, to_status, allowed):
    enrollment = WorkflowEnrollment(id=1, current_status=from_status)

    if allowed:
        check_transition(enrollment, to_status)
    else:
        with pytest.raises(InvalidTransitionError):
            check_transition(enrollment, to_status)


@pytest.mark.unit
def test_resume_completed_enrollment_is_rejected(manager):
    enrollment = WorkflowEnrollment(id=1, current_status="completed", version=3)

    with pytest.raises(InvalidTransitionError):
        manager.resume_enrollment(enrollment, now=MS_PER_DAY)
    assert enrollment.version == 3
