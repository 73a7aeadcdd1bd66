"""
Integration Tests for the Celery tasks

Tasks run eagerly through ``apply()`` against the test session, with the
log message sender (no network).
"""

import pytest
from contextlib import contextmanager
from unittest.mock import patch

from practiceflow.core.exceptions import EnrollmentNotFoundError
from practiceflow.core.enrollment import EnrollmentManager
from practiceflow.models.enrollment import WorkflowEnrollment
from practiceflow.models.execution_log import ExecutionLog
from practiceflow.workers.tasks import (
    handle_event_task,
    process_appointment_completions_task,
    process_due_enrollments_task,
    tick_enrollment_task,
)


@pytest.fixture
def task_db(db_session, monkeypatch):
    """Route the tasks' get_db() to the test session"""
    monkeypatch.setenv("MESSAGING_PROVIDER", "log")

    @contextmanager
    def _get_db():
        yield db_session

    with patch("practiceflow.workers.tasks.get_db", _get_db):
        yield db_session


@pytest.fixture
def system_manager(db_session):
    """Enrollment manager on the wall clock, like the tasks"""
    return EnrollmentManager(db_session)


@pytest.mark.integration
def test_tick_enrollment_task(task_db, system_manager, make_client, make_workflow, sms_only):
    workflow = make_workflow(**sms_only)
    result = system_manager.enroll(org_id=1, workflow_id=workflow.id, client_id=make_client().id)

    outcome = tick_enrollment_task.apply(kwargs={"enrollment_id": result.enrollment_id}).get()

    assert outcome["status"] == "executed"
    assert outcome["enrollment_status"] == "completed"
    assert task_db.get(WorkflowEnrollment, result.enrollment_id).current_status == "completed"


@pytest.mark.integration
def test_tick_enrollment_task_stale_version(task_db, system_manager, make_client, make_workflow, sms_only):
    workflow = make_workflow(**sms_only)
    result = system_manager.enroll(org_id=1, workflow_id=workflow.id, client_id=make_client().id)

    outcome = tick_enrollment_task.apply(
        kwargs={"enrollment_id": result.enrollment_id, "expected_version": 99}
    ).get()

    assert outcome["status"] == "stale"
    assert task_db.get(WorkflowEnrollment, result.enrollment_id).current_status == "active"


@pytest.mark.integration
def test_tick_missing_enrollment_is_not_retried(task_db):
    result = tick_enrollment_task.apply(kwargs={"enrollment_id": 404})

    assert result.failed()
    assert isinstance(result.result, EnrollmentNotFoundError)


@pytest.mark.integration
def test_handle_event_task(task_db, make_client, make_workflow, sms_only):
    client = make_client()
    workflow = make_workflow(**sms_only, trigger="new_client")

    result = handle_event_task.apply(kwargs={
        "event_type": "new_client",
        "org_id": 1,
        "client_id": client.id,
    }).get()

    assert result["matched_workflow_ids"] == [workflow.id]
    assert result["errors"] == []
    assert result["ticks"][0]["status"] == "executed"
    assert task_db.query(ExecutionLog).filter_by(action="send_sms", status="executed").count() == 1


@pytest.mark.integration
def test_handle_event_task_reports_unknown_client(task_db):
    result = handle_event_task.apply(kwargs={"event_type": "new_client", "org_id": 1, "client_id": 404}).get()

    assert result["errors"][0]["error_type"] == "ClientNotFoundError"


@pytest.mark.integration
def test_process_due_enrollments_task(task_db, system_manager, make_client, make_workflow, sms_only):
    workflow = make_workflow(**sms_only, prevent_duplicates=False)
    for _ in range(2):
        system_manager.enroll(org_id=1, workflow_id=workflow.id, client_id=make_client().id)

    stats = process_due_enrollments_task.apply().get()

    assert stats["due"] == 2
    assert stats["executed"] == 2
    assert stats["errors"] == 0


@pytest.mark.integration
def test_process_appointment_completions_task_with_nothing_due(task_db):
    stats = process_appointment_completions_task.apply(kwargs={"org_id": 1}).get()

    assert stats == {"completed": 0, "enrollments": 0, "errors": 0}
