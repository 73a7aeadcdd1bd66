"""
Unit Tests for the Trigger Matcher

Tests cover:
- Candidate selection by event type and appointment sub-type
- Priority ordering and entry conditions
- handle_event: enrollment + step 0, skipped duplicates, failures reported not raised
"""

import pytest
from unittest.mock import patch

from practiceflow.core.exceptions import ClientNotFoundError
from practiceflow.core.triggers import BusinessEvent, TriggerMatcher
from practiceflow.models.enrollment import WorkflowEnrollment


@pytest.fixture
def matcher(db_session, clock, executor):
    return TriggerMatcher(db_session, clock=clock, executor=executor)


def appointment_event(client, label="Botox - Forehead", event_type="appointment_completed"):
    return BusinessEvent(
        type=event_type,
        org_id=client.org_id,
        client_id=client.id,
        context={"appointment": {"id": 3, "type": label, "date_time": 1_699_990_000_000}},
    )


# ============================================================================
# BUSINESS EVENT TESTS
# ============================================================================

@pytest.mark.unit
def test_business_event_appointment_type():
    event = BusinessEvent(
        type="appointment_completed", org_id=1, client_id=2,
        context={"appointment": {"type": "Morpheus8 Neck"}},
    )

    assert event.appointment_type == "morpheus8"
    assert event.event_data()["appointment_type"] == "morpheus8"
    assert event.event_data()["event_type"] == "appointment_completed"


@pytest.mark.unit
def test_non_appointment_event_has_no_sub_type():
    event = BusinessEvent(type="new_client", org_id=1, client_id=2, context={"appointment": {"type": "Botox"}})
    assert event.appointment_type is None


# ============================================================================
# MATCHING TESTS
# ============================================================================

@pytest.mark.unit
def test_match_by_type_and_sub_type_in_priority_order(matcher, make_client, make_workflow, sms_only):
    client = make_client()
    generic = make_workflow(**sms_only, name="Any completion", trigger="appointment_completed", priority=50)
    toxins = make_workflow(**sms_only, name="Botox follow-up", trigger="toxins", priority=10)
    make_workflow(**sms_only, name="Filler follow-up", trigger="filler", priority=1)
    make_workflow(**sms_only, name="Welcome", trigger="new_client")

    matches = matcher.match(appointment_event(client))

    assert [(w.id, p) for w, p in matches] == [(toxins.id, 10), (generic.id, 50)]


@pytest.mark.unit
def test_match_ignores_inactive_and_other_orgs(matcher, make_client, make_workflow, sms_only):
    client = make_client(org_id=1)
    make_workflow(**sms_only, trigger="appointment_completed", status="inactive")
    make_workflow(**sms_only, trigger="appointment_completed", status="draft")
    make_workflow(**sms_only, trigger="appointment_completed", org_id=2)

    assert matcher.match(appointment_event(client)) == []


@pytest.mark.unit
def test_match_applies_entry_conditions(matcher, make_client, make_workflow, sms_only):
    client = make_client(tags=["vip"])
    vip = make_workflow(**sms_only, trigger="appointment_completed",
                        conditions=[{"field": "tags", "operator": "has_tag", "value": "vip"}])
    make_workflow(**sms_only, trigger="appointment_completed",
                  conditions=[{"field": "appointment_type", "operator": "equals", "value": "filler"}])

    matches = matcher.match(appointment_event(client))

    assert [w.id for w, _ in matches] == [vip.id]


@pytest.mark.unit
def test_match_unknown_client(matcher):
    with pytest.raises(ClientNotFoundError):
        matcher.match(BusinessEvent(type="new_client", org_id=1, client_id=404))


# ============================================================================
# HANDLE EVENT TESTS
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_handle_event_enrolls_and_runs_step_zero(db_session, matcher, mock_sender,
                                                       make_client, make_workflow, sms_only):
    client = make_client()
    workflow = make_workflow(**sms_only, trigger="toxins")

    result = await matcher.handle_event(appointment_event(client))

    assert result.matched_workflow_ids == [workflow.id]
    assert result.errors == []
    assert result.enrollments[0]["skipped"] is False
    assert result.ticks[0]["status"] == "executed"
    mock_sender.send.assert_awaited_once_with("sms", "+15550100", "Hi Ana!")

    enrollment = db_session.get(WorkflowEnrollment, result.enrollments[0]["enrollment_id"])
    assert enrollment.enrollment_reason == "appointment_completed"
    assert enrollment.event_context["appointment_type"] == "toxins"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_handle_event_skipped_duplicate_does_not_stop_others(matcher, make_client, make_workflow,
                                                                   manager, sms_only):
    client = make_client()
    first = make_workflow(**sms_only, trigger="new_client", priority=1)
    second = make_workflow(**sms_only, trigger="new_client", priority=2)
    manager.enroll(org_id=1, workflow_id=first.id, client_id=client.id)

    result = await matcher.emit("new_client", org_id=1, entity_id=client.id)

    assert result.matched_workflow_ids == [first.id, second.id]
    assert [e["skipped"] for e in result.enrollments] == [True, False]
    assert len(result.ticks) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_handle_event_never_raises(matcher, make_client, make_workflow, sms_only):
    client = make_client()
    broken = make_workflow(**sms_only, trigger="new_client", priority=1)
    healthy = make_workflow(**sms_only, trigger="new_client", priority=2)

    original_enroll = matcher.enrollments.enroll

    def flaky_enroll(**kwargs):
        if kwargs["workflow_id"] == broken.id:
            raise RuntimeError("database hiccup")
        return original_enroll(**kwargs)

    with patch.object(matcher.enrollments, "enroll", side_effect=flaky_enroll):
        result = await matcher.handle_event(BusinessEvent(type="new_client", org_id=1, client_id=client.id))

    assert result.errors == [{"workflow_id": broken.id, "error": "database hiccup", "error_type": "RuntimeError"}]
    assert [e["workflow_id"] for e in result.enrollments] == [healthy.id]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_handle_event_unknown_client_is_reported(matcher):
    result = await matcher.emit("new_client", org_id=1, entity_id=404)

    assert result.matched_workflow_ids == []
    assert result.errors[0]["error_type"] == "ClientNotFoundError"
