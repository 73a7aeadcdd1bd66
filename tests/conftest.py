"""
Pytest fixtures for PracticeFlow tests

This module provides shared fixtures for all tests:
- Database session fixtures
- Manual clock and engine config
- Mock message sender and tag service
- Client and workflow factories
- Sample workflow definitions
"""

import os

# Must be set before practiceflow.database / the Celery app are imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

import pytest
from unittest.mock import AsyncMock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from practiceflow.models import Base
from practiceflow.models.client import Appointment, Client
from practiceflow.models.workflow import Workflow
from practiceflow.core.actions import MessageSender, TagService
from practiceflow.core.circuit_breaker import messaging_circuit_breaker
from practiceflow.core.clock import ManualClock
from practiceflow.core.config import EngineConfig
from practiceflow.core.engine import StepExecutor
from practiceflow.core.enrollment import EnrollmentManager

# 2023-11-14T22:13:20Z
START_MS = 1_700_000_000_000


# ============================================================================
# DATABASE FIXTURES
# ============================================================================

@pytest.fixture(scope="function")
def db_session():
    """
    Create an in-memory SQLite database for testing.
    Each test gets a fresh database that's torn down after the test.
    """
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(engine)

    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()

    try:
        yield session
    finally:
        session.close()
        engine.dispose()


# ============================================================================
# TIME & CONFIG FIXTURES
# ============================================================================

@pytest.fixture
def start_ms():
    return START_MS


@pytest.fixture
def clock(start_ms):
    """Manual clock starting at START_MS"""
    return ManualClock(start_ms)


@pytest.fixture
def engine_config():
    """Default engine configuration (3 attempts, 5 minutes apart)"""
    return EngineConfig()


@pytest.fixture(autouse=True)
def reset_circuit_breaker():
    """The messaging breaker is process-wide; start every test CLOSED"""
    messaging_circuit_breaker.reset()
    yield
    messaging_circuit_breaker.reset()


# ============================================================================
# COLLABORATOR FIXTURES
# ============================================================================

@pytest.fixture
def mock_sender():
    """
    Mock message sender that accepts every message.
    Use this for unit tests that don't need a real provider.
    """
    mock = AsyncMock(spec=MessageSender)
    mock.send.return_value = {"message_id": "msg-123"}
    return mock


@pytest.fixture
def mock_tags():
    """Mock tag service"""
    mock = AsyncMock(spec=TagService)
    mock.add_tag.return_value = {"action": "tag_added"}
    mock.remove_tag.return_value = {"action": "tag_removed"}
    return mock


@pytest.fixture
def executor(db_session, clock, mock_sender, mock_tags, engine_config):
    """Step executor wired to the manual clock and mocks"""
    return StepExecutor(
        db_session,
        clock=clock,
        message_sender=mock_sender,
        tag_service=mock_tags,
        config=engine_config,
    )


@pytest.fixture
def manager(db_session, clock):
    return EnrollmentManager(db_session, clock=clock)


# ============================================================================
# RECORD FACTORIES
# ============================================================================

@pytest.fixture
def make_client(db_session):
    """
    Factory for clients.

    Usage:
        client = make_client(tags=["vip"])
    """
    def _make(org_id=1, **overrides):
        data = {
            "org_id": org_id,
            "first_name": "Ana",
            "last_name": "Diaz",
            "full_name": "Ana Diaz",
            "email": "ana@example.com",
            "phones": ["+15550100"],
            "tags": [],
        }
        data.update(overrides)
        client = Client(**data)
        db_session.add(client)
        db_session.commit()
        db_session.refresh(client)
        return client

    return _make


@pytest.fixture
def make_appointment(db_session):
    def _make(client, date_time, type="Botox - Forehead", status="scheduled"):
        appointment = Appointment(
            org_id=client.org_id,
            client_id=client.id,
            type=type,
            date_time=date_time,
            status=status,
        )
        db_session.add(appointment)
        db_session.commit()
        db_session.refresh(appointment)
        return appointment

    return _make


@pytest.fixture
def make_workflow(db_session):
    """
    Factory for workflows stored directly (no save-time validation).

    Usage:
        workflow = make_workflow(delay_then_email["blocks"], delay_then_email["connections"])
    """
    def _make(blocks, connections, org_id=1, **overrides):
        data = {
            "org_id": org_id,
            "name": "Test Workflow",
            "trigger": "manual",
            "priority": 100,
            "conditions": [],
            "blocks": blocks,
            "connections": connections,
            "status": "active",
            "prevent_duplicates": True,
            "duplicate_prevention_days": 30,
            "total_runs": 0,
            "successful_runs": 0,
            "failed_runs": 0,
        }
        data.update(overrides)
        workflow = Workflow(**data)
        db_session.add(workflow)
        db_session.commit()
        db_session.refresh(workflow)
        return workflow

    return _make


# ============================================================================
# WORKFLOW DEFINITION FIXTURES
# ============================================================================

@pytest.fixture
def delay_then_email():
    """
    Trigger → wait 2 hours → send email
    """
    return {
        "blocks": [
            {"id": "t", "type": "trigger", "config": {}},
            {"id": "wait", "type": "delay", "config": {"value": 2, "unit": "hours"}},
            {"id": "email", "type": "action", "config": {
                "action": "send_email",
                "subject": "Thanks {{first_name}}",
                "body": "Hi {{first_name}}, thanks for visiting {{business_name}}.",
            }},
        ],
        "connections": [
            {"id": "c1", "from": "t", "to": "wait"},
            {"id": "c2", "from": "wait", "to": "email"},
        ],
    }


@pytest.fixture
def sms_only():
    """
    Trigger → send SMS
    """
    return {
        "blocks": [
            {"id": "t", "type": "trigger", "config": {}},
            {"id": "sms", "type": "action", "config": {"action": "send_sms", "message": "Hi {{first_name}}!"}},
        ],
        "connections": [{"id": "c1", "from": "t", "to": "sms"}],
    }


@pytest.fixture
def vip_branch():
    """
    Trigger → is VIP? → [true: SMS / false: email]
    """
    return {
        "blocks": [
            {"id": "t", "type": "trigger", "config": {}},
            {"id": "vip", "type": "conditional", "config": {
                "match": "all",
                "conditions": [{"field": "tags", "operator": "has_tag", "value": "vip"}],
            }},
            {"id": "sms", "type": "action", "config": {"action": "send_sms", "message": "VIP offer"}},
            {"id": "email", "type": "action", "config": {
                "action": "send_email", "subject": "Offer", "body": "Regular offer",
            }},
        ],
        "connections": [
            {"id": "c1", "from": "t", "to": "vip"},
            {"id": "c2", "from": "vip", "to": "sms", "fromPort": "true"},
            {"id": "c3", "from": "vip", "to": "email", "fromPort": "false"},
        ],
    }


# ============================================================================
# UTILITY FIXTURES
# ============================================================================

@pytest.fixture
def capture_logs(caplog):
    """
    Fixture to capture logs for testing
    """
    import logging
    caplog.set_level(logging.DEBUG)
    return caplog
