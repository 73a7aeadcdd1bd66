"""
Unit Tests for action collaborators

Tests cover:
- LogMessageSender (default provider)
- HttpMessageSender against a mocked transport, with the circuit breaker
- get_message_sender factory
- SqlTagService
"""

import json

import httpx
import pytest

from practiceflow.core.actions import (
    HttpMessageSender,
    LogMessageSender,
    SqlTagService,
    get_message_sender,
)
from practiceflow.core.circuit_breaker import CircuitBreaker, CircuitBreakerState
from practiceflow.core.config import EngineConfig
from practiceflow.core.exceptions import ConfigError, MessageDeliveryError, TagServiceError


def http_sender(handler, breaker=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpMessageSender(
        "https://messaging.test/",
        circuit_breaker=breaker or CircuitBreaker(name="test", failure_threshold=2, timeout=60),
        client=client,
    )


# ============================================================================
# LOG SENDER TESTS
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_log_sender_records_messages():
    sender = LogMessageSender()

    result = await sender.send("email", "ana@example.com", "Body", subject="Subject")

    assert result["message_id"]
    assert sender.sent == [{
        "message_id": result["message_id"],
        "kind": "email",
        "recipient": "ana@example.com",
        "subject": "Subject",
        "content": "Body",
    }]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_log_sender_rejects_unknown_kind():
    with pytest.raises(MessageDeliveryError, match="Unsupported message kind"):
        await LogMessageSender().send("fax", "+1555", "Hi")


# ============================================================================
# HTTP SENDER TESTS
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_http_sender_posts_message():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"id": "abc-1", "status": "queued"})

    sender = http_sender(handler)
    result = await sender.send("sms", "+15550100", "Hi Ana")
    await sender.close()

    assert result == {"message_id": "abc-1", "status": "queued"}
    assert str(requests[0].url) == "https://messaging.test/messages"
    assert json.loads(requests[0].content) == {"kind": "sms", "to": "+15550100", "content": "Hi Ana"}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_http_sender_server_error_counts_against_breaker():
    breaker = CircuitBreaker(name="test", failure_threshold=2, timeout=60)
    sender = http_sender(lambda request: httpx.Response(503), breaker)

    for _ in range(2):
        with pytest.raises(MessageDeliveryError, match="Messaging service error"):
            await sender.send("sms", "+15550100", "Hi")

    assert breaker.state == CircuitBreakerState.OPEN


@pytest.mark.unit
@pytest.mark.asyncio
async def test_http_sender_fails_fast_when_breaker_open():
    calls = []
    breaker = CircuitBreaker(name="test", failure_threshold=1, timeout=60)
    breaker.record_failure()

    sender = http_sender(lambda request: calls.append(request) or httpx.Response(200, json={"id": "x"}), breaker)

    with pytest.raises(MessageDeliveryError, match="circuit breaker is OPEN"):
        await sender.send("email", "ana@example.com", "Body", subject="S")
    assert calls == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_http_sender_response_without_id():
    sender = http_sender(lambda request: httpx.Response(200, json={"status": "ok"}))

    with pytest.raises(MessageDeliveryError, match="no message id"):
        await sender.send("sms", "+15550100", "Hi")


@pytest.mark.unit
def test_http_sender_requires_url():
    with pytest.raises(ConfigError) as exc_info:
        HttpMessageSender("")
    assert exc_info.value.setting == "MESSAGING_SERVICE_URL"


# ============================================================================
# FACTORY TESTS
# ============================================================================

@pytest.mark.unit
def test_get_message_sender_log():
    assert isinstance(get_message_sender("log", EngineConfig()), LogMessageSender)


@pytest.mark.unit
def test_get_message_sender_http_without_url():
    with pytest.raises(ConfigError):
        get_message_sender(config=EngineConfig(messaging_provider="http"))


@pytest.mark.unit
def test_get_message_sender_unknown():
    with pytest.raises(ConfigError, match="Unknown messaging provider"):
        get_message_sender("carrier-pigeon", EngineConfig())


# ============================================================================
# TAG SERVICE TESTS
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_add_tag(db_session, make_client):
    client = make_client(tags=["new"])
    service = SqlTagService(db_session)

    result = await service.add_tag(client.id, "vip")
    db_session.commit()

    assert result["action"] == "tag_added"
    db_session.refresh(client)
    assert client.tags == ["new", "vip"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_add_existing_tag(db_session, make_client):
    client = make_client(tags=["vip"])

    result = await SqlTagService(db_session).add_tag(client.id, "vip")

    assert result["action"] == "tag_already_exists"
    assert client.tags == ["vip"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_remove_tag_and_remove_all(db_session, make_client):
    client = make_client(tags=["a", "b", "c"])
    service = SqlTagService(db_session)

    await service.remove_tag(client.id, "b")
    db_session.commit()
    db_session.refresh(client)
    assert client.tags == ["a", "c"]

    result = await service.remove_tag(client.id, remove_all=True)
    db_session.commit()
    db_session.refresh(client)
    assert result["previous_tags"] == ["a", "c"]
    assert client.tags == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_tag_service_missing_client(db_session):
    with pytest.raises(TagServiceError, match="Client 999 not found"):
        await SqlTagService(db_session).add_tag(999, "vip")
