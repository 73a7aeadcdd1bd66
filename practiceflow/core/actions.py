"""
Action collaborators for the Step Executor.

- MessageSender: hands an SMS or email to a delivery provider
- TagService: adds or removes tags on a client

The engine only depends on the abstract interfaces. Concrete senders:
- LogMessageSender: records the message in the log and returns an id (default)
- HttpMessageSender: posts to an external messaging service over HTTP
"""

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from ..models.client import Client
from .circuit_breaker import CircuitBreaker, messaging_circuit_breaker
from .config import EngineConfig
from .exceptions import ConfigError, MessageDeliveryError, TagServiceError

logger = logging.getLogger(__name__)

MESSAGE_KINDS = ("sms", "email")


# ============================================================================
# MESSAGING
# ============================================================================

class MessageSender(ABC):
    """Delivery provider interface."""

    @abstractmethod
    async def send(
        self,
        kind: str,
        recipient: str,
        content: str,
        subject: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Send one message.

        Args:
            kind: "sms" or "email"
            recipient: Phone number or email address
            content: Rendered message body
            subject: Rendered subject (email only)

        Returns:
            Dict with at least ``message_id``

        Raises:
            MessageDeliveryError: If the provider rejects or cannot be reached
        """
        pass


class LogMessageSender(MessageSender):
    """
    Records messages instead of delivering them.

    Used when no provider is configured, and in development.
    """

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def send(self, kind, recipient, content, subject=None):
        if kind not in MESSAGE_KINDS:
            raise MessageDeliveryError(f"Unsupported message kind: {kind}", kind=kind, recipient=recipient)

        message_id = str(uuid.uuid4())
        self.sent.append({
            "message_id": message_id,
            "kind": kind,
            "recipient": recipient,
            "subject": subject,
            "content": content,
        })
        logger.info(
            f"{kind.upper()} to {recipient} recorded (not delivered)",
            extra={"message_id": message_id, "subject": subject},
        )
        return {"message_id": message_id}


class HttpMessageSender(MessageSender):
    """
    Client for an external messaging service.

    Environment Variables:
        MESSAGING_SERVICE_URL: Base URL of the service
        MESSAGING_API_KEY: Bearer token (optional)

    Example:
        sender = HttpMessageSender("https://messaging.internal")
        result = await sender.send("sms", "+15551234567", "See you soon!")
        await sender.close()
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: int = 10,
        circuit_breaker: Optional[CircuitBreaker] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not base_url:
            raise ConfigError(
                "MESSAGING_SERVICE_URL must be set when MESSAGING_PROVIDER=http",
                setting="MESSAGING_SERVICE_URL",
            )

        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.circuit_breaker = circuit_breaker or messaging_circuit_breaker

        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

        logger.info(f"HttpMessageSender initialized with base_url: {self.base_url}")

    async def send(self, kind, recipient, content, subject=None):
        if self.circuit_breaker.is_open():
            raise MessageDeliveryError(
                "Messaging circuit breaker is OPEN, not sending", kind=kind, recipient=recipient
            )

        payload = {"kind": kind, "to": recipient, "content": content}
        if subject is not None:
            payload["subject"] = subject

        try:
            response = await self.client.post(f"{self.base_url}/messages", json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self.circuit_breaker.record_failure()
            logger.error(f"Messaging service rejected {kind} to {recipient}: {e}")
            raise MessageDeliveryError(
                f"Messaging service error: {e}", kind=kind, recipient=recipient
            ) from e

        message_id = data.get("message_id") or data.get("id")
        if not message_id:
            self.circuit_breaker.record_failure()
            raise MessageDeliveryError(
                "Messaging service response has no message id", kind=kind, recipient=recipient
            )

        self.circuit_breaker.record_success()
        return {"message_id": str(message_id), "status": data.get("status")}

    async def close(self):
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


def get_message_sender(
    provider: Optional[str] = None,
    config: Optional[EngineConfig] = None,
) -> MessageSender:
    """
    Factory function: Creates the message sender for the configured provider.

    Args:
        provider: "log" or "http" (default: config.messaging_provider)
        config: Engine configuration (default: from environment)

    Raises:
        ConfigError: If the provider is unknown or incompletely configured

    Examples:
        >>> isinstance(get_message_sender("log"), LogMessageSender)
        True
    """
    config = config or EngineConfig.from_env()
    provider = (provider or config.messaging_provider).lower()

    if provider == "log":
        return LogMessageSender()
    if provider == "http":
        return HttpMessageSender(
            base_url=config.messaging_service_url,
            api_key=config.messaging_api_key,
            timeout=config.messaging_timeout,
        )

    raise ConfigError(
        f"Unknown messaging provider: '{provider}'. Valid providers: ['log', 'http']",
        setting="MESSAGING_PROVIDER",
    )


# ============================================================================
# TAGS
# ============================================================================

class TagService(ABC):
    """Client tag store interface."""

    @abstractmethod
    async def add_tag(self, client_id: int, tag: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def remove_tag(self, client_id: int, tag: Optional[str] = None, remove_all: bool = False) -> Dict[str, Any]:
        pass


class SqlTagService(TagService):
    """
    Stores tags on ``Client.tags`` in the caller's session.

    Changes are not committed here; they land with the step's log row.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def _client(self, client_id: int, tag: Optional[str]) -> Client:
        client = self.db.get(Client, client_id)
        if client is None:
            raise TagServiceError(f"Client {client_id} not found", tag=tag)
        return client

    async def add_tag(self, client_id, tag):
        client = self._client(client_id, tag)
        previous = list(client.tags or [])

        if tag in previous:
            return {"action": "tag_already_exists", "tag": tag, "tags": previous}

        client.tags = previous + [tag]
        return {"action": "tag_added", "tag": tag, "previous_tags": previous, "new_tags": client.tags}

    async def remove_tag(self, client_id, tag=None, remove_all=False):
        client = self._client(client_id, tag)
        previous = list(client.tags or [])

        if remove_all:
            client.tags = []
            return {"action": "all_tags_removed", "previous_tags": previous, "new_tags": []}

        if not tag:
            raise TagServiceError("No tag specified to remove")

        client.tags = [t for t in previous if t != tag]
        return {"action": "tag_removed", "tag": tag, "previous_tags": previous, "new_tags": client.tags}
