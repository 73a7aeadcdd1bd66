"""
Engine configuration.

Settings are read from environment variables (a local .env file is loaded
first). Defaults match production behaviour: three attempts per action step,
five minutes between attempts.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .exceptions import ConfigError

load_dotenv()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}", setting=name)


@dataclass(frozen=True)
class EngineConfig:
    """Tunables for the workflow engine and its collaborators."""

    max_step_attempts: int = 3
    step_retry_delay_seconds: int = 300
    scheduler_batch_size: int = 100
    # How long a running tick holds its enrollment before another may claim it
    tick_lease_seconds: int = 300
    default_duplicate_prevention_days: int = 30

    # Messaging provider: "log" (record only) or "http"
    messaging_provider: str = "log"
    messaging_service_url: Optional[str] = None
    messaging_api_key: Optional[str] = None
    messaging_timeout: int = 10

    # Template variables that describe the business, not the client
    business_name: str = "our clinic"
    business_phone: str = "(555) 123-4567"
    booking_link: str = ""
    google_review_link: str = ""

    def __post_init__(self):
        if self.max_step_attempts < 1:
            raise ConfigError("MAX_STEP_ATTEMPTS must be at least 1", setting="MAX_STEP_ATTEMPTS")
        if self.step_retry_delay_seconds < 0:
            raise ConfigError(
                "STEP_RETRY_DELAY_SECONDS cannot be negative", setting="STEP_RETRY_DELAY_SECONDS"
            )
        if self.tick_lease_seconds < 1:
            raise ConfigError("TICK_LEASE_SECONDS must be at least 1", setting="TICK_LEASE_SECONDS")

    @property
    def step_retry_delay_ms(self) -> int:
        return self.step_retry_delay_seconds * 1000

    @property
    def tick_lease_ms(self) -> int:
        return self.tick_lease_seconds * 1000

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build a config from environment variables."""
        return cls(
            max_step_attempts=_int_env("MAX_STEP_ATTEMPTS", 3),
            step_retry_delay_seconds=_int_env("STEP_RETRY_DELAY_SECONDS", 300),
            scheduler_batch_size=_int_env("SCHEDULER_BATCH_SIZE", 100),
            tick_lease_seconds=_int_env("TICK_LEASE_SECONDS", 300),
            default_duplicate_prevention_days=_int_env("DEFAULT_DUPLICATE_PREVENTION_DAYS", 30),
            messaging_provider=os.getenv("MESSAGING_PROVIDER", "log").lower(),
            messaging_service_url=os.getenv("MESSAGING_SERVICE_URL"),
            messaging_api_key=os.getenv("MESSAGING_API_KEY"),
            messaging_timeout=_int_env("MESSAGING_TIMEOUT", 10),
            business_name=os.getenv("BUSINESS_NAME", "our clinic"),
            business_phone=os.getenv("BUSINESS_PHONE", "(555) 123-4567"),
            booking_link=os.getenv("BOOKING_LINK", ""),
            google_review_link=os.getenv("GOOGLE_REVIEW_LINK", ""),
        )
