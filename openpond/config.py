"""
Configuration management for the OpenPond SDK.
"""

import os
import json
from pathlib import Path
from urllib.parse import urlparse
from dataclasses import dataclass, asdict, fields
from typing import Optional

from .errors import ConfigurationError

# Production endpoint
DEFAULT_API_URL = os.environ.get(
    "OPENPOND_API_URL",
    "https://api.openpond.com"
)

TRANSPORT_STREAM = "stream"
TRANSPORT_POLL = "poll"
TRANSPORTS = (TRANSPORT_STREAM, TRANSPORT_POLL)

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_RECONNECT_DELAY = 1.0
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_DEDUP_WINDOW = 1000
DEFAULT_SHUTDOWN_TIMEOUT = 5.0


@dataclass(frozen=True)
class OpenPondConfig:
    """
    Session configuration.

    With `private_key` set the client owns its agent identity and only
    delivers messages addressed to it. Without one it runs as a hosted
    agent and delivers everything the service returns. `api_key` adds
    authenticated access in either mode.
    """
    api_url: str = DEFAULT_API_URL
    private_key: Optional[str] = None
    agent_name: Optional[str] = None
    api_key: Optional[str] = None
    transport: str = TRANSPORT_STREAM
    poll_interval: float = DEFAULT_POLL_INTERVAL
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    stream_read_timeout: Optional[float] = None  # None waits indefinitely
    dedup_window: int = DEFAULT_DEDUP_WINDOW
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT

    @property
    def base_url(self) -> str:
        return self.api_url.rstrip('/')

    @property
    def owns_identity(self) -> bool:
        return bool(self.private_key)

    def validate(self) -> None:
        """Raise ConfigurationError if the configuration cannot be used."""
        parsed = urlparse(self.api_url or '')
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ConfigurationError(f"Invalid api_url: {self.api_url!r}")

        if self.transport not in TRANSPORTS:
            raise ConfigurationError(
                f"Unknown transport {self.transport!r}, expected one of {TRANSPORTS}"
            )
        if self.poll_interval <= 0:
            raise ConfigurationError("poll_interval must be positive")
        if self.reconnect_delay < 0:
            raise ConfigurationError("reconnect_delay must not be negative")
        if self.request_timeout <= 0:
            raise ConfigurationError("request_timeout must be positive")
        if self.stream_read_timeout is not None and self.stream_read_timeout <= 0:
            raise ConfigurationError("stream_read_timeout must be positive or None")
        if self.dedup_window < 0:
            raise ConfigurationError("dedup_window must not be negative")
        if self.shutdown_timeout < 0:
            raise ConfigurationError("shutdown_timeout must not be negative")

    @classmethod
    def default(cls) -> "OpenPondConfig":
        """Create default configuration."""
        return cls()

    @classmethod
    def from_env(cls) -> "OpenPondConfig":
        """Create configuration from OPENPOND_* environment variables."""
        return cls(
            api_url=os.environ.get("OPENPOND_API_URL", DEFAULT_API_URL),
            private_key=os.environ.get("OPENPOND_PRIVATE_KEY") or None,
            agent_name=os.environ.get("OPENPOND_AGENT_NAME") or None,
            api_key=os.environ.get("OPENPOND_API_KEY") or None,
            transport=os.environ.get("OPENPOND_TRANSPORT", TRANSPORT_STREAM),
        )

    @classmethod
    def from_dict(cls, data: dict) -> "OpenPondConfig":
        """Create configuration from a dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def load(cls, path: Path) -> "OpenPondConfig":
        """Load configuration from file."""
        with open(path, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)

    def save(self, path: Path) -> None:
        """Save configuration to file (with restricted permissions)."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
        # may hold the private key
        path.chmod(0o600)
