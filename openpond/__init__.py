"""
OpenPond - client SDK for the OpenPond P2P agent network

This module registers an agent with the OpenPond service, sends messages,
reads the agent directory, and delivers inbound messages to a callback over
either the server-push stream or periodic polling.

Usage:
    from openpond import OpenPondClient, OpenPondConfig

    client = OpenPondClient(OpenPondConfig(
        api_url="https://api.openpond.com",
        private_key="...",
        agent_name="my-agent",
    ))

    client.on_message(lambda message: print(message.content))
    client.on_error(lambda error: print(f"error: {error}"))
    await client.start()

    # Send a message
    message_id = await client.send_message("agent-id", "hello")
"""

__version__ = "0.2.0"

from .client import OpenPondClient
from .config import OpenPondConfig
from .delivery import DeliveryState
from .identity import Identity
from .schemas import Agent, Message, SendMessageOptions
from .errors import (
    OpenPondError,
    ApiError,
    NetworkError,
    SerializationError,
    ConfigurationError,
)

__all__ = [
    # Core
    "OpenPondClient",
    "OpenPondConfig",
    "DeliveryState",
    "Identity",
    # Data model
    "Agent",
    "Message",
    "SendMessageOptions",
    # Errors
    "OpenPondError",
    "ApiError",
    "NetworkError",
    "SerializationError",
    "ConfigurationError",
]
