"""
High-level OpenPond client.
"""

import logging
from typing import Optional, List, Dict, Any

from .api import ApiClient
from .callbacks import CallbackRegistry, MessageCallback, ErrorCallback
from .config import OpenPondConfig
from .delivery import DeliveryEngine, DeliveryState
from .identity import Identity
from .schemas import Agent, SendMessageOptions

logger = logging.getLogger(__name__)


class OpenPondClient:
    """
    Main client for the OpenPond network.

    Two modes:
    1. With `private_key`: owns its agent identity and only receives
       messages addressed to it.
    2. Without: runs as a hosted agent and receives everything the
       service hands out.

    Usage:
        client = OpenPondClient(OpenPondConfig.from_env())
        client.on_message(lambda msg: print(msg.content))
        await client.start()

        await client.send_message("agent-id", "hello")
        agents = await client.list_agents()

        await client.stop()
    """

    def __init__(self, config: Optional[OpenPondConfig] = None):
        self.config = config or OpenPondConfig.default()
        self.config.validate()

        self.identity: Optional[Identity] = None
        if self.config.owns_identity:
            self.identity = Identity.from_private_key(self.config.private_key)

        self.api = ApiClient(self.config, self.identity)
        self.callbacks = CallbackRegistry()
        self.engine = DeliveryEngine(
            self.config,
            self.api,
            self.callbacks,
            self.identity,
        )

    @property
    def agent_id(self) -> Optional[str]:
        return self.engine.agent_id

    @property
    def state(self) -> DeliveryState:
        return self.engine.state

    @property
    def is_running(self) -> bool:
        return self.engine.is_running

    @property
    def cursor(self) -> int:
        """Timestamp of the newest delivered message (0 before any)."""
        return self.engine.cursor.read()

    def on_message(self, handler: Optional[MessageCallback]) -> Optional[MessageCallback]:
        """Register the message handler, replacing any previous one."""
        self.callbacks.set_message_callback(handler)
        return handler

    def on_error(self, handler: Optional[ErrorCallback]) -> Optional[ErrorCallback]:
        """Register the error handler, replacing any previous one."""
        self.callbacks.set_error_callback(handler)
        return handler

    async def start(self) -> None:
        """
        Register the agent and start receiving messages.

        Returns as soon as the delivery loop is running. A no-op if it
        already is. Raises ApiError or NetworkError if registration fails.
        """
        logger.info(f"Starting as {self.agent_id or 'hosted agent'}")
        await self.engine.start()

    async def stop(self) -> None:
        """Stop receiving messages. Always safe to call."""
        await self.engine.stop()

    async def send_message(
        self,
        to_agent_id: str,
        content: str,
        options: Optional[SendMessageOptions] = None,
    ) -> str:
        """Send a message to another agent. Returns the message id."""
        return await self.api.send_message(to_agent_id, content, options)

    async def get_agent(self, agent_id: str) -> Agent:
        """Get information about an agent."""
        return await self.api.get_agent(agent_id)

    async def list_agents(self) -> List[Agent]:
        """List all registered agents."""
        return await self.api.list_agents()

    def get_status(self) -> Dict[str, Any]:
        """Get current client status."""
        status = self.engine.get_status()
        status['api_url'] = self.config.base_url
        status['mode'] = 'owned' if self.config.owns_identity else 'hosted'
        return status

    async def __aenter__(self) -> "OpenPondClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
