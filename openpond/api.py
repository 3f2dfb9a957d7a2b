"""
HTTP transport for the OpenPond service.
Handles registration, messaging, the agent directory, and the message stream.
"""

import json
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Tuple, AsyncIterator
from urllib.parse import quote

import aiohttp

from .config import OpenPondConfig
from .errors import ApiError, NetworkError, SerializationError
from .identity import Identity
from .schemas import Agent, Message, SendMessageOptions, parse_millis
from .sse import SSEDecoder, ServerSentEvent

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024


@dataclass
class MessageBatch:
    """Result of one fetch-since call."""
    messages: List[Message] = field(default_factory=list)
    errors: List[SerializationError] = field(default_factory=list)
    # Highest timestamp seen in the raw batch, including items that failed to parse
    max_timestamp: Optional[int] = None


def _raw_timestamp(item: Any) -> Optional[int]:
    if not isinstance(item, dict):
        return None
    try:
        return parse_millis(item.get('timestamp'), 'timestamp')
    except SerializationError:
        return None


class EventStream:
    """An open `text/event-stream` response that yields ServerSentEvents."""

    def __init__(self, response: aiohttp.ClientResponse):
        self._response = response
        self._decoder = SSEDecoder()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_event_id(self) -> Optional[str]:
        return self._decoder.last_event_id

    @property
    def retry(self) -> Optional[int]:
        """Reconnection delay in milliseconds requested by the server, if any."""
        return self._decoder.retry

    def __aiter__(self) -> AsyncIterator[ServerSentEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[ServerSentEvent]:
        try:
            async for chunk in self._response.content.iter_chunked(STREAM_CHUNK_SIZE):
                for event in self._decoder.feed(chunk):
                    yield event
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            if self._closed:
                return
            raise NetworkError(f"Message stream interrupted: {e}") from e

    def close(self) -> None:
        """Release the connection. Safe to call from another task."""
        if self._closed:
            return
        self._closed = True
        self._response.close()


class ApiClient:
    """Client for the OpenPond HTTP API."""

    def __init__(
        self,
        config: OpenPondConfig,
        identity: Optional[Identity] = None,
    ):
        self.config = config
        self.identity = identity
        self.base_url = config.base_url
        self.timeout = aiohttp.ClientTimeout(total=config.request_timeout)

    @property
    def headers(self) -> Dict[str, str]:
        """Default headers attached to every request."""
        headers = {'Content-Type': 'application/json'}
        if self.config.api_key:
            headers['X-API-Key'] = self.config.api_key
        return headers

    def stream_headers(
        self,
        last_event_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> Dict[str, str]:
        """Headers for the message stream connection."""
        headers = self.headers
        headers['Accept'] = 'text/event-stream'
        headers['Cache-Control'] = 'no-cache'

        if last_event_id:
            headers['Last-Event-ID'] = last_event_id

        if self.identity is not None:
            timestamp, signature = self.identity.sign_timestamp()
            headers['X-Agent-Id'] = agent_id or self.identity.agent_id
            headers['X-Timestamp'] = str(timestamp)
            headers['X-Signature'] = signature

        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, str]:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(
                headers=self.headers,
                timeout=self.timeout,
            ) as session:
                async with session.request(
                    method,
                    url,
                    json=json_body,
                    params=params,
                ) as response:
                    status, body = response.status, await response.read()

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            # TimeoutError stringifies to nothing useful
            reason = str(e) or type(e).__name__
            logger.error(f"{method} {path} failed: {reason}")
            raise NetworkError(f"{method} {path} failed: {reason}") from e

        try:
            return status, body.decode('utf-8')
        except UnicodeDecodeError as e:
            text = body.decode('utf-8', errors='replace')
            if not 200 <= status < 300:
                # error bodies are only ever shown to humans
                return status, text
            raise SerializationError(
                f"{method} {path} returned a body that is not UTF-8: {e}",
                payload=text,
            ) from e

    @staticmethod
    def _decode(text: str) -> Any:
        if not text.strip():
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise SerializationError(f"Invalid JSON from service: {e}", payload=text) from e

    @staticmethod
    def _check(status: int, text: str, what: str) -> None:
        if not 200 <= status < 300:
            logger.error(f"{what} failed: {status} {text[:200]}")
            raise ApiError(status, text)

    async def register_agent(self) -> Dict[str, Any]:
        """
        Register this agent with the service.

        A 409 Conflict means the agent already exists and counts as success.
        """
        payload = {
            'privateKey': self.config.private_key,
            'name': self.config.agent_name,
        }

        status, text = await self._request('POST', '/agents/register', json_body=payload)

        if status == 409:
            logger.info("Agent already registered")
            return {'already_registered': True}

        self._check(status, text, "Registration")
        data = self._decode(text)
        logger.info("Agent registered")
        return data if isinstance(data, dict) else {}

    async def send_message(
        self,
        to_agent_id: str,
        content: str,
        options: Optional[SendMessageOptions] = None,
    ) -> str:
        """Send a message to another agent. Returns the server-assigned id."""
        payload = {
            'toAgentId': to_agent_id,
            'content': content,
            'privateKey': self.config.private_key,
            'options': options.to_dict() if options else None,
        }

        status, text = await self._request('POST', '/messages', json_body=payload)
        self._check(status, text, "Send message")

        data = self._decode(text)
        message_id = data.get('messageId') if isinstance(data, dict) else None
        logger.debug(f"Sent message {message_id} to {to_agent_id}")
        return str(message_id) if message_id else ""

    async def get_agent(self, agent_id: str) -> Agent:
        """Look up an agent by id."""
        status, text = await self._request('GET', f"/agents/{quote(agent_id, safe='')}")
        self._check(status, text, f"Agent lookup for {agent_id}")
        return Agent.from_dict(self._decode(text))

    async def list_agents(self) -> List[Agent]:
        """List all registered agents."""
        status, text = await self._request('GET', '/agents')
        self._check(status, text, "Agent listing")

        data = self._decode(text)
        agents = data.get('agents') if isinstance(data, dict) else None
        if not isinstance(agents, list):
            raise SerializationError("Agent listing has no 'agents' array", payload=text)
        return [Agent.from_dict(a) for a in agents]

    async def fetch_message_batch(self, since: int) -> MessageBatch:
        """
        Fetch messages newer than `since`.

        Items that fail to parse are collected in `errors` instead of failing
        the whole batch, so one bad record cannot stall the cursor.
        """
        status, text = await self._request('GET', '/messages', params={'since': since})
        self._check(status, text, "Message fetch")

        data = self._decode(text)
        items = data.get('messages') if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise SerializationError("Message fetch has no 'messages' array", payload=text)

        batch = MessageBatch()
        for item in items:
            timestamp = _raw_timestamp(item)
            if timestamp is not None and (
                batch.max_timestamp is None or timestamp > batch.max_timestamp
            ):
                batch.max_timestamp = timestamp

            try:
                batch.messages.append(Message.from_dict(item))
            except SerializationError as e:
                e.payload = json.dumps(item, default=str)
                batch.errors.append(e)

        return batch

    async def fetch_messages_since(self, since: int) -> List[Message]:
        """Fetch messages newer than `since`, dropping unparseable items."""
        batch = await self.fetch_message_batch(since)
        for error in batch.errors:
            logger.warning(f"Dropped malformed message: {error}")
        return batch.messages

    @asynccontextmanager
    async def open_message_stream(
        self,
        last_event_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> AsyncIterator[EventStream]:
        """
        Open the push stream.

        Usage:
            async with api.open_message_stream() as stream:
                async for event in stream:
                    ...
        """
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=self.config.request_timeout,
            sock_read=self.config.stream_read_timeout,
        )
        url = f"{self.base_url}/messages/stream"

        async with aiohttp.ClientSession(timeout=timeout) as session:
            try:
                response = await session.get(
                    url,
                    headers=self.stream_headers(last_event_id, agent_id),
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                reason = str(e) or type(e).__name__
                raise NetworkError(f"Failed to open message stream: {reason}") from e

            stream = EventStream(response)
            try:
                if response.status != 200:
                    try:
                        text = await response.text(errors='replace')
                    except (aiohttp.ClientError, asyncio.TimeoutError):
                        text = ""
                    raise ApiError(response.status, text)

                logger.info(f"Message stream connected: {url}")
                yield stream
            finally:
                stream.close()
