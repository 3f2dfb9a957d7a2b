"""
Wire data model for the OpenPond network.

Messages and agents arrive as JSON from the remote service. Parsing is
strict about the fields delivery depends on (ids, recipient, timestamp) and
lenient about key style, accepting camelCase where the service uses it.
"""

from dataclasses import dataclass
from typing import Optional, Dict, Any

from .errors import SerializationError


def _pick(data: Dict[str, Any], *keys: str) -> Any:
    """Return the first present key out of several spellings."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def parse_millis(value: Any, field_name: str) -> Optional[int]:
    """Coerce an epoch-millisecond value (int, integral float or digit string)."""
    if value is None:
        return None
    # bool is an int subclass but never a valid timestamp
    if isinstance(value, bool):
        raise SerializationError(f"Invalid {field_name}: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise SerializationError(f"Invalid {field_name}: {value!r}")


@dataclass(frozen=True)
class Message:
    """A message delivered through the network. Immutable once received."""
    id: str
    from_agent_id: str
    to_agent_id: str
    content: str
    timestamp: int

    @classmethod
    def from_dict(cls, data: Any) -> "Message":
        if not isinstance(data, dict):
            raise SerializationError(f"Message must be an object, got {type(data).__name__}")

        message_id = _pick(data, 'id', 'messageId')
        from_agent_id = _pick(data, 'from_agent_id', 'fromAgentId')
        to_agent_id = _pick(data, 'to_agent_id', 'toAgentId')
        timestamp = parse_millis(_pick(data, 'timestamp'), 'timestamp')
        content = _pick(data, 'content')

        missing = [
            name for name, value in (
                ('id', message_id),
                ('from_agent_id', from_agent_id),
                ('to_agent_id', to_agent_id),
                ('timestamp', timestamp),
            ) if value is None
        ]
        if missing:
            raise SerializationError(f"Message missing fields: {', '.join(missing)}")

        return cls(
            id=str(message_id),
            from_agent_id=str(from_agent_id),
            to_agent_id=str(to_agent_id),
            content=str(content) if content is not None else '',
            timestamp=timestamp,
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'from_agent_id': self.from_agent_id,
            'to_agent_id': self.to_agent_id,
            'content': self.content,
            'timestamp': self.timestamp,
        }


@dataclass(frozen=True)
class Agent:
    """Directory entry for an agent. `last_seen` is maintained by the service."""
    id: str
    display_name: Optional[str] = None
    last_seen: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Agent":
        if not isinstance(data, dict):
            raise SerializationError(f"Agent must be an object, got {type(data).__name__}")

        agent_id = _pick(data, 'id', 'agentId')
        if agent_id is None:
            raise SerializationError("Agent missing field: id")

        name = _pick(data, 'name', 'display_name', 'displayName')
        return cls(
            id=str(agent_id),
            display_name=str(name) if name is not None else None,
            last_seen=parse_millis(_pick(data, 'last_seen', 'lastSeen'), 'last_seen'),
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.display_name,
            'last_seen': self.last_seen,
        }


@dataclass
class SendMessageOptions:
    """Optional extras attached to an outgoing message."""
    reply_to: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        result = {}
        if self.reply_to is not None:
            result['reply_to'] = self.reply_to
        if self.metadata is not None:
            result['metadata'] = self.metadata
        return result
