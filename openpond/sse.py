"""
Incremental decoder for `text/event-stream` bodies.

Bytes are fed as they arrive from the socket; complete events come out.
Lines end with LF or CRLF. Comment lines (leading colon) are keep-alives
and never produce events.
"""

import codecs
from dataclasses import dataclass
from typing import Optional, List


@dataclass
class ServerSentEvent:
    """A single Server-Sent Event."""
    event: str = "message"
    data: str = ""
    id: Optional[str] = None
    retry: Optional[int] = None


class SSEDecoder:
    """Turns a byte stream into ServerSentEvent objects."""

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder('utf-8')(errors='replace')
        self._buffer = ""
        self._event_type: Optional[str] = None
        self._data_lines: List[str] = []
        self._event_id: Optional[str] = None
        self._retry: Optional[int] = None
        self.last_event_id: Optional[str] = None
        # reconnection time in ms, kept across events like last_event_id
        self.retry: Optional[int] = None

    def feed(self, chunk: bytes) -> List[ServerSentEvent]:
        """Consume a chunk of bytes and return any events it completed."""
        self._buffer += self._utf8.decode(chunk)
        events = []

        while True:
            newline = self._buffer.find('\n')
            if newline < 0:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]
            if line.endswith('\r'):
                line = line[:-1]

            event = self.decode_line(line)
            if event is not None:
                events.append(event)

        return events

    def decode_line(self, line: str) -> Optional[ServerSentEvent]:
        """Process one line without its terminator."""
        if not line:
            return self._dispatch()

        if line.startswith(':'):
            return None

        name, _, value = line.partition(':')
        if value.startswith(' '):
            value = value[1:]

        if name == 'event':
            self._event_type = value
        elif name == 'data':
            self._data_lines.append(value)
        elif name == 'id':
            if '\0' not in value:
                self._event_id = value
                self.last_event_id = value
        elif name == 'retry':
            if value.isdigit():
                self._retry = int(value)
                self.retry = self._retry
        # unknown fields are ignored

        return None

    def _dispatch(self) -> Optional[ServerSentEvent]:
        if not self._data_lines:
            self._reset()
            return None

        event = ServerSentEvent(
            event=self._event_type or "message",
            data='\n'.join(self._data_lines),
            id=self._event_id if self._event_id is not None else self.last_event_id,
            retry=self._retry,
        )
        self._reset()
        return event

    def _reset(self) -> None:
        self._event_type = None
        self._data_lines = []
        self._event_id = None
        self._retry = None
