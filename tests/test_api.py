"""
Wire-level tests against an in-process aiohttp stand-in for the OpenPond
service: request shape, headers, status handling, and both delivery
transports end to end.
"""

import json
import logging
import asyncio
from typing import List, Dict, Any, Optional

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from openpond import (
    OpenPondClient,
    OpenPondConfig,
    DeliveryState,
    Identity,
    SendMessageOptions,
    ApiError,
    NetworkError,
    SerializationError,
)
from openpond.api import ApiClient


def message_dict(message_id: str, timestamp: int, to: str = "agent-me") -> Dict[str, Any]:
    return {
        'id': message_id,
        'from_agent_id': "agent-peer",
        'to_agent_id': to,
        'content': f"content {message_id}",
        'timestamp': timestamp,
    }


def sse_event(data: Dict[str, Any], event_id: Optional[str] = None) -> bytes:
    lines = ["event: message"]
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"data: {json.dumps(data)}")
    return ("\n".join(lines) + "\n\n").encode()


class FakeOpenPond:
    """In-process stand-in for the OpenPond API."""

    def __init__(self):
        self.requests: List[Dict[str, Any]] = []
        self.register_status = 201
        self.messages: List[Dict[str, Any]] = []
        self.fetch_failures = 0
        # served verbatim by GET /messages before any JSON answer
        self.raw_fetch_bodies: List[bytes] = []
        self.agents = [
            {'id': "agent-1", 'name': "Alice", 'last_seen': 1700000000000},
            {'id': "agent-2", 'name': None},
        ]
        # One list of SSE chunks per stream connection; the last one stays open
        self.stream_script: List[List[bytes]] = [[]]
        self.stream_connections: List[Any] = []
        self.release = asyncio.Event()

        self.app = web.Application()
        self.app.router.add_post('/agents/register', self._register)
        self.app.router.add_get('/agents', self._list_agents)
        self.app.router.add_get('/agents/{agent_id}', self._get_agent)
        self.app.router.add_post('/messages', self._send)
        self.app.router.add_get('/messages/stream', self._stream)
        self.app.router.add_get('/messages', self._fetch)
        self.server: Optional[TestServer] = None

    @property
    def url(self) -> str:
        return str(self.server.make_url('/')).rstrip('/')

    async def __aenter__(self) -> "FakeOpenPond":
        self.server = TestServer(self.app)
        await self.server.start_server()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.release.set()
        await self.server.close()

    async def _record(self, request: web.Request) -> Dict[str, Any]:
        body = await request.text()
        entry = {
            'method': request.method,
            'path': request.path,
            'query': dict(request.query),
            'headers': request.headers.copy(),
            'json': json.loads(body) if body else None,
        }
        self.requests.append(entry)
        return entry

    async def _register(self, request: web.Request) -> web.Response:
        await self._record(request)
        if self.register_status == 409:
            return web.json_response({'error': "already registered"}, status=409)
        if self.register_status >= 400:
            return web.Response(text="registry unavailable", status=self.register_status)
        return web.json_response({'success': True}, status=self.register_status)

    async def _list_agents(self, request: web.Request) -> web.Response:
        await self._record(request)
        return web.json_response({'agents': self.agents})

    async def _get_agent(self, request: web.Request) -> web.Response:
        await self._record(request)
        agent_id = request.match_info['agent_id']
        for agent in self.agents:
            if agent['id'] == agent_id:
                return web.json_response(agent)
        return web.Response(text=f"agent {agent_id} not found", status=404)

    async def _send(self, request: web.Request) -> web.Response:
        await self._record(request)
        return web.json_response({'messageId': "msg-123"})

    async def _fetch(self, request: web.Request) -> web.Response:
        entry = await self._record(request)
        if self.fetch_failures > 0:
            self.fetch_failures -= 1
            return web.Response(text="internal error", status=500)
        if self.raw_fetch_bodies:
            return web.Response(body=self.raw_fetch_bodies.pop(0), content_type="application/json")
        since = int(entry['query'].get('since', 0))
        return web.json_response({
            'messages': [m for m in self.messages if int(m.get('timestamp', 0)) > since],
        })

    async def _stream(self, request: web.Request) -> web.StreamResponse:
        self.stream_connections.append(request.headers.copy())
        index = len(self.stream_connections) - 1

        response = web.StreamResponse(headers={'Content-Type': 'text/event-stream'})
        await response.prepare(request)

        chunks = self.stream_script[min(index, len(self.stream_script) - 1)]
        for chunk in chunks:
            await response.write(chunk)

        if index >= len(self.stream_script) - 1:
            await self.release.wait()
        return response


class TestApiClient:
    """Request shape and error mapping."""

    @pytest.mark.asyncio
    async def test_register_conflict_is_success(self):
        async with FakeOpenPond() as service:
            service.register_status = 409
            api = ApiClient(OpenPondConfig(api_url=service.url))

            result = await api.register_agent()

        assert result == {'already_registered': True}

    @pytest.mark.asyncio
    async def test_register_failure_raises_api_error(self):
        async with FakeOpenPond() as service:
            service.register_status = 503
            api = ApiClient(OpenPondConfig(api_url=service.url))

            with pytest.raises(ApiError) as exc_info:
                await api.register_agent()

        assert exc_info.value.status == 503
        assert exc_info.value.message == "registry unavailable"

    @pytest.mark.asyncio
    async def test_register_body(self):
        async with FakeOpenPond() as service:
            api = ApiClient(OpenPondConfig(
                api_url=service.url,
                private_key="0x" + "11" * 32,
                agent_name="tester",
            ))
            await api.register_agent()

        assert service.requests[0]['json'] == {
            'privateKey': "0x" + "11" * 32,
            'name': "tester",
        }

    @pytest.mark.asyncio
    async def test_default_headers_with_api_key(self):
        async with FakeOpenPond() as service:
            api = ApiClient(OpenPondConfig(api_url=service.url, api_key="secret-key"))
            await api.send_message("agent-2", "hello")

        headers = service.requests[0]['headers']
        assert headers['Content-Type'] == "application/json"
        assert headers['X-API-Key'] == "secret-key"

    @pytest.mark.asyncio
    async def test_no_api_key_header_when_unset(self):
        async with FakeOpenPond() as service:
            api = ApiClient(OpenPondConfig(api_url=service.url))
            await api.list_agents()

        assert 'X-API-Key' not in service.requests[0]['headers']

    @pytest.mark.asyncio
    async def test_send_message(self):
        async with FakeOpenPond() as service:
            api = ApiClient(OpenPondConfig(api_url=service.url))
            message_id = await api.send_message(
                "agent-2",
                "hello",
                SendMessageOptions(reply_to="msg-1"),
            )

        assert message_id == "msg-123"
        assert service.requests[0]['json'] == {
            'toAgentId': "agent-2",
            'content': "hello",
            'privateKey': None,
            'options': {'reply_to': "msg-1"},
        }

    @pytest.mark.asyncio
    async def test_list_and_get_agents(self):
        async with FakeOpenPond() as service:
            api = ApiClient(OpenPondConfig(api_url=service.url))
            agents = await api.list_agents()
            alice = await api.get_agent("agent-1")

        assert [a.id for a in agents] == ["agent-1", "agent-2"]
        assert agents[1].display_name is None
        assert alice.display_name == "Alice"
        assert alice.last_seen == 1700000000000

    @pytest.mark.asyncio
    async def test_unknown_agent_raises_api_error(self):
        async with FakeOpenPond() as service:
            api = ApiClient(OpenPondConfig(api_url=service.url))

            with pytest.raises(ApiError) as exc_info:
                await api.get_agent("nobody")

        assert exc_info.value.status == 404
        assert "nobody" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_fetch_batch_collects_malformed_items(self):
        async with FakeOpenPond() as service:
            service.messages = [
                message_dict("good", 100),
                {'content': "no ids", 'timestamp': 300},
            ]
            api = ApiClient(OpenPondConfig(api_url=service.url))

            batch = await api.fetch_message_batch(0)

        assert [m.id for m in batch.messages] == ["good"]
        assert len(batch.errors) == 1
        assert batch.max_timestamp == 300
        assert service.requests[0]['query'] == {'since': "0"}

    @pytest.mark.asyncio
    async def test_fetch_batch_reads_string_timestamps(self):
        async with FakeOpenPond() as service:
            service.messages = [
                {**message_dict("a", 100), 'timestamp': "100"},
                {'id': "b", 'timestamp': "400"},
            ]
            api = ApiClient(OpenPondConfig(api_url=service.url))

            batch = await api.fetch_message_batch(0)

        assert [m.timestamp for m in batch.messages] == [100]
        assert batch.max_timestamp == 400

    @pytest.mark.asyncio
    async def test_fetch_since_drops_and_logs_malformed_items(self, caplog):
        async with FakeOpenPond() as service:
            service.messages = [
                message_dict("a", 100),
                {'id': "broken", 'timestamp': 150},
                message_dict("b", 200),
            ]
            api = ApiClient(OpenPondConfig(api_url=service.url))

            with caplog.at_level(logging.WARNING, logger="openpond.api"):
                messages = await api.fetch_messages_since(50)

        assert [m.id for m in messages] == ["a", "b"]
        assert "Dropped malformed message" in caplog.text
        assert service.requests[0]['query'] == {'since': "50"}

    @pytest.mark.asyncio
    async def test_non_utf8_body_raises_serialization_error(self):
        async with FakeOpenPond() as service:
            service.raw_fetch_bodies = [b'{"messages": [\xff\xfe]}']
            api = ApiClient(OpenPondConfig(api_url=service.url))

            with pytest.raises(SerializationError) as exc_info:
                await api.fetch_message_batch(0)

        assert exc_info.value.payload is not None

    @pytest.mark.asyncio
    async def test_non_utf8_error_body_keeps_status(self):
        app = web.Application()

        async def broken(request):
            return web.Response(body=b"\xff\xfe failure", status=502)

        app.router.add_get('/agents', broken)
        async with TestServer(app) as server:
            api = ApiClient(OpenPondConfig(api_url=str(server.make_url('/'))))

            with pytest.raises(ApiError) as exc_info:
                await api.list_agents()

        assert exc_info.value.status == 502
        assert "failure" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_invalid_json_raises_serialization_error(self):
        app = web.Application()

        async def garbage(request):
            return web.Response(text="<html>not json</html>")

        app.router.add_get('/agents', garbage)
        async with TestServer(app) as server:
            api = ApiClient(OpenPondConfig(api_url=str(server.make_url('/'))))

            with pytest.raises(SerializationError):
                await api.list_agents()

    @pytest.mark.asyncio
    async def test_connection_refused_raises_network_error(self):
        api = ApiClient(OpenPondConfig(api_url="http://127.0.0.1:1", request_timeout=5))

        with pytest.raises(NetworkError):
            await api.list_agents()

    def test_stream_headers_for_owned_identity(self):
        identity = Identity.generate()
        api = ApiClient(
            OpenPondConfig(private_key=identity.private_key_hex, api_key="k"),
            identity,
        )

        headers = api.stream_headers(last_event_id="42")

        assert headers['Accept'] == "text/event-stream"
        assert headers['X-API-Key'] == "k"
        assert headers['Last-Event-ID'] == "42"
        assert headers['X-Agent-Id'] == identity.agent_id
        assert headers['X-Timestamp'].isdigit()
        assert Identity.verify_signature(
            identity.public_key_b64,
            headers['X-Timestamp'].encode(),
            headers['X-Signature'],
        )

    def test_stream_headers_for_hosted_agent(self):
        api = ApiClient(OpenPondConfig())

        headers = api.stream_headers()

        assert headers['Accept'] == "text/event-stream"
        assert 'X-Agent-Id' not in headers
        assert 'X-Timestamp' not in headers
        assert 'Last-Event-ID' not in headers


class TestPollingClient:
    """Polling transport end to end."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_polling_delivers_new_messages_once(self):
        async with FakeOpenPond() as service:
            service.messages = [
                message_dict("a", 100),
                message_dict("b", 250),
                message_dict("c", 180),
            ]
            client = OpenPondClient(OpenPondConfig(
                api_url=service.url,
                transport="poll",
                poll_interval=0.05,
            ))

            received = []
            done = asyncio.Event()

            def handler(message):
                received.append(message.id)
                if message.id == "d":
                    done.set()

            client.on_message(handler)
            await client.start()

            while client.cursor < 250:
                await asyncio.sleep(0.01)
            service.messages.append(message_dict("d", 300))

            await asyncio.wait_for(done.wait(), timeout=5)
            await client.stop()

        assert received == ["a", "b", "c", "d"]
        assert client.cursor == 300
        since_values = [r['query']['since'] for r in service.requests if r['path'] == '/messages']
        assert since_values[0] == "0"
        assert "250" in since_values

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_failed_poll_reports_and_recovers(self):
        async with FakeOpenPond() as service:
            service.fetch_failures = 1
            service.messages = [message_dict("a", 100)]
            client = OpenPondClient(OpenPondConfig(
                api_url=service.url,
                transport="poll",
                poll_interval=0.05,
            ))

            errors = []
            delivered = asyncio.Event()
            client.on_error(errors.append)
            client.on_message(lambda m: delivered.set())

            await client.start()
            await asyncio.wait_for(delivered.wait(), timeout=5)
            await client.stop()

        assert len(errors) == 1
        assert isinstance(errors[0], ApiError)
        assert errors[0].status == 500

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_undecodable_poll_reports_and_recovers(self):
        async with FakeOpenPond() as service:
            service.raw_fetch_bodies = [b'{"messages": [\xff\xfe]}']
            service.messages = [message_dict("a", 100)]
            client = OpenPondClient(OpenPondConfig(
                api_url=service.url,
                transport="poll",
                poll_interval=0.05,
            ))

            errors = []
            delivered = asyncio.Event()
            client.on_error(errors.append)
            client.on_message(lambda m: delivered.set())

            await client.start()
            await asyncio.wait_for(delivered.wait(), timeout=5)
            assert client.is_running
            await client.stop()

        assert len(errors) == 1
        assert isinstance(errors[0], SerializationError)
        assert client.cursor == 100

    @pytest.mark.asyncio
    async def test_start_with_conflict_registration(self):
        async with FakeOpenPond() as service:
            service.register_status = 409
            client = OpenPondClient(OpenPondConfig(api_url=service.url, transport="poll"))

            await client.start()
            assert client.state is DeliveryState.RUNNING
            await client.stop()

        assert client.state is DeliveryState.IDLE

    @pytest.mark.asyncio
    async def test_start_propagates_registration_failure(self):
        async with FakeOpenPond() as service:
            service.register_status = 500
            client = OpenPondClient(OpenPondConfig(api_url=service.url, transport="poll"))

            with pytest.raises(ApiError):
                await client.start()

        assert client.state is DeliveryState.IDLE


class TestStreamingClient:
    """Push-stream transport end to end."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_reconnects_and_suppresses_replays(self):
        async with FakeOpenPond() as service:
            service.stream_script = [
                # first connection drops after two messages
                [sse_event(message_dict("m1", 100), "1"), sse_event(message_dict("m2", 200), "2")],
                # the server replays m2 after reconnect
                [sse_event(message_dict("m2", 200), "2"), sse_event(message_dict("m3", 300), "3")],
            ]
            client = OpenPondClient(OpenPondConfig(
                api_url=service.url,
                reconnect_delay=0.05,
            ))

            received, errors = [], []
            done = asyncio.Event()

            def handler(message):
                received.append(message.id)
                if message.id == "m3":
                    done.set()

            client.on_message(handler)
            client.on_error(errors.append)

            await client.start()
            await asyncio.wait_for(done.wait(), timeout=5)
            await client.stop()

        assert received == ["m1", "m2", "m3"]
        assert len(errors) == 1
        assert isinstance(errors[0], NetworkError)
        assert len(service.stream_connections) == 2
        assert service.stream_connections[0]['Accept'] == "text/event-stream"
        assert service.stream_connections[1]['Last-Event-ID'] == "2"

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_server_retry_replaces_reconnect_delay(self):
        async with FakeOpenPond() as service:
            service.stream_script = [
                [b"retry: 20\n\n", sse_event(message_dict("m1", 100), "1")],
                [],
            ]
            # far longer than the test timeout unless the server's retry wins
            client = OpenPondClient(OpenPondConfig(
                api_url=service.url,
                reconnect_delay=60,
            ))

            await client.start()
            while len(service.stream_connections) < 2:
                await asyncio.sleep(0.01)

            assert client.engine.strategy.reconnect_delay == 0.02
            await client.stop()

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_owned_identity_filters_stream(self):
        identity = Identity.generate()
        async with FakeOpenPond() as service:
            service.stream_script = [[
                sse_event(message_dict("foreign", 100, to="someone-else")),
                sse_event(message_dict("mine", 200, to=identity.agent_id)),
            ]]
            client = OpenPondClient(OpenPondConfig(
                api_url=service.url,
                private_key=identity.private_key_hex,
            ))

            received = []
            done = asyncio.Event()

            def handler(message):
                received.append(message.id)
                done.set()

            client.on_message(handler)
            await client.start()
            await asyncio.wait_for(done.wait(), timeout=5)
            await client.stop()

        assert received == ["mine"]
        headers = service.stream_connections[0]
        assert headers['X-Agent-Id'] == identity.agent_id
        assert headers['X-Timestamp'].isdigit()

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_stop_releases_open_stream(self):
        async with FakeOpenPond() as service:
            service.stream_script = [[b": connected\n\n"]]
            client = OpenPondClient(OpenPondConfig(api_url=service.url))

            await client.start()
            while not service.stream_connections:
                await asyncio.sleep(0.01)

            await asyncio.wait_for(client.stop(), timeout=10)
            assert client.state is DeliveryState.IDLE
            assert not client.is_running

            # stopping again is harmless
            await client.stop()

    @pytest.mark.asyncio
    @pytest.mark.timeout(15)
    async def test_stream_rejection_is_reported(self):
        app = web.Application()
        attempts = []

        async def register(request):
            return web.json_response({})

        async def stream(request):
            attempts.append(request)
            return web.Response(text="unauthorized", status=401)

        app.router.add_post('/agents/register', register)
        app.router.add_get('/messages/stream', stream)

        async with TestServer(app) as server:
            client = OpenPondClient(OpenPondConfig(
                api_url=str(server.make_url('/')),
                reconnect_delay=0.01,
            ))
            errors = []
            client.on_error(errors.append)

            await client.start()
            while len(attempts) < 3:
                await asyncio.sleep(0.01)
            await client.stop()

        assert client.state is DeliveryState.IDLE
        assert len(errors) >= 2
        assert all(isinstance(e, ApiError) and e.status == 401 for e in errors)
