"""Tests for the legacy SSE transport lifecycle, driven through raw ASGI calls."""

import json

import anyio
import pytest
import respx
from httpx import Response

from mem_mcp.sessions import SessionStore, TransportKind
from mem_mcp.tools import ToolRegistry
from mem_mcp.transports import EventStreamEndpoint

from conftest import BASE_URL


class SSEConnection:
    """Holds one open GET /sse request and records everything sent to it."""

    def __init__(self):
        self.disconnected = anyio.Event()
        self.sent: list[dict] = []
        self.scope = {
            "type": "http",
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": "/sse",
            "root_path": "",
            "query_string": b"",
            "headers": [(b"accept", b"text/event-stream")],
            "server": ("testserver", 80),
            "client": ("testclient", 50000),
        }

    async def receive(self):
        await self.disconnected.wait()
        return {"type": "http.disconnect"}

    async def send(self, message):
        self.sent.append(message)

    @property
    def body(self) -> str:
        return b"".join(m.get("body", b"") for m in self.sent).decode()


async def post_message(endpoint, session_id: str, payload: bytes) -> tuple[int, bytes]:
    """POST one message to /messages/ and return the status and body."""
    delivered = False
    sent = []

    async def receive():
        nonlocal delivered
        if not delivered:
            delivered = True
            return {"type": "http.request", "body": payload, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        sent.append(message)

    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": "/messages/",
        "root_path": "",
        "query_string": f"session_id={session_id}".encode(),
        "headers": [(b"content-type", b"application/json")],
        "server": ("testserver", 80),
        "client": ("testclient", 50000),
    }
    await endpoint.handle_post_message(scope, receive, send)
    status = next(m["status"] for m in sent if m["type"] == "http.response.start")
    body = b"".join(m.get("body", b"") for m in sent if m["type"] == "http.response.body")
    return status, body


def rpc(payload: dict) -> bytes:
    return json.dumps({"jsonrpc": "2.0", **payload}).encode()


async def wait_until(predicate, timeout: float = 5.0) -> None:
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.01)


@pytest.fixture
def store():
    return SessionStore(TransportKind.SSE)


@pytest.fixture
def endpoint(store, api):
    return EventStreamEndpoint(store, lambda: ToolRegistry(api))


class TestEventStreamLifecycle:
    @pytest.mark.asyncio
    async def test_connection_registers_and_disconnect_removes(self, store, endpoint):
        conn = SSEConnection()

        async with anyio.create_task_group() as tg:
            tg.start_soon(endpoint, conn.scope, conn.receive, conn.send)
            await wait_until(lambda: "event: endpoint" in conn.body)

            assert len(store) == 1
            session_id = store.sessions()[0].session_id
            assert f"/messages/?session_id={session_id}" in conn.body

            conn.disconnected.set()
            await wait_until(lambda: len(store) == 0)

        assert session_id not in store

    @pytest.mark.asyncio
    async def test_closing_session_ends_stream(self, store, endpoint):
        conn = SSEConnection()

        async with anyio.create_task_group() as tg:
            tg.start_soon(endpoint, conn.scope, conn.receive, conn.send)
            await wait_until(lambda: len(store) == 1)

            await store.sessions()[0].close()
            await wait_until(lambda: len(store) == 0)

            conn.disconnected.set()

    @pytest.mark.asyncio
    async def test_posted_message_is_answered_on_stream(self, store, endpoint):
        conn = SSEConnection()

        async with anyio.create_task_group() as tg:
            tg.start_soon(endpoint, conn.scope, conn.receive, conn.send)
            await wait_until(lambda: len(store) == 1)
            session_id = store.sessions()[0].session_id

            status, body = await post_message(
                endpoint, session_id, rpc({"id": 7, "method": "ping"})
            )
            assert status == 202
            assert body == b"Accepted"

            await wait_until(lambda: "event: message" in conn.body)
            assert '"id":7' in conn.body

            conn.disconnected.set()

    @pytest.mark.asyncio
    @respx.mock
    async def test_tool_call_round_trip(self, store, endpoint):
        respx.post(f"{BASE_URL}/v2/notes/search").mock(
            return_value=Response(200, json={"results": []})
        )
        conn = SSEConnection()

        async with anyio.create_task_group() as tg:
            tg.start_soon(endpoint, conn.scope, conn.receive, conn.send)
            await wait_until(lambda: len(store) == 1)
            session_id = store.sessions()[0].session_id

            initialize = rpc(
                {
                    "id": 1,
                    "method": "initialize",
                    "params": {
                        "protocolVersion": "2025-03-26",
                        "capabilities": {},
                        "clientInfo": {"name": "test-client", "version": "0.1.0"},
                    },
                }
            )
            assert (await post_message(endpoint, session_id, initialize))[0] == 202
            await wait_until(lambda: '"id":1' in conn.body)
            assert "mem-mcp-server" in conn.body

            initialized = rpc({"method": "notifications/initialized"})
            assert (await post_message(endpoint, session_id, initialized))[0] == 202

            call = rpc(
                {
                    "id": 2,
                    "method": "tools/call",
                    "params": {"name": "search_notes", "arguments": {"query": "budget"}},
                }
            )
            assert (await post_message(endpoint, session_id, call))[0] == 202

            await wait_until(lambda: '"id":2' in conn.body)
            assert 'No notes found matching \\"budget\\"' in conn.body
            assert respx.calls.call_count == 1

            conn.disconnected.set()

    @pytest.mark.asyncio
    async def test_unparseable_message(self, store, endpoint):
        conn = SSEConnection()

        async with anyio.create_task_group() as tg:
            tg.start_soon(endpoint, conn.scope, conn.receive, conn.send)
            await wait_until(lambda: len(store) == 1)
            session_id = store.sessions()[0].session_id

            status, body = await post_message(endpoint, session_id, b"not json")

            assert status == 400
            assert body == b"Could not parse message"
            conn.disconnected.set()

    @pytest.mark.asyncio
    async def test_message_for_closed_stream_is_not_found(self, store, endpoint):
        conn = SSEConnection()

        async with anyio.create_task_group() as tg:
            tg.start_soon(endpoint, conn.scope, conn.receive, conn.send)
            await wait_until(lambda: len(store) == 1)
            session_id = store.sessions()[0].session_id
            conn.disconnected.set()
            await wait_until(lambda: len(store) == 0)

        status, body = await post_message(endpoint, session_id, rpc({"id": 1, "method": "ping"}))

        assert status == 404
        assert json.loads(body) == {"error": "Session not found"}
