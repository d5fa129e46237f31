"""Request routing for the two MCP transports.

Streamable HTTP (``/mcp``) sessions are created on ``initialize``, looked up
by the ``Mcp-Session-Id`` header, ended by ``DELETE`` and reaped when idle.
Legacy HTTP+SSE (``/sse`` + ``/messages``) sessions live exactly as long as
their event stream.
"""

import logging
import re
from contextlib import asynccontextmanager
from typing import Callable
from uuid import uuid4

import anyio
from anyio.abc import TaskGroup
from mcp.server.sse import SseServerTransport
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from mcp.types import JSONRPCMessage, JSONRPCRequest
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Message, Receive, Scope, Send

from mem_mcp.sessions import Session, SessionReaper, SessionStore, TransportKind
from mem_mcp.tools import ToolRegistry, build_server

logger = logging.getLogger(__name__)

RegistryFactory = Callable[[], ToolRegistry]

# The id SseServerTransport puts in the data of its ``endpoint`` event
_ENDPOINT_SESSION_ID = re.compile(rb"[?&]session_id=([0-9a-f]{32})")


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def is_initialize_request(body: bytes) -> bool:
    try:
        message = JSONRPCMessage.model_validate_json(body)
    except ValidationError:
        return False
    return isinstance(message.root, JSONRPCRequest) and message.root.method == "initialize"


def _replay_body(body: bytes, receive: Receive) -> Receive:
    # The router reads the body to spot ``initialize``; the transport reads it again
    replayed = False

    async def replay() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


def _without_session_header(scope: Scope) -> Scope:
    header = MCP_SESSION_ID_HEADER.encode()
    return {**scope, "headers": [(k, v) for k, v in scope["headers"] if k.lower() != header]}


async def _run_server(session: Session, *, task_status=anyio.TASK_STATUS_IGNORED) -> None:
    server = session.server
    session.scope = anyio.CancelScope()
    with session.scope:
        async with session.transport.connect() as (read_stream, write_stream):
            task_status.started()
            try:
                await server.run(
                    read_stream,
                    write_stream,
                    server.create_initialization_options(),
                    stateless=False,
                )
            except Exception:
                logger.exception("Session %s crashed", session.session_id)


class StreamableHTTPEndpoint:
    """ASGI endpoint serving every method of the Streamable HTTP transport."""

    def __init__(
        self,
        store: SessionStore,
        registry_factory: RegistryFactory,
        json_response: bool = False,
        reaper_interval: float = 60.0,
    ):
        self._store = store
        self._registry_factory = registry_factory
        self._json_response = json_response
        self._reaper = SessionReaper(store, reaper_interval)
        self._task_group: TaskGroup | None = None

    async def reap(self) -> int:
        return await self._reaper.sweep()

    @asynccontextmanager
    async def run(self):
        """Own the task group that session servers and the reaper run in."""
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            tg.start_soon(self._reaper.run)
            try:
                yield
            finally:
                # Cancelling the group stops every session server with it
                for session in self._store.sessions():
                    self._store.remove(session.session_id)
                tg.cancel_scope.cancel()
                self._task_group = None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        method = request.method
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        logger.info("MCP %s request received", method)

        if method == "DELETE":
            await self.terminate(session_id)
            await Response(status_code=204)(scope, receive, send)
            return
        if method not in ("GET", "POST"):
            await error_response(405, "Method not allowed")(scope, receive, send)
            return

        if method == "POST":
            body = await request.body()
            receive = _replay_body(body, receive)
            if is_initialize_request(body):
                # initialize always starts a fresh session, whatever id the client still holds
                scope = _without_session_header(scope)
                session = await self.create_session()
                await self._dispatch(session, scope, receive, send)
                return

        if not session_id:
            response = error_response(400, "Missing Mcp-Session-Id header")
            await response(scope, receive, send)
            return

        session = self._store.touch(session_id)
        if session is None:
            logger.warning("No session found for: %s", session_id)
            await error_response(404, "Session not found")(scope, receive, send)
            return
        await self._dispatch(session, scope, receive, send)

    async def create_session(self) -> Session:
        if self._task_group is None:
            raise RuntimeError("StreamableHTTPEndpoint.run() has not been entered")

        session_id = uuid4().hex
        transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=self._json_response,
        )
        session = Session(
            session_id=session_id,
            kind=TransportKind.STREAMABLE_HTTP,
            transport=transport,
            server=build_server(self._registry_factory()),
        )
        await self._task_group.start(self._run_session, session)
        self._store.insert(session)
        logger.info("Created Streamable HTTP session: %s", session_id)
        return session

    async def terminate(self, session_id: str | None) -> bool:
        session = self._store.remove(session_id) if session_id else None
        if session is None:
            return False
        logger.info("Deleted Streamable HTTP session: %s", session_id)
        await session.close()
        return True

    async def _run_session(self, session: Session, *, task_status=anyio.TASK_STATUS_IGNORED):
        await _run_server(session, task_status=task_status)
        # A server that stops on its own must not leave a dead entry behind
        if self._store.get(session.session_id) is session:
            self._store.remove(session.session_id)

    async def _dispatch(self, session: Session, scope: Scope, receive: Receive, send: Send):
        response_started = False

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        session.active_requests += 1
        try:
            await session.transport.handle_request(scope, receive, tracking_send)
        except Exception:
            logger.exception("Error handling MCP request for session %s", session.session_id)
            if not response_started:
                await error_response(500, "Internal server error")(scope, receive, send)
        finally:
            session.active_requests -= 1
            # A long GET stream counts as activity until it ends
            self._store.touch(session.session_id)


class EventStreamEndpoint:
    """ASGI endpoints for legacy SSE: the event stream and its message handler.

    ``SseServerTransport`` mints the session id and announces it in the
    ``endpoint`` event. The id is recorded in the store as that event goes out,
    and the entry is dropped once the stream ends, so the store is what
    ``/messages`` consults before handing a POST to the transport.
    """

    def __init__(
        self,
        store: SessionStore,
        registry_factory: RegistryFactory,
        messages_path: str = "/messages/",
    ):
        self._store = store
        self._registry_factory = registry_factory
        self._sse = SseServerTransport(messages_path)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        server = build_server(self._registry_factory())
        cancel_scope = anyio.CancelScope()
        session: Session | None = None

        async def recording_send(message: Message) -> None:
            nonlocal session
            if session is None and message["type"] == "http.response.body":
                match = _ENDPOINT_SESSION_ID.search(message.get("body", b""))
                if match:
                    session = Session(
                        session_id=match.group(1).decode(),
                        kind=TransportKind.SSE,
                        transport=self._sse,
                        server=server,
                        scope=cancel_scope,
                    )
                    self._store.insert(session)
                    logger.info("Created SSE session: %s", session.session_id)
            await send(message)

        try:
            with cancel_scope:
                async with self._sse.connect_sse(scope, receive, recording_send) as streams:
                    await server.run(
                        streams[0], streams[1], server.create_initialization_options()
                    )
        finally:
            if session is not None:
                self._store.remove(session.session_id)
                logger.info("SSE session closed: %s", session.session_id)

    async def handle_post_message(self, scope: Scope, receive: Receive, send: Send) -> None:
        session_id = Request(scope).query_params.get("session_id")
        logger.info("SSE message received for session: %s", session_id)
        if not session_id:
            await error_response(400, "Missing session_id parameter")(scope, receive, send)
            return
        if session_id not in self._store:
            logger.warning("No SSE transport found for session: %s", session_id)
            await error_response(404, "Session not found")(scope, receive, send)
            return
        await self._sse.handle_post_message(scope, receive, send)
