import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from mem_mcp.mem_client import MemAPI
from mem_mcp.sessions import Clock, SessionStore, TransportKind
from mem_mcp.settings import Settings, settings
from mem_mcp.tools import SERVER_NAME, SERVER_VERSION, TOOL_DEFINITIONS, ToolRegistry
from mem_mcp.transports import EventStreamEndpoint, StreamableHTTPEndpoint

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(levelname)s:%(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    config: Settings = settings,
    api: MemAPI | None = None,
    clock: Clock = time.monotonic,
) -> FastAPI:
    api = api or MemAPI.from_settings(config)

    def registry_factory() -> ToolRegistry:
        return ToolRegistry(api)

    http_sessions = SessionStore(
        TransportKind.STREAMABLE_HTTP,
        idle_timeout=config.mcp_session_idle_timeout,
        clock=clock,
    )
    sse_sessions = SessionStore(TransportKind.SSE, clock=clock)
    streamable_http = StreamableHTTPEndpoint(
        http_sessions,
        registry_factory,
        json_response=config.mcp_json_response,
        reaper_interval=config.mcp_reaper_interval,
    )
    event_stream = EventStreamEndpoint(sse_sessions, registry_factory, "/messages/")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not api.configured:
            logger.warning("MEM_API_KEY is not set; tool calls will fail until it is configured")
        async with streamable_http.run():
            logger.info("MCP Mem server ready (Streamable HTTP: /mcp, legacy SSE: /sse)")
            yield
        await api.close()

    app = FastAPI(lifespan=lifespan)
    app.state.http_sessions = http_sessions
    app.state.sse_sessions = sse_sessions
    app.state.streamable_http = streamable_http

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.mcp_cors_origins,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "Mcp-Session-Id",
            "Mcp-Protocol-Version",
            "Accept",
            "Cache-Control",
            "Last-Event-ID",
        ],
        expose_headers=["Mcp-Session-Id"],
        max_age=86400,
    )

    app.add_route("/mcp", streamable_http, include_in_schema=False)
    app.add_route("/sse", event_stream, methods=["GET"], include_in_schema=False)

    app.mount("/messages", event_stream.handle_post_message)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": SERVER_VERSION,
            "sessions": {
                "streamable_http": len(http_sessions),
                "sse": len(sse_sessions),
            },
            "mem_api_configured": api.configured,
            "transports": [kind.value for kind in TransportKind],
        }

    @app.get("/")
    async def info():
        return {
            "name": SERVER_NAME,
            "version": SERVER_VERSION,
            "description": "MCP server for Mem",
            "endpoints": {
                "mcp": "/mcp (Streamable HTTP - recommended)",
                "sse": "/sse (legacy SSE)",
                "messages": "/messages/ (legacy SSE messages)",
                "health": "/health",
            },
            "tools": {name: d.description for name, d in TOOL_DEFINITIONS.items()},
        }

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            logger.info("404 for: %s %s", request.method, request.url.path)
            return JSONResponse(
                {"error": "Not found", "path": request.url.path}, status_code=404
            )
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def internal_error(request: Request, exc: Exception):
        logger.exception("Unhandled error for %s %s", request.method, request.url.path)
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    return app


app = create_app()


def main() -> None:
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
