"""
HTTP front door for the SSE bridge.

Provides:
- GET /sse: opens an SSE stream backed by a new transport
- POST /messages?sessionId=<id>: forwards a JSON-RPC message to that transport
- GET /health: Health check endpoint
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from types import FrameType
from typing import TYPE_CHECKING, Any

import uvicorn
from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.responses import Response

from transport.registry import TransportRegistry
from transport.security import (
    LocalhostOnlyMiddleware,
    OriginValidationMiddleware,
    SecurityConfig,
    validate_api_key,
)
from transport.sse import SESSION_ID_PARAM, SSEServerTransport

if TYPE_CHECKING:
    from core.protocol_server import ProtocolServer
    from session.api_session import ApiSession
    from telemetry.recorder import Telemetry

logger = logging.getLogger(__name__)


class BridgeUvicornServer(uvicorn.Server):
    """uvicorn server that closes SSE transports as soon as a signal arrives.

    Open event streams would otherwise keep uvicorn waiting for connections
    to finish before lifespan shutdown runs.
    """

    def __init__(self, config: uvicorn.Config, on_shutdown: Callable[[], Awaitable[Any]]) -> None:
        super().__init__(config)
        self._on_shutdown = on_shutdown
        self._loop: asyncio.AbstractEventLoop | None = None
        self._shutdown_requested = False
        self._shutdown_task: asyncio.Task[Any] | None = None

    async def serve(self, sockets: Any = None) -> None:
        self._loop = asyncio.get_running_loop()
        await super().serve(sockets=sockets)
        if self._shutdown_task is not None:
            await self._shutdown_task

    def handle_exit(self, sig: int, frame: FrameType | None) -> None:
        if not self._shutdown_requested and self._loop is not None:
            self._shutdown_requested = True
            logger.info(f"Received {signal.Signals(sig).name}")
            self._loop.call_soon_threadsafe(self._start_shutdown, self._loop)
        super().handle_exit(sig, frame)

    def _start_shutdown(self, loop: asyncio.AbstractEventLoop) -> None:
        self._shutdown_task = loop.create_task(self._on_shutdown())


class SSEBridgeServer:
    """HTTP server that relays POSTed MCP messages to per-connection SSE transports."""

    STREAM_PATH = "/sse"
    MESSAGES_PATH = "/messages"

    def __init__(
        self,
        protocol_server: ProtocolServer,
        host: str = "127.0.0.1",
        port: int = 6005,
        registry: TransportRegistry | None = None,
        security_config: SecurityConfig | None = None,
        session: ApiSession | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.protocol_server = protocol_server
        self.host = host
        self.port = port
        self.registry = registry if registry is not None else TransportRegistry()
        self.security_config = security_config or SecurityConfig()
        self.session = session
        self.telemetry = telemetry
        self._shutdown_complete = False
        self._shutdown_lock = asyncio.Lock()

    @asynccontextmanager
    async def lifespan(self, app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager."""
        logger.info(f"Simple SSE Server (protocol version 2024-11-05) listening on {self.host}:{self.port}")
        yield
        await self.shutdown()

    async def shutdown(self) -> None:
        """Close every transport and the collaborators; never raises."""
        async with self._shutdown_lock:
            if self._shutdown_complete:
                return
            await self._close_everything()
            self._shutdown_complete = True

    async def _close_everything(self) -> None:
        logger.info("Shutting down server...")
        closed = await self.registry.close_all()
        logger.info(f"Closed {closed} SSE transports")

        try:
            await self.protocol_server.close()
        except Exception:
            logger.exception("Error stopping protocol sessions")

        if self.telemetry is not None:
            try:
                await self.telemetry.close()
            except Exception:
                logger.exception("Error flushing telemetry")

        if self.session is not None:
            try:
                await self.session.close()
            except Exception:
                logger.exception("Error closing API session")

        logger.info("Server shutdown complete")

    def create_app(self) -> FastAPI:
        """Create the FastAPI application with the bridge endpoints."""
        from core import SERVER_VERSION

        app = FastAPI(
            title="MCP SSE Bridge",
            description="SSE transport for an MCP server",
            version=SERVER_VERSION,
            lifespan=self.lifespan,
        )
        app.state.registry = self.registry
        app.state.protocol_server = self.protocol_server

        if self.security_config.localhost_only:
            app.add_middleware(LocalhostOnlyMiddleware)

        app.add_middleware(
            OriginValidationMiddleware, allowed_origins=self.security_config.allowed_origins
        )

        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.security_config.allowed_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

        self._add_sse_endpoints(app)
        self._add_health_endpoint(app)

        return app

    def _add_sse_endpoints(self, app: FastAPI) -> None:
        """Add the stream-open and message-post endpoints."""

        @app.get(self.STREAM_PATH)
        async def open_stream(
            request: Request,
            x_api_key: str | None = Header(None, alias="X-API-Key"),
        ) -> Response:
            """Open an SSE stream and connect it to the protocol server."""
            logger.info(f"Received GET request to {self.STREAM_PATH} (establishing SSE stream)")
            validate_api_key(x_api_key, self.security_config)

            registry: TransportRegistry = request.app.state.registry
            protocol_server: ProtocolServer = request.app.state.protocol_server

            transport: SSEServerTransport | None = None
            registered = False
            try:
                transport = SSEServerTransport(self.MESSAGES_PATH)
                await registry.register(transport)
                registered = True
                await protocol_server.connect(transport)
            except Exception:
                logger.exception("Error establishing SSE stream")
                if transport is not None:
                    await transport.close()
                if registered:
                    await registry.remove(transport.session_id)
                return PlainTextResponse("Error establishing SSE stream", status_code=500)

            logger.info(f"Established SSE stream with session ID: {transport.session_id}")
            return StreamingResponse(
                transport.event_stream(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "Connection": "keep-alive",
                    "X-Accel-Buffering": "no",
                },
            )

        @app.post(self.MESSAGES_PATH)
        async def post_message(
            request: Request,
            x_api_key: str | None = Header(None, alias="X-API-Key"),
        ) -> Response:
            """Forward a JSON-RPC message to the transport named by sessionId."""
            logger.info(f"Received POST request to {self.MESSAGES_PATH}")
            validate_api_key(x_api_key, self.security_config)

            session_id = request.query_params.get(SESSION_ID_PARAM)
            if not session_id:
                logger.error("No session ID provided in request URL")
                return PlainTextResponse(f"Missing {SESSION_ID_PARAM} parameter", status_code=400)

            registry: TransportRegistry = request.app.state.registry
            transport = registry.lookup(session_id)
            if transport is None:
                logger.error(f"No active transport found for session ID: {session_id}")
                return PlainTextResponse("Session not found", status_code=404)

            try:
                return await transport.handle_post_message(request)
            except Exception:
                logger.exception(f"Error handling request for session {session_id}")
                return PlainTextResponse("Error handling request", status_code=500)

    def _add_health_endpoint(self, app: FastAPI) -> None:
        """Add health check endpoint."""

        @app.get("/health")
        async def health_check(request: Request) -> dict[str, Any]:
            registry: TransportRegistry = request.app.state.registry
            protocol_server: ProtocolServer = request.app.state.protocol_server
            return {
                "status": "healthy",
                "active_transports": len(registry),
                "active_sessions": protocol_server.active_session_count(),
                "telemetry": "enabled" if self.telemetry and self.telemetry.is_enabled else "disabled",
                "timestamp": datetime.now().isoformat(),
            }

    async def run(self) -> None:
        """Run the HTTP server until interrupted."""
        app = self.create_app()
        config = uvicorn.Config(app=app, host=self.host, port=self.port, log_level="info", access_log=True)
        server = BridgeUvicornServer(config, on_shutdown=self.shutdown)
        await server.serve()
