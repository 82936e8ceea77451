"""
MCP protocol server.

Wraps the MCP SDK's low-level Server and runs one protocol session per
connected transport. Tools are kept in a small registry (name -> description,
JSON schema, implementation) and every tool call is recorded in telemetry.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from mcp import types
from mcp.server.lowlevel import Server

from models.bridge_models import (
    ConnectionEvent,
    TelemetryCategory,
    TelemetryEvent,
    TelemetryResult,
)

if TYPE_CHECKING:
    from core.config import BridgeConfig
    from session.api_session import ApiSession
    from telemetry.recorder import Telemetry
    from transport.sse import SSEServerTransport

logger = logging.getLogger(__name__)

ToolImplementation = Callable[..., Awaitable[Any] | Any]


class ProtocolServer:
    """Runs MCP sessions over SSE transports."""

    def __init__(
        self,
        session: ApiSession,
        telemetry: Telemetry,
        config: BridgeConfig,
        name: str | None = None,
        version: str | None = None,
    ) -> None:
        from core import SERVER_NAME, SERVER_VERSION

        self.session = session
        self.telemetry = telemetry
        self.config = config
        self.mcp_server: Server[Any, Any] = Server(name or SERVER_NAME, version=version or SERVER_VERSION)
        self.tool_registry: dict[str, dict[str, Any]] = {}
        self._connections: dict[str, asyncio.Task[None]] = {}
        self._transports: dict[str, SSEServerTransport] = {}

        self._register_handlers()
        self._register_builtin_tools()

    def register_tool(
        self,
        name: str,
        description: str,
        schema: dict[str, Any],
        implementation: ToolImplementation,
    ) -> None:
        if name in self.tool_registry:
            raise ValueError(f"Tool already registered: {name}")
        self.tool_registry[name] = {
            "description": description,
            "schema": schema,
            "implementation": implementation,
        }

    def active_session_count(self) -> int:
        return len(self._connections)

    async def connect(self, transport: SSEServerTransport) -> None:
        """Start an MCP session over the transport.

        Returns once the session task is scheduled; the session runs until
        the transport closes.
        """
        session_id = transport.session_id
        if session_id in self._connections:
            raise RuntimeError(f"Transport for session {session_id} is already connected")
        if transport.is_closed:
            raise RuntimeError(f"Transport for session {session_id} is closed")

        self._transports[session_id] = transport
        self._connections[session_id] = asyncio.create_task(
            self._serve(transport), name=f"mcp-session-{session_id}"
        )

    async def close(self) -> None:
        """Cancel every running protocol session."""
        tasks = list(self._connections.values())
        transports = list(self._transports.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # Tasks cancelled before their first step never reach their cleanup
        for transport in transports:
            await transport.close()
        self._connections.clear()
        self._transports.clear()

    async def _serve(self, transport: SSEServerTransport) -> None:
        session_id = transport.session_id
        started = time.monotonic()
        await self._record_connection(ConnectionEvent.CONNECT, session_id)
        try:
            await self.mcp_server.run(
                transport.read_stream,
                transport.write_stream,
                self.mcp_server.create_initialization_options(),
            )
        except Exception:
            logger.exception(f"MCP session failed for session {session_id}")
        finally:
            self._connections.pop(session_id, None)
            self._transports.pop(session_id, None)
            await transport.close()
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.info(f"MCP session ended for session {session_id} after {duration_ms}ms")
            await self._record_connection(ConnectionEvent.DISCONNECT, session_id, duration_ms)

    async def _record_connection(
        self, command: ConnectionEvent, session_id: str, duration_ms: int = 0
    ) -> None:
        await self.telemetry.emit_events([
            TelemetryEvent(
                category=TelemetryCategory.CONNECTION,
                command=command.value,
                session_id=session_id,
                duration_ms=duration_ms,
            )
        ])

    def _register_handlers(self) -> None:
        """Wire the tool registry into the MCP server."""

        @self.mcp_server.list_tools()
        async def list_tools() -> list[types.Tool]:
            return [
                types.Tool(name=name, description=info["description"], inputSchema=info["schema"])
                for name, info in self.tool_registry.items()
            ]

        @self.mcp_server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.TextContent]:
            return await self.call_tool(name, arguments or {})

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> list[types.TextContent]:
        """Run a registered tool and record the call."""
        if name not in self.tool_registry:
            raise ValueError(f"Unknown tool: {name}")

        implementation = self.tool_registry[name]["implementation"]
        started = time.monotonic()
        result = TelemetryResult.SUCCESS
        try:
            output = implementation(**arguments)
            if inspect.isawaitable(output):
                output = await output
        except Exception:
            result = TelemetryResult.FAILURE
            logger.exception(f"Error executing tool {name}")
            raise
        finally:
            await self.telemetry.emit_events([
                TelemetryEvent(
                    category=TelemetryCategory.TOOL,
                    command=name,
                    result=result,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            ])

        text = output if isinstance(output, str) else json.dumps(output, default=str)
        return [types.TextContent(type="text", text=text)]

    def _register_builtin_tools(self) -> None:
        self.register_tool(
            "api-status",
            "Report the configured API endpoint and whether credentials are available",
            {"type": "object", "properties": {}},
            self._api_status,
        )
        self.register_tool(
            "api-authenticate",
            "Obtain an API access token with the configured client credentials",
            {"type": "object", "properties": {}},
            self._api_authenticate,
        )

    def _api_status(self) -> dict[str, Any]:
        return {
            "api_base_url": self.session.api_base_url,
            "credentials_configured": self.session.has_credentials,
            "authenticated": self.session.has_token,
            "connection_string_configured": bool(self.config.connection_string),
            "active_sessions": self.active_session_count(),
        }

    async def _api_authenticate(self) -> dict[str, Any]:
        token = await self.session.get_access_token()
        return {
            "authenticated": True,
            "token_type": token.token_type,
            "expires_at": token.expires_at.isoformat(),
        }
