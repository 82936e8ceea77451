"""
Shared pytest fixtures for mcp-sse-bridge tests.

This module provides common fixtures used across all test categories:
- Unit tests (tests/)
- Integration tests (tests/integration/)
"""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import AsyncGenerator, Callable, Generator

import httpx
import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from core.config import BridgeConfig  # noqa: E402
from core.protocol_server import ProtocolServer  # noqa: E402
from session.api_session import ApiSession  # noqa: E402
from telemetry.recorder import Telemetry  # noqa: E402
from transport.http_server import SSEBridgeServer  # noqa: E402
from transport.registry import TransportRegistry  # noqa: E402
from transport.security import SecurityConfig  # noqa: E402


# ============================================================================
# Helpers
# ============================================================================

async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll the event loop until predicate() holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


class SSEConnection:
    """Drives a long-lived GET /sse request directly through the ASGI app.

    httpx's ASGI transport buffers whole responses, so streams are read
    message by message here and the client disconnect is simulated explicitly.
    """

    def __init__(self, app, path: str = "/sse", headers: dict[str, str] | None = None) -> None:
        self.app = app
        self.path = path
        self.headers = headers or {}
        self.status: int | None = None
        self.response_headers: dict[str, str] = {}
        self._messages: asyncio.Queue = asyncio.Queue()
        self._disconnect = asyncio.Event()
        self._request_sent = False
        self._buffer = ""
        self._task: asyncio.Task | None = None
        self.body_complete = False

    async def _receive(self) -> dict:
        if not self._request_sent:
            self._request_sent = True
            return {"type": "http.request", "body": b"", "more_body": False}
        await self._disconnect.wait()
        return {"type": "http.disconnect"}

    async def _send(self, message: dict) -> None:
        await self._messages.put(message)

    async def __aenter__(self) -> "SSEConnection":
        headers = [(b"host", b"testserver"), (b"accept", b"text/event-stream")]
        headers += [(k.lower().encode(), v.encode()) for k, v in self.headers.items()]
        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": self.path,
            "raw_path": self.path.encode(),
            "query_string": b"",
            "root_path": "",
            "headers": headers,
            "client": ("127.0.0.1", 50000),
            "server": ("testserver", 80),
        }
        self._task = asyncio.create_task(self.app(scope, self._receive, self._send))
        start = await asyncio.wait_for(self._messages.get(), timeout=5)
        assert start["type"] == "http.response.start"
        self.status = start["status"]
        self.response_headers = {k.decode(): v.decode() for k, v in start.get("headers", [])}
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.disconnect()

    async def read_body(self, timeout: float = 5) -> str:
        """Read the rest of a finished (non-streaming) response body."""
        chunks = []
        while not self.body_complete:
            message = await asyncio.wait_for(self._messages.get(), timeout=timeout)
            chunks.append(message.get("body", b"").decode())
            self.body_complete = not message.get("more_body", False)
        return "".join(chunks)

    async def next_event(self, timeout: float = 5) -> tuple[str, str]:
        """Return the next (event, data) frame from the stream."""
        while "\n\n" not in self._buffer:
            if self.body_complete:
                raise EOFError("SSE stream ended")
            message = await asyncio.wait_for(self._messages.get(), timeout=timeout)
            self._buffer += message.get("body", b"").decode()
            self.body_complete = not message.get("more_body", False)

        frame, self._buffer = self._buffer.split("\n\n", 1)
        event, data = "message", []
        for line in frame.splitlines():
            if line.startswith("event: "):
                event = line[len("event: "):]
            elif line.startswith("data: "):
                data.append(line[len("data: "):])
        return event, "\n".join(data)

    async def next_json(self, timeout: float = 5) -> dict:
        event, data = await self.next_event(timeout)
        assert event == "message"
        return json.loads(data)

    async def wait_closed(self, timeout: float = 5) -> None:
        """Wait for the server to end the response on its own."""
        assert self._task is not None
        await asyncio.wait_for(self._task, timeout=timeout)

    async def disconnect(self, timeout: float = 5) -> None:
        self._disconnect.set()
        if self._task is not None:
            await asyncio.wait_for(self._task, timeout=timeout)


# ============================================================================
# Environment Fixtures
# ============================================================================

@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Provide a clean environment without bridge-related env vars."""
    original_env = os.environ.copy()

    keys_to_remove = [k for k in os.environ if k.startswith("MCP_BRIDGE_") or k == "DO_NOT_TRACK"]
    for key in keys_to_remove:
        del os.environ[key]

    yield

    os.environ.clear()
    os.environ.update(original_env)


# ============================================================================
# Component Fixtures
# ============================================================================

@pytest.fixture
def config() -> BridgeConfig:
    return BridgeConfig(
        api_base_url="https://api.example.test/",
        api_client_id="client-id",
        api_client_secret="client-secret",
        telemetry="disabled",
    )


@pytest.fixture
def api_requests() -> list[httpx.Request]:
    """Requests seen by the mocked API."""
    return []


@pytest.fixture
def api_handler(api_requests: list[httpx.Request]) -> Callable[[httpx.Request], httpx.Response]:
    def handler(request: httpx.Request) -> httpx.Response:
        api_requests.append(request)
        if request.url.path == "/api/oauth/token":
            return httpx.Response(200, json={"access_token": "token-1", "token_type": "Bearer", "expires_in": 3600})
        return httpx.Response(200, json={})

    return handler


@pytest.fixture
async def api_session(config: BridgeConfig, api_handler) -> AsyncGenerator[ApiSession, None]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(api_handler))
    session = ApiSession(
        api_base_url=config.api_base_url,
        api_client_id=config.api_client_id,
        api_client_secret=config.api_client_secret,
        http_client=client,
    )
    yield session
    await client.aclose()


@pytest.fixture
def telemetry(api_session: ApiSession, config: BridgeConfig) -> Telemetry:
    return Telemetry.create(api_session, config)


@pytest.fixture
async def protocol_server(
    api_session: ApiSession, telemetry: Telemetry, config: BridgeConfig
) -> AsyncGenerator[ProtocolServer, None]:
    server = ProtocolServer(session=api_session, telemetry=telemetry, config=config)
    yield server
    await server.close()


@pytest.fixture
def registry() -> TransportRegistry:
    return TransportRegistry()


@pytest.fixture
def bridge_server(protocol_server: ProtocolServer, registry: TransportRegistry) -> SSEBridgeServer:
    return SSEBridgeServer(
        protocol_server,
        registry=registry,
        security_config=SecurityConfig(localhost_only=False),
    )


@pytest.fixture
def app(bridge_server: SSEBridgeServer):
    return bridge_server.create_app()


@pytest.fixture
async def http_client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
