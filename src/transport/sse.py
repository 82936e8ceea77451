"""
SSE server transport.

One transport per GET /sse connection:
- outbound: protocol messages written by the MCP server are streamed to the
  client as `event: message` frames, preceded by a single `event: endpoint`
  frame telling the client where to POST
- inbound: POST /messages bodies are validated as JSON-RPC and delivered to
  the MCP server's read stream
- close: an asyncio.Event that the registry watches
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from urllib.parse import urlencode

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp.shared.message import SessionMessage
from mcp.types import JSONRPCMessage
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

logger = logging.getLogger(__name__)

SESSION_ID_PARAM = "sessionId"


class TransportClosedError(RuntimeError):
    """Raised when a message is sent to a transport that has been closed."""


def format_sse(event: str, data: str) -> str:
    """Encode one Server-Sent Events frame."""
    lines = "".join(f"data: {line}\n" for line in data.splitlines() or [""])
    return f"event: {event}\n{lines}\n"


class SSEServerTransport:
    """Bidirectional MCP transport over an SSE stream plus POSTed messages."""

    def __init__(self, endpoint: str, session_id: str | None = None) -> None:
        self.endpoint = endpoint
        self.session_id = session_id or str(uuid.uuid4())

        # Zero-capacity streams: a POST completes once the server has taken the message
        read_stream_writer, read_stream = anyio.create_memory_object_stream[SessionMessage | Exception](0)
        write_stream, write_stream_reader = anyio.create_memory_object_stream[SessionMessage](0)
        self._read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception] = read_stream_writer
        self.read_stream: MemoryObjectReceiveStream[SessionMessage | Exception] = read_stream
        self.write_stream: MemoryObjectSendStream[SessionMessage] = write_stream
        self._write_stream_reader: MemoryObjectReceiveStream[SessionMessage] = write_stream_reader

        self._started = False
        self._closed = asyncio.Event()

    @property
    def endpoint_url(self) -> str:
        return f"{self.endpoint}?{urlencode({SESSION_ID_PARAM: self.session_id})}"

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    async def event_stream(self) -> AsyncIterator[str]:
        """Body of the GET /sse streaming response."""
        if self._started:
            raise RuntimeError(f"SSE stream already started for session {self.session_id}")
        self._started = True

        try:
            yield format_sse("endpoint", self.endpoint_url)
            async for session_message in self._write_stream_reader:
                data = session_message.message.model_dump_json(by_alias=True, exclude_none=True)
                logger.debug(f"Sending SSE message for session {self.session_id}: {data}")
                yield format_sse("message", data)
        except anyio.ClosedResourceError:
            logger.debug(f"SSE stream for session {self.session_id} closed while sending")
        except Exception:
            # Headers and the endpoint frame are already out; nothing to send the client
            logger.exception(f"Error while streaming SSE events for session {self.session_id}")
        finally:
            self._write_stream_reader.close()
            self._mark_closed()

    async def handle_post_message(self, request: Request) -> Response:
        """Validate a POSTed JSON-RPC message and hand it to the server."""
        if not self._started:
            return PlainTextResponse("SSE connection not established", status_code=500)
        if self.is_closed:
            raise TransportClosedError(f"Transport for session {self.session_id} is closed")

        content_type = request.headers.get("content-type", "")
        if "application/json" not in content_type.lower():
            return PlainTextResponse(f"Unsupported content-type: {content_type}", status_code=400)

        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Unparsable message body for session {self.session_id}: {e}")
            return PlainTextResponse(f"Invalid JSON: {e}", status_code=400)

        try:
            message = JSONRPCMessage.model_validate(body)
        except ValidationError as e:
            logger.warning(f"Invalid JSON-RPC message for session {self.session_id}: {e}")
            await self._report_error(e)
            return PlainTextResponse(f"Invalid message: {e}", status_code=400)

        await self.send_inbound(SessionMessage(message))
        return PlainTextResponse("Accepted", status_code=202)

    async def send_inbound(self, message: SessionMessage) -> None:
        try:
            await self._read_stream_writer.send(message)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
            raise TransportClosedError(f"Transport for session {self.session_id} is closed") from e

    async def _report_error(self, error: Exception) -> None:
        # Let the server session see the bad message; ignore if nobody is listening
        try:
            with anyio.move_on_after(0.1):
                await self._read_stream_writer.send(error)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            pass

    async def close(self) -> None:
        if not self._started:
            self._write_stream_reader.close()
        self._mark_closed()

    def _mark_closed(self) -> None:
        if self._closed.is_set():
            return
        logger.debug(f"Closing SSE transport for session {self.session_id}")
        # Closing the writer ends the server's read loop; closing the server's
        # send side ends event_stream's iteration.
        self._read_stream_writer.close()
        self.write_stream.close()
        self._closed.set()
