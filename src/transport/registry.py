"""
Transport Registry - maps session identifiers to live SSE transports.

The registry:
1. Stores each transport under its session identifier when its stream opens
2. Watches the transport's close event and drops the entry when it fires
3. Answers lookups for POST /messages without ever creating entries
4. Closes every live transport on shutdown
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from transport.sse import SSEServerTransport

logger = logging.getLogger(__name__)


class DuplicateSessionError(ValueError):
    """Raised when registering a session identifier that is already live."""


class TransportRegistry:
    """Session identifier -> transport mapping, safe under concurrent handlers."""

    def __init__(self) -> None:
        self._transports: dict[str, SSEServerTransport] = {}
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._transports)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._transports

    def session_ids(self) -> list[str]:
        return list(self._transports)

    async def register(self, transport: SSEServerTransport) -> str:
        """Store a new transport and start watching for its close."""
        session_id = transport.session_id
        async with self._lock:
            if session_id in self._transports:
                raise DuplicateSessionError(f"Session {session_id} is already registered")
            self._transports[session_id] = transport
            self._watchers[session_id] = asyncio.create_task(
                self._watch(transport), name=f"transport-watch-{session_id}"
            )

        logger.info(f"Registered SSE transport for session {session_id}")
        return session_id

    def lookup(self, session_id: str) -> SSEServerTransport | None:
        """Return the live transport for a session, or None.

        Transports that are already closing are reported as missing.
        """
        transport = self._transports.get(session_id)
        if transport is None or transport.is_closed:
            return None
        return transport

    async def remove(self, session_id: str) -> None:
        """Remove a session; removing an unknown session is a no-op."""
        async with self._lock:
            transport = self._transports.pop(session_id, None)
            watcher = self._watchers.pop(session_id, None)

        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()
        if transport is not None:
            logger.debug(f"Removed SSE transport for session {session_id}")

    async def close_all(self) -> int:
        """Close every live transport, tolerating individual failures.

        Returns the number of transports a close was attempted on.
        """
        async with self._lock:
            transports = list(self._transports.items())

        for session_id, transport in transports:
            try:
                logger.info(f"Closing transport for session {session_id}")
                await transport.close()
            except Exception:
                logger.exception(f"Error closing transport for session {session_id}")
            finally:
                await self.remove(session_id)

        return len(transports)

    async def _watch(self, transport: SSEServerTransport) -> None:
        await transport.wait_closed()
        logger.info(f"SSE transport closed for session {transport.session_id}")
        await self.remove(transport.session_id)
