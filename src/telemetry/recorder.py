"""
Telemetry recorder.

Records usage events (protocol session lifecycle, tool calls) and ships them
to the API. Telemetry never influences control flow: send failures are logged
and the events are kept for the next attempt.
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
from collections import deque
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from models.bridge_models import TelemetryEvent
from session.api_session import ApiSessionError

if TYPE_CHECKING:
    from core.config import BridgeConfig
    from session.api_session import ApiSession

logger = logging.getLogger(__name__)

AUTH_EVENTS_PATH = "api/private/v1.0/telemetry/events"
UNAUTH_EVENTS_PATH = "api/private/unauth/telemetry/events"
MAX_BUFFERED_EVENTS = 1000


def telemetry_disabled_by_env() -> bool:
    """Honour the DO_NOT_TRACK convention."""
    value = os.environ.get("DO_NOT_TRACK", "").strip().lower()
    return value not in ("", "0", "false")


class Telemetry:
    """Buffers telemetry events and sends them through the API session."""

    def __init__(
        self,
        session: ApiSession,
        enabled: bool = True,
        common_properties: dict[str, Any] | None = None,
        max_buffered: int = MAX_BUFFERED_EVENTS,
    ) -> None:
        self.session = session
        self.enabled = enabled
        self.common_properties = common_properties or {}
        self._buffer: deque[TelemetryEvent] = deque(maxlen=max_buffered)
        self._send_lock = asyncio.Lock()
        self._flush_task: asyncio.Task[None] | None = None

    @classmethod
    def create(cls, session: ApiSession, config: BridgeConfig) -> Telemetry:
        from core import SERVER_NAME, SERVER_VERSION

        enabled = config.telemetry == "enabled" and not telemetry_disabled_by_env()
        if not enabled:
            logger.info("Telemetry disabled")
        return cls(
            session,
            enabled=enabled,
            common_properties={
                "mcp_server_name": SERVER_NAME,
                "mcp_server_version": SERVER_VERSION,
                "platform": platform.system().lower(),
                "python_version": platform.python_version(),
                "transport": "sse",
            },
        )

    @property
    def is_enabled(self) -> bool:
        return self.enabled

    @property
    def pending_count(self) -> int:
        return len(self._buffer)

    async def emit_events(self, events: Iterable[TelemetryEvent]) -> None:
        """Buffer events and schedule a background send.

        Returns without waiting on the network.
        """
        if not self.enabled:
            return
        self._buffer.extend(events)
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_in_background(), name="telemetry-flush")

    async def wait_idle(self) -> None:
        """Wait for the background send, if one is running."""
        if self._flush_task is not None:
            await self._flush_task

    async def flush(self) -> bool:
        """Send everything buffered. Returns False if the send failed."""
        if not self.enabled:
            return True

        async with self._send_lock:
            if not self._buffer:
                return True
            batch = list(self._buffer)
            self._buffer.clear()
            payload = [event.to_payload(self.common_properties) for event in batch]
            path = AUTH_EVENTS_PATH if self.session.has_credentials else UNAUTH_EVENTS_PATH

            try:
                await self.session.request("POST", path, json=payload)
                logger.debug(f"Sent {len(batch)} telemetry events")
                return True
            except ApiSessionError as e:
                logger.warning(f"Failed to send {len(batch)} telemetry events: {e}")
                # Requeue ahead of events emitted during the send
                self._buffer.extendleft(reversed(batch))
                return False

    async def _flush_in_background(self) -> None:
        # Events emitted during a send go out in the next batch; a failed send waits for the next emit
        try:
            while self._buffer:
                if not await self.flush():
                    break
        except Exception:
            logger.exception("Unexpected error sending telemetry")

    async def close(self) -> None:
        await self.wait_idle()
        await self.flush()
