"""
SSE Bridge Models - Data structures shared by the session, telemetry and protocol layers.
"""

from .bridge_models import (
    AccessToken,
    ConnectionEvent,
    TelemetryCategory,
    TelemetryEvent,
    TelemetryResult,
)

__all__ = [
    "AccessToken",
    "ConnectionEvent",
    "TelemetryCategory",
    "TelemetryEvent",
    "TelemetryResult",
]
