"""
SSE Bridge Data Models.

Data models shared by the API session provider, telemetry recorder and
protocol server.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


# ===== ENUMS =====

class TelemetryCategory(str, Enum):
    """Telemetry event category enumeration."""
    CONNECTION = "connection"
    TOOL = "tool"


class TelemetryResult(str, Enum):
    """Outcome recorded for a telemetry event."""
    SUCCESS = "success"
    FAILURE = "failure"


class ConnectionEvent(str, Enum):
    """Protocol session lifecycle commands."""
    CONNECT = "connect"
    DISCONNECT = "disconnect"


# ===== AUTH MODELS =====

class AccessToken(BaseModel):
    """OAuth2 token returned by the client-credentials grant."""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int = 3600
    scope: Optional[str] = None
    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.expires_in)

    def is_expired(self, skew_seconds: int = 0, now: Optional[datetime] = None) -> bool:
        """True when the token expires within `skew_seconds`."""
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at - timedelta(seconds=skew_seconds)


# ===== TELEMETRY MODELS =====

class TelemetryEvent(BaseModel):
    """Single usage event recorded by the telemetry recorder."""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = "mcp-sse-bridge"
    category: TelemetryCategory
    command: str
    result: TelemetryResult = TelemetryResult.SUCCESS
    duration_ms: int = 0
    session_id: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)

    def to_payload(self, common_properties: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Wire form sent to the telemetry endpoint."""
        properties = dict(common_properties or {})
        properties.update(self.properties)
        properties.update({
            "category": self.category.value,
            "command": self.command,
            "result": self.result.value,
            "duration_ms": self.duration_ms,
        })
        if self.session_id:
            properties["session_id"] = self.session_id
        return {
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "properties": properties,
        }
