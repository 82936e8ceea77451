"""HTTP/SSE transport module for the MCP SSE bridge."""

from transport.http_server import BridgeUvicornServer, SSEBridgeServer
from transport.registry import DuplicateSessionError, TransportRegistry
from transport.security import (
    LocalhostOnlyMiddleware,
    OriginValidationMiddleware,
    SecurityConfig,
)
from transport.sse import SSEServerTransport, TransportClosedError

__all__ = [
    "BridgeUvicornServer",
    "SSEBridgeServer",
    "DuplicateSessionError",
    "TransportRegistry",
    "LocalhostOnlyMiddleware",
    "OriginValidationMiddleware",
    "SecurityConfig",
    "SSEServerTransport",
    "TransportClosedError",
]
