"""
Core of the SSE bridge: configuration and the MCP protocol server.
"""

SERVER_NAME = "mcp-sse-bridge"
SERVER_VERSION = "0.1.0"

from .config import BridgeConfig  # noqa: E402
from .protocol_server import ProtocolServer  # noqa: E402

__all__ = ["SERVER_NAME", "SERVER_VERSION", "BridgeConfig", "ProtocolServer"]
