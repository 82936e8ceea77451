#!/usr/bin/env python3
"""
SSE entry point for the MCP bridge.

Provides HTTP transport with:
- GET /sse to open an MCP event stream
- POST /messages?sessionId=<id> to send JSON-RPC messages on that stream
- GET /health for health checks

Usage:
    mcp-sse-bridge
    mcp-sse-bridge --port 6005 --api-key secret
    python src/sse_server.py --help
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add src to path for imports (must be before local imports)
src_path = Path(__file__).parent
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

# ruff: noqa: E402
from core import SERVER_NAME, SERVER_VERSION, BridgeConfig, ProtocolServer
from session import ApiSession
from telemetry import Telemetry
from transport.http_server import SSEBridgeServer
from transport.security import SecurityConfig


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the bridge."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="MCP SSE Bridge",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Start server with defaults (localhost:6005):
    mcp-sse-bridge

  Start with custom port:
    mcp-sse-bridge --port 5000

  Start with API key authentication:
    mcp-sse-bridge --api-key mysecretkey

Environment Variables:
  MCP_BRIDGE_API_BASE_URL: API base URL used by the session provider
  MCP_BRIDGE_API_CLIENT_ID: OAuth client id
  MCP_BRIDGE_API_CLIENT_SECRET: OAuth client secret
  MCP_BRIDGE_CONNECTION_STRING: Connection string made available to tools
  MCP_BRIDGE_TELEMETRY: enabled | disabled
  MCP_BRIDGE_API_KEY: API key for authentication
  DO_NOT_TRACK: Disable telemetry when set
        """,
    )

    parser.add_argument(
        "--host",
        default=None,
        help="Host to bind to (default: 127.0.0.1, localhost only for security)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to (default: 6005)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a JSON config file (default: ~/.config/mcp-sse-bridge/config.json)",
    )
    parser.add_argument(
        "--api-key",
        help="API key for authentication (optional)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--allow-network",
        action="store_true",
        help="Allow network connections (DANGEROUS - only use in trusted networks)",
    )
    parser.add_argument(
        "--disable-telemetry",
        action="store_true",
        help="Do not send usage telemetry",
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> BridgeConfig:
    """Load env/file configuration and apply command line overrides."""
    config = BridgeConfig.load(args.config)
    return config.with_overrides(
        host=args.host,
        port=args.port,
        api_key=args.api_key,
        log_level=args.log_level,
        allow_network=True if args.allow_network else None,
        telemetry="disabled" if args.disable_telemetry else None,
    )


def build_server(config: BridgeConfig) -> SSEBridgeServer:
    """Wire the session, telemetry, protocol server and HTTP front door."""
    session = ApiSession(
        api_base_url=config.api_base_url,
        api_client_id=config.api_client_id,
        api_client_secret=config.api_client_secret,
        user_agent=f"{SERVER_NAME}/{SERVER_VERSION}",
    )
    telemetry = Telemetry.create(session, config)
    protocol_server = ProtocolServer(session=session, telemetry=telemetry, config=config)

    security_config = SecurityConfig(
        localhost_only=not config.allow_network,
        require_api_key=bool(config.api_key),
        api_key=config.api_key,
    )

    return SSEBridgeServer(
        protocol_server,
        host=config.host if config.allow_network else "127.0.0.1",
        port=config.port,
        security_config=security_config,
        session=session,
        telemetry=telemetry,
    )


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the SSE bridge."""
    args = parse_args(argv)
    config = build_config(args)

    setup_logging(config.log_level)
    logger = logging.getLogger(__name__)

    # Security warning if network access enabled
    if config.allow_network:
        logger.warning(
            "Network access enabled! This exposes the server to all network interfaces. "
            "Only use this in trusted networks."
        )

    server = build_server(config)

    logger.info(f"Starting {SERVER_NAME} {SERVER_VERSION}")
    logger.info(f"  Host: {server.host}")
    logger.info(f"  Port: {server.port}")
    logger.info(f"  Config: {config.describe()}")
    logger.info(f"  API Key: {'enabled' if config.api_key else 'disabled'}")
    logger.info(f"  Network Access: {'enabled' if config.allow_network else 'localhost only'}")
    logger.info("")
    logger.info("Endpoints:")
    logger.info(f"  GET  http://{server.host}:{server.port}/sse - Open MCP event stream")
    logger.info(f"  POST http://{server.host}:{server.port}/messages?sessionId=<id> - Send MCP message")
    logger.info(f"  GET  http://{server.host}:{server.port}/health - Health check")
    logger.info("")

    try:
        asyncio.run(server.run())
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.exception(f"Server error: {e}")
        sys.exit(1)
    sys.exit(0)


if __name__ == "__main__":
    main()
