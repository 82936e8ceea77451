"""
Security utilities for the SSE bridge.

Features:
- Localhost-only connections
- Origin validation
- Optional API key authentication

The middlewares are plain ASGI callables so long-lived SSE responses pass
through unbuffered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from fastapi import HTTPException
from starlette.datastructures import Headers
from starlette.responses import PlainTextResponse
from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger(__name__)


@dataclass
class SecurityConfig:
    """Security configuration for the HTTP front door."""

    localhost_only: bool = True
    allowed_origins: list[str] = field(default_factory=list)
    require_api_key: bool = False
    api_key: str | None = None

    def __post_init__(self) -> None:
        if not self.allowed_origins:
            self.allowed_origins = [
                "http://localhost",
                "http://127.0.0.1",
                "https://localhost",
                "https://127.0.0.1",
                "null",  # For file:// origins
            ]
        if self.api_key and not self.require_api_key:
            self.require_api_key = True


class LocalhostOnlyMiddleware:
    """Reject connections that do not come from the local machine."""

    ALLOWED_HOSTS = {"127.0.0.1", "::1", "localhost"}

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        client = scope.get("client")
        client_host = client[0] if client else None
        if client_host not in self.ALLOWED_HOSTS:
            logger.warning(f"Rejected connection from non-localhost: {client_host}")
            response = PlainTextResponse("Only localhost connections are allowed", status_code=403)
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)


def validate_origin(origin: str | None, allowed_origins: list[str]) -> bool:
    """Validate an Origin header value against the allowed list."""
    if not origin:
        return True  # No origin header (same-origin or non-browser request)

    for allowed in allowed_origins:
        if origin == allowed or origin.startswith(allowed + ":") or origin.startswith(allowed + "/"):
            return True

    logger.warning(f"Rejected request from disallowed origin: {origin}")
    return False


class OriginValidationMiddleware:
    """Reject browser requests from origins outside the allow list."""

    def __init__(self, app: ASGIApp, allowed_origins: list[str]) -> None:
        self.app = app
        self.allowed_origins = allowed_origins

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            origin = Headers(scope=scope).get("origin")
            if not validate_origin(origin, self.allowed_origins):
                response = PlainTextResponse("Origin not allowed", status_code=403)
                await response(scope, receive, send)
                return

        await self.app(scope, receive, send)


def validate_api_key(provided_key: str | None, security_config: SecurityConfig) -> None:
    """Raise 401 unless the configured API key was provided."""
    if not security_config.require_api_key or not security_config.api_key:
        return
    if not provided_key or provided_key != security_config.api_key:
        logger.warning("Invalid or missing API key")
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
