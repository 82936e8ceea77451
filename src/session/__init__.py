"""API session and credential handling for the SSE bridge."""

from session.api_session import ApiSession, ApiSessionError

__all__ = ["ApiSession", "ApiSessionError"]
