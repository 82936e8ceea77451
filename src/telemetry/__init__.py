"""Usage telemetry for the SSE bridge."""

from telemetry.recorder import Telemetry, telemetry_disabled_by_env

__all__ = ["Telemetry", "telemetry_disabled_by_env"]
