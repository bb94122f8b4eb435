"""
Telemetry client for the Realtime Service.

Thin HTTP client for the upstream collector service that polls the streaming
platform. Chat analysis is computed by that service and treated here as an
opaque result.
"""

import httpx
from typing import Dict, Any, Optional

from shared.logging import get_logger
from shared.errors import ExternalServiceError


class TelemetryClient:
    """Client for communicating with the telemetry collector service."""

    def __init__(self, telemetry_service_url: str, timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.telemetry_service_url = telemetry_service_url.rstrip('/')
        self.logger = get_logger("realtime.telemetry.client")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.telemetry_service_url,
            timeout=self.timeout,
            transport=self._transport
        )

    async def _get(self, path: str) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.get(path)
                response.raise_for_status()
                return response.json()

        except httpx.TimeoutException:
            self.logger.error("Telemetry service timeout", path=path)
            raise ExternalServiceError("telemetry", "Telemetry service timeout")
        except httpx.HTTPStatusError as e:
            self.logger.warning(
                "Telemetry request failed",
                path=path,
                status_code=e.response.status_code
            )
            raise ExternalServiceError(
                "telemetry",
                "Telemetry request failed",
                {"status_code": e.response.status_code}
            )
        except httpx.RequestError as e:
            self.logger.error("Telemetry service request error", path=path, error=str(e))
            raise ExternalServiceError("telemetry", "Telemetry service unavailable")

    async def get_viewer_count(self, streamer_id: str) -> int:
        """Get the current viewer count for a streamer."""
        data = await self._get(f"/streamers/{streamer_id}/viewers")
        return int(data.get("count", 0))

    async def is_stream_live(self, streamer_id: str) -> Dict[str, Any]:
        """Get live status and, when live, the current stream record."""
        data = await self._get(f"/streamers/{streamer_id}/live")
        return {
            "isLive": bool(data.get("isLive", False)),
            "streamData": data.get("streamData")
        }

    async def analyze_chat(self, streamer_id: str) -> Optional[Dict[str, Any]]:
        """Get chat sentiment analysis for a streamer."""
        data = await self._get(f"/streamers/{streamer_id}/chat/analysis")
        return data.get("analysis")

    async def health_check(self) -> bool:
        """Check if telemetry service is healthy."""
        try:
            async with self._client() as client:
                response = await client.get("/health")
                return response.status_code == 200
        except httpx.HTTPError:
            return False
