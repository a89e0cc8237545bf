"""
MVR Command Gateway Client

Sends typed commands to dashcam units through the MVR gateway:
- Live stream start / status / stop
- Ring buffer summary (which footage the device still holds)
- Clip extraction requests
- Generic unit commands and a health probe

Gateway API Information:
- Authentication: Bearer token (CWE_MVR_API_KEY)
- JSON request and response bodies
- Every unit is addressed by its serial: /api/units/{serial}/...

The client owns no session state; callers decide what a failure means.
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote, urljoin

import httpx

from config import get_settings
from errors import (
    CommandRejectedError,
    GatewayAuthError,
    GatewayConnectionError,
    MissingGatewayConfigError,
)
from models.device import FeedStatus, StartStreamResult
from services.session_logger import timed_command

logger = logging.getLogger(__name__)


class CommandGatewayClient:
    """
    Client for the MVR device gateway.

    Usage:
        client = CommandGatewayClient.from_settings()
        result = await client.start_stream("SN123", camera=1, profile=1)
        status = await client.stream_status("SN123", 1, 1)
        await client.aclose()
    """

    RING_SUMMARY_COMMAND = "request_ring_summary"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 15.0,
        hls_path_template: str = "/hls/{serial}/{camera}/{profile}/stream.m3u8",
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize gateway client

        Args:
            base_url: Gateway base URL (e.g., http://gateway:9000)
            api_key: Bearer token for the gateway
            timeout: Request timeout in seconds
            hls_path_template: Fallback HLS path when start_stream omits stream_url
            http_client: Pre-built AsyncClient (tests inject a MockTransport here)
        """
        if not base_url or not api_key:
            raise MissingGatewayConfigError(has_url=bool(base_url), has_api_key=bool(api_key))

        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.hls_path_template = hls_path_template

        self._http_client = http_client
        self._owns_client = http_client is None

        logger.info(f"Initialized gateway client for {self.base_url}")

    @classmethod
    def from_settings(cls, http_client: Optional[httpx.AsyncClient] = None) -> "CommandGatewayClient":
        """Build a client from CWE_MVR_* settings"""
        settings = get_settings()
        return cls(
            base_url=settings.cwe_mvr_api_url,
            api_key=settings.cwe_mvr_api_key,
            timeout=settings.gateway_timeout_seconds,
            hls_path_template=settings.hls_path_template,
            http_client=http_client,
        )

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-initialized HTTP client"""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._http_client

    def _unit_url(self, serial: str, path: str) -> str:
        return f"{self.base_url}/api/units/{quote(serial, safe='')}/{path}"

    async def _request(
        self,
        command: str,
        serial: Optional[str],
        method: str,
        url: str,
        json_data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        """
        Make an authenticated request and return the JSON body.

        Raises:
            GatewayConnectionError: transport failure or timeout
            GatewayAuthError: 401/403
            CommandRejectedError: any other HTTP error, or a non-JSON body
        """
        logger.debug(f"Gateway {method} {url} json={json_data} params={params}")

        try:
            response = await self.http_client.request(
                method,
                url,
                json=json_data,
                params=params,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.TimeoutException:
            raise GatewayConnectionError(command, serial, reason="request timed out")
        except httpx.HTTPError as e:
            raise GatewayConnectionError(command, serial, reason=str(e) or type(e).__name__)

        if response.status_code in (401, 403):
            raise GatewayAuthError(command, serial, status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code >= 400:
            reason = data.get("error") if isinstance(data, dict) else None
            raise CommandRejectedError(
                command,
                serial,
                reason=reason or f"Gateway error: {response.status_code}",
                status_code=response.status_code,
            )

        if not isinstance(data, dict):
            raise CommandRejectedError(command, serial, reason="Gateway returned a non-JSON response")

        return data

    def _require_ok(self, command: str, serial: str, data: Dict[str, Any], default: str) -> None:
        if not data.get("ok"):
            raise CommandRejectedError(command, serial, reason=data.get("error") or default)

    def resolve_stream_url(self, serial: str, camera: int, profile: int, stream_url: Optional[str]) -> str:
        """Absolute HLS URL for a (possibly relative) gateway stream_url"""
        if not isinstance(stream_url, str) or not stream_url:
            stream_url = self.hls_path_template.format(serial=serial, camera=camera, profile=profile)
        return urljoin(self.base_url + "/", stream_url)

    @timed_command("start_stream")
    async def start_stream(
        self,
        serial: str,
        camera: int,
        profile: int,
        period: int = 0,
    ) -> StartStreamResult:
        """
        Ask the unit to start an HLS feed

        Args:
            serial: Unit serial
            camera: Camera index (0 road, 1 cab)
            profile: Encoder profile (0 high, 1 low)
            period: Stream duration in seconds, 0 for until stopped

        Returns:
            StartStreamResult with an absolute stream URL
        """
        logger.info(f"Starting stream on {serial} camera={camera} profile={profile}")

        data = await self._request(
            "start_stream",
            serial,
            "POST",
            self._unit_url(serial, "stream/start"),
            json_data={"camera": camera, "profile": profile, "period": period},
        )
        self._require_ok("start_stream", serial, data, "Failed to start stream")

        return StartStreamResult(
            ok=True,
            stream_url=self.resolve_stream_url(serial, camera, profile, data.get("stream_url")),
            raw=data,
        )

    @timed_command("stream_status")
    async def stream_status(self, serial: str, camera: int, profile: int) -> FeedStatus:
        """Current feed status; anything but active/stopped maps to PENDING"""
        data = await self._request(
            "stream_status",
            serial,
            "GET",
            self._unit_url(serial, "stream/status"),
            params={"camera": camera, "profile": profile},
        )

        status = data.get("status")
        if status == FeedStatus.ACTIVE.value:
            return FeedStatus.ACTIVE
        if status == FeedStatus.STOPPED.value:
            return FeedStatus.STOPPED
        return FeedStatus.PENDING

    @timed_command("stop_stream")
    async def stop_stream(self, serial: str, camera: int, profile: int) -> bool:
        """Ask the unit to stop its feed"""
        logger.info(f"Stopping stream on {serial} camera={camera} profile={profile}")

        data = await self._request(
            "stop_stream",
            serial,
            "POST",
            self._unit_url(serial, "stream/stop"),
            json_data={"camera": camera, "profile": profile},
        )
        self._require_ok("stop_stream", serial, data, "Failed to stop stream")
        return True

    @timed_command("send_command")
    async def send_command(self, serial: str, command_type: str, payload: Optional[Dict] = None) -> Dict[str, Any]:
        """Forward a generic unit command and return the raw response"""
        return await self._request(
            command_type,
            serial,
            "POST",
            self._unit_url(serial, "command"),
            json_data={"type": command_type, "payload": payload or {}},
        )

    async def ring_summary(self, serial: str, camera: int, profile: int) -> Dict[str, Any]:
        """
        Fetch the unit's ring buffer summary

        Returns:
            The `data` object: {"ring": {"profiles": [{"profile", "regions"}]}, ...}
        """
        logger.info(f"Requesting ring summary from {serial} camera={camera} profile={profile}")

        data = await self.send_command(
            serial,
            self.RING_SUMMARY_COMMAND,
            {"camera": camera, "profile": profile},
        )
        self._require_ok(self.RING_SUMMARY_COMMAND, serial, data, "Device returned an error")

        summary = data.get("data")
        return summary if isinstance(summary, dict) else {}

    @timed_command("request_clip")
    async def request_clip(
        self,
        serial: str,
        camera: int,
        profile: int,
        start_utc: int,
        end_utc: int,
    ) -> Dict[str, Any]:
        """Ask the unit to extract and upload a clip"""
        logger.info(f"Requesting clip from {serial} camera={camera} profile={profile} {start_utc}-{end_utc}")

        data = await self._request(
            "request_clip",
            serial,
            "POST",
            self._unit_url(serial, "clips/request"),
            json_data={
                "camera": camera,
                "profile": profile,
                "start_utc": start_utc,
                "end_utc": end_utc,
            },
        )
        self._require_ok("request_clip", serial, data, "Device returned an error")
        return data

    async def health(self) -> bool:
        """
        Probe the gateway health endpoint

        Returns:
            True if the gateway answered 2xx, False otherwise
        """
        try:
            response = await self.http_client.get(f"{self.base_url}/health")
            return response.is_success
        except httpx.HTTPError as e:
            logger.warning(f"Gateway health check failed: {e}")
            return False

    async def aclose(self) -> None:
        """Close the HTTP client if we created it"""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.info("Gateway client closed")
