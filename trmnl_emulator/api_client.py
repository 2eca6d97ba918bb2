"""Async HTTP client for the TRMNL content service.

This module talks to the display-content service on behalf of the emulated
device: registration, polling for the next screen, fetching the image and
forwarding device logs. Every transport or parse failure is converted into a
typed ``ClientError`` so the device engine can decide between retrying and
halting.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Optional, TypeVar, Union
from urllib.parse import urljoin

import httpx
from pydantic import BaseModel, ValidationError

from .config import DeviceConfig
from .exceptions import (
    ConfigurationError,
    MalformedResponseError,
    ServerError,
    UnauthorizedError,
    UnreachableError,
)
from .models import (
    DeviceIdentity,
    DisplayResponse,
    LogEntry,
    PollResult,
    PollStatus,
    RawImagePayload,
    Registration,
    SetupResponse,
)

logger = logging.getLogger(__name__)

DISPLAY_PATH = "/api/display"
SETUP_PATH = "/api/setup"
LOG_PATH = "/api/log"

# Values a healthy device on mains power would report
EMULATED_BATTERY_VOLTAGE = "4.20"
EMULATED_RSSI = "-50"

_SUCCESS_STATUSES = (0, 200, "ok", "success")
_NO_UPDATE_STATUSES = (202, 204, 304, "noupdate", "notmodified")
_UNAUTHORIZED_STATUSES = (401, 403, "unauthorized", "forbidden")
_UNREGISTERED_STATUSES = (404, "notfound")

ModelT = TypeVar("ModelT", bound=BaseModel)


def _normalize_status(status: Union[int, str]) -> Union[int, str]:
    """Map "0", "OK", "No Update" and friends onto comparable values."""
    if isinstance(status, str):
        stripped = status.strip()
        if stripped.lstrip("-").isdigit():
            return int(stripped)
        return stripped.lower().replace("_", "").replace("-", "").replace(" ", "")
    return status


def _is_server_failure(status: Union[int, str]) -> bool:
    return (isinstance(status, int) and status >= 500) or status in ("error", "servererror")


class ContentClient:
    """Client for the content service endpoints.

    Handles:
    - Registration of a device that has no ID yet
    - Polling the display endpoint
    - Fetching image payloads with a size limit
    - Forwarding log entries

    The client never mutates the identity it is given and always passes a
    bounded timeout, so a hung server surfaces as ``UnreachableError``.
    """

    def __init__(self, config: DeviceConfig, http_client: Optional[httpx.AsyncClient] = None):
        """Initialize content client.

        Args:
            config: Configuration instance
            http_client: Optional preconfigured client (tests inject a mock transport)
        """
        self.config = config
        self.timeout = httpx.Timeout(config.request_timeout)
        self._client = http_client

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the underlying httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
            logger.debug("Created HTTP client for %s", self.config.base_url)
        return self._client

    def _device_headers(
        self, identity: DeviceIdentity, refresh_rate: Optional[int] = None
    ) -> dict[str, str]:
        headers = {
            "ID": identity.mac_address,
            "FW-Version": identity.firmware_version,
            "Width": str(identity.display_width),
            "Height": str(identity.display_height),
            "Refresh-Rate": str(refresh_rate or self.config.default_refresh_interval),
            "Battery-Voltage": EMULATED_BATTERY_VOLTAGE,
            "RSSI": EMULATED_RSSI,
            "User-Agent": f"trmnl-emulator/{identity.firmware_version}",
            "Accept": "application/json",
            "Cache-Control": "no-cache",
        }
        if identity.api_key:
            headers["access-token"] = identity.api_key
        return headers

    @staticmethod
    def _require_credential(identity: DeviceIdentity) -> None:
        if not identity.has_credential:
            raise ConfigurationError("Device identity has neither an API key nor a device ID")

    @staticmethod
    def _check_status(response: httpx.Response) -> None:
        if response.status_code in (401, 403):
            raise UnauthorizedError(
                f"Content service rejected credential (HTTP {response.status_code})"
            )
        if not response.is_success:
            raise ServerError(
                f"Content service returned HTTP {response.status_code} for {response.url}",
                status_code=response.status_code,
            )

    async def _send(
        self, method: str, url: str, headers: dict[str, str], **kwargs: Any
    ) -> httpx.Response:
        """Send one request, translating transport failures."""
        client = self._get_client()
        try:
            response = await client.request(
                method,
                url,
                headers=headers,
                timeout=self.timeout,
                follow_redirects=True,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise UnreachableError(f"{method} {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise UnreachableError(f"{method} {url} failed: {e}") from e
        except httpx.TooManyRedirects as e:
            raise UnreachableError(f"{method} {url} redirected too many times") from e
        except httpx.DecodingError as e:
            raise MalformedResponseError(f"Could not decode response from {url}: {e}") from e
        except httpx.InvalidURL as e:
            raise MalformedResponseError(f"Invalid URL {url!r}: {e}") from e

        self._check_status(response)
        return response

    @staticmethod
    def _parse(response: httpx.Response, model: type[ModelT]) -> ModelT:
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Response from {response.url} is not JSON") from e

        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"Response from {response.url} is {type(data).__name__}, expected an object"
            )
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise MalformedResponseError(
                f"Response from {response.url} failed validation: {e.error_count()} error(s)"
            ) from e

    def _refresh_interval(self, refresh_rate: Optional[int]) -> int:
        if refresh_rate is None or refresh_rate <= 0:
            refresh_rate = self.config.default_refresh_interval
        upper = min(refresh_rate, self.config.max_refresh_interval)
        return max(self.config.min_refresh_interval, upper)

    def resolve_url(self, url: str) -> str:
        """Resolve a possibly relative URL against the service base URL."""
        return urljoin(self.config.base_url + "/", url)

    async def register(self, identity: DeviceIdentity) -> Registration:
        """Ask the setup endpoint to assign a device ID.

        Args:
            identity: Identity of the device (hardware ID and, if known, API key)

        Returns:
            Registration with the assigned device ID and API key

        Raises:
            UnauthorizedError: If the service does not know this device
            UnreachableError, MalformedResponseError, ServerError: Transient failures
        """
        url = self.config.get_api_endpoint(SETUP_PATH)
        logger.debug("Registering device %s at %s", identity.mac_address, url)

        response = await self._send("GET", url, self._device_headers(identity))
        body = self._parse(response, SetupResponse)
        status = _normalize_status(body.status)

        if status in _UNAUTHORIZED_STATUSES or status in _UNREGISTERED_STATUSES:
            raise UnauthorizedError(
                body.message or f"Device {identity.mac_address} is not registered with the service"
            )
        if _is_server_failure(status):
            raise ServerError(
                body.message or "Setup failed on the server",
                status_code=status if isinstance(status, int) else None,
            )
        if status not in _SUCCESS_STATUSES:
            raise MalformedResponseError(f"Unexpected setup status {body.status!r}")
        if not body.friendly_id:
            raise MalformedResponseError("Setup response did not include a device ID")

        registration = Registration(
            device_id=body.friendly_id,
            api_key=body.api_key or identity.api_key,
            image_url=body.image_url,
            message=body.message,
        )
        logger.info("Device registered as %s", registration.device_id)
        return registration

    async def poll(
        self, identity: DeviceIdentity, refresh_rate: Optional[int] = None
    ) -> PollResult:
        """Poll the display endpoint for the next screen.

        Args:
            identity: Identity of the device
            refresh_rate: Interval the device is currently using, reported to the service

        Returns:
            PollResult with status OK (new content URL) or NO_UPDATE

        Raises:
            ConfigurationError: If the identity has no credential
            UnauthorizedError: If the credential is rejected
            UnreachableError, MalformedResponseError, ServerError: Transient failures
        """
        self._require_credential(identity)
        url = self.config.get_api_endpoint(DISPLAY_PATH)

        response = await self._send("GET", url, self._device_headers(identity, refresh_rate))
        body = self._parse(response, DisplayResponse)
        status = _normalize_status(body.status)

        if status in _SUCCESS_STATUSES:
            poll_status = PollStatus.OK if body.image_url else PollStatus.NO_UPDATE
        elif status in _NO_UPDATE_STATUSES:
            poll_status = PollStatus.NO_UPDATE
        elif status in _UNAUTHORIZED_STATUSES:
            raise UnauthorizedError(body.error or "Content service rejected credential")
        elif _is_server_failure(status):
            raise ServerError(
                body.error or "Content service reported an error",
                status_code=status if isinstance(status, int) else None,
            )
        else:
            raise MalformedResponseError(f"Unexpected display status {body.status!r}")

        result = PollResult(
            status=poll_status,
            refresh_interval_seconds=self._refresh_interval(body.refresh_rate),
            image_url=self.resolve_url(body.image_url) if body.image_url else None,
            filename=body.filename,
            checksum=body.checksum,
            reset_firmware=body.reset_firmware,
            update_firmware=bool(body.update_firmware),
            firmware_url=body.firmware_url,
            special_function=body.special_function,
        )
        logger.debug(
            "Poll result: status=%s filename=%s refresh=%ds",
            result.status.value,
            result.filename,
            result.refresh_interval_seconds,
        )
        return result

    async def fetch_image(self, identity: DeviceIdentity, image_url: str) -> RawImagePayload:
        """Download the raw image payload for a poll result.

        Raises:
            UnauthorizedError: If the image host rejects the credential
            UnreachableError, MalformedResponseError, ServerError: Transient failures
        """
        url = self.resolve_url(image_url)
        headers = {"User-Agent": f"trmnl-emulator/{identity.firmware_version}", "Accept": "image/*"}

        client = self._get_client()
        limit = self.config.max_image_bytes
        try:
            # Only send the access token back to the content service itself
            if identity.api_key and httpx.URL(url).host == httpx.URL(self.config.base_url).host:
                headers["access-token"] = identity.api_key

            async with client.stream(
                "GET", url, headers=headers, timeout=self.timeout, follow_redirects=True
            ) as response:
                self._check_status(response)
                chunks = []
                total = 0
                async for chunk in response.aiter_bytes():
                    total += len(chunk)
                    if total > limit:
                        raise MalformedResponseError(
                            f"Image at {url} exceeds {limit} bytes"
                        )
                    chunks.append(chunk)
                content_type = response.headers.get("content-type", "application/octet-stream")
        except httpx.TimeoutException as e:
            raise UnreachableError(f"GET {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise UnreachableError(f"GET {url} failed: {e}") from e
        except httpx.TooManyRedirects as e:
            raise UnreachableError(f"GET {url} redirected too many times") from e
        except httpx.DecodingError as e:
            raise MalformedResponseError(f"Could not decode image from {url}: {e}") from e
        except httpx.InvalidURL as e:
            raise MalformedResponseError(f"Invalid image URL {url!r}: {e}") from e

        payload = RawImagePayload(data=b"".join(chunks), content_type=content_type, source_url=url)
        logger.debug("Fetched %s", payload)
        return payload

    async def report_log(self, identity: DeviceIdentity, entry: LogEntry) -> None:
        """Send a log entry to the service log endpoint.

        Raises:
            ClientError: If the entry could not be delivered
        """
        self._require_credential(identity)
        if entry.device_id is None:
            entry = replace(entry, device_id=identity.device_id)

        url = self.config.get_api_endpoint(LOG_PATH)
        await self._send("POST", url, self._device_headers(identity), json=entry.to_payload())
        logger.debug("Reported %s log entry to %s", entry.level, url)

    async def close(self) -> None:
        """Close the HTTP client.

        Should be called during shutdown to cleanly close connections.
        """
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            logger.debug("Content client closed")
        self._client = None
