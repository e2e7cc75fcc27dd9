"""
TRAPWATCH — Telemetry Collaborator Client

Async client for the remote telemetry service that owns the device registry,
device metadata and the latest sensor datapoints.

Wire contract (all GET, JSON, relative to TELEMETRY_BASE_URL):
  /devices                      → [{devID, devTypeID}, ...]
  /devices/{id}/metadata        → {devID, devName, devTypeID, devTypeName,
                                   sensors: [{sensorId, sensorName}], location, addedOn}
                                  404 when the device has no metadata
  /devices/{id}/datapoints      → [{time, sensor, value}, ...]
        ?n=1&cal=true&alias=true&endTime=<ISO-8601>&tz=<tz>[&sensors=a,b]

Responses may be wrapped in a {"data": ...} envelope.
The service is assumed to be pre-authenticated; the configured user id is
forwarded in the X-User-Id header.

Transport errors (connection refused, timeouts) are retried with exponential
backoff; HTTP error statuses are not.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence

import httpx
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from common.config import Settings, get_settings
from common.models import Device, DeviceMetadata, SensorReading

log = logging.getLogger(__name__)


class TelemetryError(Exception):
    """Base class for telemetry collaborator failures."""


class TelemetryUnavailable(TelemetryError):
    """The telemetry service could not be reached (after retries)."""


class TelemetryResponseError(TelemetryError):
    """The telemetry service answered with an error status or a malformed payload."""


class TelemetryClient(ABC):
    """Operations the engine consumes from the telemetry collaborator."""

    @abstractmethod
    async def list_devices(self) -> List[Device]:
        """Return every device visible to the configured user."""

    @abstractmethod
    async def get_metadata(self, device_id: str) -> Optional[DeviceMetadata]:
        """Return metadata for a device, or None when it has none."""

    @abstractmethod
    async def get_latest_readings(
        self,
        device_id: str,
        sensors: Optional[Sequence[str]] = None,
        count: int = 1,
        calibrated: bool = True,
        aliased: bool = True,
        as_of: Optional[datetime] = None,
    ) -> List[SensorReading]:
        """
        Return the most recent reading(s) of a device's sensors.

        Args:
            device_id:  Device to query.
            sensors:    Sensor ids to include; None means every sensor.
            count:      Readings per sensor (1 = latest only).
            calibrated: Apply the collaborator's calibration.
            aliased:    Label readings with human sensor names instead of ids.
            as_of:      Upper time bound. Defaults to now.
        """

    async def close(self) -> None:
        """Release network resources. No-op by default."""

    async def __aenter__(self) -> "TelemetryClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


def _unwrap(payload: Any) -> Any:
    if isinstance(payload, dict) and "data" in payload:
        return payload["data"]
    return payload


class HttpTelemetryClient(TelemetryClient):
    """
    httpx-based implementation of TelemetryClient.

    Args:
        settings:        Settings to read defaults from. Uses get_settings() if None.
        base_url:        Service root URL. Overrides TELEMETRY_BASE_URL.
        user_id:         Pre-authenticated user id forwarded to the service.
        timeout_seconds: Per-request timeout.
        max_attempts:    Attempts per request on transport errors.
        backoff_seconds: Base of the exponential retry wait.
        transport:       Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        base_url: Optional[str] = None,
        user_id: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = settings or get_settings()
        self._tz = settings.telemetry_timezone
        self._max_attempts = max_attempts or settings.telemetry_max_attempts
        self._backoff = backoff_seconds
        headers = {"Accept": "application/json"}
        uid = user_id if user_id is not None else settings.telemetry_user_id
        if uid:
            headers["X-User-Id"] = uid
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.telemetry_base_url,
            headers=headers,
            timeout=timeout_seconds or settings.telemetry_timeout_seconds,
            transport=transport,
        )
        log.info(
            "HttpTelemetryClient initialised — base_url: %s, max_attempts: %d",
            self._client.base_url,
            self._max_attempts,
        )

    async def _get_json(
        self,
        path: str,
        params: Optional[dict] = None,
        allow_missing: bool = False,
    ) -> Any:
        """
        GET a JSON document, retrying transport failures.

        Raises:
            TelemetryUnavailable:   Transport failure on every attempt.
            TelemetryResponseError: Error status or non-JSON body.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff, max=5),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._client.get(path, params=params)
        except httpx.TransportError as exc:
            raise TelemetryUnavailable(f"GET {path} failed: {exc!r}") from exc

        if allow_missing and response.status_code == 404:
            return None
        if response.is_error:
            raise TelemetryResponseError(
                f"GET {path} returned HTTP {response.status_code}: {response.text[:200]}"
            )
        try:
            return _unwrap(response.json())
        except ValueError as exc:
            raise TelemetryResponseError(f"GET {path} returned invalid JSON") from exc

    async def list_devices(self) -> List[Device]:
        payload = await self._get_json("/devices")
        if not isinstance(payload, list):
            raise TelemetryResponseError("device list payload is not a list")

        devices: List[Device] = []
        for item in payload:
            try:
                devices.append(Device.model_validate(item))
            except ValidationError as exc:
                log.warning("Skipping malformed device record %r: %s", item, exc.errors()[:1])
        log.debug("Telemetry service listed %d devices", len(devices))
        return devices

    async def get_metadata(self, device_id: str) -> Optional[DeviceMetadata]:
        payload = await self._get_json(f"/devices/{device_id}/metadata", allow_missing=True)
        if not payload:
            return None
        if isinstance(payload, dict) and "devID" not in payload and "device_id" not in payload:
            payload = {**payload, "devID": device_id}
        try:
            return DeviceMetadata.model_validate(payload)
        except ValidationError as exc:
            raise TelemetryResponseError(f"malformed metadata for {device_id}: {exc}") from exc

    async def get_latest_readings(
        self,
        device_id: str,
        sensors: Optional[Sequence[str]] = None,
        count: int = 1,
        calibrated: bool = True,
        aliased: bool = True,
        as_of: Optional[datetime] = None,
    ) -> List[SensorReading]:
        as_of = as_of or datetime.now(tz=timezone.utc)
        params = {
            "n": count,
            "cal": str(calibrated).lower(),
            "alias": str(aliased).lower(),
            "endTime": as_of.isoformat(),
            "tz": self._tz,
        }
        if sensors:
            params["sensors"] = ",".join(sensors)

        payload = await self._get_json(f"/devices/{device_id}/datapoints", params=params)
        if not payload:
            # The service answers with an empty object when a device has never reported.
            return []
        if not isinstance(payload, list):
            raise TelemetryResponseError(f"datapoints payload for {device_id} is not a list")
        try:
            return [SensorReading.model_validate(item) for item in payload]
        except ValidationError as exc:
            raise TelemetryResponseError(f"malformed datapoints for {device_id}: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()
