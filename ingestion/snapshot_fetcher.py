"""
TRAPWATCH — Device Snapshot Fetcher

Retrieves the latest reading of every sensor of one device and packages it as
an immutable DeviceSnapshot.

Failure is data, not an exception: any collaborator error becomes a snapshot
in the 'failed' state carrying the error detail, so one bad device can never
break a fleet refresh. The next refresh cycle retries it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from common.models import DeviceSnapshot, FetchState
from ingestion.telemetry_client import TelemetryClient

log = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


class SnapshotFetcher:
    """
    Fetches one device's latest readings from the telemetry collaborator.

    Args:
        client: Telemetry collaborator.
        clock:  Returns the current time; injectable for tests.
    """

    def __init__(self, client: TelemetryClient, clock: Clock = utc_now) -> None:
        self._client = client
        self._clock = clock

    async def fetch(
        self,
        device_id: str,
        previous: Optional[DeviceSnapshot] = None,
    ) -> DeviceSnapshot:
        """
        Fetch the latest snapshot for a device. Never raises (except on cancellation).

        Args:
            device_id: Device to fetch.
            previous:  The snapshot being replaced; its last_success_at is
                       carried over when this fetch fails.

        Returns:
            A 'ready' snapshot (possibly with no readings) or a 'failed' one.
        """
        now = self._clock()
        try:
            readings = await self._client.get_latest_readings(
                device_id,
                sensors=None,
                count=1,
                calibrated=True,
                aliased=True,
                as_of=now,
            )
        except Exception as exc:  # noqa: BLE001
            log.warning("Fetch failed for device %s: %s", device_id, exc)
            return DeviceSnapshot(
                device_id=device_id,
                readings=(),
                fetch_state=FetchState.FAILED,
                error=str(exc) or exc.__class__.__name__,
                last_success_at=previous.last_success_at if previous else None,
                fetched_at=now,
            )

        completed_at = self._clock()
        log.debug("Fetched %d readings for device %s", len(readings), device_id)
        return DeviceSnapshot(
            device_id=device_id,
            readings=tuple(readings),
            fetch_state=FetchState.READY,
            last_success_at=completed_at,
            fetched_at=completed_at,
        )
