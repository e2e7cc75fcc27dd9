"""
TRAPWATCH — Fleet Orchestrator

Owns the working set of steam traps and their latest snapshots, and drives
refresh cycles against the telemetry collaborator.

Lifecycle per device:
    idle → fetching → ready | failed     (re-enters fetching on every refresh)

Refresh cycle (fan-out / fan-in):
    one fetch task per device → asyncio.gather → recompute FleetKPIs → notify subscribers

Scheduling:
    A single cancellable task serves every trigger from one queue:
      - fleet cadence   (FLEET_REFRESH_INTERVAL_SECONDS, default 30 min): all devices
      - card cadence    (CARD_REFRESH_INTERVAL_SECONDS, default 30 s): watched devices
      - request_refresh(): inbound "refresh now" message, fire-and-forget
    Cycles run as independent tasks, so a new refresh may start while an older
    one is still in flight. Each fetch writes only its own device's slot when it
    completes; the last completion wins.

The snapshot map is written only here and exposed read-only.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from common.config import Settings, get_settings
from common.models import (
    Device,
    DeviceMetadata,
    DevicePhase,
    DeviceSnapshot,
    FetchState,
    FleetInsight,
    FleetKPIs,
    HealthState,
    TierFilter,
)
from ingestion.device_identifier import coarse_filter, fine_filter
from ingestion.snapshot_fetcher import Clock, SnapshotFetcher, utc_now
from ingestion.telemetry_client import TelemetryClient
from streaming.filter_engine import filter_devices
from streaming.kpi_aggregator import KpiAggregator, device_type_counts, fleet_insights

log = logging.getLogger(__name__)

KpiListener = Callable[[FleetKPIs], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class RefreshRequest:
    """Inbound refresh message. device_ids=None means the whole fleet."""

    device_ids: Optional[Tuple[str, ...]] = None


class FleetOrchestrator:
    """
    Coordinates device loading, concurrent snapshot fetching and KPI recomputation.

    Args:
        client:     Telemetry collaborator.
        settings:   Settings (intervals, allow-list, thresholds). Uses get_settings() if None.
        fetcher:    Snapshot fetcher. Built from client if None.
        aggregator: KPI aggregator. Built from settings if None.
        clock:      Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        client: TelemetryClient,
        settings: Optional[Settings] = None,
        fetcher: Optional[SnapshotFetcher] = None,
        aggregator: Optional[KpiAggregator] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._clock = clock
        self._fetcher = fetcher or SnapshotFetcher(client, clock=clock)
        self.aggregator = aggregator or KpiAggregator.from_settings(self._settings)

        self._devices: List[Device] = []
        self._metadata: Dict[str, DeviceMetadata] = {}
        self._snapshots: Dict[str, DeviceSnapshot] = {}
        self._in_flight: Dict[str, int] = {}
        self._devices_loaded = False
        self._kpis: Optional[FleetKPIs] = None

        self._listeners: List[KpiListener] = []
        self._watched: Set[str] = set()
        self._queue: "asyncio.Queue[RefreshRequest]" = asyncio.Queue()
        self._scheduler: Optional[asyncio.Task] = None
        self._cycles: Set[asyncio.Task] = set()

        log.info(
            "FleetOrchestrator initialised — fleet interval: %.0fs, card interval: %.0fs",
            self._settings.fleet_refresh_interval_seconds,
            self._settings.card_refresh_interval_seconds,
        )

    # ─────────────────────────────────────────────────────────────────────
    # Read-only views
    # ─────────────────────────────────────────────────────────────────────

    @property
    def devices(self) -> List[Device]:
        """Confirmed steam traps, in collaborator order."""
        return list(self._devices)

    @property
    def metadata(self) -> Mapping[str, DeviceMetadata]:
        return MappingProxyType(self._metadata)

    @property
    def snapshots(self) -> Mapping[str, DeviceSnapshot]:
        return MappingProxyType(self._snapshots)

    @property
    def devices_loaded(self) -> bool:
        return self._devices_loaded

    @property
    def watched_devices(self) -> Set[str]:
        return set(self._watched)

    def device(self, device_id: str) -> Optional[Device]:
        for device in self._devices:
            if device.device_id == device_id:
                return device
        return None

    def snapshot(self, device_id: str) -> Optional[DeviceSnapshot]:
        return self._snapshots.get(device_id)

    def phase(self, device_id: str) -> DevicePhase:
        """Current state-machine phase of a device."""
        if self._in_flight.get(device_id):
            return DevicePhase.FETCHING
        snapshot = self._snapshots.get(device_id)
        if snapshot is None or snapshot.fetch_state is FetchState.PENDING:
            return DevicePhase.IDLE
        if snapshot.fetch_state is FetchState.FAILED:
            return DevicePhase.FAILED
        return DevicePhase.READY

    def health(self, device_id: str) -> HealthState:
        return self.aggregator.health(self._snapshots.get(device_id))

    @property
    def kpis(self) -> FleetKPIs:
        """KPIs published by the last completed cycle (computed on first access)."""
        if self._kpis is None:
            self._kpis = self.compute_kpis()
        return self._kpis

    def compute_kpis(self) -> FleetKPIs:
        """Recompute KPIs from the current snapshots without publishing them."""
        return self.aggregator.aggregate(self._snapshots, now=self._clock())

    def filter_devices(self, tier: Union[TierFilter, str]) -> List[Device]:
        return filter_devices(self._devices, self._snapshots, tier, aggregator=self.aggregator)

    def device_type_counts(self) -> Dict[str, int]:
        return device_type_counts(self._devices, self._metadata)

    def insights(self) -> List[FleetInsight]:
        s = self._settings
        return fleet_insights(
            self.kpis,
            efficiency_low=s.insight_efficiency_low,
            efficiency_high=s.insight_efficiency_high,
            energy_loss_high=s.insight_energy_loss_high,
            differential_low=s.insight_differential_low,
        )

    # ─────────────────────────────────────────────────────────────────────
    # Device set
    # ─────────────────────────────────────────────────────────────────────

    async def load_devices(self) -> List[Device]:
        """
        Build the working set: list → coarse filter → metadata → fine filter → allow-list.

        Devices already known keep their snapshots; new devices start pending;
        devices no longer present are dropped.

        Raises:
            TelemetryError: If the device list itself cannot be retrieved.
        """
        raw = await self._client.list_devices()
        candidates = coarse_filter(raw)
        results = await asyncio.gather(*(self._load_metadata(d.device_id) for d in candidates))
        metadata = {d.device_id: m for d, m in zip(candidates, results) if m is not None}
        confirmed = fine_filter(candidates, metadata)

        allow_list = self._settings.fleet_device_id_list
        if allow_list:
            allowed = set(allow_list)
            confirmed = [d for d in confirmed if d.device_id in allowed]

        ids = {d.device_id for d in confirmed}
        self._devices = confirmed
        self._metadata = {k: v for k, v in metadata.items() if k in ids}
        self._snapshots = {
            d.device_id: self._snapshots.get(d.device_id) or DeviceSnapshot.pending(d.device_id)
            for d in confirmed
        }
        self._watched &= ids
        self._devices_loaded = True
        self._kpis = self.compute_kpis()

        log.info(
            "Device set loaded: %d listed, %d steam-trap candidates, %d confirmed",
            len(raw),
            len(candidates),
            len(confirmed),
        )
        return list(confirmed)

    async def _load_metadata(self, device_id: str) -> Optional[DeviceMetadata]:
        try:
            return await self._client.get_metadata(device_id)
        except Exception as exc:  # noqa: BLE001
            log.warning("Failed to load metadata for device %s: %s", device_id, exc)
            return None

    # ─────────────────────────────────────────────────────────────────────
    # Refresh cycles
    # ─────────────────────────────────────────────────────────────────────

    async def _fetch_one(self, device_id: str) -> DeviceSnapshot:
        """Fetch one device and store the result in its own slot."""
        self._in_flight[device_id] = self._in_flight.get(device_id, 0) + 1
        try:
            snapshot = await self._fetcher.fetch(device_id, previous=self._snapshots.get(device_id))
        finally:
            remaining = self._in_flight[device_id] - 1
            if remaining:
                self._in_flight[device_id] = remaining
            else:
                del self._in_flight[device_id]

        # Device may have been dropped by a reload while the fetch was in flight.
        if device_id in self._snapshots:
            self._snapshots[device_id] = snapshot
        return snapshot

    async def refresh_device(self, device_id: str) -> DeviceSnapshot:
        """
        Fetch a single device, then recompute and publish KPIs.

        Raises:
            KeyError: If the device is not in the working set.
        """
        if device_id not in self._snapshots:
            raise KeyError(f"Unknown device: {device_id}")
        snapshot = await self._fetch_one(device_id)
        await self._publish()
        return snapshot

    async def refresh_devices(self, device_ids: Iterable[str]) -> FleetKPIs:
        """Fetch the given devices concurrently, then recompute and publish KPIs."""
        ids = []
        for device_id in dict.fromkeys(device_ids):
            if device_id in self._snapshots:
                ids.append(device_id)
            else:
                log.warning("Ignoring refresh for unknown device %s", device_id)

        if ids:
            await asyncio.gather(*(self._fetch_one(d) for d in ids))
        return await self._publish()

    async def refresh_all(self) -> FleetKPIs:
        """Fetch every device in the working set concurrently and publish KPIs."""
        start = time.perf_counter()
        kpis = await self.refresh_devices([d.device_id for d in self._devices])
        counts = kpis.status_counts
        log.info(
            "Fleet refresh complete in %.2fs: %d devices (normal=%d warning=%d critical=%d offline=%d)",
            time.perf_counter() - start,
            kpis.total_devices,
            counts.normal,
            counts.warning,
            counts.critical,
            counts.offline,
        )
        return kpis

    async def _publish(self) -> FleetKPIs:
        kpis = self.compute_kpis()
        self._kpis = kpis
        for listener in list(self._listeners):
            try:
                result = listener(kpis)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                log.exception("KPI subscriber %r failed", listener)
        return kpis

    def subscribe(self, listener: KpiListener) -> Callable[[], None]:
        """
        Register a callback invoked with fresh FleetKPIs after every cycle.

        Returns:
            A function that unregisters the callback.
        """
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ─────────────────────────────────────────────────────────────────────
    # Scheduling
    # ─────────────────────────────────────────────────────────────────────

    def watch_device(self, device_id: str) -> None:
        """Put a device on the fast card cadence."""
        if device_id not in self._snapshots:
            raise KeyError(f"Unknown device: {device_id}")
        self._watched.add(device_id)

    def unwatch_device(self, device_id: str) -> None:
        self._watched.discard(device_id)

    def request_refresh(self, device_ids: Optional[Iterable[str]] = None) -> None:
        """
        Ask for a refresh without waiting for it ("refresh all" when device_ids is None).

        Handled by the scheduler; requests made before start() are served once it runs.
        """
        ids = tuple(device_ids) if device_ids is not None else None
        self._queue.put_nowait(RefreshRequest(device_ids=ids))
        log.debug("Refresh requested: %s", "all devices" if ids is None else ", ".join(ids))

    @property
    def running(self) -> bool:
        return self._scheduler is not None and not self._scheduler.done()

    async def start(self) -> None:
        """Start the scheduler. The first fleet cycle (and device load) runs immediately."""
        if self.running:
            return
        self._scheduler = asyncio.create_task(self._run(), name="fleet-scheduler")
        log.info("Fleet scheduler started")

    async def stop(self) -> None:
        """Cancel the scheduler and any cycles still in flight."""
        tasks = list(self._cycles)
        if self._scheduler is not None:
            tasks.append(self._scheduler)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._scheduler = None
        self._cycles.clear()
        log.info("Fleet scheduler stopped")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        fleet_interval = self._settings.fleet_refresh_interval_seconds
        card_interval = self._settings.card_refresh_interval_seconds
        next_fleet = loop.time()
        next_card = loop.time() + card_interval

        while True:
            timeout = max(0.0, min(next_fleet, next_card) - loop.time())
            try:
                request = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                request = None

            if request is not None:
                self._spawn_cycle(request.device_ids)
                continue

            now = loop.time()
            if now >= next_fleet:
                next_fleet = now + fleet_interval
                log.debug("Fleet cadence tick")
                self._spawn_cycle(None)
            if now >= next_card:
                next_card = now + card_interval
                if self._watched:
                    log.debug("Card cadence tick: %d watched devices", len(self._watched))
                    self._spawn_cycle(tuple(sorted(self._watched)))

    def _spawn_cycle(self, device_ids: Optional[Tuple[str, ...]]) -> None:
        task = asyncio.create_task(self._run_cycle(device_ids))
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)

    async def _run_cycle(self, device_ids: Optional[Tuple[str, ...]]) -> None:
        try:
            if device_ids is None:
                if not self._devices_loaded:
                    await self.load_devices()
                await self.refresh_all()
            else:
                await self.refresh_devices(device_ids)
        except Exception as exc:  # noqa: BLE001
            log.error("Refresh cycle failed (will retry on next tick): %s", exc, exc_info=True)
