"""
TRAPWATCH — Simulated Telemetry Collaborator

In-process stand-in for the telemetry service, used in mock mode
(TELEMETRY_MODE=mock), by scripts/fleet_report.py and by the test suite.

Generates a plant of steam traps plus a few non-trap devices so the identifier
has something to reject. Each trap carries a small state machine:
  - Inlet temperature:  saturated steam around 250°C with Gaussian noise
  - Outlet temperature: condensate around 110°C; rises towards the inlet
                        temperature while the trap floods or leaks
  - Status sensor:      numeric status code, or a text label on some devices
  - Pressure:           mean-reverting around the line pressure (bar)

Fault injection:
  - Every trap is assigned a fault mode at construction (most are healthy)
  - failure_rate is the probability that a datapoint request fails with
    TelemetryUnavailable, to exercise per-device failure isolation
  - Some traps never report (empty datapoint list)

Deterministic for a given seed.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

from common.models import Device, DeviceMetadata, HealthState, Location, SensorInfo, SensorReading
from ingestion.telemetry_client import TelemetryClient, TelemetryUnavailable

log = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Plant layout constants
# ─────────────────────────────────────────────────────────────────────────────

TRAP_TYPE_IDS = ["STEAM_TRAP3", "SteamTrap_V2", "steam_trap_legacy"]
OTHER_TYPE_IDS = ["ENERGY_METER", "FLOW_METER_2"]

# Weighted fault distribution for simulated traps
FAULT_WEIGHTS = {
    HealthState.NORMAL: 0.70,
    HealthState.HEAVY_FLOODING: 0.10,
    HealthState.VALVE_CLOSED: 0.05,
    HealthState.CHOKING: 0.07,
    HealthState.HEAVY_LEAK: 0.08,
}

TRAP_SENSORS = [
    ("D1", "Inlet Temperature"),
    ("D2", "Outlet Temperature"),
    ("D3", "Line Pressure"),
    ("D4", "Trap Status"),
]

PLANT_ORIGIN = (18.5204, 73.8567)


@dataclass
class TrapState:
    """
    Stateful sensor state for a single simulated device.
    Tracks current sensor values across requests.
    """

    device_id: str
    type_id: str
    fault: HealthState = HealthState.NORMAL
    is_trap: bool = True
    reports: bool = True          # False = device never sends datapoints
    text_status: bool = False     # status sensor reports labels instead of codes

    inlet_temp: float = 250.0
    outlet_temp: float = 110.0
    pressure: float = 10.0
    pressure_mean: float = 10.0
    added_on: datetime = field(
        default_factory=lambda: datetime(2024, 1, 1, tzinfo=timezone.utc)
    )


class SimulatedTelemetryClient(TelemetryClient):
    """
    Generates steam-trap telemetry in memory.

    Args:
        devices:      Number of steam traps to simulate.
        seed:         Random seed (same seed → same plant and readings).
        failure_rate: Probability that a datapoint request fails.
        latency_seconds: Artificial delay per request, to exercise concurrency.
    """

    def __init__(
        self,
        devices: int = 12,
        seed: int = 42,
        failure_rate: float = 0.0,
        latency_seconds: float = 0.0,
    ) -> None:
        self._rng = random.Random(seed)
        self._failure_rate = failure_rate
        self._latency = latency_seconds
        self._states: Dict[str, TrapState] = {}
        self._build_plant(devices)
        log.info(
            "SimulatedTelemetryClient initialised [traps=%d, other=%d, seed=%d]",
            devices,
            len(self._states) - devices,
            seed,
        )

    def _build_plant(self, trap_count: int) -> None:
        faults = list(FAULT_WEIGHTS)
        weights = list(FAULT_WEIGHTS.values())
        for i in range(trap_count):
            device_id = f"ST-{i + 1:04d}"
            fault = self._rng.choices(faults, weights=weights)[0]
            state = TrapState(
                device_id=device_id,
                type_id=TRAP_TYPE_IDS[i % len(TRAP_TYPE_IDS)],
                fault=fault,
                reports=(i % 11 != 10),
                text_status=(i % 4 == 3),
                pressure_mean=self._rng.uniform(6.0, 14.0),
                added_on=datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(days=7 * i),
            )
            state.pressure = state.pressure_mean
            self._states[device_id] = state

        for i, type_id in enumerate(OTHER_TYPE_IDS):
            device_id = f"AUX-{i + 1:04d}"
            self._states[device_id] = TrapState(device_id=device_id, type_id=type_id, is_trap=False)

    async def _simulate_latency(self) -> None:
        if self._latency > 0:
            await asyncio.sleep(self._latency * self._rng.uniform(0.5, 1.5))

    async def list_devices(self) -> List[Device]:
        await self._simulate_latency()
        return [Device(device_id=s.device_id, type_id=s.type_id) for s in self._states.values()]

    async def get_metadata(self, device_id: str) -> Optional[DeviceMetadata]:
        await self._simulate_latency()
        state = self._states.get(device_id)
        if state is None:
            return None
        index = int(device_id.split("-")[1])
        return DeviceMetadata(
            device_id=device_id,
            name=f"{'Steam Trap' if state.is_trap else 'Meter'} {index:03d}",
            type_id=state.type_id,
            type_name="Steam Trap" if state.is_trap else "Utility Meter",
            sensors=tuple(SensorInfo(sensor_id=sid, sensor_name=name) for sid, name in TRAP_SENSORS)
            if state.is_trap
            else (SensorInfo(sensor_id="D1", sensor_name="Energy"),),
            location=Location(
                latitude=PLANT_ORIGIN[0] + index * 0.0005,
                longitude=PLANT_ORIGIN[1] + index * 0.0005,
            ),
            added_on=state.added_on,
        )

    async def get_latest_readings(
        self,
        device_id: str,
        sensors: Optional[Sequence[str]] = None,
        count: int = 1,
        calibrated: bool = True,
        aliased: bool = True,
        as_of: Optional[datetime] = None,
    ) -> List[SensorReading]:
        await self._simulate_latency()
        state = self._states.get(device_id)
        if state is None:
            raise TelemetryUnavailable(f"unknown device {device_id}")
        if self._rng.random() < self._failure_rate:
            raise TelemetryUnavailable(f"simulated timeout fetching {device_id}")
        if not state.reports:
            return []

        now = as_of or datetime.now(tz=timezone.utc)
        readings = self._tick(state, now)
        if sensors:
            wanted = set(sensors)
            readings = [
                r for (sid, _), r in zip(TRAP_SENSORS, readings) if sid in wanted or r.sensor in wanted
            ]
        if not aliased:
            readings = [
                r.model_copy(update={"sensor": sid}) for (sid, _), r in zip(TRAP_SENSORS, readings)
            ]
        return readings

    def _tick(self, state: TrapState, now: datetime) -> List[SensorReading]:
        """Advance one trap's physics and return its readings."""
        if not state.is_trap:
            return [SensorReading(sensor="Energy", value=round(self._rng.uniform(10, 90), 2), timestamp=now)]

        state.inlet_temp = 250.0 + self._rng.gauss(0, 3.0)
        if state.fault in (HealthState.HEAVY_FLOODING, HealthState.HEAVY_LEAK):
            outlet_target = state.inlet_temp - self._rng.uniform(2.0, 15.0)
        elif state.fault is HealthState.VALVE_CLOSED:
            outlet_target = 40.0
        else:
            outlet_target = 110.0
        state.outlet_temp = outlet_target + self._rng.gauss(0, 2.0)

        # Mean-reverting line pressure
        state.pressure += 0.2 * (state.pressure_mean - state.pressure) + self._rng.gauss(0, 0.3)
        state.pressure = max(0.0, state.pressure)

        status_value = state.fault.label if state.text_status else state.fault.code
        return [
            SensorReading(sensor="Inlet Temperature", value=round(state.inlet_temp, 2), timestamp=now),
            SensorReading(sensor="Outlet Temperature", value=round(state.outlet_temp, 2), timestamp=now),
            SensorReading(sensor="Line Pressure", value=round(state.pressure, 2), timestamp=now),
            SensorReading(sensor="Trap Status", value=status_value, timestamp=now),
        ]

    def set_fault(self, device_id: str, fault: HealthState) -> None:
        """Force a device into a fault mode (demos and tests)."""
        self._states[device_id].fault = fault

    def set_reporting(self, device_id: str, reports: bool) -> None:
        """Switch a device between reporting and silent."""
        self._states[device_id].reports = reports

    @property
    def trap_ids(self) -> List[str]:
        return [s.device_id for s in self._states.values() if s.is_trap]
