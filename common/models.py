"""
TRAPWATCH — Shared Pydantic data models.

These models are the single source of truth for data structures crossing
component boundaries: telemetry client → fetcher → classifier → aggregator → API.
Import from here — never redefine schemas in individual modules.

Wire aliases (devID, devTypeID, sensorName, ...) follow the telemetry
collaborator's payloads; Python code always uses the snake_case field names.
"""

from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ReadingValue = Union[int, float, str, None]

# =============================================================================
# Enumerations
# =============================================================================


class SeverityTier(str, Enum):
    """Coarse severity bucket a health state or a device maps to."""

    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    OFFLINE = "offline"


class TierFilter(str, Enum):
    """Tier selection accepted by the filter engine."""

    ALL = "all"
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    OFFLINE = "offline"


class FetchState(str, Enum):
    """Outcome of the most recent completed fetch for one device."""

    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class DevicePhase(str, Enum):
    """Orchestrator state machine per device: idle → fetching → ready | failed."""

    IDLE = "idle"
    FETCHING = "fetching"
    READY = "ready"
    FAILED = "failed"


class HealthState(Enum):
    """
    Operating-health state of a steam trap.

    Each member carries its numeric status code, the severity tier it maps to
    and a human description. The tier is a function of the code alone.
    UNKNOWN is never produced by the classifier; it labels devices that have
    no usable telemetry.
    """

    NORMAL = (
        1,
        "Normal",
        SeverityTier.NORMAL,
        "Steam trap is operating normally with proper condensate discharge and no steam loss.",
    )
    HEAVY_FLOODING = (
        3,
        "Heavy Flooding",
        SeverityTier.WARNING,
        "Steam trap is experiencing heavy flooding. Condensate is not being discharged properly.",
    )
    VALVE_CLOSED = (
        5,
        "Valve Closed",
        SeverityTier.WARNING,
        "Valve is closed. No flow is detected through the steam trap.",
    )
    CHOKING = (
        6,
        "Choking",
        SeverityTier.CRITICAL,
        "Steam trap is choking. Flow is restricted and requires immediate attention.",
    )
    HEAVY_LEAK = (
        9,
        "Heavy Leak",
        SeverityTier.CRITICAL,
        "Steam trap has a heavy leak. Steam is being lost and energy efficiency is compromised.",
    )
    UNKNOWN = (
        0,
        "Unknown",
        SeverityTier.OFFLINE,
        "No telemetry available for this steam trap.",
    )

    def __init__(self, code: int, label: str, tier: SeverityTier, description: str) -> None:
        self.code = code
        self.label = label
        self.tier = tier
        self.description = description

    @classmethod
    def from_code(cls, code: int) -> Optional["HealthState"]:
        """Return the known (non-UNKNOWN) state for a status code, or None."""
        for state in cls:
            if state is not cls.UNKNOWN and state.code == code:
                return state
        return None

    @classmethod
    def known(cls) -> List["HealthState"]:
        """States reported by devices, in status-table order."""
        return [
            cls.NORMAL,
            cls.HEAVY_FLOODING,
            cls.CHOKING,
            cls.HEAVY_LEAK,
            cls.VALVE_CLOSED,
        ]


# =============================================================================
# Devices and metadata (supplied by the telemetry collaborator)
# =============================================================================


class Device(BaseModel):
    """A device record from the collaborator's device list."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    device_id: str = Field(..., alias="devID", min_length=1)
    type_id: Optional[str] = Field(default=None, alias="devTypeID")


class SensorInfo(BaseModel):
    """Sensor descriptor listed in device metadata."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    sensor_id: str = Field(..., alias="sensorId")
    sensor_name: Optional[str] = Field(default=None, alias="sensorName")

    @property
    def display_name(self) -> str:
        return self.sensor_name or self.sensor_id


class Location(BaseModel):
    """Geographic position of a device."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    latitude: float
    longitude: float

    def format(self) -> str:
        return f"{self.latitude:.4f}, {self.longitude:.4f}"


class DeviceMetadata(BaseModel):
    """Optional enrichment for a device, keyed by device id."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    device_id: str = Field(..., alias="devID")
    name: Optional[str] = Field(default=None, alias="devName")
    type_id: Optional[str] = Field(default=None, alias="devTypeID")
    type_name: Optional[str] = Field(default=None, alias="devTypeName")
    sensors: Tuple[SensorInfo, ...] = ()
    location: Optional[Location] = None
    added_on: Optional[datetime] = Field(default=None, alias="addedOn")


def format_location(location: Optional[Location]) -> str:
    """Render a location for display, or a placeholder when absent."""
    if location is None:
        return "Location not available"
    return location.format()


# =============================================================================
# Telemetry
# =============================================================================


class SensorReading(BaseModel):
    """
    The latest value of one sensor, as returned by the collaborator.

    value may be numeric, textual (status sensors often report labels) or absent.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    sensor: str = ""
    value: ReadingValue = None
    timestamp: Optional[datetime] = Field(default=None, alias="time")

    @field_validator("sensor", mode="before")
    @classmethod
    def label_or_empty(cls, v):
        return "" if v is None else v

    @property
    def numeric_value(self) -> Optional[float]:
        """The value as a finite float, or None for text / absent / NaN values."""
        v = self.value
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return None
        if not math.isfinite(v):
            return None
        return float(v)

    def display_value(self, precision: int = 1) -> str:
        """Format for display; absent values render as 'N/A'."""
        if self.value is None:
            return "N/A"
        numeric = self.numeric_value
        if numeric is not None:
            return f"{numeric:.{precision}f}"
        return str(self.value)


class DeviceSnapshot(BaseModel):
    """
    Result of the most recent completed fetch for one device.

    Replaced wholesale on every fetch — never merged. last_success_at survives
    failed fetches so uptime history is not lost on a transient error.
    """

    model_config = ConfigDict(frozen=True)

    device_id: str
    readings: Tuple[SensorReading, ...] = ()
    fetch_state: FetchState = FetchState.PENDING
    error: Optional[str] = None
    last_success_at: Optional[datetime] = None
    fetched_at: Optional[datetime] = None

    @model_validator(mode="after")
    def check_state_consistency(self) -> "DeviceSnapshot":
        if self.fetch_state is FetchState.FAILED:
            if not self.error:
                raise ValueError("failed snapshot requires an error detail")
        elif self.error is not None:
            raise ValueError("error detail is only allowed on failed snapshots")
        if self.fetch_state is not FetchState.READY and self.readings:
            raise ValueError(f"{self.fetch_state.value} snapshot cannot carry readings")
        return self

    @classmethod
    def pending(cls, device_id: str) -> "DeviceSnapshot":
        """Placeholder for a device that has not completed a fetch yet."""
        return cls(device_id=device_id, fetch_state=FetchState.PENDING)

    @property
    def has_data(self) -> bool:
        return self.fetch_state is FetchState.READY and len(self.readings) > 0

    @property
    def is_online(self) -> bool:
        return self.fetch_state is FetchState.READY and self.last_success_at is not None


# =============================================================================
# Aggregates
# =============================================================================


class StatusCounts(BaseModel):
    """Number of devices in each severity tier."""

    model_config = ConfigDict(frozen=True)

    normal: int = 0
    warning: int = 0
    critical: int = 0
    offline: int = 0

    def total(self) -> int:
        return self.normal + self.warning + self.critical + self.offline

    def for_tier(self, tier: SeverityTier) -> int:
        return getattr(self, tier.value)


class FleetKPIs(BaseModel):
    """Fleet-level indicators derived from the current snapshot set."""

    model_config = ConfigDict(frozen=True)

    total_devices: int = 0
    online_devices: int = 0
    pending_devices: int = 0
    status_counts: StatusCounts = Field(default_factory=StatusCounts)
    efficiency: float = Field(0.0, description="% of fleet classified Normal")
    uptime: float = Field(0.0, description="% of fleet with a successful latest fetch")
    estimated_energy_loss: float = Field(0.0, description="kW lost across critical traps")
    avg_temp_differential: float = Field(0.0, description="Mean inlet - outlet, degC")
    computed_at: datetime


class FleetInsight(BaseModel):
    """A short, human-readable observation about the fleet."""

    model_config = ConfigDict(frozen=True)

    code: str
    severity: str  # critical | warning | positive
    message: str
