"""
TRAPWATCH — FastAPI Request/Response Pydantic Schemas

All API response models.
These are separate from common/models.py (which are internal domain models)
to allow API contract evolution independently of the orchestrator data models.
Percentages, kW and °C values are rounded to one decimal place for display.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from common.models import (
    Device,
    DeviceMetadata,
    DevicePhase,
    DeviceSnapshot,
    FetchState,
    FleetInsight,
    FleetKPIs,
    HealthState,
    ReadingValue,
    SensorReading,
    format_location,
)

# =============================================================================
# Devices
# =============================================================================


class DeviceSummary(BaseModel):
    """One row of the device table."""

    device_id: str
    type_id: Optional[str] = None
    name: Optional[str] = None
    type_name: Optional[str] = None
    location: str = "Location not available"
    health: str = Field(..., description="Health state label, e.g. 'Heavy Leak'")
    health_code: int
    tier: str = Field(..., description="normal | warning | critical | offline")
    phase: DevicePhase
    fetch_state: FetchState
    error: Optional[str] = None
    last_success_at: Optional[datetime] = None
    fetched_at: Optional[datetime] = None

    @classmethod
    def build(
        cls,
        device: Device,
        metadata: Optional[DeviceMetadata],
        snapshot: Optional[DeviceSnapshot],
        health: HealthState,
        phase: DevicePhase,
    ) -> "DeviceSummary":
        snapshot = snapshot or DeviceSnapshot.pending(device.device_id)
        return cls(
            device_id=device.device_id,
            type_id=(metadata.type_id if metadata else None) or device.type_id,
            name=metadata.name if metadata else None,
            type_name=metadata.type_name if metadata else None,
            location=format_location(metadata.location if metadata else None),
            health=health.label,
            health_code=health.code,
            tier=health.tier.value,
            phase=phase,
            fetch_state=snapshot.fetch_state,
            error=snapshot.error,
            last_success_at=snapshot.last_success_at,
            fetched_at=snapshot.fetched_at,
        )


class ReadingResponse(BaseModel):
    """Latest value of one sensor."""

    sensor: str
    value: ReadingValue = None
    display_value: str
    timestamp: Optional[datetime] = None

    @classmethod
    def from_reading(cls, reading: SensorReading) -> "ReadingResponse":
        return cls(
            sensor=reading.sensor,
            value=reading.value,
            display_value=reading.display_value(),
            timestamp=reading.timestamp,
        )


class DeviceDetailResponse(DeviceSummary):
    """GET /fleet/devices/{device_id} — device card."""

    health_description: str
    sensors: List[str] = Field(default_factory=list)
    added_on: Optional[datetime] = None
    readings: List[ReadingResponse] = Field(default_factory=list)


class DeviceListResponse(BaseModel):
    """GET /fleet/devices response envelope."""

    tier: str
    total: int
    devices: List[DeviceSummary]


# =============================================================================
# KPIs
# =============================================================================


class StatusCountsResponse(BaseModel):
    normal: int
    warning: int
    critical: int
    offline: int


class KpiResponse(BaseModel):
    """GET /fleet/kpis response."""

    total_devices: int
    online_devices: int
    pending_devices: int
    status_counts: StatusCountsResponse
    efficiency: float = Field(..., description="% of fleet classified Normal")
    uptime: float = Field(..., description="% of fleet with a successful latest fetch")
    estimated_energy_loss: float = Field(..., description="kW")
    avg_temp_differential: float = Field(..., description="°C")
    computed_at: datetime

    @classmethod
    def from_kpis(cls, kpis: FleetKPIs) -> "KpiResponse":
        counts = kpis.status_counts
        return cls(
            total_devices=kpis.total_devices,
            online_devices=kpis.online_devices,
            pending_devices=kpis.pending_devices,
            status_counts=StatusCountsResponse(
                normal=counts.normal,
                warning=counts.warning,
                critical=counts.critical,
                offline=counts.offline,
            ),
            efficiency=round(kpis.efficiency, 1),
            uptime=round(kpis.uptime, 1),
            estimated_energy_loss=round(kpis.estimated_energy_loss, 1),
            avg_temp_differential=round(kpis.avg_temp_differential, 1),
            computed_at=kpis.computed_at,
        )


# =============================================================================
# Insights / composition
# =============================================================================


class InsightResponse(BaseModel):
    code: str
    severity: str  # critical | warning | positive
    message: str

    @classmethod
    def from_insight(cls, insight: FleetInsight) -> "InsightResponse":
        return cls(code=insight.code, severity=insight.severity, message=insight.message)


class InsightListResponse(BaseModel):
    """GET /fleet/insights response."""

    insights: List[InsightResponse]


class DeviceTypesResponse(BaseModel):
    """GET /fleet/device-types response."""

    total: int
    counts: Dict[str, int]
