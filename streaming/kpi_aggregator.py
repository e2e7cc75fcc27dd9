"""
TRAPWATCH — Fleet KPI Aggregator

Reduces the current set of device snapshots into fleet-level indicators:

  efficiency             Normal traps / total traps × 100
  uptime                 Traps whose latest fetch succeeded / total × 100
  estimated_energy_loss  Sum over critical traps (Choking 10 kW, Heavy Leak 15 kW)
  avg_temp_differential  Mean inlet − outlet over traps reporting both temperatures
  status_counts          normal / warning / critical / offline

Offline bucket: failed fetches, pending (never fetched) devices and successful
fetches that returned no readings. Every device lands in exactly one bucket,
so the four counts always sum to the fleet size.

device_tier() is the single per-device bucketing rule; the filter engine uses
it too, so the KPI counts and the filtered tables can never disagree.

Pure functions only: no I/O, no mutation of inputs.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Union

from common.config import Settings
from common.models import (
    Device,
    DeviceMetadata,
    DeviceSnapshot,
    FetchState,
    FleetInsight,
    FleetKPIs,
    HealthState,
    SeverityTier,
    StatusCounts,
)
from streaming.status_classifier import StatusClassifier, temperature_differential

SnapshotSet = Union[Mapping[str, DeviceSnapshot], Iterable[DeviceSnapshot]]


def _percentage(part: int, total: int) -> float:
    return part / total * 100 if total > 0 else 0.0


class KpiAggregator:
    """
    Computes per-device tiers and fleet KPIs.

    Args:
        classifier:  Status classifier used for devices with data.
        energy_loss: Estimated kW lost per critical state.
    """

    def __init__(
        self,
        classifier: Optional[StatusClassifier] = None,
        energy_loss: Optional[Mapping[HealthState, float]] = None,
    ) -> None:
        self.classifier = classifier or StatusClassifier()
        self.energy_loss: Dict[HealthState, float] = dict(
            energy_loss
            if energy_loss is not None
            else {HealthState.CHOKING: 10.0, HealthState.HEAVY_LEAK: 15.0}
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "KpiAggregator":
        return cls(
            classifier=StatusClassifier.from_settings(settings),
            energy_loss={
                HealthState.CHOKING: settings.energy_loss_choking,
                HealthState.HEAVY_LEAK: settings.energy_loss_heavy_leak,
            },
        )

    def health(self, snapshot: Optional[DeviceSnapshot]) -> HealthState:
        """Display state of a device: classified when it has data, UNKNOWN otherwise."""
        if snapshot is None or not snapshot.has_data:
            return HealthState.UNKNOWN
        return self.classifier.classify(snapshot.readings)

    def device_tier(self, snapshot: Optional[DeviceSnapshot]) -> SeverityTier:
        """
        Bucket one device into a severity tier.

        No snapshot, a pending or failed fetch, or a fetch with no readings → offline.
        Otherwise the tier of the classified health state.
        """
        return self.health(snapshot).tier

    def aggregate(
        self,
        snapshots: SnapshotSet,
        now: Optional[datetime] = None,
    ) -> FleetKPIs:
        """
        Compute fleet KPIs over the full current snapshot set.

        Args:
            snapshots: One snapshot per device (mapping values or an iterable).
            now:       Computation timestamp. Defaults to utcnow().

        Returns:
            FleetKPIs. All percentages are 0 for an empty fleet.
        """
        items = list(snapshots.values()) if isinstance(snapshots, Mapping) else list(snapshots)
        total = len(items)

        tiers: Counter = Counter()
        online = 0
        pending = 0
        energy_loss = 0.0
        diff_sum = 0.0
        diff_count = 0

        for snapshot in items:
            if snapshot.is_online:
                online += 1
            if snapshot.fetch_state is FetchState.PENDING:
                pending += 1

            state = self.health(snapshot)
            tiers[state.tier] += 1
            if state.tier is SeverityTier.OFFLINE:
                continue

            if state.tier is SeverityTier.CRITICAL:
                energy_loss += self.energy_loss.get(state, 0.0)
            diff = temperature_differential(snapshot.readings)
            if diff is not None:
                diff_sum += diff
                diff_count += 1

        counts = StatusCounts(
            normal=tiers[SeverityTier.NORMAL],
            warning=tiers[SeverityTier.WARNING],
            critical=tiers[SeverityTier.CRITICAL],
            offline=tiers[SeverityTier.OFFLINE],
        )
        return FleetKPIs(
            total_devices=total,
            online_devices=online,
            pending_devices=pending,
            status_counts=counts,
            efficiency=_percentage(counts.normal, total),
            uptime=_percentage(online, total),
            estimated_energy_loss=energy_loss,
            avg_temp_differential=diff_sum / diff_count if diff_count else 0.0,
            computed_at=now or datetime.now(tz=timezone.utc),
        )


default_aggregator = KpiAggregator()


def aggregate(snapshots: SnapshotSet, now: Optional[datetime] = None) -> FleetKPIs:
    """Aggregate with the default classifier and energy-loss constants."""
    return default_aggregator.aggregate(snapshots, now=now)


def device_tier(snapshot: Optional[DeviceSnapshot]) -> SeverityTier:
    """Bucket one device with the default classifier."""
    return default_aggregator.device_tier(snapshot)


# ─────────────────────────────────────────────────────────────────────────────
# Fleet composition and insights
# ─────────────────────────────────────────────────────────────────────────────


def device_type_counts(
    devices: Iterable[Device],
    metadata: Mapping[str, Optional[DeviceMetadata]],
) -> Dict[str, int]:
    """
    Count devices per display type: metadata type name, else raw type id, else 'Unknown'.
    """
    counts: Dict[str, int] = {}
    for device in devices:
        meta = metadata.get(device.device_id)
        label = (meta.type_name if meta else None) or device.type_id or "Unknown"
        counts[label] = counts.get(label, 0) + 1
    return counts


def fleet_insights(
    kpis: FleetKPIs,
    efficiency_low: float = 80.0,
    efficiency_high: float = 90.0,
    energy_loss_high: float = 20.0,
    differential_low: float = 50.0,
) -> List[FleetInsight]:
    """
    Derive short observations from fleet KPIs, most severe first.

    Args:
        kpis:             Current fleet KPIs.
        efficiency_low:   Efficiency (%) below which the fleet is flagged.
        efficiency_high:  Efficiency (%) at or above which performance is praised.
        energy_loss_high: Energy loss (kW) above which critical traps need review.
        differential_low: Average differential (°C) below which it is flagged.

    Returns:
        List of FleetInsight, possibly empty.
    """
    insights: List[FleetInsight] = []
    critical = kpis.status_counts.critical
    if critical > 0:
        insights.append(FleetInsight(
            code="critical_traps",
            severity="critical",
            message=f"{critical} trap(s) require immediate attention",
        ))
    if kpis.estimated_energy_loss > energy_loss_high:
        insights.append(FleetInsight(
            code="high_energy_loss",
            severity="critical",
            message="High energy loss detected - review critical traps",
        ))
    if kpis.efficiency < efficiency_low:
        insights.append(FleetInsight(
            code="low_efficiency",
            severity="warning",
            message=f"System efficiency below optimal ({efficiency_low:.0f}%+)",
        ))
    if kpis.avg_temp_differential < differential_low:
        insights.append(FleetInsight(
            code="low_temp_differential",
            severity="warning",
            message="Low average temperature differential detected",
        ))
    if kpis.efficiency >= efficiency_high:
        insights.append(FleetInsight(
            code="excellent_performance",
            severity="positive",
            message="Excellent system performance maintained",
        ))
    return insights
