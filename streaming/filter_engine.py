"""TRAPWATCH — Device list filtering by severity tier."""

from __future__ import annotations

from typing import List, Mapping, Optional, Sequence, Union

from common.models import Device, DeviceSnapshot, TierFilter
from streaming.kpi_aggregator import KpiAggregator, default_aggregator


def filter_devices(
    devices: Sequence[Device],
    snapshots: Mapping[str, DeviceSnapshot],
    tier: Union[TierFilter, str],
    aggregator: Optional[KpiAggregator] = None,
) -> List[Device]:
    """
    Select the devices whose current tier matches the requested one.

    Uses the aggregator's per-device bucketing, so a device counted 'critical'
    in the KPIs is exactly a device returned for tier='critical'. A device
    with no snapshot yet is offline.

    Args:
        devices:    Devices in display order.
        snapshots:  device_id → latest snapshot.
        tier:       'all' | 'normal' | 'warning' | 'critical' | 'offline'.
        aggregator: Aggregator whose classifier decides tiers. Defaults to the
                    module default.

    Returns:
        Matching devices, input order preserved.

    Raises:
        ValueError: If tier is not a known tier name.
    """
    requested = TierFilter(tier)
    if requested is TierFilter.ALL:
        return list(devices)

    aggregator = aggregator or default_aggregator
    return [
        device
        for device in devices
        if aggregator.device_tier(snapshots.get(device.device_id)).value == requested.value
    ]
