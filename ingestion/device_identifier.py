"""
TRAPWATCH — Steam Trap Device Identifier

Decides whether a device record belongs to the monitored device class (steam traps).

Applied twice when the fleet is loaded:
  1. Coarse pass over the raw device list, using only the device type id.
  2. Fine pass once metadata has arrived, using the metadata type id and type name.
A device that survives the coarse pass but fails the fine pass is dropped.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Optional

from common.models import Device, DeviceMetadata

log = logging.getLogger(__name__)

RESERVED_TYPE_ID = "STEAM_TRAP3"
TYPE_KEYWORDS = ("steamtrap", "steam")


def is_monitored_device(type_id: Optional[str], type_name: Optional[str] = None) -> bool:
    """
    Check whether a device type identifies a steam trap.

    Case-insensitive: matches the reserved type id, or any type id / type name
    containing 'steamtrap' or 'steam'. Never raises.

    Args:
        type_id:   Raw device type identifier (may be None).
        type_name: Human type name from metadata (may be None).

    Returns:
        True if the device should be monitored.
    """
    candidates = [str(v).lower() for v in (type_id, type_name) if v]
    if type_id and str(type_id).upper() == RESERVED_TYPE_ID:
        return True
    return any(keyword in candidate for candidate in candidates for keyword in TYPE_KEYWORDS)


def coarse_filter(devices: Iterable[Device]) -> List[Device]:
    """Keep the devices whose raw type id identifies a steam trap, de-duplicated by id."""
    seen: Dict[str, Device] = {}
    for device in devices:
        if device.device_id in seen:
            log.warning("Duplicate device id in device list, keeping first: %s", device.device_id)
            continue
        if is_monitored_device(device.type_id):
            seen[device.device_id] = device
    return list(seen.values())


def fine_filter(
    devices: Iterable[Device],
    metadata: Mapping[str, Optional[DeviceMetadata]],
) -> List[Device]:
    """
    Re-apply the predicate with metadata type information.

    A device without metadata is judged on its raw type id alone.

    Args:
        devices:  Devices that passed the coarse filter.
        metadata: device_id → metadata (missing key or None = no metadata).

    Returns:
        Devices confirmed as steam traps, in input order.
    """
    confirmed: List[Device] = []
    for device in devices:
        meta = metadata.get(device.device_id)
        if meta is None:
            type_id, type_name = device.type_id, None
        else:
            type_id, type_name = meta.type_id or device.type_id, meta.type_name
        if is_monitored_device(type_id, type_name):
            confirmed.append(device)
        else:
            log.info(
                "Dropping device %s: metadata type %r / %r is not a steam trap",
                device.device_id,
                type_id,
                type_name,
            )
    return confirmed
