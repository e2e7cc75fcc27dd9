"""TRAPWATCH — /fleet router."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from api.dependencies import get_orchestrator
from api.models.schemas import (
    DeviceDetailResponse,
    DeviceListResponse,
    DeviceSummary,
    DeviceTypesResponse,
    InsightListResponse,
    InsightResponse,
    KpiResponse,
    ReadingResponse,
)
from common.models import Device, TierFilter
from streaming.fleet_orchestrator import FleetOrchestrator

log = logging.getLogger(__name__)
router = APIRouter()


def _summary(orchestrator: FleetOrchestrator, device: Device) -> DeviceSummary:
    device_id = device.device_id
    return DeviceSummary.build(
        device,
        orchestrator.metadata.get(device_id),
        orchestrator.snapshot(device_id),
        orchestrator.health(device_id),
        orchestrator.phase(device_id),
    )


@router.get(
    "/devices",
    response_model=DeviceListResponse,
    summary="List steam traps, optionally filtered by severity tier",
)
async def list_devices(
    tier: TierFilter = Query(TierFilter.ALL, description="all | normal | warning | critical | offline"),
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
) -> DeviceListResponse:
    """
    Return the confirmed steam traps with their current health.

    Args:
        tier:         Severity tier to keep. 'all' returns every device in order.
                      Any other value is rejected with 422.
        orchestrator: Injected fleet orchestrator.

    Returns:
        DeviceListResponse with one summary row per matching device.
    """
    devices = orchestrator.filter_devices(tier)
    return DeviceListResponse(
        tier=tier.value,
        total=len(devices),
        devices=[_summary(orchestrator, d) for d in devices],
    )


@router.get(
    "/devices/{device_id}",
    response_model=DeviceDetailResponse,
    summary="Device card: metadata, health and latest readings",
)
async def get_device(
    device_id: str,
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
) -> DeviceDetailResponse:
    device = orchestrator.device(device_id)
    if device is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Device {device_id} not found",
        )

    summary = _summary(orchestrator, device)
    metadata = orchestrator.metadata.get(device_id)
    snapshot = orchestrator.snapshot(device_id)
    return DeviceDetailResponse(
        **summary.model_dump(),
        health_description=orchestrator.health(device_id).description,
        sensors=[s.display_name for s in metadata.sensors] if metadata else [],
        added_on=metadata.added_on if metadata else None,
        readings=[ReadingResponse.from_reading(r) for r in snapshot.readings] if snapshot else [],
    )


@router.post(
    "/devices/{device_id}/refresh",
    response_model=DeviceDetailResponse,
    summary="Refresh one device now and return its card",
)
async def refresh_device(
    device_id: str,
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
) -> DeviceDetailResponse:
    if orchestrator.device(device_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Device {device_id} not found",
        )
    await orchestrator.refresh_device(device_id)
    return await get_device(device_id, orchestrator)


@router.get("/kpis", response_model=KpiResponse, summary="Fleet KPIs")
async def get_kpis(
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
) -> KpiResponse:
    return KpiResponse.from_kpis(orchestrator.kpis)


@router.get("/insights", response_model=InsightListResponse, summary="Fleet insights")
async def get_insights(
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
) -> InsightListResponse:
    return InsightListResponse(
        insights=[InsightResponse.from_insight(i) for i in orchestrator.insights()]
    )


@router.get("/device-types", response_model=DeviceTypesResponse, summary="Devices per type")
async def get_device_types(
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
) -> DeviceTypesResponse:
    counts = orchestrator.device_type_counts()
    return DeviceTypesResponse(total=sum(counts.values()), counts=counts)


@router.post(
    "/refresh",
    status_code=status.HTTP_202_ACCEPTED,
    response_class=Response,
    summary="Request a refresh of every device (fire-and-forget)",
)
async def refresh_all(
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
) -> Response:
    orchestrator.request_refresh()
    log.info("Manual fleet refresh requested")
    return Response(status_code=status.HTTP_202_ACCEPTED)


@router.put(
    "/devices/{device_id}/watch",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Put a device on the fast card refresh cadence",
)
async def watch_device(
    device_id: str,
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
) -> Response:
    try:
        orchestrator.watch_device(device_id)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Device {device_id} not found",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "/devices/{device_id}/watch",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Take a device off the card refresh cadence",
)
async def unwatch_device(
    device_id: str,
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
) -> Response:
    orchestrator.unwatch_device(device_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
