"""TRAPWATCH — Telemetry client selection (mock simulator or live HTTP service)."""

from __future__ import annotations

import logging
from typing import Optional

from common.config import Settings, get_settings
from ingestion.telemetry_client import HttpTelemetryClient, TelemetryClient
from ingestion.telemetry_simulator import SimulatedTelemetryClient

log = logging.getLogger(__name__)


def create_telemetry_client(settings: Optional[Settings] = None) -> TelemetryClient:
    """
    Build the telemetry collaborator for the configured mode.

    TELEMETRY_MODE=mock → SimulatedTelemetryClient (no network)
    TELEMETRY_MODE=live → HttpTelemetryClient against TELEMETRY_BASE_URL
    """
    settings = settings or get_settings()
    if settings.telemetry_mode == "live":
        log.info("Telemetry mode: live (%s)", settings.telemetry_base_url)
        return HttpTelemetryClient(settings=settings)

    log.info("Telemetry mode: mock (simulated plant of %d traps)", settings.simulator_devices)
    return SimulatedTelemetryClient(
        devices=settings.simulator_devices,
        seed=settings.simulator_seed,
        failure_rate=settings.simulator_failure_rate,
    )
