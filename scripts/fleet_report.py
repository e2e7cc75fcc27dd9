#!/usr/bin/env python3
"""
TRAPWATCH — Fleet Report
Runs one refresh cycle over the steam trap fleet and prints KPIs as JSON

Usage:
    python scripts/fleet_report.py --mode mock --devices 20
    python scripts/fleet_report.py --mode live --tier critical
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from dotenv import load_dotenv  # noqa: E402

load_dotenv()

from api.models.schemas import DeviceSummary, InsightResponse, KpiResponse  # noqa: E402
from common.config import get_settings  # noqa: E402
from common.logging_config import configure_logging  # noqa: E402
from common.models import TierFilter  # noqa: E402
from ingestion.client_factory import create_telemetry_client  # noqa: E402
from streaming.fleet_orchestrator import FleetOrchestrator  # noqa: E402


async def build_report(orchestrator: FleetOrchestrator, tier: TierFilter) -> dict:
    """Load the device set, refresh every device once and assemble the report."""
    await orchestrator.load_devices()
    kpis = await orchestrator.refresh_all()

    devices = [
        DeviceSummary.build(
            device,
            orchestrator.metadata.get(device.device_id),
            orchestrator.snapshot(device.device_id),
            orchestrator.health(device.device_id),
            orchestrator.phase(device.device_id),
        ).model_dump(mode="json")
        for device in orchestrator.filter_devices(tier)
    ]
    return {
        "kpis": KpiResponse.from_kpis(kpis).model_dump(mode="json"),
        "insights": [InsightResponse.from_insight(i).model_dump() for i in orchestrator.insights()],
        "device_types": orchestrator.device_type_counts(),
        "tier": tier.value,
        "devices": devices,
    }


async def main():
    parser = argparse.ArgumentParser(description="TRAPWATCH fleet report")
    parser.add_argument("--mode", choices=["mock", "live"], default=None,
                        help="Telemetry source (defaults to TELEMETRY_MODE)")
    parser.add_argument("--tier", choices=[t.value for t in TierFilter], default="all",
                        help="Only list devices in this tier")
    parser.add_argument("--devices", type=int, default=None,
                        help="Simulated trap count (mock mode)")
    parser.add_argument("--seed", type=int, default=None, help="Simulator seed (mock mode)")
    parser.add_argument("--indent", type=int, default=2)
    args = parser.parse_args()

    overrides = {}
    if args.mode:
        overrides["telemetry_mode"] = args.mode
    if args.devices is not None:
        overrides["simulator_devices"] = args.devices
    if args.seed is not None:
        overrides["simulator_seed"] = args.seed
    settings = get_settings().model_copy(update=overrides)

    # stdout carries the JSON report; logs go to stderr.
    configure_logging(level="WARNING", fmt="text", service_name="fleet-report", stream=sys.stderr)

    client = create_telemetry_client(settings)
    try:
        orchestrator = FleetOrchestrator(client, settings=settings)
        report = await build_report(orchestrator, TierFilter(args.tier))
    finally:
        await client.close()

    print(json.dumps(report, indent=args.indent, default=str))


if __name__ == "__main__":
    asyncio.run(main())
