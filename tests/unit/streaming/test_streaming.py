"""
TRAPWATCH — Classification, Aggregation and Orchestration Tests

Tests:
  - Status classifier cascade, rule by rule and end to end
  - Fleet KPI aggregation: tier buckets, uptime, efficiency, energy loss
  - Tier filter engine and its agreement with the aggregator
  - Fleet insights and device type composition
  - Fleet orchestrator: device loading, concurrent refresh, last-write-wins,
    subscribers, scheduler cadences and refresh requests

Run offline (no telemetry service):
    pytest tests/unit/streaming/test_streaming.py -v -m "not integration"
"""

from __future__ import annotations

import asyncio
import os
import sys
from datetime import datetime, timezone
from typing import List

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../../..")))

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def _r(sensor: str, value):
    from common.models import SensorReading

    return SensorReading(sensor=sensor, value=value, timestamp=T0)


def _ready(device_id: str, *readings):
    from common.models import DeviceSnapshot, FetchState

    return DeviceSnapshot(
        device_id=device_id,
        readings=tuple(readings),
        fetch_state=FetchState.READY,
        last_success_at=T0,
        fetched_at=T0,
    )


def _failed(device_id: str, error: str = "timeout"):
    from common.models import DeviceSnapshot, FetchState

    return DeviceSnapshot(device_id=device_id, fetch_state=FetchState.FAILED, error=error, fetched_at=T0)


def _temps(inlet, outlet):
    return [_r("Inlet Temperature", inlet), _r("Outlet Temperature", outlet)]


async def _wait_for(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


# ─────────────────────────────────────────────────────────────────────────────
# Status Classifier Tests
# ─────────────────────────────────────────────────────────────────────────────

class TestParseStatusCode:
    """Status sensor value → integer code."""

    @pytest.mark.parametrize("value,expected", [
        (1, 1),
        (9, 9),
        (6.7, 6),
        ("5", 5),
        (" 3 - heavy flooding", 3),
        ("Heavy Leak", None),
        (None, None),
        (True, None),
        (float("nan"), None),
    ])
    def test_parse(self, value, expected):
        from streaming.status_classifier import parse_status_code

        assert parse_status_code(value) == expected


class TestClassifierRules:
    """Each rule of the cascade in isolation."""

    def test_code_match_rule_uses_status_sensor(self):
        from common.models import HealthState
        from streaming.status_classifier import CodeMatchRule

        assert CodeMatchRule().apply([_r("Trap Status", 6)]) is HealthState.CHOKING

    def test_code_match_rule_accepts_condition_and_trap_labels(self):
        from common.models import HealthState
        from streaming.status_classifier import CodeMatchRule

        assert CodeMatchRule().apply([_r("Valve Condition", 5)]) is HealthState.VALVE_CLOSED
        assert CodeMatchRule().apply([_r("trap", "9")]) is HealthState.HEAVY_LEAK

    def test_code_match_rule_ignores_unknown_code(self):
        from streaming.status_classifier import CodeMatchRule

        assert CodeMatchRule().apply([_r("Trap Status", 4)]) is None
        assert CodeMatchRule().apply([_r("Trap Status", 0)]) is None

    def test_code_match_rule_without_status_sensor(self):
        from streaming.status_classifier import CodeMatchRule

        assert CodeMatchRule().apply(_temps(250, 100)) is None

    def test_name_substring_rule_matches_label_case_insensitively(self):
        from common.models import HealthState
        from streaming.status_classifier import NameSubstringRule

        assert NameSubstringRule().apply([_r("Trap Status", "HEAVY FLOODING")]) is HealthState.HEAVY_FLOODING
        assert NameSubstringRule().apply([_r("Status", "valve closed (manual)")]) is HealthState.VALVE_CLOSED

    def test_name_substring_rule_no_label(self):
        from streaming.status_classifier import NameSubstringRule

        assert NameSubstringRule().apply([_r("Trap Status", "degraded")]) is None
        assert NameSubstringRule().apply([_r("Trap Status", None)]) is None

    def test_temperature_rule_normal_above_threshold(self):
        from common.models import HealthState
        from streaming.status_classifier import TemperatureDifferentialRule

        assert TemperatureDifferentialRule().apply(_temps(260, 50)) is HealthState.NORMAL

    def test_temperature_rule_flooding_below_threshold(self):
        from common.models import HealthState
        from streaming.status_classifier import TemperatureDifferentialRule

        assert TemperatureDifferentialRule().apply(_temps(100, 90)) is HealthState.HEAVY_FLOODING

    def test_temperature_rule_thresholds_are_strict(self):
        """Exactly 100 or exactly 20 is not decisive."""
        from streaming.status_classifier import TemperatureDifferentialRule

        rule = TemperatureDifferentialRule()
        assert rule.apply(_temps(200, 100)) is None
        assert rule.apply(_temps(120, 100)) is None

    def test_temperature_rule_accepts_zero_values(self):
        from common.models import HealthState
        from streaming.status_classifier import TemperatureDifferentialRule

        assert TemperatureDifferentialRule().apply(_temps(0, 0)) is HealthState.HEAVY_FLOODING

    def test_temperature_rule_needs_both_numeric(self):
        from streaming.status_classifier import TemperatureDifferentialRule

        rule = TemperatureDifferentialRule()
        assert rule.apply([_r("Inlet Temperature", 250)]) is None
        assert rule.apply(_temps(250, None)) is None
        assert rule.apply(_temps(250, "90")) is None

    def test_default_rule_always_normal(self):
        from common.models import HealthState
        from streaming.status_classifier import DefaultRule

        assert DefaultRule().apply([]) is HealthState.NORMAL


class TestStatusClassifier:
    """End-to-end cascade behaviour."""

    def test_status_one_is_normal(self):
        from common.models import HealthState, SeverityTier
        from streaming.status_classifier import classify

        state = classify([_r("status", 1)])
        assert state is HealthState.NORMAL
        assert state.code == 1
        assert state.tier is SeverityTier.NORMAL

    def test_status_nine_is_heavy_leak(self):
        from common.models import HealthState, SeverityTier
        from streaming.status_classifier import classify

        state = classify([_r("status", 9)])
        assert state is HealthState.HEAVY_LEAK
        assert state.code == 9
        assert state.tier is SeverityTier.CRITICAL

    def test_code_match_beats_temperature(self):
        """A reported Heavy Leak wins over a healthy-looking differential."""
        from common.models import HealthState
        from streaming.status_classifier import StatusClassifier, RuleKind

        readings = _temps(260, 50) + [_r("Trap Status", 9)]
        result = StatusClassifier().explain(readings)
        assert result.state is HealthState.HEAVY_LEAK
        assert result.rule is RuleKind.CODE_MATCH

    def test_text_label_uses_name_substring_rule(self):
        from common.models import HealthState
        from streaming.status_classifier import RuleKind, StatusClassifier

        result = StatusClassifier().explain([_r("Trap Status", "Choking")])
        assert result == (HealthState.CHOKING, RuleKind.NAME_SUBSTRING)

    def test_unknown_code_falls_through_to_temperature(self):
        from common.models import HealthState
        from streaming.status_classifier import RuleKind, StatusClassifier

        result = StatusClassifier().explain([_r("Trap Status", 4)] + _temps(100, 90))
        assert result == (HealthState.HEAVY_FLOODING, RuleKind.TEMPERATURE_DIFFERENTIAL)

    def test_inconclusive_differential_defaults_to_normal(self):
        from common.models import HealthState
        from streaming.status_classifier import RuleKind, StatusClassifier

        result = StatusClassifier().explain(_temps(200, 150))
        assert result == (HealthState.NORMAL, RuleKind.DEFAULT)

    def test_empty_readings_default_to_normal(self):
        from common.models import HealthState
        from streaming.status_classifier import classify

        assert classify([]) is HealthState.NORMAL

    def test_classification_is_deterministic(self):
        from streaming.status_classifier import classify

        readings = [_r("Trap Status", "3")] + _temps(180, 175)
        assert len({classify(readings) for _ in range(20)}) == 1

    def test_custom_thresholds(self):
        from common.models import HealthState
        from streaming.status_classifier import StatusClassifier

        classifier = StatusClassifier(normal_differential=50, flooding_differential=10)
        assert classifier.classify(_temps(160, 100)) is HealthState.NORMAL
        assert classifier.classify(_temps(105, 100)) is HealthState.HEAVY_FLOODING

    def test_inverted_thresholds_rejected(self):
        from streaming.status_classifier import StatusClassifier

        with pytest.raises(ValueError):
            StatusClassifier(normal_differential=10, flooding_differential=50)

    def test_from_settings(self):
        from common.config import Settings
        from common.models import HealthState
        from streaming.status_classifier import StatusClassifier

        classifier = StatusClassifier.from_settings(
            Settings(heuristic_normal_differential=60, heuristic_flooding_differential=30)
        )
        assert classifier.classify(_temps(170, 100)) is HealthState.NORMAL

    def test_cascade_order(self):
        from streaming.status_classifier import RuleKind, StatusClassifier

        assert [rule.kind for rule in StatusClassifier().cascade] == [
            RuleKind.CODE_MATCH,
            RuleKind.NAME_SUBSTRING,
            RuleKind.TEMPERATURE_DIFFERENTIAL,
            RuleKind.DEFAULT,
        ]


# ─────────────────────────────────────────────────────────────────────────────
# KPI Aggregator Tests
# ─────────────────────────────────────────────────────────────────────────────

class TestKpiAggregator:
    """Fleet-level indicator computation."""

    def _mixed_fleet(self):
        from common.models import DeviceSnapshot

        return {
            "N1": _ready("N1", _r("Trap Status", 1), *_temps(260, 110)),
            "L1": _ready("L1", _r("Trap Status", 9), *_temps(250, 240)),
            "F1": _ready("F1", _r("Trap Status", 3)),
            "E1": _ready("E1"),
            "X1": _failed("X1"),
            "P1": DeviceSnapshot.pending("P1"),
        }

    def test_status_counts(self):
        from streaming.kpi_aggregator import aggregate

        counts = aggregate(self._mixed_fleet(), now=T0).status_counts
        assert (counts.normal, counts.warning, counts.critical, counts.offline) == (1, 1, 1, 3)

    def test_counts_sum_to_total(self):
        from streaming.kpi_aggregator import aggregate

        kpis = aggregate(self._mixed_fleet(), now=T0)
        assert kpis.status_counts.total() == kpis.total_devices == 6

    def test_uptime_counts_successful_fetches_including_empty(self):
        from streaming.kpi_aggregator import aggregate

        kpis = aggregate(self._mixed_fleet(), now=T0)
        assert kpis.online_devices == 4
        assert kpis.pending_devices == 1
        assert kpis.uptime == pytest.approx(4 / 6 * 100)

    def test_efficiency_is_share_of_normal(self):
        from streaming.kpi_aggregator import aggregate

        assert aggregate(self._mixed_fleet(), now=T0).efficiency == pytest.approx(1 / 6 * 100)

    def test_energy_loss_heavy_leak(self):
        from streaming.kpi_aggregator import aggregate

        kpis = aggregate([_ready("L1", _r("status", 9))], now=T0)
        assert kpis.estimated_energy_loss == pytest.approx(15.0)

    def test_energy_loss_choking_plus_leak(self):
        from streaming.kpi_aggregator import aggregate

        kpis = aggregate([_ready("C1", _r("status", 6)), _ready("L1", _r("status", 9))], now=T0)
        assert kpis.estimated_energy_loss == pytest.approx(25.0)

    def test_avg_temp_differential_only_over_devices_with_temperatures(self):
        from streaming.kpi_aggregator import aggregate

        kpis = aggregate(self._mixed_fleet(), now=T0)
        assert kpis.avg_temp_differential == pytest.approx((150 + 10) / 2)

    def test_empty_readings_do_not_affect_differential(self):
        from streaming.kpi_aggregator import aggregate

        with_empty = aggregate([_ready("A", *_temps(260, 60)), _ready("B")], now=T0)
        without = aggregate([_ready("A", *_temps(260, 60))], now=T0)
        assert with_empty.status_counts.offline == 1
        assert with_empty.avg_temp_differential == without.avg_temp_differential == pytest.approx(200)

    def test_zero_devices(self):
        from streaming.kpi_aggregator import aggregate

        kpis = aggregate({}, now=T0)
        assert kpis.total_devices == 0
        assert kpis.efficiency == 0
        assert kpis.uptime == 0
        assert kpis.estimated_energy_loss == 0
        assert kpis.avg_temp_differential == 0
        assert kpis.computed_at == T0

    def test_device_tier_without_snapshot_is_offline(self):
        from common.models import SeverityTier
        from streaming.kpi_aggregator import device_tier

        assert device_tier(None) is SeverityTier.OFFLINE

    def test_health_of_no_data_is_unknown(self):
        from common.models import HealthState
        from streaming.kpi_aggregator import KpiAggregator

        aggregator = KpiAggregator()
        assert aggregator.health(_ready("E1")) is HealthState.UNKNOWN
        assert aggregator.health(_failed("X1")) is HealthState.UNKNOWN

    def test_energy_loss_from_settings(self):
        from common.config import Settings
        from streaming.kpi_aggregator import KpiAggregator

        aggregator = KpiAggregator.from_settings(Settings(energy_loss_heavy_leak=22.5))
        kpis = aggregator.aggregate([_ready("L1", _r("status", 9))], now=T0)
        assert kpis.estimated_energy_loss == pytest.approx(22.5)


# ─────────────────────────────────────────────────────────────────────────────
# Filter Engine Tests
# ─────────────────────────────────────────────────────────────────────────────

class TestFilterEngine:
    """Tier selection over the device table."""

    def _fleet(self):
        from common.models import Device

        devices = [Device(device_id=d, type_id="STEAM_TRAP3") for d in ("N1", "L1", "F1", "E1", "X1", "Z1")]
        snapshots = TestKpiAggregator()._mixed_fleet()
        return devices, snapshots

    def test_all_returns_full_list_in_order(self):
        from streaming.filter_engine import filter_devices

        devices, snapshots = self._fleet()
        result = filter_devices(devices, snapshots, "all")
        assert result == devices
        assert result is not devices

    def test_critical(self):
        from streaming.filter_engine import filter_devices

        devices, snapshots = self._fleet()
        assert [d.device_id for d in filter_devices(devices, snapshots, "critical")] == ["L1"]

    def test_device_without_snapshot_only_offline(self):
        from streaming.filter_engine import filter_devices

        devices, snapshots = self._fleet()
        offline = [d.device_id for d in filter_devices(devices, snapshots, "offline")]
        assert offline == ["E1", "X1", "Z1"]
        for tier in ("normal", "warning", "critical"):
            assert "Z1" not in [d.device_id for d in filter_devices(devices, snapshots, tier)]

    def test_unknown_tier_raises(self):
        from streaming.filter_engine import filter_devices

        devices, snapshots = self._fleet()
        with pytest.raises(ValueError):
            filter_devices(devices, snapshots, "broken")

    def test_filter_agrees_with_aggregator_counts(self):
        from common.models import SeverityTier
        from streaming.filter_engine import filter_devices
        from streaming.kpi_aggregator import aggregate

        devices, snapshots = self._fleet()
        snapshots = {d.device_id: snapshots.get(d.device_id) for d in devices if d.device_id in snapshots}
        devices = [d for d in devices if d.device_id in snapshots]
        counts = aggregate(snapshots, now=T0).status_counts
        for tier in SeverityTier:
            assert len(filter_devices(devices, snapshots, tier.value)) == counts.for_tier(tier)


# ─────────────────────────────────────────────────────────────────────────────
# Insights / composition
# ─────────────────────────────────────────────────────────────────────────────

class TestFleetInsights:
    def _kpis(self, **kwargs):
        from common.models import FleetKPIs, StatusCounts

        counts = kwargs.pop("counts", StatusCounts())
        return FleetKPIs(status_counts=counts, computed_at=T0, **kwargs)

    def test_struggling_fleet(self):
        from common.models import StatusCounts
        from streaming.kpi_aggregator import fleet_insights

        kpis = self._kpis(
            total_devices=4,
            counts=StatusCounts(normal=2, critical=2),
            efficiency=50.0,
            estimated_energy_loss=25.0,
            avg_temp_differential=30.0,
        )
        codes = [i.code for i in fleet_insights(kpis)]
        assert codes == ["critical_traps", "high_energy_loss", "low_efficiency", "low_temp_differential"]
        assert fleet_insights(kpis)[0].message.startswith("2 trap(s)")

    def test_healthy_fleet(self):
        from streaming.kpi_aggregator import fleet_insights

        kpis = self._kpis(total_devices=10, efficiency=95.0, avg_temp_differential=120.0)
        insights = fleet_insights(kpis)
        assert [(i.code, i.severity) for i in insights] == [("excellent_performance", "positive")]

    def test_between_bands_no_insight(self):
        from streaming.kpi_aggregator import fleet_insights

        kpis = self._kpis(total_devices=10, efficiency=85.0, avg_temp_differential=120.0)
        assert fleet_insights(kpis) == []


class TestDeviceTypeCounts:
    def test_prefers_metadata_type_name(self):
        from common.models import Device, DeviceMetadata
        from streaming.kpi_aggregator import device_type_counts

        devices = [
            Device(device_id="A", type_id="STEAM_TRAP3"),
            Device(device_id="B", type_id="STEAM_TRAP3"),
            Device(device_id="C", type_id="SteamTrap_V2"),
            Device(device_id="D"),
        ]
        metadata = {"A": DeviceMetadata(device_id="A", type_name="Steam Trap")}
        assert device_type_counts(devices, metadata) == {
            "Steam Trap": 1,
            "STEAM_TRAP3": 1,
            "SteamTrap_V2": 1,
            "Unknown": 1,
        }


# ─────────────────────────────────────────────────────────────────────────────
# Fleet Orchestrator Tests
# ─────────────────────────────────────────────────────────────────────────────

def _orchestrator_settings(**overrides):
    from common.config import Settings

    values = {"fleet_refresh_interval_seconds": 3600, "card_refresh_interval_seconds": 3600}
    values.update(overrides)
    return Settings(**values)


def _counting_simulator(**kwargs):
    """Simulator that records every datapoint request per device."""
    from ingestion.telemetry_simulator import SimulatedTelemetryClient

    class CountingSimulator(SimulatedTelemetryClient):
        def __init__(self, **kw):
            super().__init__(**kw)
            self.calls: dict = {}

        async def get_latest_readings(self, device_id, *args, **kw):
            self.calls[device_id] = self.calls.get(device_id, 0) + 1
            return await super().get_latest_readings(device_id, *args, **kw)

    return CountingSimulator(**kwargs)


def _gated_client(responses: List[list]):
    """Client whose datapoint requests block until the test releases them."""
    from common.models import Device
    from ingestion.telemetry_client import TelemetryClient

    class GatedClient(TelemetryClient):
        def __init__(self):
            self.responses = list(responses)
            self.gates: List[asyncio.Event] = []

        async def list_devices(self):
            return [Device(device_id="ST-1", type_id="STEAM_TRAP3")]

        async def get_metadata(self, device_id):
            return None

        async def get_latest_readings(self, device_id, *args, **kwargs):
            readings = self.responses.pop(0)
            gate = asyncio.Event()
            self.gates.append(gate)
            await gate.wait()
            return readings

    return GatedClient()


class TestFleetOrchestratorLoading:
    """Building the working set of steam traps."""

    def test_load_devices_keeps_confirmed_traps(self):
        from common.models import FetchState
        from ingestion.telemetry_simulator import SimulatedTelemetryClient
        from streaming.fleet_orchestrator import FleetOrchestrator

        orch = FleetOrchestrator(SimulatedTelemetryClient(devices=6), settings=_orchestrator_settings())
        devices = asyncio.run(orch.load_devices())

        assert [d.device_id for d in devices] == [f"ST-{i:04d}" for i in range(1, 7)]
        assert set(orch.metadata) == {d.device_id for d in devices}
        assert all(s.fetch_state is FetchState.PENDING for s in orch.snapshots.values())
        assert orch.kpis.pending_devices == 6
        assert orch.kpis.status_counts.offline == 6

    def test_allow_list_restricts_devices(self):
        from ingestion.telemetry_simulator import SimulatedTelemetryClient
        from streaming.fleet_orchestrator import FleetOrchestrator

        settings = _orchestrator_settings(fleet_device_ids="ST-0002, ST-0004,AUX-0001")
        orch = FleetOrchestrator(SimulatedTelemetryClient(devices=6), settings=settings)
        devices = asyncio.run(orch.load_devices())
        assert [d.device_id for d in devices] == ["ST-0002", "ST-0004"]

    def test_metadata_failure_treated_as_absent(self):
        from unittest.mock import AsyncMock

        from common.models import Device
        from streaming.fleet_orchestrator import FleetOrchestrator

        client = AsyncMock()
        client.list_devices.return_value = [
            Device(device_id="ST-1", type_id="STEAM_TRAP3"),
            Device(device_id="ST-2", type_id="STEAM_TRAP3"),
        ]
        client.get_metadata.side_effect = RuntimeError("metadata service down")

        orch = FleetOrchestrator(client, settings=_orchestrator_settings())
        devices = asyncio.run(orch.load_devices())
        assert [d.device_id for d in devices] == ["ST-1", "ST-2"]
        assert dict(orch.metadata) == {}

    def test_list_failure_propagates(self):
        from unittest.mock import AsyncMock

        from ingestion.telemetry_client import TelemetryUnavailable
        from streaming.fleet_orchestrator import FleetOrchestrator

        client = AsyncMock()
        client.list_devices.side_effect = TelemetryUnavailable("down")
        orch = FleetOrchestrator(client, settings=_orchestrator_settings())
        with pytest.raises(TelemetryUnavailable):
            asyncio.run(orch.load_devices())
        assert orch.devices_loaded is False

    def test_snapshots_view_is_read_only(self):
        from ingestion.telemetry_simulator import SimulatedTelemetryClient
        from streaming.fleet_orchestrator import FleetOrchestrator

        orch = FleetOrchestrator(SimulatedTelemetryClient(devices=2), settings=_orchestrator_settings())
        asyncio.run(orch.load_devices())
        with pytest.raises(TypeError):
            orch.snapshots["ST-0001"] = None  # type: ignore[index]


class TestFleetOrchestratorRefresh:
    """Concurrent refresh cycles and KPI publication."""

    def test_refresh_all_classifies_every_device(self):
        from common.models import DevicePhase, FetchState, HealthState
        from ingestion.telemetry_simulator import SimulatedTelemetryClient
        from streaming.fleet_orchestrator import FleetOrchestrator

        client = SimulatedTelemetryClient(devices=12, seed=42)
        orch = FleetOrchestrator(client, settings=_orchestrator_settings())

        async def scenario():
            await orch.load_devices()
            return await orch.refresh_all()

        kpis = asyncio.run(scenario())

        assert kpis.total_devices == 12
        assert kpis.pending_devices == 0
        assert kpis.status_counts.total() == 12
        assert all(s.fetch_state is FetchState.READY for s in orch.snapshots.values())
        # ST-0011 never reports: online but no data
        assert orch.health("ST-0011") is HealthState.UNKNOWN
        assert orch.phase("ST-0011") is DevicePhase.READY
        assert kpis.online_devices == 12

    def test_one_failing_device_does_not_break_cycle(self):
        from common.models import DevicePhase, FetchState
        from ingestion.telemetry_client import TelemetryUnavailable
        from ingestion.telemetry_simulator import SimulatedTelemetryClient
        from streaming.fleet_orchestrator import FleetOrchestrator

        class FlakySimulator(SimulatedTelemetryClient):
            async def get_latest_readings(self, device_id, *args, **kwargs):
                if device_id == "ST-0002":
                    raise TelemetryUnavailable("read timeout")
                return await super().get_latest_readings(device_id, *args, **kwargs)

        orch = FleetOrchestrator(FlakySimulator(devices=3), settings=_orchestrator_settings())

        async def scenario():
            await orch.load_devices()
            return await orch.refresh_all()

        kpis = asyncio.run(scenario())
        assert orch.snapshot("ST-0002").fetch_state is FetchState.FAILED
        assert orch.snapshot("ST-0002").error == "read timeout"
        assert orch.phase("ST-0002") is DevicePhase.FAILED
        assert orch.phase("ST-0001") is DevicePhase.READY
        assert kpis.online_devices == 2
        assert kpis.status_counts.offline >= 1

    def test_aggregator_and_filter_agree(self):
        from common.models import SeverityTier
        from ingestion.telemetry_simulator import SimulatedTelemetryClient
        from streaming.fleet_orchestrator import FleetOrchestrator

        orch = FleetOrchestrator(
            SimulatedTelemetryClient(devices=30, seed=5, failure_rate=0.2),
            settings=_orchestrator_settings(),
        )

        async def scenario():
            await orch.load_devices()
            return await orch.refresh_all()

        kpis = asyncio.run(scenario())
        for tier in SeverityTier:
            assert len(orch.filter_devices(tier.value)) == kpis.status_counts.for_tier(tier)
        assert orch.filter_devices("all") == orch.devices

    def test_forced_fault_shows_up_after_refresh(self):
        from common.models import HealthState
        from ingestion.telemetry_simulator import SimulatedTelemetryClient
        from streaming.fleet_orchestrator import FleetOrchestrator

        client = SimulatedTelemetryClient(devices=3)
        orch = FleetOrchestrator(client, settings=_orchestrator_settings())

        async def scenario():
            await orch.load_devices()
            client.set_fault("ST-0001", HealthState.HEAVY_LEAK)
            await orch.refresh_device("ST-0001")

        asyncio.run(scenario())
        assert orch.health("ST-0001") is HealthState.HEAVY_LEAK
        assert orch.kpis.estimated_energy_loss >= 15.0

    def test_refresh_unknown_device_raises(self):
        from ingestion.telemetry_simulator import SimulatedTelemetryClient
        from streaming.fleet_orchestrator import FleetOrchestrator

        orch = FleetOrchestrator(SimulatedTelemetryClient(devices=1), settings=_orchestrator_settings())
        with pytest.raises(KeyError):
            asyncio.run(orch.refresh_device("ST-9999"))

    def test_last_completed_fetch_wins(self):
        """Overlapping fetches of one device: the later completion is kept."""
        from common.models import DevicePhase, HealthState
        from streaming.fleet_orchestrator import FleetOrchestrator

        client = _gated_client([[_r("Trap Status", 9)], [_r("Trap Status", 1)]])
        orch = FleetOrchestrator(client, settings=_orchestrator_settings())

        async def scenario():
            await orch.load_devices()
            first = asyncio.create_task(orch.refresh_device("ST-1"))
            second = asyncio.create_task(orch.refresh_device("ST-1"))
            await _wait_for(lambda: len(client.gates) == 2)
            assert orch.phase("ST-1") is DevicePhase.FETCHING

            client.gates[1].set()
            await second
            assert orch.health("ST-1") is HealthState.NORMAL
            assert orch.phase("ST-1") is DevicePhase.FETCHING

            client.gates[0].set()
            await first

        asyncio.run(scenario())
        assert orch.health("ST-1") is HealthState.HEAVY_LEAK
        assert orch.phase("ST-1") is DevicePhase.READY

    def test_subscribers_notified_and_isolated(self):
        from ingestion.telemetry_simulator import SimulatedTelemetryClient
        from streaming.fleet_orchestrator import FleetOrchestrator

        orch = FleetOrchestrator(SimulatedTelemetryClient(devices=2), settings=_orchestrator_settings())
        received = []

        def broken(kpis):
            raise RuntimeError("subscriber bug")

        async def async_listener(kpis):
            received.append(("async", kpis.total_devices))

        orch.subscribe(broken)
        orch.subscribe(lambda kpis: received.append(("sync", kpis.total_devices)))
        unsubscribe = orch.subscribe(async_listener)

        async def scenario():
            await orch.load_devices()
            await orch.refresh_all()
            unsubscribe()
            await orch.refresh_all()

        asyncio.run(scenario())
        assert received == [("sync", 2), ("async", 2), ("sync", 2)]

    def test_reload_keeps_existing_snapshots(self):
        from common.models import FetchState
        from ingestion.telemetry_simulator import SimulatedTelemetryClient
        from streaming.fleet_orchestrator import FleetOrchestrator

        orch = FleetOrchestrator(SimulatedTelemetryClient(devices=2), settings=_orchestrator_settings())

        async def scenario():
            await orch.load_devices()
            await orch.refresh_all()
            await orch.load_devices()

        asyncio.run(scenario())
        assert all(s.fetch_state is FetchState.READY for s in orch.snapshots.values())

    def test_insights_and_device_types(self):
        from ingestion.telemetry_simulator import SimulatedTelemetryClient
        from streaming.fleet_orchestrator import FleetOrchestrator

        orch = FleetOrchestrator(SimulatedTelemetryClient(devices=4), settings=_orchestrator_settings())

        async def scenario():
            await orch.load_devices()
            await orch.refresh_all()

        asyncio.run(scenario())
        assert orch.device_type_counts() == {"Steam Trap": 4}
        assert isinstance(orch.insights(), list)


class TestFleetOrchestratorScheduler:
    """Single scheduling task serving both cadences and refresh requests."""

    def test_start_runs_initial_fleet_cycle(self):
        from ingestion.telemetry_simulator import SimulatedTelemetryClient
        from streaming.fleet_orchestrator import FleetOrchestrator

        orch = FleetOrchestrator(SimulatedTelemetryClient(devices=3), settings=_orchestrator_settings())

        async def scenario():
            await orch.start()
            assert orch.running
            await _wait_for(lambda: orch.devices_loaded and orch.kpis.pending_devices == 0)
            await orch.stop()

        asyncio.run(scenario())
        assert orch.running is False
        assert orch.kpis.total_devices == 3

    def test_request_refresh_triggers_cycle(self):
        from common.models import HealthState
        from streaming.fleet_orchestrator import FleetOrchestrator

        client = _counting_simulator(devices=2)
        orch = FleetOrchestrator(client, settings=_orchestrator_settings())

        async def scenario():
            await orch.start()
            await _wait_for(lambda: client.calls.get("ST-0001") == 1)
            client.set_fault("ST-0001", HealthState.CHOKING)
            orch.request_refresh()
            await _wait_for(lambda: orch.health("ST-0001") is HealthState.CHOKING)
            await orch.stop()

        asyncio.run(scenario())
        assert client.calls["ST-0001"] == 2

    def test_card_cadence_refreshes_only_watched_devices(self):
        from streaming.fleet_orchestrator import FleetOrchestrator

        client = _counting_simulator(devices=2)
        orch = FleetOrchestrator(client, settings=_orchestrator_settings(card_refresh_interval_seconds=0.02))

        async def scenario():
            await orch.load_devices()
            orch.watch_device("ST-0001")
            await orch.start()
            await _wait_for(lambda: client.calls.get("ST-0001", 0) >= 4)
            await orch.stop()

        asyncio.run(scenario())
        assert client.calls["ST-0002"] == 1

    def test_scheduler_retries_failed_device_load(self):
        from ingestion.telemetry_client import TelemetryUnavailable
        from ingestion.telemetry_simulator import SimulatedTelemetryClient
        from streaming.fleet_orchestrator import FleetOrchestrator

        class SlowStartSimulator(SimulatedTelemetryClient):
            attempts = 0

            async def list_devices(self):
                SlowStartSimulator.attempts += 1
                if SlowStartSimulator.attempts < 3:
                    raise TelemetryUnavailable("registry warming up")
                return await super().list_devices()

        orch = FleetOrchestrator(
            SlowStartSimulator(devices=2),
            settings=_orchestrator_settings(fleet_refresh_interval_seconds=0.02),
        )

        async def scenario():
            await orch.start()
            await _wait_for(lambda: orch.devices_loaded)
            await orch.stop()

        asyncio.run(scenario())
        assert SlowStartSimulator.attempts >= 3

    def test_watch_unknown_device_raises(self):
        from ingestion.telemetry_simulator import SimulatedTelemetryClient
        from streaming.fleet_orchestrator import FleetOrchestrator

        orch = FleetOrchestrator(SimulatedTelemetryClient(devices=1), settings=_orchestrator_settings())
        with pytest.raises(KeyError):
            orch.watch_device("ST-0001")
