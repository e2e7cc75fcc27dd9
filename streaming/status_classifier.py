"""
TRAPWATCH — Steam Trap Status Classifier

Maps the latest sensor readings of a trap to a HealthState with an ordered
cascade of rules. The first rule that produces a state wins:

  1. code_match                A status/condition/trap sensor reports a known status code
  2. name_substring            ...or a text value containing a known status label
  3. temperature_differential  Inlet − outlet temperature: > 100°C Normal, < 20°C Heavy Flooding
  4. default                   Normal (no evidence of a fault)

Each rule is a small frozen object with an apply() method, so the cascade can
be inspected and unit-tested rule by rule. Classification is pure and total:
it never raises and identical readings always classify identically.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, List, NamedTuple, Optional, Sequence

from common.config import Settings
from common.models import HealthState, ReadingValue, SensorReading


STATUS_LABEL_KEYWORDS = ("status", "condition", "trap")

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


class RuleKind(str, Enum):
    """Kinds of rule in the classification cascade."""

    CODE_MATCH = "code_match"
    NAME_SUBSTRING = "name_substring"
    TEMPERATURE_DIFFERENTIAL = "temperature_differential"
    DEFAULT = "default"


class Classification(NamedTuple):
    """A health state and the rule that produced it."""

    state: HealthState
    rule: RuleKind


# ─────────────────────────────────────────────────────────────────────────────
# Reading lookup helpers
# ─────────────────────────────────────────────────────────────────────────────


def find_reading(readings: Sequence[SensorReading], *keywords: str) -> Optional[SensorReading]:
    """Return the first reading whose label contains every keyword (case-insensitive)."""
    for reading in readings:
        label = (reading.sensor or "").lower()
        if all(k in label for k in keywords):
            return reading
    return None


def find_status_reading(readings: Sequence[SensorReading]) -> Optional[SensorReading]:
    """Return the first reading labelled like a status sensor."""
    for reading in readings:
        label = (reading.sensor or "").lower()
        if any(k in label for k in STATUS_LABEL_KEYWORDS):
            return reading
    return None


def parse_status_code(value: ReadingValue) -> Optional[int]:
    """
    Interpret a status sensor value as an integer code.

    Numbers are truncated; text is parsed from its leading integer
    ('9', ' 6 - choking' → 6). Returns None when no integer can be read.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    match = _LEADING_INT.match(str(value))
    return int(match.group(1)) if match else None


def temperature_differential(readings: Sequence[SensorReading]) -> Optional[float]:
    """
    Inlet minus outlet temperature, or None unless both are finite numbers.

    Uses the first reading labelled inlet+temp and the first labelled outlet+temp.
    """
    inlet = find_reading(readings, "inlet", "temp")
    outlet = find_reading(readings, "outlet", "temp")
    if inlet is None or outlet is None:
        return None
    inlet_value, outlet_value = inlet.numeric_value, outlet.numeric_value
    if inlet_value is None or outlet_value is None:
        return None
    return inlet_value - outlet_value


# ─────────────────────────────────────────────────────────────────────────────
# Rules
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CodeMatchRule:
    """Status sensor value parses as a known status code."""

    kind: ClassVar[RuleKind] = RuleKind.CODE_MATCH

    def apply(self, readings: Sequence[SensorReading]) -> Optional[HealthState]:
        status = find_status_reading(readings)
        if status is None:
            return None
        code = parse_status_code(status.value)
        if code is None:
            return None
        return HealthState.from_code(code)


@dataclass(frozen=True)
class NameSubstringRule:
    """Status sensor text contains a known status label."""

    kind: ClassVar[RuleKind] = RuleKind.NAME_SUBSTRING

    def apply(self, readings: Sequence[SensorReading]) -> Optional[HealthState]:
        status = find_status_reading(readings)
        if status is None or status.value is None:
            return None
        text = str(status.value).lower()
        for state in HealthState.known():
            if state.label.lower() in text:
                return state
        return None


@dataclass(frozen=True)
class TemperatureDifferentialRule:
    """
    Heuristic on inlet − outlet temperature.

    Args:
        normal_above:   Differential (°C) above which the trap is Normal.
        flooding_below: Differential (°C) below which the trap is Heavy Flooding.
    """

    normal_above: float = 100.0
    flooding_below: float = 20.0

    kind: ClassVar[RuleKind] = RuleKind.TEMPERATURE_DIFFERENTIAL

    def apply(self, readings: Sequence[SensorReading]) -> Optional[HealthState]:
        diff = temperature_differential(readings)
        if diff is None:
            return None
        if diff > self.normal_above:
            return HealthState.NORMAL
        if diff < self.flooding_below:
            return HealthState.HEAVY_FLOODING
        return None


@dataclass(frozen=True)
class DefaultRule:
    """Fallback: no evidence of a fault."""

    kind: ClassVar[RuleKind] = RuleKind.DEFAULT

    def apply(self, readings: Sequence[SensorReading]) -> Optional[HealthState]:
        return HealthState.NORMAL


# ─────────────────────────────────────────────────────────────────────────────
# Classifier
# ─────────────────────────────────────────────────────────────────────────────


class StatusClassifier:
    """
    Evaluates the rule cascade against a reading set.

    Args:
        normal_differential:   Threshold for the temperature heuristic's Normal verdict.
        flooding_differential: Threshold for the temperature heuristic's Heavy Flooding verdict.
    """

    def __init__(
        self,
        normal_differential: float = 100.0,
        flooding_differential: float = 20.0,
    ) -> None:
        if flooding_differential > normal_differential:
            raise ValueError(
                f"flooding_differential ({flooding_differential}) must not exceed "
                f"normal_differential ({normal_differential})"
            )
        self._cascade = (
            CodeMatchRule(),
            NameSubstringRule(),
            TemperatureDifferentialRule(
                normal_above=normal_differential,
                flooding_below=flooding_differential,
            ),
            DefaultRule(),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "StatusClassifier":
        return cls(
            normal_differential=settings.heuristic_normal_differential,
            flooding_differential=settings.heuristic_flooding_differential,
        )

    @property
    def cascade(self) -> List[object]:
        """The rules in evaluation order."""
        return list(self._cascade)

    def explain(self, readings: Sequence[SensorReading]) -> Classification:
        """
        Classify readings and report which rule decided.

        Args:
            readings: Latest readings of one device (may be empty).

        Returns:
            Classification(state, rule kind).
        """
        for rule in self._cascade:
            state = rule.apply(readings)
            if state is not None:
                return Classification(state, rule.kind)
        # DefaultRule always matches; kept for type checkers.
        return Classification(HealthState.NORMAL, RuleKind.DEFAULT)

    def classify(self, readings: Sequence[SensorReading]) -> HealthState:
        """Return the HealthState for a reading set."""
        return self.explain(readings).state


_default_classifier = StatusClassifier()


def classify(readings: Sequence[SensorReading]) -> HealthState:
    """Classify with the default thresholds."""
    return _default_classifier.classify(readings)
