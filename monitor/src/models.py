"""
Pydantic models for Deye telemetry, anomalies, explanations and alerts.

TelemetrySample and StationSample are built from Deye cloud API payloads via
their ``from_api`` constructors, which translate the camelCase wire fields
into the snake_case attributes used everywhere else. Samples, history entries
and anomaly events are frozen: nothing mutates them after creation.

CHANGELOG:
- 2026-10-19: Initial creation
- 2026-10-19: Non-finite wire values parse as 0 (or missing)

TODO:
- None
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_CAPACITY_W: float = 5000.0
"""Installed capacity assumed when a station does not report one."""


def _to_float(value: object) -> float:
    """Parse a wire value as float; junk, missing and non-finite values give 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        result = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    return result if math.isfinite(result) else 0.0


def _optional_float(value: object) -> float | None:
    if value is None:
        return None
    try:
        result = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


class Severity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AnomalyType(StrEnum):
    FAULT_CODE = "fault_code"
    TEMPERATURE = "temperature"
    BATTERY_SOC = "battery_soc"
    BATTERY_SOH = "battery_soh"
    NO_PRODUCTION = "no_production"
    CORRELATION = "correlation"
    DECLINING_EFFICIENCY = "declining_efficiency"
    REPEATED_FAULT = "repeated_fault"


class Measurement(BaseModel):
    """One ``{key, value, unit}`` item of a device's ``dataList``."""

    model_config = ConfigDict(frozen=True)

    key: str
    value: str | float | None = None
    unit: str | None = None

    @property
    def numeric_value(self) -> float:
        return _to_float(self.value)


class TelemetrySample(BaseModel):
    """A single device reading as returned by ``/v1.0/device/latest``.

    Attributes:
        device_serial: Deye device serial number (``deviceSn``).
        device_type: Device category, e.g. ``INVERTER`` or ``BATTERY``.
        device_state: Reported online state code.
        measurements: Ordered measurement items, in API order.
        timestamp: Collection time reported by the cloud, or receipt time.
    """

    model_config = ConfigDict(frozen=True)

    device_serial: str
    device_type: str | None = None
    device_state: int | str | None = None
    measurements: list[Measurement] = Field(default_factory=list)
    timestamp: datetime

    @classmethod
    def from_api(
        cls,
        item: dict[str, Any],
        *,
        received_at: datetime | None = None,
    ) -> TelemetrySample:
        """Build a sample from one ``deviceDataList`` entry."""
        collected = item.get("collectionTime")
        if isinstance(collected, int | float) and collected > 0:
            ts = datetime.fromtimestamp(collected, tz=UTC)
        else:
            ts = received_at or datetime.now(tz=UTC)
        return cls(
            device_serial=str(item.get("deviceSn") or "unknown"),
            device_type=item.get("deviceType"),
            device_state=item.get("deviceState"),
            measurements=[
                Measurement(
                    key=str(entry.get("key", "")),
                    value=entry.get("value"),
                    unit=entry.get("unit"),
                )
                for entry in item.get("dataList") or []
            ],
            timestamp=ts,
        )


class StationSample(BaseModel):
    """Aggregate station metrics from ``/v1.0/station/latest``."""

    model_config = ConfigDict(frozen=True)

    station_id: str
    generation_power_w: float | None = None
    consumption_power_w: float | None = None
    battery_soc: float | None = None
    installed_capacity_w: float = DEFAULT_CAPACITY_W

    @classmethod
    def from_api(cls, station_id: object, data: dict[str, Any]) -> StationSample:
        capacity = _optional_float(data.get("installedCapacity"))
        return cls(
            station_id=str(station_id),
            generation_power_w=_optional_float(data.get("generationPower")),
            consumption_power_w=_optional_float(data.get("consumptionPower")),
            battery_soc=_optional_float(data.get("batterySOC")),
            installed_capacity_w=capacity or DEFAULT_CAPACITY_W,
        )


class Baseline(BaseModel):
    """Slowly adapting per-device averages."""

    voltage: float = 230.0
    frequency: float = 50.0
    temperature: float = 25.0
    production: float = 0.0


class HistoryEntry(BaseModel):
    """One per-device, per-cycle snapshot kept for trend detection."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    device_serial: str
    device_type: str | None = None
    device_state: int | str | None = None
    station_id: str | None = None
    measurements: list[Measurement] = Field(default_factory=list)
    generation_power: float | None = None
    consumption_power: float | None = None
    battery_soc: float | None = None
    efficiency: float | None = None
    fault_code: str | None = None


class AnomalyEvent(BaseModel):
    """A detector finding, waiting to be explained and dispatched."""

    model_config = ConfigDict(frozen=True)

    type: AnomalyType
    severity: Severity
    message: str
    device_serial: str
    station_id: str | None = None
    fault_code: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class ExplanationRecord(BaseModel):
    """Structured explanation of a device fault code."""

    fault_code: str
    name: str
    severity: Severity = Severity.WARNING
    cause: str = "Unknown"
    explanation: str = ""
    troubleshooting_steps: list[str] = Field(default_factory=list)
    requires_onsite: bool = True
    owner_can_fix: bool = False


class Recommendation(BaseModel):
    """Structured advice for a non-fault anomaly."""

    issue: str
    explanation: str
    possible_causes: list[str] = Field(default_factory=list)
    recommended_actions: list[str] = Field(default_factory=list)
    severity: Severity = Severity.WARNING
    owner_can_fix: bool = False
    requires_onsite: bool = True


class SentAlert(AnomalyEvent):
    """An anomaly event that was emailed, as kept in the alert log."""

    recommendation: ExplanationRecord | Recommendation | None = None
    recipient_email: str
    sent_at: datetime
