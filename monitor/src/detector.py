"""
Stateless threshold rules over a single device sample.

detect_anomalies() is a pure function of (TelemetrySample, StationSample,
hour): no I/O, no clock reads, no smoothing. Rules are evaluated
independently so one sample can raise several anomalies, including two
battery_soc events (device-level and station-level); the dispatcher's
per-type cooldown collapses those.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from monitor.src.models import (
    AnomalyEvent,
    AnomalyType,
    Severity,
    StationSample,
    TelemetrySample,
)

# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------

HIGH_TEMPERATURE_C: float = 80.0
LOW_TEMPERATURE_C: float = -10.0
LOW_SOC_PCT: float = 20.0
LOW_SOH_PCT: float = 80.0
NO_PRODUCTION_W: float = 1.0
CORRELATION_PRODUCTION_RATIO: float = 0.5
CORRELATION_TEMPERATURE_C: float = 60.0


def _is_fault_key(key: str) -> bool:
    lowered = key.lower()
    return "error" in lowered or "fault" in lowered


def _is_temperature_key(key: str) -> bool:
    # "temp" also covers "temperature"
    return "temp" in key.lower()


def _is_soc_key(key: str) -> bool:
    lowered = key.lower()
    return "soc" in lowered or "state_of_charge" in lowered


def _is_soh_key(key: str) -> bool:
    lowered = key.lower()
    return "soh" in lowered or "state_of_health" in lowered


def format_fault_code(value: float) -> str:
    """Render a numeric fault value the way the device reports it (``23``, not ``23.0``)."""
    if value.is_integer():
        return str(int(value))
    return str(value)


def expected_production(capacity_w: float, hour: int) -> float:
    """Rough expected PV output for a local hour of day.

    Peak 10-14h at 80% of capacity, 8-16h at 60%, 6-18h at 30%, otherwise 0.
    """
    if 10 <= hour <= 14:
        factor = 0.8
    elif 8 <= hour <= 16:
        factor = 0.6
    elif 6 <= hour <= 18:
        factor = 0.3
    else:
        factor = 0.0
    return capacity_w * factor


def is_daytime(hour: int) -> bool:
    return 6 <= hour < 18


def extract_fault_code(sample: TelemetrySample) -> str | None:
    """Return the first non-zero fault/error code in the sample, if any."""
    for item in sample.measurements:
        if _is_fault_key(item.key):
            value = item.numeric_value
            if value != 0:
                return format_fault_code(value)
    return None


def detect_anomalies(
    sample: TelemetrySample,
    station: StationSample | None = None,
    *,
    hour: int,
) -> list[AnomalyEvent]:
    """Evaluate every threshold rule against one sample.

    Args:
        sample: The device reading.
        station: Station metrics for the device's station, if fetched.
        hour: Local hour of day (0-23) used by the production rules.

    Returns:
        Anomaly events in rule order: per-measurement rules in measurement
        order first, then the station rules.
    """
    serial = sample.device_serial
    station_id = station.station_id if station is not None else None
    anomalies: list[AnomalyEvent] = []

    for item in sample.measurements:
        value = item.numeric_value
        reading = {"key": item.key, "value": value, "unit": item.unit}

        if _is_fault_key(item.key) and value != 0:
            code = format_fault_code(value)
            anomalies.append(
                AnomalyEvent(
                    type=AnomalyType.FAULT_CODE,
                    severity=Severity.CRITICAL,
                    message=f"Fault code detected: {item.key} = {code}",
                    device_serial=serial,
                    station_id=station_id,
                    fault_code=code,
                    payload={
                        **reading,
                        "device_type": sample.device_type,
                        "device_state": sample.device_state,
                    },
                )
            )

        if _is_temperature_key(item.key):
            if value > HIGH_TEMPERATURE_C:
                anomalies.append(
                    AnomalyEvent(
                        type=AnomalyType.TEMPERATURE,
                        severity=Severity.WARNING,
                        message=f"High temperature detected: {value}°C",
                        device_serial=serial,
                        station_id=station_id,
                        payload={**reading, "direction": "high"},
                    )
                )
            elif value < LOW_TEMPERATURE_C:
                anomalies.append(
                    AnomalyEvent(
                        type=AnomalyType.TEMPERATURE,
                        severity=Severity.WARNING,
                        message=f"Low temperature detected: {value}°C",
                        device_serial=serial,
                        station_id=station_id,
                        payload={**reading, "direction": "low"},
                    )
                )

        if _is_soc_key(item.key) and value < LOW_SOC_PCT:
            anomalies.append(
                AnomalyEvent(
                    type=AnomalyType.BATTERY_SOC,
                    severity=Severity.WARNING,
                    message=f"Low battery SOC: {value}%",
                    device_serial=serial,
                    station_id=station_id,
                    payload=reading,
                )
            )

        if _is_soh_key(item.key) and value < LOW_SOH_PCT:
            anomalies.append(
                AnomalyEvent(
                    type=AnomalyType.BATTERY_SOH,
                    severity=Severity.WARNING,
                    message=f"Battery health degraded: {value}%",
                    device_serial=serial,
                    station_id=station_id,
                    payload=reading,
                )
            )

    if station is None:
        return anomalies

    expected = expected_production(station.installed_capacity_w, hour)
    generation = station.generation_power_w

    if generation is not None and is_daytime(hour) and generation < NO_PRODUCTION_W:
        anomalies.append(
            AnomalyEvent(
                type=AnomalyType.NO_PRODUCTION,
                severity=Severity.WARNING,
                message=(
                    "No power generation detected during daytime. Device is online "
                    f"but generating {generation}W. Expected: {expected}W"
                ),
                device_serial=serial,
                station_id=station_id,
                payload={
                    "expected_production_w": expected,
                    "actual_production_w": generation,
                    "installed_capacity_w": station.installed_capacity_w,
                    "hour": hour,
                },
            )
        )

    if station.battery_soc is not None and station.battery_soc < LOW_SOC_PCT:
        anomalies.append(
            AnomalyEvent(
                type=AnomalyType.BATTERY_SOC,
                severity=Severity.WARNING,
                message=f"Low battery SOC: {station.battery_soc}%",
                device_serial=serial,
                station_id=station_id,
                payload={"station_battery_soc": station.battery_soc},
            )
        )

    if (
        generation is not None
        and expected > 0
        and generation < expected * CORRELATION_PRODUCTION_RATIO
    ):
        temperature = next(
            (m for m in sample.measurements if _is_temperature_key(m.key)),
            None,
        )
        if (
            temperature is not None
            and temperature.numeric_value > CORRELATION_TEMPERATURE_C
        ):
            anomalies.append(
                AnomalyEvent(
                    type=AnomalyType.CORRELATION,
                    severity=Severity.WARNING,
                    message=(
                        f"Low PV production ({generation}W) with high temperature "
                        f"({temperature.numeric_value}°C) - possible shading or "
                        "panel issue"
                    ),
                    device_serial=serial,
                    station_id=station_id,
                    payload={
                        "generation_power_w": generation,
                        "expected_production_w": expected,
                        "temperature": temperature.numeric_value,
                    },
                )
            )

    return anomalies
