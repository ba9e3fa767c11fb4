"""
Per-device exponential moving averages of voltage, frequency, temperature
and production.

Each observation moves a tracked metric 10% of the way toward the sampled
value (``new = old * 0.9 + sample * 0.1``). Baselines are created lazily
with defaults on first observation and are only ever overwritten. They are
informational: no detector rule reads them as a threshold.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from monitor.src.models import Baseline, StationSample, TelemetrySample

if TYPE_CHECKING:
    from monitor.src.storage import Storage

SMOOTHING_FACTOR: float = 0.1


def smooth(old: float, sample: float, factor: float = SMOOTHING_FACTOR) -> float:
    return old * (1 - factor) + sample * factor


def update_baseline(
    baseline: Baseline,
    sample: TelemetrySample,
    station: StationSample | None = None,
) -> Baseline:
    """Return a new Baseline with every matching measurement folded in.

    Battery voltages are excluded from the grid voltage average.
    """
    updated = baseline.model_copy()
    for item in sample.measurements:
        key = item.key.lower()
        value = item.numeric_value
        if "voltage" in key and "battery" not in key:
            updated.voltage = smooth(updated.voltage, value)
        if "freq" in key:
            updated.frequency = smooth(updated.frequency, value)
        if "temp" in key:
            updated.temperature = smooth(updated.temperature, value)
    if station is not None and station.generation_power_w is not None:
        updated.production = smooth(updated.production, station.generation_power_w)
    return updated


class BaselineStore:
    """Reads and folds samples into per-device baselines held in storage."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def get(self, device_serial: str) -> Baseline:
        """Return the device's baseline, or the defaults if never observed."""
        baseline = await self._storage.get_baseline(device_serial)
        return baseline if baseline is not None else Baseline()

    async def observe(
        self,
        sample: TelemetrySample,
        station: StationSample | None = None,
    ) -> Baseline:
        baseline = update_baseline(await self.get(sample.device_serial), sample, station)
        await self._storage.put_baseline(sample.device_serial, baseline)
        return baseline
