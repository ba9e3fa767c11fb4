"""
Append-only per-device history with a rolling retention window.

Entries are written once per device per cycle and never modified. Reads
only return entries newer than ``now - retention``, so an expired entry
disappears from reads even before purge() physically removes it.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from monitor.src.models import HistoryEntry, StationSample, TelemetrySample

if TYPE_CHECKING:
    from monitor.src.storage import Storage

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS: int = 30


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def build_history_entry(
    sample: TelemetrySample,
    station: StationSample | None,
    *,
    fault_code: str | None,
    timestamp: datetime,
) -> HistoryEntry:
    """Snapshot a sample and its station metrics into a HistoryEntry.

    Efficiency is generation as a percentage of installed capacity, and is
    left empty when the station reports no generation at all.
    """
    generation = station.generation_power_w if station is not None else None
    efficiency = None
    if station is not None and generation:
        efficiency = generation / station.installed_capacity_w * 100
    return HistoryEntry(
        timestamp=timestamp,
        device_serial=sample.device_serial,
        device_type=sample.device_type,
        device_state=sample.device_state,
        station_id=station.station_id if station is not None else None,
        measurements=list(sample.measurements),
        generation_power=generation,
        consumption_power=station.consumption_power_w if station is not None else None,
        battery_soc=station.battery_soc if station is not None else None,
        efficiency=efficiency,
        fault_code=fault_code,
    )


class HistoryStore:
    """Retention-aware view over the history table of a Storage backend.

    Args:
        storage: Persistence backend.
        retention_days: Entries older than this are invisible and purgeable.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        storage: Storage,
        *,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._storage = storage
        self._retention = timedelta(days=retention_days)
        self._clock = clock

    def cutoff(self) -> datetime:
        return self._clock() - self._retention

    async def append(self, entry: HistoryEntry) -> None:
        await self._storage.append_history(entry)

    async def read(self, device_serial: str) -> list[HistoryEntry]:
        """Return the device's retained entries, oldest first."""
        return await self._storage.read_history(device_serial, self.cutoff())

    async def purge(self) -> int:
        removed = await self._storage.purge_history(self.cutoff())
        if removed:
            logger.info("Purged %d history entries older than %s", removed, self._retention)
        return removed
