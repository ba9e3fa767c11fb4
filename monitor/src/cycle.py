"""
One monitoring sweep over every station and device of the Deye account.

MonitoringService owns all mutable engine state (token cache via the API
client, baselines, history, explanation cache, alert log) and runs cycles:

    idle -> fetching_stations -> fetching_device_batch -> detecting
         -> explaining -> dispatching -> updating_history -> idle

looping per device, then per station. Failures are isolated: a broken
station, device batch, device, explanation or alert is logged and the sweep
moves on. Only a failure to list the first page of stations aborts the
cycle. Cycles are serialized; a trigger that arrives while one is running is
skipped. A stop event is honoured between devices and stations.

CHANGELOG:
- 2026-10-19: Initial creation
- 2026-10-19: Skip stations without an id; cooldown lookup failures no longer
  stop the device pipeline

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from monitor.src.alerts import AlertDispatcher
from monitor.src.baseline import BaselineStore
from monitor.src.cloud_api import MAX_DEVICES_PER_BATCH, CloudApiClient
from monitor.src.detector import detect_anomalies, extract_fault_code
from monitor.src.errors import MonitorError
from monitor.src.explanations import ExplanationCache
from monitor.src.history import HistoryStore, build_history_entry
from monitor.src.llm import LlmAdvisor
from monitor.src.mailer import SmtpMailer
from monitor.src.models import (
    AnomalyEvent,
    AnomalyType,
    ExplanationRecord,
    Recommendation,
    SentAlert,
    Severity,
    StationSample,
    TelemetrySample,
)
from monitor.src.patterns import detect_patterns
from monitor.src.storage import build_storage

if TYPE_CHECKING:
    from monitor.src.config import MonitorSettings
    from monitor.src.storage import Storage

logger = logging.getLogger(__name__)


def _local_now() -> datetime:
    return datetime.now().astimezone()


class CycleState(StrEnum):
    IDLE = "idle"
    FETCHING_STATIONS = "fetching_stations"
    FETCHING_DEVICE_BATCH = "fetching_device_batch"
    DETECTING = "detecting"
    EXPLAINING = "explaining"
    DISPATCHING = "dispatching"
    UPDATING_HISTORY = "updating_history"


@dataclass
class CycleReport:
    """Counters describing one cycle run."""

    started_at: datetime
    finished_at: datetime | None = None
    stations: int = 0
    devices: int = 0
    anomalies: int = 0
    alerts_sent: int = 0
    failures: int = 0
    cancelled: bool = False
    skipped: bool = False

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


def chunked(items: Sequence[str], size: int) -> list[list[str]]:
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


class MonitoringService:
    """Aggregate that runs monitoring cycles and answers read queries.

    Args:
        api: Deye cloud client.
        storage: Persistence backend shared by the stores below.
        baselines: Per-device baseline store.
        history: Per-device history store.
        explanations: Global fault explanation cache.
        advisor: LLM advisor for non-fault recommendations.
        dispatcher: Alert dispatcher.
        page_size: Stations requested per listing page.
        clock: Returns the current aware local datetime; its hour drives
            the expected-production rules.
    """

    def __init__(
        self,
        *,
        api: CloudApiClient,
        storage: Storage,
        baselines: BaselineStore,
        history: HistoryStore,
        explanations: ExplanationCache,
        advisor: LlmAdvisor,
        dispatcher: AlertDispatcher,
        page_size: int = 50,
        clock: Callable[[], datetime] = _local_now,
    ) -> None:
        self._api = api
        self._storage = storage
        self._baselines = baselines
        self._history = history
        self._explanations = explanations
        self._advisor = advisor
        self._dispatcher = dispatcher
        self._page_size = page_size
        self._clock = clock
        self._lock = asyncio.Lock()
        self._state = CycleState.IDLE
        self.last_report: CycleReport | None = None

    @classmethod
    def create(
        cls,
        settings: MonitorSettings,
        *,
        storage: Storage,
        api: CloudApiClient,
        advisor: LlmAdvisor,
        mailer: SmtpMailer | None = None,
        clock: Callable[[], datetime] = _local_now,
    ) -> MonitoringService:
        """Wire the stores and dispatcher around shared collaborators."""
        return cls(
            api=api,
            storage=storage,
            baselines=BaselineStore(storage),
            history=HistoryStore(storage, retention_days=settings.history_retention_days),
            explanations=ExplanationCache(storage, advisor),
            advisor=advisor,
            dispatcher=AlertDispatcher(
                storage,
                mailer or SmtpMailer.from_settings(settings),
                recipient_email=settings.effective_recipient,
                cooldown_s=settings.alert_cooldown_s,
            ),
            page_size=settings.station_page_size,
            clock=clock,
        )

    @property
    def state(self) -> CycleState:
        return self._state

    @property
    def running(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def recent_alerts(self, limit: int = 100) -> list[SentAlert]:
        """Most recent sent alerts, newest first."""
        return await self._storage.recent_alerts(limit)

    async def known_explanations(self) -> list[ExplanationRecord]:
        return await self._explanations.all()

    async def send_test_alert(
        self,
        device_serial: str,
        *,
        alert_type: AnomalyType = AnomalyType.FAULT_CODE,
        recipient_email: str | None = None,
    ) -> bool:
        """Send a diagnostic alert, ignoring the cooldown."""
        event = AnomalyEvent(
            type=alert_type,
            severity=Severity.INFO,
            message="Test alert from the monitoring system",
            device_serial=device_serial,
            payload={"test": True},
        )
        return await self._dispatcher.dispatch(
            event,
            bypass_cooldown=True,
            recipient_email=recipient_email,
        )

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, stop_event: asyncio.Event | None = None) -> CycleReport:
        """Run one full sweep, or skip if a sweep is already in flight.

        Raises:
            MonitorError: The station list could not be fetched at all.
        """
        if self._lock.locked():
            now = self._clock()
            logger.warning("Monitoring cycle already running, skipping trigger")
            return CycleReport(started_at=now, finished_at=now, skipped=True)

        async with self._lock:
            report = CycleReport(started_at=self._clock())
            logger.info("Starting monitoring cycle")
            try:
                await self._purge_history()
                self._state = CycleState.FETCHING_STATIONS
                stations = await self._fetch_stations()
                report.stations = len(stations)

                for station in stations:
                    if self._should_stop(stop_event, report):
                        break
                    try:
                        await self._process_station(station, report, stop_event)
                    except Exception:
                        report.failures += 1
                        logger.error(
                            "Error monitoring station %s", station.get("id"), exc_info=True
                        )
            finally:
                self._state = CycleState.IDLE
                report.finished_at = self._clock()
                self.last_report = report

            logger.info(
                "Monitoring cycle completed: stations=%d devices=%d anomalies=%d "
                "alerts_sent=%d failures=%d cancelled=%s",
                report.stations,
                report.devices,
                report.anomalies,
                report.alerts_sent,
                report.failures,
                report.cancelled,
            )
            return report

    @staticmethod
    def _should_stop(stop_event: asyncio.Event | None, report: CycleReport) -> bool:
        if stop_event is not None and stop_event.is_set():
            if not report.cancelled:
                logger.info("Stop requested, ending monitoring cycle early")
            report.cancelled = True
            return True
        return False

    async def _purge_history(self) -> None:
        try:
            await self._history.purge()
        except Exception:
            logger.warning("History purge failed", exc_info=True)

    async def _fetch_stations(self) -> list[dict[str, Any]]:
        stations: list[dict[str, Any]] = []
        page = 1
        while True:
            try:
                batch = await self._api.list_stations(page=page, size=self._page_size)
            except MonitorError:
                if page == 1:
                    raise
                logger.error(
                    "Error fetching station page %d, continuing with %d station(s)",
                    page,
                    len(stations),
                    exc_info=True,
                )
                break
            if not batch:
                break
            stations.extend(batch)
            if len(batch) < self._page_size:
                break
            page += 1
        return stations

    async def _process_station(
        self,
        station: dict[str, Any],
        report: CycleReport,
        stop_event: asyncio.Event | None,
    ) -> None:
        station_id = station.get("id")
        if station_id is None:
            logger.warning("Station entry without id, skipping: %s", station.get("name"))
            return
        serials = [
            str(item["deviceSn"])
            for item in station.get("deviceListItems") or []
            if item.get("deviceSn")
        ]
        if not serials:
            logger.debug("Station %s has no devices", station_id)
            return

        self._state = CycleState.FETCHING_DEVICE_BATCH
        latest = await self._api.station_latest(station_id)
        station_sample = StationSample.from_api(station_id, latest)

        for batch in chunked(serials, MAX_DEVICES_PER_BATCH):
            if self._should_stop(stop_event, report):
                return
            self._state = CycleState.FETCHING_DEVICE_BATCH
            try:
                items = await self._api.device_latest(batch)
            except MonitorError:
                report.failures += 1
                logger.error(
                    "Error fetching device batch for station %s", station_id, exc_info=True
                )
                continue

            for item in items:
                if self._should_stop(stop_event, report):
                    return
                report.devices += 1
                try:
                    sample = TelemetrySample.from_api(item, received_at=self._clock())
                    await self._process_device(sample, station_sample, report)
                except Exception:
                    report.failures += 1
                    logger.error(
                        "Error monitoring device %s", item.get("deviceSn"), exc_info=True
                    )

    async def _process_device(
        self,
        sample: TelemetrySample,
        station: StationSample,
        report: CycleReport,
    ) -> None:
        now = self._clock()

        self._state = CycleState.DETECTING
        anomalies = detect_anomalies(sample, station, hour=now.hour)
        if anomalies:
            logger.info(
                "Detected %d anomaly(ies) for device %s", len(anomalies), sample.device_serial
            )
        report.anomalies += len(anomalies)

        for event in anomalies:
            if await self._cooldown_active(event):
                logger.debug(
                    "Cooldown active for %s - %s, not explaining",
                    event.device_serial,
                    event.type.value,
                )
                continue
            self._state = CycleState.EXPLAINING
            recommendation = await self._explain(event, sample)
            self._state = CycleState.DISPATCHING
            if await self._dispatch_safely(event, recommendation):
                report.alerts_sent += 1

        self._state = CycleState.UPDATING_HISTORY
        await self._baselines.observe(sample, station)

        self._state = CycleState.DETECTING
        patterns = detect_patterns(
            sample.device_serial, await self._history.read(sample.device_serial)
        )
        report.anomalies += len(patterns)
        for event in patterns:
            self._state = CycleState.DISPATCHING
            if await self._dispatch_safely(event, None):
                report.alerts_sent += 1

        self._state = CycleState.UPDATING_HISTORY
        await self._history.append(
            build_history_entry(
                sample,
                station,
                fault_code=extract_fault_code(sample),
                timestamp=now,
            )
        )

    async def _explain(
        self,
        event: AnomalyEvent,
        sample: TelemetrySample,
    ) -> ExplanationRecord | Recommendation | None:
        try:
            if event.type is AnomalyType.FAULT_CODE and event.fault_code:
                return await self._explanations.get_or_explain(
                    event.fault_code, sample.model_dump(mode="json")
                )
            return await self._advisor.recommend(
                event.type.value,
                {
                    "message": event.message,
                    "device_serial": event.device_serial,
                    "station_id": event.station_id,
                    "data": event.payload,
                },
            )
        except Exception:
            logger.warning(
                "Could not explain %s for device %s",
                event.type.value,
                event.device_serial,
                exc_info=True,
            )
            return None

    async def _cooldown_active(self, event: AnomalyEvent) -> bool:
        try:
            return await self._dispatcher.in_cooldown(event)
        except Exception:
            logger.warning(
                "Cooldown lookup failed for %s - %s, leaving it to dispatch",
                event.device_serial,
                event.type.value,
                exc_info=True,
            )
            return False

    async def _dispatch_safely(
        self,
        event: AnomalyEvent,
        recommendation: ExplanationRecord | Recommendation | None,
    ) -> bool:
        try:
            return await self._dispatcher.dispatch(event, recommendation)
        except Exception:
            logger.error(
                "Alert dispatch failed for %s - %s",
                event.device_serial,
                event.type.value,
                exc_info=True,
            )
            return False


@asynccontextmanager
async def open_service(settings: MonitorSettings) -> AsyncIterator[MonitoringService]:
    """Build a MonitoringService from settings and close its resources on exit."""
    storage = build_storage(settings.storage_path or None)
    async with storage:
        api = CloudApiClient.from_settings(settings)
        advisor = LlmAdvisor.from_settings(settings)
        try:
            yield MonitoringService.create(
                settings, storage=storage, api=api, advisor=advisor
            )
        finally:
            await api.aclose()
            await advisor.aclose()
