"""
Entry points for the monitoring engine.

Two thin adapters over the same MonitoringService:

1. **Daemon** (``monitor-daemon``): runs a cycle, then waits
   MONITOR_INTERVAL_S, until SIGTERM/SIGINT. The shutdown event is also
   passed into the running cycle so it stops between devices.
2. **One-shot** (``monitor-once``): runs exactly one cycle and exits, for
   cron-style schedulers. Exit status 1 when the cycle aborted.

``monitor-api`` serves the HTTP trigger/read API with uvicorn.

Structured JSON logging is used for all events. A HealthWriter, when
HEALTH_PATH is set, records the outcome of every cycle.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from monitor.src.health import HealthWriter

if TYPE_CHECKING:
    from monitor.src.config import MonitorSettings
    from monitor.src.cycle import MonitoringService

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structured JSON logging on stderr for the whole process."""

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    # httpx logs every request at INFO, including token URLs.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _masked_secret(value: str | None) -> str:
    """Return a short non-reversible fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def log_config_summary(settings: MonitorSettings) -> None:
    """Log the effective configuration at startup, with secrets fingerprinted."""
    logger.info(
        "Monitor starting with config: "
        "deye_base_url=%s, deye_app_id=%s, deye_email_set=%s, "
        "deye_password=%s, deye_app_secret=%s, "
        "smtp_host=%s, smtp_port=%s, smtp_password=%s, "
        "llm_provider=%s, monitor_interval_s=%s, alert_cooldown_s=%s, "
        "station_page_size=%s, history_retention_days=%s, storage=%s",
        settings.deye_base_url,
        settings.deye_app_id or "unset",
        bool(settings.deye_email),
        _masked_secret(settings.deye_password),
        _masked_secret(settings.deye_app_secret),
        settings.smtp_host,
        settings.smtp_port,
        _masked_secret(settings.smtp_password),
        settings.llm_provider,
        settings.monitor_interval_s,
        settings.alert_cooldown_s,
        settings.station_page_size,
        settings.history_retention_days,
        settings.storage_path or "memory",
    )


# ---------------------------------------------------------------------------
# Single-iteration function (easily testable)
# ---------------------------------------------------------------------------


async def _cycle_once(
    *,
    service: MonitoringService,
    health: HealthWriter | None,
    stop_event: asyncio.Event | None = None,
) -> bool:
    """Run one monitoring cycle, never raising.

    Returns:
        False if the cycle aborted (station listing failed), True otherwise.
    """
    try:
        report = await service.run_cycle(stop_event)
    except Exception:
        logger.error("Monitoring cycle aborted", exc_info=True)
        if health is not None:
            try:
                health.record_abort()
            except OSError:
                logger.warning("Failed to write health file", exc_info=True)
        return False

    if health is not None and not report.skipped:
        try:
            health.record_cycle(report)
        except OSError:
            logger.warning("Failed to write health file", exc_info=True)
    return True


async def _monitor_loop(
    *,
    service: MonitoringService,
    interval_s: float,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None,
) -> None:
    """Run cycles every interval_s until shutdown_event is set."""
    logger.info("Monitor loop started (interval=%ss)", interval_s)
    while not shutdown_event.is_set():
        await _cycle_once(service=service, health=health, stop_event=shutdown_event)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_s)
    logger.info("Monitor loop stopped")


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Daemon entrypoint: load config, build the service, loop until signalled."""
    configure_logging()

    from monitor.src.config import MonitorSettings
    from monitor.src.cycle import open_service

    settings = MonitorSettings()
    log_config_summary(settings)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: _handle_signal(shutdown_event))

    health = HealthWriter(settings.health_path) if settings.health_path else None

    async with open_service(settings) as service:
        await _monitor_loop(
            service=service,
            interval_s=settings.monitor_interval_s,
            shutdown_event=shutdown_event,
            health=health,
        )
    logger.info("Shutdown complete")


async def async_run_once() -> bool:
    """One-shot entrypoint: run a single cycle and report success."""
    configure_logging()

    from monitor.src.config import MonitorSettings
    from monitor.src.cycle import open_service

    settings = MonitorSettings()
    log_config_summary(settings)
    health = HealthWriter(settings.health_path) if settings.health_path else None

    async with open_service(settings) as service:
        return await _cycle_once(service=service, health=health)


def main() -> None:
    """Synchronous entrypoint for the monitoring daemon."""
    asyncio.run(async_main())


def run_once() -> None:
    """Synchronous entrypoint for a single cron-triggered cycle."""
    ok = asyncio.run(async_run_once())
    sys.exit(0 if ok else 1)


def serve_api() -> None:
    """Serve the monitoring HTTP API."""
    import uvicorn

    configure_logging()
    uvicorn.run("monitor.src.api:app", host="0.0.0.0", port=8000, log_config=None)


if __name__ == "__main__":
    main()
