"""
Health file writer for the monitoring daemon.

Writes a JSON health file after every cycle with:
- last_cycle_ts: ISO timestamp of the most recent finished cycle.
- last_alert_ts: ISO timestamp of the most recent cycle that sent an alert.
- alerts_sent: Alerts sent since the daemon started.
- last_cycle_failures: Isolated station/device failures in the last cycle.
- last_cycle_aborted: Whether the last cycle could not list stations.

Docker HEALTHCHECK or an external probe can read the file to see whether
the loop is alive.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from monitor.src.cycle import CycleReport


class HealthWriter:
    """Writes monitoring daemon health status to a JSON file.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_cycle_ts: str | None = None
        self._last_alert_ts: str | None = None
        self._alerts_sent: int = 0
        self._last_cycle_failures: int = 0
        self._last_cycle_aborted: bool = False

    def record_cycle(self, report: CycleReport) -> None:
        """Record a finished cycle and write the health file."""
        now = datetime.now(tz=UTC).isoformat()
        self._last_cycle_ts = now
        self._last_cycle_failures = report.failures
        self._last_cycle_aborted = False
        if report.alerts_sent:
            self._alerts_sent += report.alerts_sent
            self._last_alert_ts = now
        self._write()

    def record_abort(self) -> None:
        """Record a cycle that failed before reaching any station."""
        self._last_cycle_ts = datetime.now(tz=UTC).isoformat()
        self._last_cycle_aborted = True
        self._write()

    def _write(self) -> None:
        data = {
            "last_cycle_ts": self._last_cycle_ts,
            "last_alert_ts": self._last_alert_ts,
            "alerts_sent": self._alerts_sent,
            "last_cycle_failures": self._last_cycle_failures,
            "last_cycle_aborted": self._last_cycle_aborted,
        }
        self.path.write_text(json.dumps(data))
