"""
Persistence backends for baselines, history, explanations and the alert log.

Two interchangeable implementations of the Storage protocol:

- MemoryStorage: process-local dicts and lists. The default; state is lost
  on restart but the engine behaves identically otherwise.
- SqliteStorage: async SQLite (aiosqlite) in WAL mode, one table per
  entity, models stored as JSON payloads. Timestamps are stored as epoch
  seconds (REAL) so range filters compare numerically.

Both support the async context manager protocol.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

import aiosqlite

from monitor.src.models import (
    AnomalyType,
    Baseline,
    ExplanationRecord,
    HistoryEntry,
    SentAlert,
)


def _epoch(ts: datetime) -> float:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.timestamp()


class Storage(Protocol):
    """What the monitoring engine needs from a persistence backend."""

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def get_baseline(self, device_serial: str) -> Baseline | None: ...

    async def put_baseline(self, device_serial: str, baseline: Baseline) -> None: ...

    async def append_history(self, entry: HistoryEntry) -> None: ...

    async def read_history(
        self, device_serial: str, since: datetime
    ) -> list[HistoryEntry]: ...

    async def purge_history(self, before: datetime) -> int: ...

    async def get_explanation(self, fault_code: str) -> ExplanationRecord | None: ...

    async def insert_explanation(
        self, record: ExplanationRecord
    ) -> ExplanationRecord: ...

    async def list_explanations(self) -> list[ExplanationRecord]: ...

    async def append_alert(self, alert: SentAlert) -> None: ...

    async def trim_alerts(self, keep: int) -> None: ...

    async def recent_alerts(self, limit: int) -> list[SentAlert]: ...

    async def has_alert_since(
        self, device_serial: str, alert_type: AnomalyType, since: datetime
    ) -> bool: ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemoryStorage:
    """Process-local storage used when no database is configured."""

    def __init__(self) -> None:
        self._baselines: dict[str, Baseline] = {}
        self._history: dict[str, list[HistoryEntry]] = {}
        self._explanations: dict[str, ExplanationRecord] = {}
        self._alerts: list[SentAlert] = []

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> MemoryStorage:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    async def get_baseline(self, device_serial: str) -> Baseline | None:
        baseline = self._baselines.get(device_serial)
        return baseline.model_copy() if baseline is not None else None

    async def put_baseline(self, device_serial: str, baseline: Baseline) -> None:
        self._baselines[device_serial] = baseline.model_copy()

    async def append_history(self, entry: HistoryEntry) -> None:
        self._history.setdefault(entry.device_serial, []).append(entry)

    async def read_history(self, device_serial: str, since: datetime) -> list[HistoryEntry]:
        cutoff = _epoch(since)
        return [
            e
            for e in self._history.get(device_serial, [])
            if _epoch(e.timestamp) > cutoff
        ]

    async def purge_history(self, before: datetime) -> int:
        cutoff = _epoch(before)
        removed = 0
        for serial, entries in self._history.items():
            kept = [e for e in entries if _epoch(e.timestamp) > cutoff]
            removed += len(entries) - len(kept)
            self._history[serial] = kept
        return removed

    async def get_explanation(self, fault_code: str) -> ExplanationRecord | None:
        return self._explanations.get(fault_code)

    async def insert_explanation(self, record: ExplanationRecord) -> ExplanationRecord:
        return self._explanations.setdefault(record.fault_code, record)

    async def list_explanations(self) -> list[ExplanationRecord]:
        return [self._explanations[code] for code in sorted(self._explanations)]

    async def append_alert(self, alert: SentAlert) -> None:
        self._alerts.append(alert)

    async def trim_alerts(self, keep: int) -> None:
        if len(self._alerts) > keep:
            self._alerts = self._alerts[-keep:] if keep > 0 else []

    async def recent_alerts(self, limit: int) -> list[SentAlert]:
        if limit < 1:
            return []
        return list(reversed(self._alerts[-limit:]))

    async def has_alert_since(
        self, device_serial: str, alert_type: AnomalyType, since: datetime
    ) -> bool:
        cutoff = _epoch(since)
        return any(
            a.device_serial == device_serial
            and a.type == alert_type
            and _epoch(a.sent_at) > cutoff
            for a in self._alerts
        )


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS baselines (
    device_serial TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE TABLE IF NOT EXISTS history (
    rowid INTEGER PRIMARY KEY AUTOINCREMENT,
    device_serial TEXT NOT NULL,
    ts REAL NOT NULL,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS history_device_ts ON history (device_serial, ts);
CREATE TABLE IF NOT EXISTS explanations (
    fault_code TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE TABLE IF NOT EXISTS alerts (
    rowid INTEGER PRIMARY KEY AUTOINCREMENT,
    device_serial TEXT NOT NULL,
    type TEXT NOT NULL,
    sent_at REAL NOT NULL,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS alerts_device_type ON alerts (device_serial, type, sent_at);
"""


class SqliteStorage:
    """Durable storage backed by a SQLite database file.

    Args:
        path: Filesystem path for the SQLite database file.

    Usage::

        async with SqliteStorage("/data/monitor.db") as storage:
            await storage.append_history(entry)
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the connection, enable WAL and create missing tables."""
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SqliteStorage:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def _conn(self) -> aiosqlite.Connection:
        assert self._db is not None, "Storage not opened. Call open() or use async with."
        return self._db

    # -- baselines --

    async def get_baseline(self, device_serial: str) -> Baseline | None:
        cursor = await self._conn.execute(
            "SELECT payload FROM baselines WHERE device_serial = ?;",
            (device_serial,),
        )
        row = await cursor.fetchone()
        return Baseline.model_validate_json(row[0]) if row else None

    async def put_baseline(self, device_serial: str, baseline: Baseline) -> None:
        await self._conn.execute(
            "INSERT INTO baselines (device_serial, payload) VALUES (?, ?) "
            "ON CONFLICT(device_serial) DO UPDATE SET "
            "payload = excluded.payload, updated_at = datetime('now');",
            (device_serial, baseline.model_dump_json()),
        )
        await self._conn.commit()

    # -- history --

    async def append_history(self, entry: HistoryEntry) -> None:
        await self._conn.execute(
            "INSERT INTO history (device_serial, ts, payload) VALUES (?, ?, ?);",
            (entry.device_serial, _epoch(entry.timestamp), entry.model_dump_json()),
        )
        await self._conn.commit()

    async def read_history(self, device_serial: str, since: datetime) -> list[HistoryEntry]:
        cursor = await self._conn.execute(
            "SELECT payload FROM history WHERE device_serial = ? AND ts > ? "
            "ORDER BY ts ASC, rowid ASC;",
            (device_serial, _epoch(since)),
        )
        rows = await cursor.fetchall()
        return [HistoryEntry.model_validate_json(row[0]) for row in rows]

    async def purge_history(self, before: datetime) -> int:
        cursor = await self._conn.execute(
            "DELETE FROM history WHERE ts <= ?;",
            (_epoch(before),),
        )
        await self._conn.commit()
        return cursor.rowcount

    # -- explanations --

    async def get_explanation(self, fault_code: str) -> ExplanationRecord | None:
        cursor = await self._conn.execute(
            "SELECT payload FROM explanations WHERE fault_code = ?;",
            (fault_code,),
        )
        row = await cursor.fetchone()
        return ExplanationRecord.model_validate_json(row[0]) if row else None

    async def insert_explanation(self, record: ExplanationRecord) -> ExplanationRecord:
        await self._conn.execute(
            "INSERT OR IGNORE INTO explanations (fault_code, payload) VALUES (?, ?);",
            (record.fault_code, record.model_dump_json()),
        )
        await self._conn.commit()
        stored = await self.get_explanation(record.fault_code)
        return stored if stored is not None else record

    async def list_explanations(self) -> list[ExplanationRecord]:
        cursor = await self._conn.execute(
            "SELECT payload FROM explanations ORDER BY fault_code ASC;"
        )
        rows = await cursor.fetchall()
        return [ExplanationRecord.model_validate_json(row[0]) for row in rows]

    # -- alerts --

    async def append_alert(self, alert: SentAlert) -> None:
        await self._conn.execute(
            "INSERT INTO alerts (device_serial, type, sent_at, payload) "
            "VALUES (?, ?, ?, ?);",
            (
                alert.device_serial,
                alert.type.value,
                _epoch(alert.sent_at),
                alert.model_dump_json(),
            ),
        )
        await self._conn.commit()

    async def trim_alerts(self, keep: int) -> None:
        await self._conn.execute(
            "DELETE FROM alerts WHERE rowid NOT IN "
            "(SELECT rowid FROM alerts ORDER BY rowid DESC LIMIT ?);",
            (max(keep, 0),),
        )
        await self._conn.commit()

    async def recent_alerts(self, limit: int) -> list[SentAlert]:
        if limit < 1:
            return []
        cursor = await self._conn.execute(
            "SELECT payload FROM alerts ORDER BY rowid DESC LIMIT ?;",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [SentAlert.model_validate_json(row[0]) for row in rows]

    async def has_alert_since(
        self, device_serial: str, alert_type: AnomalyType, since: datetime
    ) -> bool:
        cursor = await self._conn.execute(
            "SELECT 1 FROM alerts WHERE device_serial = ? AND type = ? "
            "AND sent_at > ? LIMIT 1;",
            (device_serial, alert_type.value, _epoch(since)),
        )
        return await cursor.fetchone() is not None


def build_storage(path: str | None) -> MemoryStorage | SqliteStorage:
    """Pick the SQLite backend when a path is configured, memory otherwise."""
    if path:
        return SqliteStorage(path)
    return MemoryStorage()
