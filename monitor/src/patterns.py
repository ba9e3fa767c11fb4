"""
Trend and repeat-fault detection over a device's retained history.

Works on the oldest-first list returned by HistoryStore.read(); needs at
least MIN_HISTORY_ENTRIES entries to say anything.

CHANGELOG:
- 2026-10-19: Initial creation
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence

from monitor.src.models import AnomalyEvent, AnomalyType, HistoryEntry, Severity

MIN_HISTORY_ENTRIES: int = 7
RECENT_WINDOW: int = 7
COMPARISON_WINDOW: int = 30
EFFICIENCY_DROP_RATIO: float = 0.9
REPEATED_FAULT_THRESHOLD: int = 3


def _mean_positive(values: list[float | None]) -> float | None:
    # Entries without generation carry no efficiency and are not averaged.
    positive = [v for v in values if v is not None and v > 0]
    if not positive:
        return None
    return sum(positive) / len(positive)


def detect_patterns(
    device_serial: str,
    history: Sequence[HistoryEntry],
) -> list[AnomalyEvent]:
    """Return declining-efficiency and repeated-fault events for one device."""
    if len(history) < MIN_HISTORY_ENTRIES:
        return []

    patterns: list[AnomalyEvent] = []

    recent = _mean_positive([e.efficiency for e in history[-RECENT_WINDOW:]])
    older = _mean_positive(
        [e.efficiency for e in history[-COMPARISON_WINDOW:-RECENT_WINDOW]]
    )
    if recent is not None and older is not None and recent < older * EFFICIENCY_DROP_RATIO:
        patterns.append(
            AnomalyEvent(
                type=AnomalyType.DECLINING_EFFICIENCY,
                severity=Severity.WARNING,
                message=(
                    f"Declining efficiency detected: {recent:.1f}% "
                    f"(was {older:.1f}%)"
                ),
                device_serial=device_serial,
                payload={
                    "recent_efficiency": recent,
                    "previous_efficiency": older,
                    "trend": "down",
                },
            )
        )

    counts = Counter(e.fault_code for e in history if e.fault_code)
    for code, count in counts.items():
        if count >= REPEATED_FAULT_THRESHOLD:
            patterns.append(
                AnomalyEvent(
                    type=AnomalyType.REPEATED_FAULT,
                    severity=Severity.WARNING,
                    message=(
                        f"Fault code {code} has occurred {count} times "
                        "in the retained history"
                    ),
                    device_serial=device_serial,
                    fault_code=code,
                    payload={"count": count},
                )
            )

    return patterns
