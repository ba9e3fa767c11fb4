"""
Cooldown-aware alert dispatch.

dispatch() suppresses an event when an alert of the same type was sent for
the same device within the cooldown window, otherwise renders an HTML email,
sends it and appends a SentAlert to the log (trimmed to the newest
ALERT_LOG_LIMIT entries). The log doubles as the cooldown index.

Missing mail credentials raise ConfigurationError. Transport failures are
logged and reported as ``False``; they never propagate.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import html
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from monitor.src.errors import ConfigurationError, TransientIOError
from monitor.src.models import (
    AnomalyEvent,
    ExplanationRecord,
    Recommendation,
    SentAlert,
    Severity,
)

if TYPE_CHECKING:
    from monitor.src.mailer import SmtpMailer
    from monitor.src.storage import Storage

logger = logging.getLogger(__name__)

ALERT_LOG_LIMIT: int = 1000
DEFAULT_COOLDOWN_S: int = 3600

_CRITICAL_COLOR = "#dc2626"
_WARNING_COLOR = "#f59e0b"


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def render_subject(event: AnomalyEvent) -> str:
    pretty_type = event.type.value.replace("_", " ").upper()
    device = event.device_serial or "SOLAR SYSTEM"
    if event.severity is Severity.CRITICAL:
        return f"[CRITICAL / URGENT] {pretty_type} - {device}"
    return f"[{event.severity.value.upper()}] {pretty_type} - {device}"


def _items(values: list[str], tag: str) -> str:
    inner = "".join(f"<li>{html.escape(v)}</li>" for v in values)
    return f"<{tag}>{inner}</{tag}>"


def _yes_no(flag: bool) -> str:
    return "Yes" if flag else "No"


def _render_explanation(record: ExplanationRecord) -> str:
    e = html.escape
    return (
        '<div style="background-color: #eff6ff; padding: 20px; border-radius: 8px;">'
        "<h3>AI Fault Explanation</h3>"
        f"<p><strong>Fault Code:</strong> {e(record.fault_code)}</p>"
        f"<p><strong>Name:</strong> {e(record.name)}</p>"
        f"<p><strong>Severity:</strong> {e(record.severity.value)}</p>"
        f"<p><strong>Cause:</strong> {e(record.cause)}</p>"
        f"<p><strong>Explanation:</strong> {e(record.explanation)}</p>"
        "<h4>Troubleshooting Steps:</h4>"
        f"{_items(record.troubleshooting_steps, 'ol')}"
        f"<p><strong>Requires Onsite Visit:</strong> {_yes_no(record.requires_onsite)}</p>"
        f"<p><strong>Owner Can Fix:</strong> {_yes_no(record.owner_can_fix)}</p>"
        "</div>"
    )


def _render_recommendation(rec: Recommendation) -> str:
    e = html.escape
    parts = [
        '<div style="background-color: #eff6ff; padding: 20px; border-radius: 8px;">',
        "<h3>AI Recommendation</h3>",
        f"<p><strong>Explanation:</strong> {e(rec.explanation)}</p>",
    ]
    if rec.possible_causes:
        parts.append("<h4>Possible Causes:</h4>" + _items(rec.possible_causes, "ul"))
    if rec.recommended_actions:
        parts.append(
            "<h4>Recommended Actions:</h4>" + _items(rec.recommended_actions, "ol")
        )
    parts.extend(
        [
            f"<p><strong>Severity:</strong> {e(rec.severity.value)}</p>",
            f"<p><strong>Owner Can Fix:</strong> {_yes_no(rec.owner_can_fix)}</p>",
            f"<p><strong>Requires Onsite Visit:</strong> {_yes_no(rec.requires_onsite)}</p>",
            "</div>",
        ]
    )
    return "".join(parts)


def render_html(
    event: AnomalyEvent,
    recommendation: ExplanationRecord | Recommendation | None,
    sent_at: datetime,
) -> str:
    """Render the alert email body. All interpolated values are escaped."""
    e = html.escape
    critical = event.severity is Severity.CRITICAL
    color = _CRITICAL_COLOR if critical else _WARNING_COLOR
    heading = "Critical Alert" if critical else f"{event.severity.value.title()} Alert"

    body = [
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">',
        f'<h2 style="color: {color};">{heading}</h2>',
        '<div style="background-color: #f9fafb; padding: 20px; border-radius: 8px;">',
        "<h3>Alert Details</h3>",
        f"<p><strong>Type:</strong> {e(event.type.value)}</p>",
        f"<p><strong>Severity:</strong> {e(event.severity.value)}</p>",
        f"<p><strong>Device:</strong> {e(event.device_serial or 'Unknown')}</p>",
    ]
    if event.station_id:
        body.append(f"<p><strong>Station:</strong> {e(event.station_id)}</p>")
    body.extend(
        [
            f"<p><strong>Message:</strong> {e(event.message)}</p>",
            f"<p><strong>Time:</strong> {sent_at.strftime('%Y-%m-%d %H:%M:%S %Z')}</p>",
            "</div>",
        ]
    )

    if isinstance(recommendation, ExplanationRecord):
        body.append(_render_explanation(recommendation))
    elif isinstance(recommendation, Recommendation):
        body.append(_render_recommendation(recommendation))

    body.append(
        '<div style="margin-top: 30px; color: #6b7280; font-size: 12px;">'
        "<p>This is an automated alert from the solar AI monitoring system.</p>"
        "</div></div>"
    )
    return "".join(body)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class AlertDispatcher:
    """Deduplicates, sends and records alerts.

    Args:
        storage: Backend holding the SentAlert log.
        mailer: Transport with ``ensure_configured()`` and async ``send()``.
        recipient_email: Default recipient.
        cooldown_s: Per (device, type) suppression window in seconds.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        storage: Storage,
        mailer: SmtpMailer,
        *,
        recipient_email: str,
        cooldown_s: int = DEFAULT_COOLDOWN_S,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._storage = storage
        self._mailer = mailer
        self._recipient_email = recipient_email
        self._cooldown = timedelta(seconds=cooldown_s)
        self._clock = clock

    async def in_cooldown(self, event: AnomalyEvent) -> bool:
        since = self._clock() - self._cooldown
        return await self._storage.has_alert_since(event.device_serial, event.type, since)

    async def dispatch(
        self,
        event: AnomalyEvent,
        recommendation: ExplanationRecord | Recommendation | None = None,
        *,
        bypass_cooldown: bool = False,
        recipient_email: str | None = None,
    ) -> bool:
        """Send an alert for *event* unless it is in cooldown.

        Args:
            event: The anomaly to report.
            recommendation: Explanation or recommendation to include.
            bypass_cooldown: Skip the cooldown check (diagnostics).
            recipient_email: Override the default recipient.

        Returns:
            ``True`` if the email was sent and recorded.

        Raises:
            ConfigurationError: Mail credentials or recipient are missing.
        """
        if not bypass_cooldown and await self.in_cooldown(event):
            logger.info(
                "Skipping duplicate alert for %s - %s (cooldown)",
                event.device_serial,
                event.type.value,
            )
            return False

        self._mailer.ensure_configured()
        recipient = recipient_email or self._recipient_email
        if not recipient:
            raise ConfigurationError("RECIPIENT_EMAIL not configured")

        sent_at = self._clock()
        try:
            await self._mailer.send(
                recipient=recipient,
                subject=render_subject(event),
                html=render_html(event, recommendation, sent_at),
            )
        except TransientIOError as exc:
            logger.error(
                "Failed to send %s alert for device %s: %s",
                event.type.value,
                event.device_serial,
                exc,
            )
            return False

        await self._storage.append_alert(
            SentAlert(
                **event.model_dump(),
                recommendation=recommendation,
                recipient_email=recipient,
                sent_at=sent_at,
            )
        )
        await self._storage.trim_alerts(ALERT_LOG_LIMIT)
        logger.info("Alert sent: %s for device %s", event.type.value, event.device_serial)
        return True
