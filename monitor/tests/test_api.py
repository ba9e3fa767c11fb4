"""
Tests for the monitoring HTTP API.

The app is built with create_app() around a mocked MonitoringService, so
no cloud, mail or LLM calls are made.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from monitor.src.api import create_app, verify_trigger_token
from monitor.src.cycle import CycleReport
from monitor.src.errors import ConfigurationError, UpstreamError
from monitor.src.models import (
    AnomalyType,
    ExplanationRecord,
    SentAlert,
    Severity,
)

TOKEN = "trigger-xyz"

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _report(**overrides: object) -> CycleReport:
    values = {
        "started_at": datetime(2026, 6, 1, 12, 0, tzinfo=UTC),
        "finished_at": datetime(2026, 6, 1, 12, 1, tzinfo=UTC),
        "stations": 2,
        "devices": 5,
    }
    values.update(overrides)
    return CycleReport(**values)


@pytest.fixture()
def service() -> MagicMock:
    svc = MagicMock()
    svc.run_cycle = AsyncMock(return_value=_report())
    svc.recent_alerts = AsyncMock(
        return_value=[
            SentAlert(
                type=AnomalyType.FAULT_CODE,
                severity=Severity.CRITICAL,
                message="Fault code detected: fault_1 = 23",
                device_serial="SN-001",
                fault_code="23",
                recipient_email="ops@example.com",
                sent_at=datetime(2026, 6, 1, 12, 0, tzinfo=UTC),
            )
        ]
    )
    svc.known_explanations = AsyncMock(
        return_value=[ExplanationRecord(fault_code="23", name="Grid overvoltage")]
    )
    svc.send_test_alert = AsyncMock(return_value=True)
    return svc


@pytest.fixture()
def client(service: MagicMock):
    with TestClient(create_app(service, trigger_token=TOKEN)) as test_client:
        yield test_client


def _auth() -> dict[str, str]:
    return {"Authorization": f"Bearer {TOKEN}"}


# ---------------------------------------------------------------------------
# Token check
# ---------------------------------------------------------------------------


class TestVerifyTriggerToken:
    def test_open_when_unconfigured(self) -> None:
        assert verify_trigger_token(None, "")

    def test_match(self) -> None:
        assert verify_trigger_token("abc", "abc")

    def test_mismatch_or_missing(self) -> None:
        assert not verify_trigger_token("abd", "abc")
        assert not verify_trigger_token(None, "abc")


# ---------------------------------------------------------------------------
# Read routes
# ---------------------------------------------------------------------------


class TestReadRoutes:
    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_alerts(self, client: TestClient, service: MagicMock) -> None:
        response = client.get("/v1/alerts", params={"limit": 5})

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        assert body["alerts"][0]["device_serial"] == "SN-001"
        assert body["alerts"][0]["type"] == "fault_code"
        service.recent_alerts.assert_awaited_once_with(5)

    def test_alerts_limit_validated(self, client: TestClient) -> None:
        assert client.get("/v1/alerts", params={"limit": 0}).status_code == 422

    def test_error_codes(self, client: TestClient) -> None:
        response = client.get("/v1/error-codes")

        assert response.status_code == 200
        assert response.json()["error_codes"][0]["name"] == "Grid overvoltage"


# ---------------------------------------------------------------------------
# Trigger routes
# ---------------------------------------------------------------------------


class TestTrigger:
    def test_requires_token(self, client: TestClient, service: MagicMock) -> None:
        response = client.post("/v1/trigger")

        assert response.status_code == 401
        service.run_cycle.assert_not_awaited()

    def test_wrong_token_rejected(self, client: TestClient) -> None:
        response = client.post("/v1/trigger", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    def test_runs_cycle(self, client: TestClient) -> None:
        response = client.post("/v1/trigger", headers=_auth())

        assert response.status_code == 200
        body = response.json()
        assert body["stations"] == 2
        assert body["devices"] == 5
        assert body["started_at"].startswith("2026-06-01T12:00:00")

    def test_abort_maps_to_502(self, client: TestClient, service: MagicMock) -> None:
        service.run_cycle.side_effect = UpstreamError("cloud down")

        response = client.post("/v1/trigger", headers=_auth())

        assert response.status_code == 502
        assert "cloud down" in response.json()["detail"]

    def test_overlap_maps_to_409(self, client: TestClient, service: MagicMock) -> None:
        service.run_cycle.return_value = _report(skipped=True)

        assert client.post("/v1/trigger", headers=_auth()).status_code == 409

    def test_open_without_configured_token(self, service: MagicMock) -> None:
        with TestClient(create_app(service)) as open_client:
            assert open_client.post("/v1/trigger").status_code == 200


class TestTestAlert:
    def test_sends(self, client: TestClient, service: MagicMock) -> None:
        response = client.post(
            "/v1/alerts/test",
            headers=_auth(),
            json={"device_serial": "SN-001", "recipient_email": "me@example.com"},
        )

        assert response.status_code == 200
        assert response.json() == {"sent": True}
        service.send_test_alert.assert_awaited_once_with(
            "SN-001", alert_type=AnomalyType.FAULT_CODE, recipient_email="me@example.com"
        )

    def test_custom_type(self, client: TestClient, service: MagicMock) -> None:
        client.post(
            "/v1/alerts/test",
            headers=_auth(),
            json={"device_serial": "SN-001", "type": "temperature"},
        )

        assert service.send_test_alert.await_args.kwargs["alert_type"] is AnomalyType.TEMPERATURE

    def test_missing_mail_config_maps_to_503(
        self, client: TestClient, service: MagicMock
    ) -> None:
        service.send_test_alert.side_effect = ConfigurationError("SMTP not configured")

        response = client.post(
            "/v1/alerts/test", headers=_auth(), json={"device_serial": "SN-001"}
        )

        assert response.status_code == 503

    def test_requires_device_serial(self, client: TestClient) -> None:
        response = client.post("/v1/alerts/test", headers=_auth(), json={})

        assert response.status_code == 422
