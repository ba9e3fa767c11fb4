"""
HTTP trigger and read API for the monitoring engine.

Routes:
- GET  /health            liveness, no auth.
- GET  /v1/alerts         recent sent alerts, newest first.
- GET  /v1/error-codes    every cached fault explanation.
- POST /v1/trigger        run one monitoring cycle now and return its report.
- POST /v1/alerts/test    send a diagnostic alert, bypassing the cooldown.

POST routes require ``Authorization: Bearer <TRIGGER_TOKEN>`` when
TRIGGER_TOKEN is configured; the comparison is constant-time.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from monitor.src.config import MonitorSettings
from monitor.src.cycle import MonitoringService, open_service
from monitor.src.errors import ConfigurationError, MonitorError
from monitor.src.models import AnomalyType

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

router = APIRouter(tags=["monitoring"])


class TestAlertRequest(BaseModel):
    device_serial: str
    type: AnomalyType = AnomalyType.FAULT_CODE
    recipient_email: str | None = None


def verify_trigger_token(token: str | None, expected: str) -> bool:
    """Constant-time check of a presented bearer token.

    An empty *expected* token means the POST routes are open.
    """
    if not expected:
        return True
    if not token:
        return False
    return secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))


async def require_trigger_token(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    token = credentials.credentials if credentials is not None else None
    if not verify_trigger_token(token, request.app.state.trigger_token):
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing trigger token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


def _service(request: Request) -> MonitoringService:
    return request.app.state.service


Service = Annotated[MonitoringService, Depends(_service)]


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/v1/alerts")
async def list_alerts(
    service: Service,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> dict[str, Any]:
    alerts = await service.recent_alerts(limit)
    return {
        "alerts": [a.model_dump(mode="json") for a in alerts],
        "count": len(alerts),
    }


@router.get("/v1/error-codes")
async def list_error_codes(service: Service) -> dict[str, Any]:
    records = await service.known_explanations()
    return {
        "error_codes": [r.model_dump(mode="json") for r in records],
        "count": len(records),
    }


@router.post("/v1/trigger", dependencies=[Depends(require_trigger_token)])
async def trigger_cycle(service: Service) -> dict[str, Any]:
    """Run one monitoring cycle and return its report.

    Returns 409 when a cycle is already running and 502 when the station
    list could not be fetched.
    """
    try:
        report = await service.run_cycle()
    except MonitorError as exc:
        logger.error("Triggered monitoring cycle aborted: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if report.skipped:
        raise HTTPException(status_code=409, detail="Monitoring cycle already running.")
    return report.as_dict()


@router.post("/v1/alerts/test", dependencies=[Depends(require_trigger_token)])
async def send_test_alert(service: Service, body: TestAlertRequest) -> dict[str, bool]:
    try:
        sent = await service.send_test_alert(
            body.device_serial,
            alert_type=body.type,
            recipient_email=body.recipient_email,
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"sent": sent}


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    service: MonitoringService | None = None,
    *,
    trigger_token: str = "",
) -> FastAPI:
    """Build the API app.

    Args:
        service: Pre-built service (tests). When omitted the lifespan loads
            MonitorSettings from the environment and builds one.
        trigger_token: Token for the POST routes when *service* is given.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if service is not None:
            app.state.service = service
            app.state.trigger_token = trigger_token
            yield
            return

        settings = MonitorSettings()
        app.state.trigger_token = settings.trigger_token
        if not settings.trigger_token:
            logger.warning("TRIGGER_TOKEN not set, POST routes are unauthenticated")
        async with open_service(settings) as built:
            app.state.service = built
            logger.info("Monitoring API ready")
            yield
        logger.info("Monitoring API shutting down")

    app = FastAPI(
        title="Solar Monitoring API",
        description="Trigger monitoring cycles and read alerts and fault explanations.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app


app = create_app()
