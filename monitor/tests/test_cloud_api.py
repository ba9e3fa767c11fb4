"""
Unit tests for the Deye cloud API client.

Tests verify:
- The password is sent as a SHA-256 hex digest, appId as a query param.
- The token is cached and reused until shortly before expiry.
- Concurrent callers share one authentication.
- Auth-shaped failures (HTTP 401, code 2101019) trigger exactly one
  re-authentication and retry; a second failure raises UpstreamError.
- Non-auth failures are raised without retrying.
- Missing credentials raise ConfigurationError without any network call.
- device_latest rejects more than 10 serials before any network call.

All HTTP traffic goes through httpx.MockTransport.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from collections.abc import Callable

import httpx
import pytest
from monitor.src.cloud_api import (
    DEFAULT_TOKEN_LIFETIME_S,
    TOKEN_EXPIRY_MARGIN_S,
    TOKEN_INVALID_CODE,
    CloudApiClient,
    hash_password,
)
from monitor.src.errors import (
    AuthenticationError,
    BatchSizeError,
    ConfigurationError,
    UpstreamError,
)

BASE_URL = "https://eu1-developer.deyecloud.com"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeDeye:
    """Scriptable stand-in for the Deye cloud behind a MockTransport.

    Attributes:
        token_calls: Number of token requests received.
        requests: Every request received, in order.
        api_responses: Queue of (status, body) for non-token endpoints.
            When empty, a success body is returned.
    """

    def __init__(self) -> None:
        self.token_calls = 0
        self.requests: list[httpx.Request] = []
        self.api_responses: list[tuple[int, dict]] = []
        self.token_body: dict = {"success": True, "accessToken": "tok", "expiresIn": 7200}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/v1.0/account/token":
            self.token_calls += 1
            body = dict(self.token_body)
            if body.get("accessToken"):
                body["accessToken"] = f"{body['accessToken']}-{self.token_calls}"
            return httpx.Response(200, json=body)
        if self.api_responses:
            status, body = self.api_responses.pop(0)
            return httpx.Response(status, json=body)
        return httpx.Response(
            200,
            json={"code": 1000000, "success": True, "stationList": [], "deviceDataList": []},
        )

    @property
    def api_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path != "/v1.0/account/token"]


def _make_client(
    fake: FakeDeye,
    *,
    clock: Callable[[], float] | None = None,
    **overrides: str,
) -> CloudApiClient:
    kwargs = {
        "base_url": BASE_URL,
        "app_id": "app-123",
        "app_secret": "secret-abc",
        "email": "owner@example.com",
        "password": "hunter2",
    }
    kwargs.update(overrides)
    return CloudApiClient(
        **kwargs,
        client=httpx.AsyncClient(transport=httpx.MockTransport(fake.handler)),
        clock=clock or FakeClock(),
    )


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuthenticate:
    """Token requests carry hashed credentials and are cached."""

    def test_hash_password_is_sha256_hex(self) -> None:
        assert hash_password("hunter2") == hashlib.sha256(b"hunter2").hexdigest()

    @pytest.mark.asyncio
    async def test_token_request_shape(self) -> None:
        fake = FakeDeye()
        api = _make_client(fake)

        token = await api.get_access_token()

        assert token == "Bearer tok-1"
        request = fake.requests[0]
        assert request.method == "POST"
        assert request.url.params["appId"] == "app-123"
        body = json.loads(request.content)
        assert body == {
            "appSecret": "secret-abc",
            "email": "owner@example.com",
            "password": hashlib.sha256(b"hunter2").hexdigest(),
        }

    @pytest.mark.asyncio
    async def test_expiry_subtracts_margin(self) -> None:
        fake = FakeDeye()
        clock = FakeClock(5000.0)
        api = _make_client(fake, clock=clock)

        await api.get_access_token()

        assert api.token_expiry == 5000.0 + 7200 - TOKEN_EXPIRY_MARGIN_S

    @pytest.mark.asyncio
    async def test_missing_expires_in_uses_default(self) -> None:
        fake = FakeDeye()
        fake.token_body = {"success": True, "accessToken": "tok"}
        clock = FakeClock(0.0)
        api = _make_client(fake, clock=clock)

        await api.get_access_token()

        assert api.token_expiry == DEFAULT_TOKEN_LIFETIME_S - TOKEN_EXPIRY_MARGIN_S

    @pytest.mark.asyncio
    async def test_token_reused_within_lifetime(self) -> None:
        fake = FakeDeye()
        clock = FakeClock()
        api = _make_client(fake, clock=clock)

        first = await api.get_access_token()
        clock.now += 3600
        second = await api.get_access_token()

        assert first == second
        assert fake.token_calls == 1

    @pytest.mark.asyncio
    async def test_token_refreshed_inside_buffer(self) -> None:
        """Within 60 s of the stored expiry the token is no longer reused."""
        fake = FakeDeye()
        clock = FakeClock()
        api = _make_client(fake, clock=clock)

        await api.get_access_token()
        clock.now = api.token_expiry - 30
        token = await api.get_access_token()

        assert token == "Bearer tok-2"
        assert fake.token_calls == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_authentication(self) -> None:
        fake = FakeDeye()
        api = _make_client(fake)

        tokens = await asyncio.gather(*(api.get_access_token() for _ in range(5)))

        assert set(tokens) == {"Bearer tok-1"}
        assert fake.token_calls == 1

    @pytest.mark.asyncio
    async def test_missing_credentials_raise_configuration_error(self) -> None:
        fake = FakeDeye()
        api = _make_client(fake, app_secret="", password="")

        with pytest.raises(ConfigurationError, match="DEYE_APP_SECRET"):
            await api.get_access_token()
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_rejected_credentials_raise_authentication_error(self) -> None:
        fake = FakeDeye()
        fake.token_body = {"success": False, "msg": "wrong password"}
        api = _make_client(fake)

        with pytest.raises(AuthenticationError, match="wrong password"):
            await api.get_access_token()

    @pytest.mark.asyncio
    async def test_missing_access_token_raises(self) -> None:
        fake = FakeDeye()
        fake.token_body = {"success": True}
        api = _make_client(fake)

        with pytest.raises(AuthenticationError, match="no access token"):
            await api.get_access_token()

    @pytest.mark.asyncio
    async def test_network_error_raises_upstream_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("boom", request=request)

        api = CloudApiClient(
            base_url=BASE_URL,
            app_id="a",
            app_secret="s",
            email="e@example.com",
            password="p",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

        with pytest.raises(UpstreamError, match="Token request failed"):
            await api.get_access_token()


# ---------------------------------------------------------------------------
# Request retry
# ---------------------------------------------------------------------------


class TestRequestRetry:
    """Auth-shaped failures are retried exactly once."""

    @pytest.mark.asyncio
    async def test_authorization_header_sent(self) -> None:
        fake = FakeDeye()
        api = _make_client(fake)

        await api.request("/v1.0/station/latest", body={"stationId": 1})

        assert fake.api_requests[0].headers["Authorization"] == "Bearer tok-1"

    @pytest.mark.asyncio
    async def test_http_401_reauthenticates_once(self) -> None:
        fake = FakeDeye()
        fake.api_responses = [(401, {"msg": "Unauthorized"})]
        api = _make_client(fake)

        data = await api.request("/v1.0/station/latest", body={"stationId": 1})

        assert data["code"] == 1000000
        assert fake.token_calls == 2
        assert len(fake.api_requests) == 2
        assert fake.api_requests[1].headers["Authorization"] == "Bearer tok-2"

    @pytest.mark.asyncio
    async def test_token_invalid_code_reauthenticates_once(self) -> None:
        fake = FakeDeye()
        fake.api_responses = [(200, {"code": TOKEN_INVALID_CODE, "msg": "expired"})]
        api = _make_client(fake)

        await api.request("/v1.0/station/latest", body={"stationId": 1})

        assert fake.token_calls == 2
        assert len(fake.api_requests) == 2

    @pytest.mark.asyncio
    async def test_second_auth_failure_raises_without_third_attempt(self) -> None:
        fake = FakeDeye()
        fake.api_responses = [
            (401, {"msg": "Unauthorized"}),
            (401, {"msg": "Unauthorized"}),
            (200, {"code": 1000000}),
        ]
        api = _make_client(fake)

        with pytest.raises(UpstreamError) as excinfo:
            await api.request("/v1.0/station/latest", body={"stationId": 1})

        assert excinfo.value.status_code == 401
        assert len(fake.api_requests) == 2
        assert fake.token_calls == 2

    @pytest.mark.asyncio
    async def test_non_auth_failure_not_retried(self) -> None:
        fake = FakeDeye()
        fake.api_responses = [(200, {"code": 2101001, "msg": "station not found"})]
        api = _make_client(fake)

        with pytest.raises(UpstreamError, match="station not found") as excinfo:
            await api.request("/v1.0/station/latest", body={"stationId": 1})

        assert excinfo.value.code == 2101001
        assert len(fake.api_requests) == 1
        assert fake.token_calls == 1

    @pytest.mark.asyncio
    async def test_server_error_not_retried(self) -> None:
        fake = FakeDeye()
        fake.api_responses = [(500, {"msg": "internal"})]
        api = _make_client(fake)

        with pytest.raises(UpstreamError) as excinfo:
            await api.request("/v1.0/station/latest", body={"stationId": 1})

        assert excinfo.value.status_code == 500
        assert len(fake.api_requests) == 1

    @pytest.mark.asyncio
    async def test_body_without_code_is_success(self) -> None:
        fake = FakeDeye()
        fake.api_responses = [(200, {"generationPower": 1200})]
        api = _make_client(fake)

        data = await api.request("/v1.0/station/latest", body={"stationId": 1})

        assert data == {"generationPower": 1200}


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


class TestEndpoints:
    """Endpoint wrappers unwrap the lists we consume."""

    @pytest.mark.asyncio
    async def test_list_stations(self) -> None:
        fake = FakeDeye()
        fake.api_responses = [
            (200, {"code": 1000000, "stationList": [{"id": 1}, {"id": 2}]})
        ]
        api = _make_client(fake)

        stations = await api.list_stations(page=2, size=25)

        assert stations == [{"id": 1}, {"id": 2}]
        request = fake.api_requests[0]
        assert request.url.path == "/v1.0/station/listWithDevice"
        assert json.loads(request.content) == {"page": 2, "size": 25}

    @pytest.mark.asyncio
    async def test_device_latest(self) -> None:
        fake = FakeDeye()
        fake.api_responses = [
            (200, {"code": 1000000, "deviceDataList": [{"deviceSn": "SN1"}]})
        ]
        api = _make_client(fake)

        items = await api.device_latest(["SN1"])

        assert items == [{"deviceSn": "SN1"}]
        assert json.loads(fake.api_requests[0].content) == {"deviceList": ["SN1"]}

    @pytest.mark.asyncio
    async def test_device_latest_rejects_oversized_batch(self) -> None:
        fake = FakeDeye()
        api = _make_client(fake)

        with pytest.raises(BatchSizeError):
            await api.device_latest([f"SN{i}" for i in range(11)])
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_owned_client_closed_only_when_created(self) -> None:
        fake = FakeDeye()
        injected = httpx.AsyncClient(transport=httpx.MockTransport(fake.handler))
        api = CloudApiClient(
            base_url=BASE_URL,
            app_id="a",
            app_secret="s",
            email="e@example.com",
            password="p",
            client=injected,
        )

        await api.aclose()

        assert not injected.is_closed
        await injected.aclose()
