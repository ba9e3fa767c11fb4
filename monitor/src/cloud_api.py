"""
Async client for the Deye developer cloud API with token lifecycle management.

Authenticates with the account's app id/secret and a SHA-256 hashed password,
caches the returned bearer token until shortly before it expires, and
transparently re-authenticates once when a request fails in an auth-shaped
way (HTTP 401, business code 2101019, or a message mentioning token/auth).
A failure that survives the retry is raised as UpstreamError; there is never
a second retry.

Operations:
- get_access_token(): cached token, or a fresh one via authenticate().
- authenticate(): obtain and cache a new token.
- request(path, method, body): authorized JSON call with one auth retry.
- list_stations(page, size), station_latest(station_id),
  device_latest(serials): thin wrappers over the endpoints we consume.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

import httpx

from monitor.src.errors import (
    AuthenticationError,
    BatchSizeError,
    ConfigurationError,
    UpstreamError,
)

if TYPE_CHECKING:
    from monitor.src.config import MonitorSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SUCCESS_CODE: int = 1000000
"""Deye business code meaning success."""

TOKEN_INVALID_CODE: int = 2101019
"""Deye business code returned for an expired or invalid token."""

DEFAULT_TOKEN_LIFETIME_S: int = 7200
"""Token lifetime assumed when the token response omits ``expiresIn``."""

TOKEN_EXPIRY_MARGIN_S: float = 300.0
"""Subtracted from the announced lifetime when the token is stored."""

TOKEN_REFRESH_BUFFER_S: float = 60.0
"""A cached token is only reused while ``now < expiry - buffer``."""

MAX_DEVICES_PER_BATCH: int = 10
"""Upper bound on serials per ``/v1.0/device/latest`` call."""


def hash_password(password: str) -> str:
    """Return the lowercase SHA-256 hex digest the token endpoint expects."""
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def _parse_code(raw: object) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return None


class _ApiFailure(Exception):
    """Internal: one failed request attempt, before retry classification."""

    def __init__(self, message: str, *, status_code: int, code: int | None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code

    @property
    def auth_shaped(self) -> bool:
        lowered = self.message.lower()
        return (
            self.status_code == 401
            or self.code == TOKEN_INVALID_CODE
            or "token" in lowered
            or "auth" in lowered
        )


class CloudApiClient:
    """Deye cloud API client owning the bearer token cache.

    Token state is guarded by an asyncio.Lock. Callers that find the cache
    stale queue on the lock and re-check it once inside, so concurrent
    requests share one authentication instead of each running their own.

    Args:
        base_url: API base URL, e.g. ``https://eu1-developer.deyecloud.com``.
        app_id: Developer app id.
        app_secret: Developer app secret.
        email: Account email.
        password: Account password in plaintext; only its hash is sent.
        timeout_s: Timeout for every HTTP call.
        client: Optional pre-built httpx.AsyncClient (tests inject one with a
            MockTransport). When omitted the client creates and owns one.
        clock: Returns the current time in epoch seconds.

    Usage::

        async with CloudApiClient.from_settings(settings) as api:
            page = await api.list_stations(page=1, size=50)
    """

    def __init__(
        self,
        *,
        base_url: str,
        app_id: str,
        app_secret: str,
        email: str,
        password: str,
        timeout_s: float = 30.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._app_id = app_id
        self._app_secret = app_secret
        self._email = email
        self._password = password
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s),
            verify=True,
        )
        self._clock = clock
        self._access_token: str | None = None
        self._token_expiry: float = 0.0
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: MonitorSettings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> CloudApiClient:
        return cls(
            base_url=settings.deye_base_url,
            app_id=settings.deye_app_id,
            app_secret=settings.deye_app_secret,
            email=settings.deye_email,
            password=settings.deye_password,
            timeout_s=settings.http_timeout_s,
            client=client,
        )

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> CloudApiClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    @property
    def token_expiry(self) -> float:
        """Epoch seconds at which the cached token is considered expired."""
        return self._token_expiry

    def _cached_token(self) -> str | None:
        if (
            self._access_token
            and self._clock() < self._token_expiry - TOKEN_REFRESH_BUFFER_S
        ):
            return self._access_token
        return None

    def invalidate_token(self) -> None:
        """Drop the cached token so the next call authenticates again."""
        self._access_token = None
        self._token_expiry = 0.0

    async def get_access_token(self) -> str:
        """Return a usable ``Bearer <token>`` header value.

        Raises:
            ConfigurationError: Credentials are not configured.
            AuthenticationError: The token endpoint rejected the credentials.
        """
        token = self._cached_token()
        if token is not None:
            return token
        async with self._lock:
            token = self._cached_token()
            if token is not None:
                return token
            return await self._authenticate_locked()

    async def authenticate(self) -> str:
        """Unconditionally fetch and cache a new token."""
        async with self._lock:
            return await self._authenticate_locked()

    async def _authenticate_locked(self) -> str:
        missing = [
            name
            for name, value in (
                ("DEYE_APP_ID", self._app_id),
                ("DEYE_APP_SECRET", self._app_secret),
                ("DEYE_EMAIL", self._email),
                ("DEYE_PASSWORD", self._password),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"Deye cloud credentials not configured: {', '.join(missing)}"
            )

        try:
            response = await self._client.post(
                f"{self._base_url}/v1.0/account/token",
                params={"appId": self._app_id},
                json={
                    "appSecret": self._app_secret,
                    "email": self._email,
                    "password": hash_password(self._password),
                },
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Token request failed: {exc}") from exc

        if not response.is_success:
            raise AuthenticationError(
                f"Authentication failed: HTTP {response.status_code} - {response.text}"
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise AuthenticationError(
                "Authentication failed: token response is not JSON"
            ) from exc

        if not isinstance(data, dict) or not data.get("success"):
            msg = data.get("msg") if isinstance(data, dict) else None
            raise AuthenticationError(f"Authentication failed: {msg or 'unknown error'}")

        access_token = data.get("accessToken")
        if not access_token:
            raise AuthenticationError("Authentication failed: no access token received")

        lifetime_s = _parse_code(data.get("expiresIn")) or DEFAULT_TOKEN_LIFETIME_S
        self._access_token = f"Bearer {access_token}"
        self._token_expiry = self._clock() + lifetime_s - TOKEN_EXPIRY_MARGIN_S
        logger.info("Authenticated with Deye cloud (token lifetime %ss)", lifetime_s)
        return self._access_token

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(
        self,
        path: str,
        *,
        method: str = "POST",
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send an authorized JSON request and return the decoded body.

        An auth-shaped failure invalidates the token and retries exactly once
        with a freshly authenticated one.

        Raises:
            UpstreamError: The request failed (after at most one auth retry).
            ConfigurationError / AuthenticationError: Re-authentication failed.
        """
        token = await self.get_access_token()
        try:
            return await self._send(path, method, body, token)
        except _ApiFailure as failure:
            if not failure.auth_shaped:
                raise UpstreamError(
                    f"API request failed: {failure.message}",
                    status_code=failure.status_code,
                    code=failure.code,
                ) from None
            logger.warning(
                "Auth failure on %s (HTTP %d, code=%s), re-authenticating once",
                path,
                failure.status_code,
                failure.code,
            )

        self.invalidate_token()
        token = await self.get_access_token()
        try:
            return await self._send(path, method, body, token)
        except _ApiFailure as failure:
            raise UpstreamError(
                f"API request failed after re-authentication: {failure.message}",
                status_code=failure.status_code,
                code=failure.code,
            ) from None

    async def _send(
        self,
        path: str,
        method: str,
        body: dict[str, Any] | None,
        token: str,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(
                method,
                f"{self._base_url}{path}",
                json=body,
                headers={"Authorization": token},
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"API request to {path} failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.is_success:
            payload = data if isinstance(data, dict) else {}
            raise _ApiFailure(
                str(payload.get("msg") or response.text or response.reason_phrase),
                status_code=response.status_code,
                code=_parse_code(payload.get("code")),
            )

        if not isinstance(data, dict):
            raise _ApiFailure(
                "response body is not a JSON object",
                status_code=response.status_code,
                code=None,
            )

        if "code" in data:
            code = _parse_code(data["code"])
            if code != SUCCESS_CODE:
                raise _ApiFailure(
                    str(data.get("msg") or "Unknown error"),
                    status_code=response.status_code,
                    code=code,
                )
        return data

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def list_stations(self, page: int = 1, size: int = 50) -> list[dict[str, Any]]:
        """Return one page of stations, each with its ``deviceListItems``."""
        data = await self.request(
            "/v1.0/station/listWithDevice",
            body={"page": page, "size": size},
        )
        return list(data.get("stationList") or [])

    async def station_latest(self, station_id: object) -> dict[str, Any]:
        return await self.request("/v1.0/station/latest", body={"stationId": station_id})

    async def device_latest(self, serials: Sequence[str]) -> list[dict[str, Any]]:
        """Return the latest data for up to 10 devices.

        Raises:
            BatchSizeError: More than 10 serials were passed. Raised before
                any network call; splitting is the caller's job.
        """
        if len(serials) > MAX_DEVICES_PER_BATCH:
            raise BatchSizeError(
                f"Maximum {MAX_DEVICES_PER_BATCH} devices per batch (got {len(serials)})"
            )
        data = await self.request(
            "/v1.0/device/latest",
            body={"deviceList": list(serials)},
        )
        return list(data.get("deviceDataList") or [])
