"""
Error taxonomy for the monitoring engine.

- ConfigurationError: a required secret is missing. Fatal to the operation,
  never retried.
- AuthenticationError: the cloud API rejected our credentials.
- UpstreamError: a non-auth cloud API failure, or an auth failure that
  survived the single retry.
- TransientIOError: mail or LLM network failure. Logged and replaced with
  fallback behaviour, never propagated out of a monitoring cycle.

CHANGELOG:
- 2026-10-19: Initial creation
"""

from __future__ import annotations


class MonitorError(Exception):
    """Base class for all monitoring engine errors."""


class ConfigurationError(MonitorError):
    """A required configuration value (usually a secret) is missing."""


class AuthenticationError(MonitorError):
    """The cloud API rejected the configured credentials."""


class UpstreamError(MonitorError):
    """A cloud API request failed.

    Attributes:
        status_code: HTTP status of the failing response, if there was one.
        code: Deye business code from the response body, if present.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class TransientIOError(MonitorError):
    """A mail or LLM call failed on the network."""


class BatchSizeError(ValueError):
    """More device serials were passed to one batch call than the API allows."""
