"""
Monitoring daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
Deye, SMTP and LLM secrets are optional at load time so the read-only API
can start without them; a missing secret surfaces as ConfigurationError at
the moment it is needed.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings


class MonitorSettings(BaseSettings):
    """Monitoring engine configuration.

    Attributes:
        deye_base_url: Deye developer cloud base URL (must be HTTPS).
        deye_app_id: Deye developer app id.
        deye_app_secret: Deye developer app secret.
        deye_email: Deye account email.
        deye_password: Deye account password (hashed before sending).
        smtp_host: Outgoing mail server.
        smtp_port: Outgoing mail port; 465 means implicit TLS.
        smtp_user: Mail account, also used as the From address.
        smtp_password: Mail account password. Alerts cannot be sent without it.
        recipient_email: Default alert recipient.
        llm_provider: ``openai``, ``anthropic`` or ``ollama``.
        monitor_interval_s: Seconds between monitoring cycles (min 10).
        alert_cooldown_s: Minimum seconds between two alerts of the same
            type for the same device.
        station_page_size: Stations requested per listing page (1-100).
        http_timeout_s: Timeout applied to every outbound HTTP call.
        history_retention_days: Days of per-device history kept.
        storage_path: SQLite file for durable state. Empty keeps all state
            in process memory.
        health_path: JSON health file path. Empty disables it.
        trigger_token: Bearer token required by the API's POST routes.
            Empty leaves them open.
    """

    deye_base_url: str = "https://eu1-developer.deyecloud.com"
    deye_app_id: str = ""
    deye_app_secret: str = ""
    deye_email: str = ""
    deye_password: str = ""

    smtp_host: str = "smtp.hostinger.com"
    smtp_port: int = 465
    smtp_user: str = ""
    smtp_password: str = ""
    recipient_email: str = ""

    llm_provider: str = "openai"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-haiku-20240307"
    ollama_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2"

    monitor_interval_s: int = 60
    alert_cooldown_s: int = 3600
    station_page_size: int = 50
    http_timeout_s: float = 30.0
    history_retention_days: int = 30
    storage_path: str = ""
    health_path: str = ""
    trigger_token: str = ""

    @field_validator("deye_base_url")
    @classmethod
    def deye_base_url_must_be_https(cls, v: str) -> str:
        """Reject plain-HTTP cloud URLs; credentials travel on this channel."""
        if not v.lower().startswith("https://"):
            raise ValueError(f"DEYE_BASE_URL must use HTTPS (got: '{v[:30]}...').")
        return v.rstrip("/")

    @field_validator("llm_provider")
    @classmethod
    def llm_provider_must_be_known(cls, v: str) -> str:
        provider = v.strip().lower()
        if provider not in {"openai", "anthropic", "ollama"}:
            raise ValueError("LLM_PROVIDER must be one of openai, anthropic, ollama")
        return provider

    @field_validator("monitor_interval_s")
    @classmethod
    def monitor_interval_must_be_sane(cls, v: int) -> int:
        """The cloud API rate-limits aggressively; keep at least 10 s between cycles."""
        if v < 10:
            raise ValueError("MONITOR_INTERVAL_S must be >= 10")
        return v

    @field_validator("station_page_size")
    @classmethod
    def station_page_size_must_be_valid(cls, v: int) -> int:
        if v < 1 or v > 100:
            raise ValueError("STATION_PAGE_SIZE must be >= 1 and <= 100")
        return v

    @field_validator("smtp_port")
    @classmethod
    def smtp_port_must_be_valid(cls, v: int) -> int:
        if v < 1 or v > 65535:
            raise ValueError("SMTP_PORT must be between 1 and 65535")
        return v

    @field_validator("alert_cooldown_s", "history_retention_days")
    @classmethod
    def must_be_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("value must be >= 0")
        return v

    @field_validator("http_timeout_s")
    @classmethod
    def http_timeout_must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("HTTP_TIMEOUT_S must be > 0")
        return v

    @property
    def effective_recipient(self) -> str:
        """Alert recipient, falling back to the sending account."""
        return self.recipient_email or self.smtp_user

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
