"""
LLM-backed fault explanations and anomaly recommendations.

Talks to one of three providers over plain HTTPS with httpx:

- ``openai``: chat completions with ``response_format=json_object``.
- ``anthropic``: messages API; the JSON object is extracted from the text.
- ``ollama``: ``/api/generate`` with ``format=json``.

Neither public method ever raises. A missing API key, network failure,
non-2xx response, missing content or malformed JSON all produce a
deterministic fallback record, so alerts still go out when the model is
unavailable.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any

import httpx

from monitor.src.errors import TransientIOError
from monitor.src.models import ExplanationRecord, Recommendation, Severity

if TYPE_CHECKING:
    from monitor.src.config import MonitorSettings

logger = logging.getLogger(__name__)

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)

_EXPLAIN_SYSTEM = (
    "You are a solar inverter technical expert. Always respond with valid JSON only."
)
_RECOMMEND_SYSTEM = (
    "You are a solar energy system expert. Always respond with valid JSON only."
)


# ---------------------------------------------------------------------------
# Fallbacks
# ---------------------------------------------------------------------------


def fallback_explanation(fault_code: str) -> ExplanationRecord:
    return ExplanationRecord(
        fault_code=fault_code,
        name=f"Fault {fault_code}",
        severity=Severity.WARNING,
        cause="Unknown - AI service unavailable",
        explanation=(
            f"Fault code {fault_code} detected. "
            "AI explanation service is currently unavailable."
        ),
        troubleshooting_steps=[
            "Check device status",
            "Review device logs",
            "Contact support",
        ],
        requires_onsite=True,
        owner_can_fix=False,
    )


def fallback_recommendation(anomaly_type: str) -> Recommendation:
    return Recommendation(
        issue=anomaly_type,
        explanation=(
            f"Issue detected: {anomaly_type}. "
            "AI recommendation service is currently unavailable."
        ),
        possible_causes=["Check device status"],
        recommended_actions=["Review system logs", "Contact support"],
        severity=Severity.WARNING,
        owner_can_fix=False,
        requires_onsite=True,
    )


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def extract_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object from model output, tolerating surrounding prose.

    Raises:
        ValueError: No JSON object could be parsed.
    """
    try:
        data = json.loads(text)
    except ValueError:
        match = _JSON_OBJECT_RE.search(text)
        if match is None:
            raise ValueError("No JSON object found in model response") from None
        data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("Model response is not a JSON object")
    return data


def _severity(value: object) -> Severity:
    try:
        return Severity(str(value).lower())
    except ValueError:
        return Severity.WARNING


def _string_list(value: object, default: list[str]) -> list[str]:
    if isinstance(value, list) and value:
        return [str(v) for v in value]
    return list(default)


def explanation_from_response(fault_code: str, data: dict[str, Any]) -> ExplanationRecord:
    return ExplanationRecord(
        fault_code=fault_code,
        name=str(data.get("name") or f"Fault {fault_code}"),
        severity=_severity(data.get("severity")),
        cause=str(data.get("cause") or "Unknown"),
        explanation=str(data.get("explanation") or "Fault detected"),
        troubleshooting_steps=_string_list(
            data.get("troubleshooting"), ["Check device manual", "Contact support"]
        ),
        requires_onsite=data.get("requiresOnsite") is not False,
        owner_can_fix=data.get("ownerCanFix") is True,
    )


def recommendation_from_response(
    anomaly_type: str, data: dict[str, Any]
) -> Recommendation:
    return Recommendation(
        issue=str(data.get("issue") or anomaly_type),
        explanation=str(data.get("explanation") or "Issue detected"),
        possible_causes=_string_list(data.get("possibleCauses"), ["Check device status"]),
        recommended_actions=_string_list(
            data.get("recommendedActions"), ["Contact support"]
        ),
        severity=_severity(data.get("severity")),
        owner_can_fix=data.get("ownerCanFix") is True,
        requires_onsite=data.get("requiresOnsite") is not False,
    )


def _explain_prompt(fault_code: str, context: dict[str, Any]) -> str:
    return (
        f"Explain this Deye inverter fault code: {fault_code}\n\n"
        f"Device context:\n{json.dumps(context, indent=2, default=str)}\n\n"
        "Respond with a JSON object with exactly these fields:\n"
        "{\n"
        f'  "code": "{fault_code}",\n'
        '  "name": "Fault name/title",\n'
        '  "severity": "info|warning|critical",\n'
        '  "cause": "What likely caused this fault",\n'
        '  "explanation": "Detailed explanation of the fault",\n'
        '  "troubleshooting": ["Step 1", "Step 2", "Step 3"],\n'
        '  "requiresOnsite": true,\n'
        '  "ownerCanFix": false\n'
        "}\n\n"
        "Be specific and technical. Focus on Deye inverters. Return ONLY valid JSON."
    )


def _recommend_prompt(anomaly_type: str, context: dict[str, Any]) -> str:
    return (
        "A Deye solar inverter system reports the following issue.\n\n"
        f"Issue type: {anomaly_type}\n"
        f"Details: {json.dumps(context, indent=2, default=str)}\n\n"
        "Respond with a JSON object with exactly these fields:\n"
        "{\n"
        f'  "issue": "{anomaly_type}",\n'
        '  "explanation": "What this issue means",\n'
        '  "possibleCauses": ["Cause 1", "Cause 2"],\n'
        '  "recommendedActions": ["Action 1", "Action 2"],\n'
        '  "severity": "info|warning|critical",\n'
        '  "ownerCanFix": false,\n'
        '  "requiresOnsite": true\n'
        "}\n\n"
        "Be specific and practical. Return ONLY valid JSON."
    )


# ---------------------------------------------------------------------------
# Advisor
# ---------------------------------------------------------------------------


class LlmAdvisor:
    """Best-effort structured advice from the configured LLM provider.

    Args:
        provider: ``openai``, ``anthropic`` or ``ollama``.
        api_key: Key for the hosted providers; unused by ollama.
        model: Model name for the provider.
        ollama_url: Base URL of the Ollama server.
        timeout_s: Timeout for each completion call.
        client: Optional pre-built httpx.AsyncClient.
    """

    def __init__(
        self,
        *,
        provider: str = "openai",
        api_key: str = "",
        model: str = "gpt-4o-mini",
        ollama_url: str = "http://localhost:11434",
        timeout_s: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._provider = provider.lower()
        self._api_key = api_key
        self._model = model
        self._ollama_url = ollama_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_s))

    @classmethod
    def from_settings(
        cls,
        settings: MonitorSettings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> LlmAdvisor:
        provider = settings.llm_provider
        if provider == "anthropic":
            api_key, model = settings.anthropic_api_key, settings.anthropic_model
        elif provider == "ollama":
            api_key, model = "", settings.ollama_model
        else:
            api_key, model = settings.openai_api_key, settings.openai_model
        return cls(
            provider=provider,
            api_key=api_key,
            model=model,
            ollama_url=settings.ollama_url,
            timeout_s=settings.http_timeout_s,
            client=client,
        )

    @property
    def available(self) -> bool:
        """Whether the provider is configured well enough to be called."""
        if self._provider == "ollama":
            return bool(self._ollama_url)
        return bool(self._api_key)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def explain_fault(
        self, fault_code: str, context: dict[str, Any] | None = None
    ) -> ExplanationRecord:
        """Explain a device fault code; never raises."""
        if not self.available:
            logger.warning("LLM provider %s not configured, using fallback", self._provider)
            return fallback_explanation(fault_code)
        try:
            text = await self._complete(_EXPLAIN_SYSTEM, _explain_prompt(fault_code, context or {}))
            return explanation_from_response(fault_code, extract_json_object(text))
        except (TransientIOError, ValueError, KeyError, IndexError, TypeError) as exc:
            logger.warning("LLM explanation for fault %s failed: %s", fault_code, exc)
            return fallback_explanation(fault_code)

    async def recommend(
        self, anomaly_type: str, context: dict[str, Any] | None = None
    ) -> Recommendation:
        """Recommend actions for a non-fault anomaly; never raises."""
        if not self.available:
            logger.warning("LLM provider %s not configured, using fallback", self._provider)
            return fallback_recommendation(anomaly_type)
        try:
            text = await self._complete(
                _RECOMMEND_SYSTEM, _recommend_prompt(anomaly_type, context or {})
            )
            return recommendation_from_response(anomaly_type, extract_json_object(text))
        except (TransientIOError, ValueError, KeyError, IndexError, TypeError) as exc:
            logger.warning("LLM recommendation for %s failed: %s", anomaly_type, exc)
            return fallback_recommendation(anomaly_type)

    async def _complete(self, system: str, prompt: str) -> str:
        """Return the raw text of one completion.

        Raises:
            TransientIOError: Network failure or non-2xx response.
            ValueError / KeyError / IndexError: Unexpected response shape.
        """
        try:
            if self._provider == "anthropic":
                response = await self._client.post(
                    ANTHROPIC_URL,
                    headers={
                        "x-api-key": self._api_key,
                        "anthropic-version": ANTHROPIC_VERSION,
                    },
                    json={
                        "model": self._model,
                        "max_tokens": 1000,
                        "system": system,
                        "messages": [{"role": "user", "content": prompt}],
                    },
                )
                response.raise_for_status()
                content = response.json()["content"][0]["text"]
            elif self._provider == "ollama":
                response = await self._client.post(
                    f"{self._ollama_url}/api/generate",
                    json={
                        "model": self._model,
                        "prompt": f"{system}\n\n{prompt}",
                        "stream": False,
                        "format": "json",
                    },
                )
                response.raise_for_status()
                content = response.json()["response"]
            else:
                response = await self._client.post(
                    OPENAI_URL,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    json={
                        "model": self._model,
                        "messages": [
                            {"role": "system", "content": system},
                            {"role": "user", "content": prompt},
                        ],
                        "temperature": 0.3,
                        "response_format": {"type": "json_object"},
                    },
                )
                response.raise_for_status()
                content = response.json()["choices"][0]["message"]["content"]
        except httpx.HTTPError as exc:
            raise TransientIOError(f"{self._provider} request failed: {exc}") from exc

        if not content:
            raise ValueError(f"No content in {self._provider} response")
        return str(content)
