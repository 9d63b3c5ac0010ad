"""OpenAI-compatible chat completion client."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from perp_trader.config import OracleProvider, Settings
from perp_trader.utils.logging import get_logger, log_llm_call


@dataclass(slots=True, frozen=True)
class ProviderPreset:
    base_url: str
    model: str


PROVIDER_PRESETS: dict[OracleProvider, ProviderPreset] = {
    OracleProvider.OPENROUTER: ProviderPreset(
        base_url="https://openrouter.ai/api/v1",
        model="x-ai/grok-4.1-fast:free",
    ),
    OracleProvider.DEEPSEEK: ProviderPreset(
        base_url="https://api.deepseek.com/v1",
        model="deepseek-chat",
    ),
    OracleProvider.QWEN: ProviderPreset(
        base_url="https://dashscope.aliyuncs.com/compatible-mode/v1",
        model="qwen-max",
    ),
}


class LLMError(Exception):
    """Base LLM client error."""


class LLMAPIError(LLMError):
    """Raised when API transport/request fails."""


class LLMClient:
    """Thin client for ``/chat/completions`` on any OpenAI-compatible endpoint."""

    def __init__(self, settings: Settings, transport: httpx.BaseTransport | None = None) -> None:
        preset = PROVIDER_PRESETS.get(settings.oracle_provider, PROVIDER_PRESETS[OracleProvider.OPENROUTER])
        self._settings = settings
        self._provider = settings.oracle_provider
        self._base_url = (settings.llm_base_url or preset.base_url).rstrip("/")
        self._model = settings.llm_model or preset.model
        self._transport = transport
        self._logger = get_logger("perp_trader.ai.llm_client")

    @property
    def model(self) -> str:
        return self._model

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        """Return the assistant message text; raises LLMAPIError after retries."""
        started = time.perf_counter()
        try:
            content = self._request_completion(system_prompt, user_prompt)
        except LLMAPIError as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000
            log_llm_call(
                self._logger,
                model=self._model,
                success=False,
                latency_ms=elapsed_ms,
                reason=str(exc),
            )
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        log_llm_call(
            self._logger,
            model=self._model,
            success=True,
            latency_ms=elapsed_ms,
            response_chars=len(content),
        )
        return content

    @retry(
        retry=retry_if_exception_type(LLMAPIError),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    def _request_completion(self, system_prompt: str, user_prompt: str) -> str:
        if not self._settings.llm_api_key:
            raise LLMAPIError("missing_llm_api_key")

        headers = {
            "Authorization": f"Bearer {self._settings.llm_api_key}",
            "Content-Type": "application/json",
        }
        payload: dict[str, Any] = {
            "model": self._model,
            "temperature": self._settings.llm_temperature,
            "max_tokens": self._settings.llm_max_tokens,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        if self._provider == OracleProvider.OPENROUTER:
            payload["reasoning"] = {"enabled": True}

        try:
            with httpx.Client(timeout=self._settings.llm_timeout, transport=self._transport) as client:
                response = client.post(f"{self._base_url}/chat/completions", headers=headers, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise LLMAPIError(str(exc)) from exc

        return _extract_message_content(response.json())


def _extract_message_content(payload: dict[str, Any]) -> str:
    """Read assistant content from a chat completion payload."""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, dict):
        return ""
    message = first.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    return ""
