"""Oracle interface and its OpenRouter implementation over the OpenAI-compatible SDK."""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Protocol

from sidecar.config import Settings, settings as default_settings
from sidecar.services.logger import log_llm_call


class OracleError(RuntimeError):
    """The oracle could not produce an answer (network, timeout, empty reply)."""


class Oracle(Protocol):
    async def complete(self, prompt: str, *, caller: str, max_tokens: int | None = None) -> str: ...


class OpenRouterOracle:
    def __init__(self, openai_client: Any, *, model: str, max_tokens: int, timeout: float):
        self._client = openai_client
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout

    @staticmethod
    def _temperature_for_model(model: str) -> int:
        # Some GPT-5-compatible gateways reject temperature=0.
        return 1 if "gpt-5" in (model or "").lower() else 0

    async def complete(self, prompt: str, *, caller: str, max_tokens: int | None = None) -> str:
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self.model,
                    messages=[{"role": "user", "content": prompt}],
                    max_tokens=max_tokens or self.max_tokens,
                    temperature=self._temperature_for_model(self.model),
                ),
                timeout=self.timeout,
            )
        except Exception as exc:
            duration_ms = int((time.perf_counter() - started) * 1000)
            log_llm_call(self.model, caller, duration_ms=duration_ms, status="error", error=repr(exc))
            raise OracleError(str(exc) or type(exc).__name__) from exc

        duration_ms = int((time.perf_counter() - started) * 1000)
        usage = getattr(response, "usage", None)
        log_llm_call(
            self.model,
            caller,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            duration_ms=duration_ms,
        )
        choices = getattr(response, "choices", None) or []
        text = getattr(choices[0].message, "content", None) if choices else None
        if not text:
            raise OracleError("empty oracle response")
        return text


def create_oracle(settings: Settings | None = None) -> OpenRouterOracle | None:
    """Build the OpenRouter oracle, or None when no API key is configured."""
    settings = settings or default_settings
    if not settings.openrouter_api_key:
        return None
    from openai import AsyncOpenAI

    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    openai_client = AsyncOpenAI(api_key=settings.openrouter_api_key, base_url=base_url)
    return OpenRouterOracle(
        openai_client,
        model=settings.oracle_model,
        max_tokens=settings.oracle_max_tokens,
        timeout=settings.oracle_timeout_seconds,
    )


def extract_json_object(raw_text: str) -> dict[str, Any] | None:
    """Return the first well-formed JSON object embedded in free text."""
    text = raw_text.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    decoder = json.JSONDecoder()
    index = text.find("{")
    while index != -1:
        try:
            payload, _ = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(payload, dict):
            return payload
        index = text.find("{", index + 1)
    return None
