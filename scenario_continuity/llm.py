"""LLM client — HTTP connection to a text-completion backend.

The semantic judge talks to its model through a callable matching:

    async def __call__(self, stage: str, prompt: str) -> str: ...

`stage` names the judging step ("scene_classifier", "path_consistency").
Implementations may use it for logging or routing.

Two implementations are provided:

    HttpLLM          — real HTTP client for KoboldCpp and OpenAI-compatible
                       backends, selected by provider_format.
    UnconfiguredLLM  — raises LLMError on every call. Used when no provider
                       URL is configured, so evaluations still run and report
                       every judge call as failed instead of crashing.

Tests use StubLLM (defined in the test helpers) instead.
"""

from __future__ import annotations

import logging
from typing import Literal, Protocol

import httpx

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class LLM(Protocol):
    async def __call__(self, stage: str, prompt: str) -> str: ...


# ---------------------------------------------------------------------------
# HttpLLM
# ---------------------------------------------------------------------------

ProviderFormat = Literal["koboldcpp", "openai"]


class HttpLLM:
    """Async HTTP client for text-completion backends.

    Supported formats:
      "koboldcpp"  — POST /api/v1/generate  {"prompt": ...}
                     Response: {"results": [{"text": "..."}]}
      "openai"     — POST /v1/completions   {"model": ..., "prompt": ...}
                     Response: {"choices": [{"text": "..."}]}

    Judge prompts ask for JSON, so a low temperature is sent with every
    request.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        timeout: float = 120.0,
        temperature: float = 0.1,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout
        self._temperature = temperature

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, prompt: str) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        if self._format == "openai":
            body: dict = {"prompt": prompt, "temperature": self._temperature}
            if self._model:
                body["model"] = self._model
            return f"{self._base_url}/v1/completions", body

        return f"{self._base_url}/api/v1/generate", {
            "prompt": prompt,
            "temperature": self._temperature,
        }

    def _parse_response(self, data: object) -> str:
        """Extract the completion text from the response body."""
        key = "choices" if self._format == "openai" else "results"
        entries = data.get(key) if isinstance(data, dict) else None
        if not entries or not isinstance(entries[0], dict) or "text" not in entries[0]:
            backend = "OpenAI-compatible" if self._format == "openai" else "KoboldCpp"
            raise LLMError(f"Unexpected response format from {backend} backend")
        return entries[0]["text"]

    async def __call__(self, stage: str, prompt: str) -> str:
        url, body = self._build_request(prompt)
        logger.debug("llm call stage=%s url=%s prompt_len=%d", stage, url, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(
                f"LLM backend returned HTTP {e.response.status_code}"
            ) from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("LLM backend returned a non-JSON body") from e
        text = self._parse_response(data)
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text


class UnconfiguredLLM:
    """Stands in when no provider URL is set; every call fails."""

    async def __call__(self, stage: str, prompt: str) -> str:
        raise LLMError(f"No LLM provider configured (stage={stage})")


# ---------------------------------------------------------------------------
# LLMError
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Raised when the LLM backend cannot be reached or returns an error."""
