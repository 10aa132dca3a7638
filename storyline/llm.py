"""Completion backends for the checkpoint arbiter.

The arbiter queue calls an `LLM` once per evaluation with a fully rendered
prompt and expects a short verdict back, usually a small JSON object such as
`{"decision": "win", "next_transition": "gate-market"}`:

    async def __call__(self, stage: str, prompt: str) -> str: ...

`stage` is always "arbiter" today and only shows up in logs.

Anything that goes wrong on the wire is raised as `LLMError`. The queue logs
it and records the evaluation as "continue", so a flaky backend can stall a
story but never move it.
"""

from __future__ import annotations

import logging
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)

ProviderFormat = Literal["koboldcpp", "openai"]


class LLM(Protocol):
    async def __call__(self, stage: str, prompt: str) -> str: ...


class LLMError(RuntimeError):
    """The backend could not produce a completion."""


class WireFormat(BaseModel, frozen=True):
    """Where a completion request goes and where the text comes back."""

    label: str
    path: str
    length_field: str
    results_field: str
    sends_model: bool = False


WIRE_FORMATS: dict[str, WireFormat] = {
    "koboldcpp": WireFormat(
        label="KoboldCpp",
        path="/api/v1/generate",
        length_field="max_length",
        results_field="results",
    ),
    "openai": WireFormat(
        label="OpenAI-compatible",
        path="/v1/completions",
        length_field="max_tokens",
        results_field="choices",
        sends_model=True,
    ),
}


class HttpLLM:
    """One-shot completions over HTTP.

    Each evaluation is a single POST with the prompt and an optional token
    cap. Verdicts are short, so `response_length` (256 by default in config)
    keeps a rambling model from burning time; 0 leaves the limit to the
    backend.
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "koboldcpp",
        model: str = "",
        response_length: int = 0,
        timeout: float = 120.0,
    ) -> None:
        if provider_format not in WIRE_FORMATS:
            raise ValueError(f"unknown provider format {provider_format!r}")
        self._url = provider_url.rstrip("/") + WIRE_FORMATS[provider_format].path
        self._wire = WIRE_FORMATS[provider_format]
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self.response_length = response_length

    @property
    def url(self) -> str:
        return self._url

    @property
    def response_length(self) -> int:
        return self._response_length

    @response_length.setter
    def response_length(self, value: int) -> None:
        self._response_length = max(0, int(value))

    def request_body(self, prompt: str) -> dict[str, Any]:
        body: dict[str, Any] = {"prompt": prompt}
        if self._wire.sends_model and self._model:
            body["model"] = self._model
        if self._response_length:
            body[self._wire.length_field] = self._response_length
        return body

    def completion_text(self, data: Any) -> str:
        results = data.get(self._wire.results_field) if isinstance(data, dict) else None
        if not results or not isinstance(results[0], dict) or "text" not in results[0]:
            raise LLMError(f"Unexpected response format from {self._wire.label} backend")
        return str(results[0]["text"])

    async def __call__(self, stage: str, prompt: str) -> str:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        logger.debug("llm call stage=%s url=%s prompt_len=%d", stage, self._url, len(prompt))

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(self._url, json=self.request_body(prompt), headers=headers)
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise LLMError(f"LLM backend returned HTTP {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._url}") from e
        except httpx.RequestError as e:
            raise LLMError(f"LLM request failed: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise LLMError("LLM backend returned a non-JSON body") from e
        text = self.completion_text(data)
        logger.debug("llm response stage=%s len=%d", stage, len(text))
        return text


class EchoLLM:
    """Answers with the prompt itself.

    Used when no backend is configured. The echoed prompt contains the
    answer template with "continue", so sessions run but never advance.
    """

    async def __call__(self, stage: str, prompt: str) -> str:
        logger.debug("EchoLLM stage=%s prompt_len=%d", stage, len(prompt))
        return prompt
