"""Draft generator backed by Groq's OpenAI-compatible chat completions API."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from dualmodel.adapters.base import with_deadline
from dualmodel.errors import DeadlineExceededError, ProviderError
from dualmodel.models.contracts import ArtifactKind, PipelineStage
from dualmodel.prompts import build_generation_prompt
from dualmodel.utils.tracing import traceable

log = structlog.get_logger("dualmodel.generator")

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
GROQ_MODEL = "llama-3.1-8b-instant"


def _completion_text(data: Any) -> str:
    """Pull ``choices[0].message.content`` out of a chat-completions body."""
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise ProviderError(
            "Groq response missing choices[0].message.content",
            stage=PipelineStage.GENERATOR_STARTED,
        ) from exc
    if not isinstance(content, str) or not content.strip():
        raise ProviderError("Groq returned empty content", stage=PipelineStage.GENERATOR_STARTED)
    return content


class GroqGenerator:
    name = "groq"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = GROQ_MODEL,
        base_url: str = GROQ_BASE_URL,
        temperature: float = 0.7,
        max_tokens: int = 2000,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._url = f"{base_url.rstrip('/')}/chat/completions"
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._client = http_client or httpx.AsyncClient()

    async def _post(self, prompt: str, timeout: float) -> httpx.Response:
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        try:
            return await self._client.post(self._url, headers=self._headers, json=payload, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise DeadlineExceededError(
                f"Groq request timed out after {timeout:g} seconds",
                stage=PipelineStage.GENERATOR_STARTED,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                f"Groq transport error: {exc}",
                stage=PipelineStage.GENERATOR_STARTED,
            ) from exc

    @traceable(name="groq_generate_draft", run_type="llm")
    async def generate_draft(
        self,
        items: list[str],
        type_hint: str | None,
        kind: ArtifactKind,
        timeout: float,
    ) -> str:
        prompt = build_generation_prompt(items, type_hint, kind)
        resp = await with_deadline(
            self._post(prompt, timeout),
            timeout=timeout,
            provider="Groq",
            stage=PipelineStage.GENERATOR_STARTED,
        )

        if resp.status_code != 200:
            log.error("groq_api_error", status=resp.status_code, body=resp.text[:200])
            raise ProviderError(
                f"Groq API error ({resp.status_code})",
                status=resp.status_code,
                stage=PipelineStage.GENERATOR_STARTED,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(
                "Groq returned a non-JSON body",
                stage=PipelineStage.GENERATOR_STARTED,
            ) from exc

        text = _completion_text(data)
        usage = data.get("usage") or {}
        log.info(
            "groq_draft_generated",
            kind=kind.value,
            model=self.model,
            prompt_tokens=usage.get("prompt_tokens"),
            completion_tokens=usage.get("completion_tokens"),
            length=len(text),
        )
        return text

    async def aclose(self) -> None:
        await self._client.aclose()
