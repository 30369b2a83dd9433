"""Validator adapters (Claude, Gemini) and priority-based selection.

Exactly one validator is active per process. It is chosen once, at wiring
time, by walking the configured priority list and taking the first provider
that has credentials.
"""

from __future__ import annotations

from collections.abc import Mapping

import anthropic
import httpx
import structlog
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from dualmodel.adapters.base import Validator, with_deadline
from dualmodel.config import Settings
from dualmodel.errors import ConfigurationError, DeadlineExceededError, ProviderError
from dualmodel.models.contracts import ArtifactKind, PipelineStage
from dualmodel.prompts import build_validation_prompt
from dualmodel.utils.tracing import wrap_anthropic, wrap_gemini

log = structlog.get_logger("dualmodel.validators")

_STAGE = PipelineStage.VALIDATOR_STARTED


class AnthropicValidator:
    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "claude-sonnet-4-5-20250929",
        temperature: float = 0.3,
        max_tokens: int = 2000,
        client: anthropic.AsyncAnthropic | None = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client or wrap_anthropic(anthropic.AsyncAnthropic(api_key=api_key, max_retries=0))

    async def _create(self, prompt: str, timeout: float) -> str:
        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                messages=[{"role": "user", "content": prompt}],
                timeout=timeout,
            )
        except anthropic.APITimeoutError as e:
            raise DeadlineExceededError(f"Claude request timed out: {e}", stage=_STAGE) from e
        except anthropic.APIStatusError as e:
            log.error("anthropic_validator_api_error", status=e.status_code)
            raise ProviderError(
                f"Claude API error ({e.status_code}): {e}",
                status=e.status_code,
                stage=_STAGE,
            ) from e
        except anthropic.APIConnectionError as e:
            raise ProviderError(f"Claude connection error: {e}", stage=_STAGE) from e

        text = "".join(b.text for b in response.content if getattr(b, "type", None) == "text")
        if not text.strip():
            raise ProviderError("Claude returned no text content", stage=_STAGE)
        log.info(
            "anthropic_validator_tokens",
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return text

    async def validate_and_correct(
        self,
        draft: str,
        items: list[str],
        kind: ArtifactKind,
        timeout: float,
    ) -> str:
        prompt = build_validation_prompt(draft, items, kind)
        return await with_deadline(
            self._create(prompt, timeout),
            timeout=timeout,
            provider="Claude",
            stage=_STAGE,
        )


class GeminiValidator:
    name = "gemini"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gemini-2.0-flash",
        temperature: float = 0.3,
        max_tokens: int = 2000,
        client: genai.Client | None = None,
    ) -> None:
        self.model = model
        self._config = types.GenerateContentConfig(
            temperature=temperature,
            max_output_tokens=max_tokens,
            top_p=0.95,
            top_k=40,
        )
        self._client = client or wrap_gemini(genai.Client(api_key=api_key))

    async def _generate(self, prompt: str) -> str:
        try:
            response = await self._client.aio.models.generate_content(
                model=self.model,
                contents=prompt,
                config=self._config,
            )
        except genai_errors.APIError as e:
            log.error("gemini_validator_api_error", status=e.code)
            raise ProviderError(f"Gemini API error ({e.code}): {e}", status=e.code, stage=_STAGE) from e
        except httpx.TimeoutException as e:
            raise DeadlineExceededError(f"Gemini request timed out: {e}", stage=_STAGE) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Gemini transport error: {e}", stage=_STAGE) from e

        text = response.text
        if not text or not text.strip():
            raise ProviderError("Gemini returned no text content", stage=_STAGE)
        return text

    async def validate_and_correct(
        self,
        draft: str,
        items: list[str],
        kind: ArtifactKind,
        timeout: float,
    ) -> str:
        prompt = build_validation_prompt(draft, items, kind)
        return await with_deadline(
            self._generate(prompt),
            timeout=timeout,
            provider="Gemini",
            stage=_STAGE,
        )


def configured_validators(config: Settings) -> dict[str, Validator]:
    """Instantiate every validator whose credentials are present."""
    validators: dict[str, Validator] = {}
    if config.anthropic_api_key:
        validators[AnthropicValidator.name] = AnthropicValidator(
            config.anthropic_api_key,
            model=config.anthropic_model,
            temperature=config.validator_temperature,
            max_tokens=config.validator_max_tokens,
        )
    if config.google_ai_api_key:
        validators[GeminiValidator.name] = GeminiValidator(
            config.google_ai_api_key,
            model=config.gemini_model,
            temperature=config.validator_temperature,
            max_tokens=config.validator_max_tokens,
        )
    return validators


def select_validator(candidates: Mapping[str, Validator], priority: list[str]) -> Validator:
    """First provider in ``priority`` that is present in ``candidates``.

    Names in ``priority`` without a candidate are skipped; an unknown name is
    not an error. Raises ``ConfigurationError`` when nothing matches.
    """
    for name in priority:
        validator = candidates.get(name)
        if validator is not None:
            log.info("validator_selected", provider=name, model=validator.model, priority=priority)
            return validator
    raise ConfigurationError(
        f"No validator configured for priority {priority!r}; "
        f"available providers: {sorted(candidates) or 'none'}"
    )
