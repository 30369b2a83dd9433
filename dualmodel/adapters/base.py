"""Model adapter interfaces.

A generator turns items into a draft; a validator reviews a draft and returns
it unchanged or corrected. Both make exactly one outbound call per
invocation, return the model's text as-is, and report failure through the
pipeline error taxonomy: ``DeadlineExceededError`` when their deadline
passes, ``ProviderError`` for everything else. Neither retries.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Protocol, TypeVar

from dualmodel.errors import DeadlineExceededError
from dualmodel.models.contracts import ArtifactKind, PipelineStage

T = TypeVar("T")


class Generator(Protocol):
    name: str
    model: str

    async def generate_draft(
        self,
        items: list[str],
        type_hint: str | None,
        kind: ArtifactKind,
        timeout: float,
    ) -> str: ...


class Validator(Protocol):
    name: str
    model: str

    async def validate_and_correct(
        self,
        draft: str,
        items: list[str],
        kind: ArtifactKind,
        timeout: float,
    ) -> str: ...


async def with_deadline(
    call: Awaitable[T],
    *,
    timeout: float,
    provider: str,
    stage: PipelineStage,
) -> T:
    """Await ``call``; past ``timeout`` seconds raise ``DeadlineExceededError``."""
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except TimeoutError as exc:
        raise DeadlineExceededError(
            f"{provider} call timed out after {timeout:g} seconds",
            stage=stage,
        ) from exc
