"""Verification pipeline — generate with a fast model, check with a careful one.

Per request:
1. Normalize the raw items (rejects bad input before any external call)
2. Cache lookup (a hit short-circuits everything below)
3. Generator draft (fatal on failure or deadline)
4. Validator review (on failure or deadline, fall back to the draft)
5. Parse, with one repair pass (fatal if still unparseable)
6. Sanitize, then cache the result
7. Recipe-with-prices only: price fan-out over the missing ingredients

Every stage boundary publishes a ``PipelineEvent``; every run, successful or
not, leaves exactly one finalized ``ExecutionLogEntry`` behind. The whole run
sits under one overall deadline. The validator is only given what is left of
it, so a slow validator still falls back to the draft; for every other stage
whichever deadline expires first stops the active stage.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog

from dualmodel.adapters.base import Generator, Validator, with_deadline
from dualmodel.cache import CachedVerification, VerificationCache
from dualmodel.config import Settings
from dualmodel.config import settings as default_settings
from dualmodel.errors import DeadlineExceededError, PipelineError
from dualmodel.events import EventPublisher
from dualmodel.execution_log import ExecutionLogEntry, ExecutionLogStore
from dualmodel.models.contracts import (
    ArtifactKind,
    NormalizedRequest,
    ParsedResponse,
    PipelineEvent,
    PipelineMetadata,
    PipelineStage,
    PriceProduct,
    ProductRecommendationResult,
    RecipeResult,
    VerifiedProductResponse,
    VerifiedRecipeResponse,
    VerifiedRecipeWithPricesResponse,
)
from dualmodel.normalize import normalize_items
from dualmodel.parsing import parse_response
from dualmodel.pricing import PriceSearchClient, lookup_many
from dualmodel.prompts import build_generation_prompt, build_validation_prompt
from dualmodel.sanitize import (
    sanitize_notes,
    sanitize_price_map,
    sanitize_recipe,
    sanitize_recommendations,
)

log = structlog.get_logger("dualmodel.pipeline")

T = TypeVar("T")

PRICES_UNAVAILABLE_NOTE = "Some prices unavailable"

# Time kept after the validator for parsing, sanitizing and the cache write
_SETTLE_SECONDS = 0.5


def detect_corrections(draft: str, validated: str, threshold: int = 10) -> list[str]:
    """Classify how much the validator changed the draft, by length delta.

    A coarse signal for observability only; it never affects control flow.
    """
    if draft.strip() == validated.strip():
        return []
    delta = abs(len(validated) - len(draft))
    if delta > threshold:
        return [f"Content modified (length changed by {delta} characters)"]
    return ["Minor corrections applied"]


def _ms_since(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


@dataclass
class _Run:
    request_id: str
    entry: ExecutionLogEntry
    started: float = field(default_factory=time.perf_counter)
    stage: PipelineStage = PipelineStage.STARTED
    deadline: float = float("inf")
    # Seconds of the overall deadline held back for stages after validation
    reserve: float = 0.0

    def elapsed_ms(self) -> int:
        return _ms_since(self.started)

    def validator_budget(self) -> float:
        """Seconds the validator may use and still leave time to finish the run."""
        settle = min(_SETTLE_SECONDS, self.deadline * 0.1)
        remaining = self.deadline - (time.perf_counter() - self.started)
        return max(0.0, remaining - self.reserve - settle)


@dataclass
class _Verified:
    result: ParsedResponse
    metadata: PipelineMetadata


class VerificationPipeline:
    def __init__(
        self,
        generator: Generator,
        validator: Validator,
        *,
        cache: VerificationCache,
        publisher: EventPublisher,
        log_store: ExecutionLogStore,
        price_client: PriceSearchClient | None = None,
        config: Settings | None = None,
    ) -> None:
        self.generator = generator
        self.validator = validator
        self.cache = cache
        self.publisher = publisher
        self.log_store = log_store
        self.price_client = price_client
        self.config = config or default_settings

    # === Public entry points ===

    async def generate_recipe(
        self,
        inventory: list[str],
        recipe_type: str | None = None,
        *,
        request_id: str | None = None,
    ) -> VerifiedRecipeResponse:
        async def body(run: _Run) -> VerifiedRecipeResponse:
            request = self._normalize(run, inventory, ArtifactKind.RECIPE, recipe_type)
            verified = await self._verify(run, request)
            assert isinstance(verified.result, RecipeResult)
            return VerifiedRecipeResponse(
                request_id=run.request_id,
                recipe=verified.result,
                metadata=verified.metadata,
            )

        return await self._execute(
            pipeline_type="recipe",
            items=inventory,
            type_hint=recipe_type,
            request_id=request_id,
            deadline=self.config.recipe_pipeline_timeout_seconds,
            body=body,
        )

    async def generate_product_recommendations(
        self,
        shopping_list: list[str],
        *,
        request_id: str | None = None,
    ) -> VerifiedProductResponse:
        async def body(run: _Run) -> VerifiedProductResponse:
            request = self._normalize(run, shopping_list, ArtifactKind.PRODUCT_RECOMMENDATIONS, None)
            verified = await self._verify(run, request)
            assert isinstance(verified.result, ProductRecommendationResult)
            return VerifiedProductResponse(
                request_id=run.request_id,
                result=verified.result,
                metadata=verified.metadata,
            )

        return await self._execute(
            pipeline_type="product-recommendations",
            items=shopping_list,
            type_hint=None,
            request_id=request_id,
            deadline=self.config.product_pipeline_timeout_seconds,
            body=body,
        )

    async def generate_recipe_with_prices(
        self,
        inventory: list[str],
        recipe_type: str | None = None,
        *,
        request_id: str | None = None,
    ) -> VerifiedRecipeWithPricesResponse:
        async def body(run: _Run) -> VerifiedRecipeWithPricesResponse:
            request = self._normalize(run, inventory, ArtifactKind.RECIPE, recipe_type)
            verified = await self._verify(run, request)
            recipe = verified.result
            assert isinstance(recipe, RecipeResult)

            names = [i.name for i in recipe.missing_ingredients if i.name]
            run.entry.missing_ingredients_count = len(names)
            prices: dict[str, list[PriceProduct]] = {}
            if names:
                prices = await self._lookup_prices(run, names)
                verified.metadata.price_lookup_elapsed_ms = run.entry.price_lookup_elapsed_ms
                if any(not products for products in prices.values()):
                    verified.metadata.corrections.append(PRICES_UNAVAILABLE_NOTE)
                    run.entry.corrections = list(verified.metadata.corrections)

            return VerifiedRecipeWithPricesResponse(
                request_id=run.request_id,
                recipe=recipe,
                product_prices=prices,
                metadata=verified.metadata,
            )

        return await self._execute(
            pipeline_type="recipe-with-prices",
            items=inventory,
            type_hint=recipe_type,
            request_id=request_id,
            deadline=(
                self.config.recipe_pipeline_timeout_seconds
                + self.config.price_lookup_timeout_seconds
            ),
            reserve=self.config.price_lookup_timeout_seconds,
            body=body,
        )

    # === Run lifecycle ===

    async def _execute(
        self,
        *,
        pipeline_type: str,
        items: list[str],
        type_hint: str | None,
        request_id: str | None,
        deadline: float,
        body: Callable[[_Run], Awaitable[T]],
        reserve: float = 0.0,
    ) -> T:
        request_id = request_id or str(uuid.uuid4())
        run = _Run(
            request_id=request_id,
            entry=ExecutionLogEntry(
                request_id=request_id,
                pipeline_type=pipeline_type,
                items=list(items),
                type_hint=type_hint,
            ),
            deadline=deadline,
            reserve=reserve,
        )

        with structlog.contextvars.bound_contextvars(request_id=request_id, pipeline=pipeline_type):
            log.info("pipeline_start", item_count=len(items), has_type_hint=bool(type_hint))
            self._publish(
                run,
                PipelineStage.STARTED,
                f"Starting {pipeline_type} pipeline",
                {"pipeline_type": pipeline_type, "item_count": len(items)},
            )
            try:
                try:
                    async with asyncio.timeout(deadline):
                        response = await body(run)
                except TimeoutError as exc:
                    raise DeadlineExceededError(
                        f"Pipeline timed out after {deadline:g} seconds",
                        stage=run.stage,
                    ) from exc
            except PipelineError as exc:
                if exc.stage is None:
                    exc.stage = run.stage
                exc.elapsed_ms = run.elapsed_ms()
                self._fail(run, exc.message, exc.stage, {"error": exc.error_code, "retryable": exc.retryable})
                raise
            except asyncio.CancelledError:
                self._fail(run, "Request cancelled", run.stage, {"error": "cancelled"})
                raise
            except Exception as exc:
                log.error(
                    "pipeline_unexpected_error",
                    stage=run.stage.value,
                    error_type=type(exc).__name__,
                    exc_info=exc,
                )
                self._fail(run, str(exc) or type(exc).__name__, run.stage, {"error": "internal_error"})
                raise
            else:
                metadata: PipelineMetadata = response.metadata  # type: ignore[attr-defined]
                metadata.total_elapsed_ms = run.elapsed_ms()
                self._succeed(run, metadata)
                return response
            finally:
                self.publisher.close(request_id)

    def _publish(
        self,
        run: _Run,
        stage: PipelineStage,
        message: str,
        payload: dict[str, Any] | None = None,
        *,
        is_complete: bool = False,
        is_error: bool = False,
    ) -> None:
        if not is_error:
            run.stage = stage
        self.publisher.publish(
            PipelineEvent(
                request_id=run.request_id,
                stage=stage,
                message=message,
                payload=payload,
                is_complete=is_complete,
                is_error=is_error,
            )
        )

    def _succeed(self, run: _Run, metadata: PipelineMetadata) -> None:
        entry = run.entry
        entry.was_validated = metadata.was_validated
        entry.cache_hit = metadata.cache_hit
        entry.corrections = list(metadata.corrections)
        entry.finalize(success=True, total_elapsed_ms=metadata.total_elapsed_ms)
        self.log_store.record(entry)

        log.info(
            "pipeline_complete",
            total_ms=metadata.total_elapsed_ms,
            was_validated=metadata.was_validated,
            cache_hit=metadata.cache_hit,
            corrections=len(metadata.corrections),
        )
        self._publish(
            run,
            PipelineStage.COMPLETED,
            "Pipeline completed",
            {
                "total_elapsed_ms": metadata.total_elapsed_ms,
                "was_validated": metadata.was_validated,
                "cache_hit": metadata.cache_hit,
                "corrections": list(metadata.corrections),
            },
            is_complete=True,
        )

    def _fail(
        self,
        run: _Run,
        message: str,
        stage: PipelineStage,
        payload: dict[str, Any],
    ) -> None:
        elapsed = run.elapsed_ms()
        run.entry.finalize(
            success=False,
            total_elapsed_ms=elapsed,
            error_message=message,
            error_stage=stage,
        )
        self.log_store.record(run.entry)

        log.error("pipeline_failed", stage=stage.value, elapsed_ms=elapsed, error=message[:200])
        self._publish(
            run,
            PipelineStage.ERROR,
            message,
            {**payload, "stage": stage.value, "elapsed_ms": elapsed},
            is_error=True,
        )

    # === Stages ===

    def _normalize(
        self,
        run: _Run,
        raw_items: list[str],
        kind: ArtifactKind,
        type_hint: str | None,
    ) -> NormalizedRequest:
        max_items = (
            self.config.max_inventory_size
            if kind == ArtifactKind.RECIPE
            else self.config.max_shopping_list_size
        )
        request = normalize_items(
            raw_items,
            kind=kind,
            max_items=max_items,
            type_hint=type_hint,
            max_item_length=self.config.max_item_length,
        )
        run.entry.items = list(request.items)
        run.entry.type_hint = request.type_hint
        return request

    async def _verify(self, run: _Run, request: NormalizedRequest) -> _Verified:
        key = self.cache.key(request)
        cached = await self.cache.get(key, request.kind)
        if cached is not None:
            return self._from_cache(run, key, cached)

        draft, generator_ms = await self._generate(run, request)
        validated, was_validated, notes, validator_ms = await self._validate(run, draft, request)

        self._publish(run, PipelineStage.PARSING, "Parsing model output")
        outcome = parse_response(validated, request.kind)
        notes.extend(outcome.notes)

        self._publish(run, PipelineStage.SANITIZING, "Sanitizing output")
        if isinstance(outcome.result, RecipeResult):
            result: ParsedResponse = sanitize_recipe(outcome.result)
        else:
            result = sanitize_recommendations(outcome.result)
        corrections = sanitize_notes(notes)
        run.entry.corrections = list(corrections)
        run.entry.was_validated = was_validated

        # Fallback drafts are not cached: a later request should get a validator pass
        if self.cache.enabled and was_validated:
            self._publish(run, PipelineStage.CACHE_WRITE, "Caching verified result", {"cache_key": key})
            await self.cache.put(
                key,
                CachedVerification(
                    result=result,
                    was_validated=was_validated,
                    corrections=corrections,
                    generator_model=self.generator.model,
                    validator_model=self.validator.model,
                ),
                ttl_seconds=self.config.cache_ttl_seconds,
            )

        metadata = PipelineMetadata(
            generator_model=self.generator.model,
            validator_model=self.validator.model,
            generator_elapsed_ms=generator_ms,
            validator_elapsed_ms=validator_ms,
            was_validated=was_validated,
            corrections=corrections,
            cache_hit=False,
            cache_key=key if self.cache.enabled else None,
        )
        return _Verified(result=result, metadata=metadata)

    def _from_cache(self, run: _Run, key: str, cached: CachedVerification) -> _Verified:
        # cached.result is freshly validated from stored JSON: nothing is shared
        run.entry.cache_hit = True
        run.entry.was_validated = cached.was_validated
        run.entry.corrections = list(cached.corrections)
        self._publish(run, PipelineStage.CACHE_HIT, "Returning cached result", {"cache_key": key})
        metadata = PipelineMetadata(
            generator_model=cached.generator_model,
            validator_model=cached.validator_model,
            was_validated=cached.was_validated,
            corrections=list(cached.corrections),
            cache_hit=True,
            cache_key=key,
        )
        return _Verified(result=cached.result, metadata=metadata)

    async def _generate(self, run: _Run, request: NormalizedRequest) -> tuple[str, int]:
        timeout = self.config.generator_timeout_seconds
        run.entry.generator_prompt = build_generation_prompt(request.items, request.type_hint, request.kind)
        self._publish(
            run,
            PipelineStage.GENERATOR_STARTED,
            f"Generating draft with {self.generator.name}",
            {"model": self.generator.model},
        )

        start = time.perf_counter()
        try:
            draft = await with_deadline(
                self.generator.generate_draft(request.items, request.type_hint, request.kind, timeout),
                timeout=timeout,
                provider=self.generator.name,
                stage=PipelineStage.GENERATOR_STARTED,
            )
        except PipelineError:
            run.entry.generator_elapsed_ms = _ms_since(start)
            raise
        elapsed = _ms_since(start)

        run.entry.generator_response = draft
        run.entry.generator_elapsed_ms = elapsed
        log.info("generator_complete", elapsed_ms=elapsed, length=len(draft))
        self._publish(
            run,
            PipelineStage.GENERATOR_COMPLETED,
            "Draft generated",
            {"elapsed_ms": elapsed, "length": len(draft)},
        )
        return draft, elapsed

    async def _validate(
        self,
        run: _Run,
        draft: str,
        request: NormalizedRequest,
    ) -> tuple[str, bool, list[str], int]:
        """Returns (text to parse, was_validated, notes, elapsed_ms). Never raises PipelineError.

        The validator never gets more time than the overall deadline leaves,
        so running out of time here is a fallback rather than a failed run.
        """
        timeout = min(self.config.validator_timeout_seconds, run.validator_budget())
        if timeout < self.config.validator_timeout_seconds:
            log.info(
                "validator_timeout_capped",
                configured_seconds=self.config.validator_timeout_seconds,
                budget_seconds=round(timeout, 3),
            )
        run.entry.validator_prompt = build_validation_prompt(draft, request.items, request.kind)
        self._publish(
            run,
            PipelineStage.VALIDATOR_STARTED,
            f"Validating draft with {self.validator.name}",
            {"model": self.validator.model},
        )

        start = time.perf_counter()
        try:
            validated = await with_deadline(
                self.validator.validate_and_correct(draft, request.items, request.kind, timeout),
                timeout=timeout,
                provider=self.validator.name,
                stage=PipelineStage.VALIDATOR_STARTED,
            )
        except DeadlineExceededError:
            note = "Validator timed out - using generator output"
            reason = "timeout"
        except Exception as exc:
            note = f"Validator failed: {getattr(exc, 'message', str(exc))} - using generator output"
            reason = type(exc).__name__
        else:
            elapsed = _ms_since(start)
            corrections = detect_corrections(draft, validated, self.config.correction_length_threshold)
            run.entry.validator_response = validated
            run.entry.validator_elapsed_ms = elapsed
            log.info("validator_complete", elapsed_ms=elapsed, corrections=corrections)
            self._publish(
                run,
                PipelineStage.VALIDATOR_COMPLETED,
                "Draft validated",
                {"elapsed_ms": elapsed, "corrections": corrections},
            )
            return validated, True, corrections, elapsed

        elapsed = _ms_since(start)
        run.entry.validator_elapsed_ms = elapsed
        log.warning("validator_fallback", reason=reason, elapsed_ms=elapsed, note=note[:200])
        self._publish(
            run,
            PipelineStage.VALIDATOR_FALLBACK,
            note,
            {"elapsed_ms": elapsed, "reason": reason},
        )
        return draft, False, [note], elapsed

    async def _lookup_prices(self, run: _Run, names: list[str]) -> dict[str, list[PriceProduct]]:
        if self.price_client is None:
            log.warning("price_lookup_unconfigured", items=len(names))
            run.entry.price_lookup_elapsed_ms = 0
            return {name: [] for name in dict.fromkeys(names)}

        total = len(dict.fromkeys(names))
        completed = 0

        def on_item(name: str, products: list[PriceProduct]) -> None:
            nonlocal completed
            completed += 1
            self._publish(
                run,
                PipelineStage.PRICE_LOOKUP_PROGRESS,
                f"Price lookup {completed}/{total}: {name}",
                {"item": name, "found": len(products), "completed": completed, "total": total},
            )

        self._publish(
            run,
            PipelineStage.PRICE_LOOKUP_STARTED,
            f"Looking up prices for {total} items",
            {"items": list(dict.fromkeys(names))},
        )
        start = time.perf_counter()
        prices = await lookup_many(
            self.price_client,
            names,
            per_item_timeout=self.config.price_lookup_timeout_seconds,
            top_n=self.config.price_search_top_n,
            on_item=on_item,
        )
        elapsed = _ms_since(start)
        run.entry.price_lookup_elapsed_ms = elapsed

        found = sum(1 for products in prices.values() if products)
        self._publish(
            run,
            PipelineStage.PRICE_LOOKUP_COMPLETED,
            f"Found prices for {found}/{total} items",
            {"elapsed_ms": elapsed, "found": found, "total": total},
        )
        return sanitize_price_map(prices)
