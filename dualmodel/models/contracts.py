"""Contract models shared by the pipeline, its adapters and the HTTP API.

Parsed model output is deliberately lenient on the way in (nulls become
empty values, numbers become strings, bare-string ingredients become
ingredient objects) and strict on the way out: every list field is a list.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    AliasGenerator,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

# === Shared Types ===


class ArtifactKind(StrEnum):
    RECIPE = "recipe"
    PRODUCT_RECOMMENDATIONS = "product-recommendations"


class PipelineStage(StrEnum):
    STARTED = "started"
    CACHE_HIT = "cache_hit"
    GENERATOR_STARTED = "generator_started"
    GENERATOR_COMPLETED = "generator_completed"
    VALIDATOR_STARTED = "validator_started"
    VALIDATOR_COMPLETED = "validator_completed"
    VALIDATOR_FALLBACK = "validator_fallback"
    PARSING = "parsing"
    SANITIZING = "sanitizing"
    CACHE_WRITE = "cache_write"
    PRICE_LOOKUP_STARTED = "price_lookup_started"
    PRICE_LOOKUP_PROGRESS = "price_lookup_progress"
    PRICE_LOOKUP_COMPLETED = "price_lookup_completed"
    COMPLETED = "completed"
    ERROR = "error"


class NormalizedRequest(BaseModel):
    """Sanitized, de-duplicated item list plus optional type hint."""

    model_config = ConfigDict(frozen=True)

    kind: ArtifactKind
    items: list[str] = Field(min_length=1)
    type_hint: str | None = None

    @property
    def folded_items(self) -> list[str]:
        """Trimmed, case-folded items, sorted so order never matters."""
        return sorted(item.strip().lower() for item in self.items)


class ItemRejection(BaseModel):
    index: int
    value: str
    reason: Literal["empty", "invalid_characters", "too_long"]


# === Parsed Model Output ===


def _fold_key(key: str) -> str:
    return key.replace("_", "").replace("-", "").lower()


class _ModelOutput(BaseModel):
    """Base for structures parsed out of model text.

    Field lookup is case-insensitive: incoming keys are folded
    (``missingIngredients`` / ``missing_ingredients`` -> ``missingingredients``)
    and matched against the folded field names.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        coerce_numbers_to_str=True,
        alias_generator=AliasGenerator(validation_alias=lambda name: name.replace("_", "")),
    )

    @model_validator(mode="before")
    @classmethod
    def _fold_keys_and_drop_nulls(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        return {_fold_key(str(k)): v for k, v in data.items() if v is not None}


class RecipeIngredient(_ModelOutput):
    name: str = ""
    quantity: str = ""
    unit: str = ""

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_name(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"name": data}
        return data


class ProductRecommendation(_ModelOutput):
    product_name: str = Field(
        default="",
        validation_alias=AliasChoices("productname", "name", "product_name"),
    )
    estimated_quantity: str = Field(
        default="",
        validation_alias=AliasChoices("estimatedquantity", "quantity", "estimated_quantity"),
    )
    reasoning: str = ""

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_name(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"productname": data}
        return data


class RecipeResult(_ModelOutput):
    kind: Literal["recipe"] = "recipe"
    name: str = Field(default="", validation_alias=AliasChoices("recipename", "name"))
    ingredients: list[RecipeIngredient] = []
    missing_ingredients: list[RecipeIngredient] = []
    steps: list[str] = []
    prep_time: str = ""
    cook_time: str = ""
    servings: int = 0

    @field_validator("steps", mode="before")
    @classmethod
    def _steps_as_text(cls, value: Any) -> Any:
        # Some models emit [{"step": 1, "instruction": "..."}]
        if not isinstance(value, list):
            return value
        steps = []
        for step in value:
            if isinstance(step, dict):
                text = next(
                    (step[k] for k in ("instruction", "text", "description") if step.get(k)),
                    " ".join(str(v) for v in step.values()),
                )
                steps.append(str(text))
            else:
                steps.append(step)
        return steps

    @field_validator("servings", mode="before")
    @classmethod
    def _servings_from_text(cls, value: Any) -> Any:
        # "4 servings", "4-6" -> 4
        if isinstance(value, str):
            digits = ""
            for ch in value.strip():
                if not ch.isdigit():
                    break
                digits += ch
            return int(digits) if digits else 0
        if isinstance(value, float):
            return int(value)
        return value


class ProductRecommendationResult(_ModelOutput):
    kind: Literal["product-recommendations"] = "product-recommendations"
    recommendations: list[ProductRecommendation] = []


ParsedResponse = RecipeResult | ProductRecommendationResult


# === Price Lookup ===


class PriceProduct(BaseModel):
    """One ranked result from the price-search collaborator."""

    id: str = ""
    name: str = ""
    brand: str = ""
    price: float = 0.0
    unit_price: float | None = None
    quantity: str = ""
    unit: str = ""
    merchant_id: str = ""
    merchant_name: str = ""
    product_url: str = ""
    image_url: str | None = None
    is_on_sale: bool = False
    original_price: float | None = None
    discount_percentage: int | None = None


# === Pipeline Telemetry ===


class PipelineMetadata(BaseModel):
    generator_model: str = ""
    validator_model: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    generator_elapsed_ms: int = 0
    validator_elapsed_ms: int | None = None  # None when the validator never ran
    price_lookup_elapsed_ms: int | None = None
    total_elapsed_ms: int = 0
    was_validated: bool = False
    corrections: list[str] = []
    cache_hit: bool = False
    cache_key: str | None = None


class PipelineEvent(BaseModel):
    request_id: str
    stage: PipelineStage
    message: str
    payload: dict[str, Any] | None = None
    is_complete: bool = False
    is_error: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_terminal(self) -> bool:
        return self.is_complete or self.is_error


# === Pipeline Outputs ===


class VerifiedRecipeResponse(BaseModel):
    request_id: str
    recipe: RecipeResult
    metadata: PipelineMetadata


class VerifiedProductResponse(BaseModel):
    request_id: str
    result: ProductRecommendationResult
    metadata: PipelineMetadata


class VerifiedRecipeWithPricesResponse(BaseModel):
    request_id: str
    recipe: RecipeResult
    product_prices: dict[str, list[PriceProduct]] = {}
    metadata: PipelineMetadata


# === API Request/Response Models ===


class VerifiedRecipeRequest(BaseModel):
    inventory: list[str]
    recipe_type: str | None = None
    request_id: str | None = Field(default=None, max_length=64)


class VerifiedProductRequest(BaseModel):
    shopping_list: list[str]
    request_id: str | None = Field(default=None, max_length=64)


class ErrorResponse(BaseModel):
    error: str
    message: str
    retryable: bool
    detail: str | None = None
