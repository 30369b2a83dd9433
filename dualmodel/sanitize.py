"""Output sanitization — strips executable markup and unsafe URLs.

Applied to every parsed result before it is cached or returned. Pure: inputs
are never mutated, and nothing here raises. A field that cannot be made safe
is cleared rather than failing the whole response.
"""

from __future__ import annotations

import html
import re
import urllib.parse

import structlog

from dualmodel.models.contracts import (
    PriceProduct,
    ProductRecommendation,
    ProductRecommendationResult,
    RecipeIngredient,
    RecipeResult,
)

logger = structlog.get_logger()

_SCRIPT_RE = re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL)
_UNSAFE_SCHEME_RE = re.compile(r"(?:javascript|data)\s*:", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")

ALLOWED_URL_SCHEMES = frozenset({"http", "https"})


def sanitize_text(text: str | None) -> str:
    """Remove script spans, unsafe URI schemes and markup tags; trim."""
    if not text:
        return ""
    text = _SCRIPT_RE.sub("", text)
    text = _UNSAFE_SCHEME_RE.sub("", text)
    text = _TAG_RE.sub("", text)
    # Encode then decode: normalizes without double-encoding existing entities
    text = html.unescape(html.escape(text))
    return text.strip()


def sanitize_url(url: str | None) -> str | None:
    """Return the URL if it is absolute http(s), else None (and log why)."""
    if not url or not url.strip():
        return None
    candidate = _TAG_RE.sub("", _SCRIPT_RE.sub("", url)).strip()

    if _UNSAFE_SCHEME_RE.match(candidate):
        logger.warning("sanitize_url_blocked", reason="unsafe_scheme", url=url[:100])
        return None

    try:
        parts = urllib.parse.urlsplit(candidate)
    except ValueError:
        logger.warning("sanitize_url_blocked", reason="unparseable", url=url[:100])
        return None

    if not parts.scheme or not parts.netloc:
        logger.warning("sanitize_url_blocked", reason="not_absolute", url=url[:100])
        return None

    if parts.scheme.lower() not in ALLOWED_URL_SCHEMES:
        logger.warning(
            "sanitize_url_blocked",
            reason="disallowed_scheme",
            scheme=parts.scheme,
            url=url[:100],
        )
        return None

    return candidate


def _sanitize_ingredient(ingredient: RecipeIngredient) -> RecipeIngredient:
    return ingredient.model_copy(
        update={
            "name": sanitize_text(ingredient.name),
            "quantity": sanitize_text(ingredient.quantity),
            "unit": sanitize_text(ingredient.unit),
        }
    )


def sanitize_recipe(recipe: RecipeResult) -> RecipeResult:
    return recipe.model_copy(
        update={
            "name": sanitize_text(recipe.name),
            "prep_time": sanitize_text(recipe.prep_time),
            "cook_time": sanitize_text(recipe.cook_time),
            "ingredients": [_sanitize_ingredient(i) for i in recipe.ingredients],
            "missing_ingredients": [_sanitize_ingredient(i) for i in recipe.missing_ingredients],
            "steps": [sanitize_text(s) for s in recipe.steps],
        }
    )


def _sanitize_recommendation(rec: ProductRecommendation) -> ProductRecommendation:
    return rec.model_copy(
        update={
            "product_name": sanitize_text(rec.product_name),
            "estimated_quantity": sanitize_text(rec.estimated_quantity),
            "reasoning": sanitize_text(rec.reasoning),
        }
    )


def sanitize_recommendations(result: ProductRecommendationResult) -> ProductRecommendationResult:
    return result.model_copy(
        update={"recommendations": [_sanitize_recommendation(r) for r in result.recommendations]}
    )


def sanitize_product(product: PriceProduct) -> PriceProduct:
    return product.model_copy(
        update={
            "name": sanitize_text(product.name),
            "brand": sanitize_text(product.brand),
            "merchant_name": sanitize_text(product.merchant_name),
            "quantity": sanitize_text(product.quantity),
            "unit": sanitize_text(product.unit),
            "product_url": sanitize_url(product.product_url) or "",
            "image_url": sanitize_url(product.image_url),
        }
    )


def sanitize_price_map(prices: dict[str, list[PriceProduct]]) -> dict[str, list[PriceProduct]]:
    """Sanitize every product; keys are left as-is (they are normalized inputs)."""
    return {name: [sanitize_product(p) for p in products] for name, products in prices.items()}


def sanitize_notes(notes: list[str]) -> list[str]:
    return [sanitize_text(n) for n in notes]
