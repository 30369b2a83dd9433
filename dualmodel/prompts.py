"""Prompt templates for the generator and validator models.

Templates are plain ``str.format`` strings; literal JSON braces are doubled.
"""

from __future__ import annotations

from dualmodel.models.contracts import ArtifactKind

ANY_RECIPE_TYPE = "any type"

RECIPE_GENERATION = """\
You are a creative chef. Generate a recipe using these ingredients: {items}.
Recipe type preference: {recipe_type}.

Output JSON format:
{{
  "recipeName": "string",
  "ingredients": [{{"name": "string", "quantity": "string", "unit": "string"}}],
  "missingIngredients": [{{"name": "string", "quantity": "string", "unit": "string"}}],
  "steps": ["string"],
  "prepTime": "string",
  "cookTime": "string",
  "servings": number
}}

Be creative but practical. List any missing ingredients needed. Return ONLY valid JSON, no additional text."""

PRODUCT_GENERATION = """\
You are a shopping assistant. Recommend products for this shopping list: {items}.

Output JSON format:
{{
  "recommendations": [
    {{
      "productName": "string",
      "estimatedQuantity": "string",
      "reasoning": "string"
    }}
  ]
}}

Be specific with product names so they can be searched on e-commerce sites. Return ONLY valid JSON, no additional text."""

RECIPE_VALIDATION = """\
You are a food engineer performing quality control on a recipe.

USER INVENTORY: {items}
GENERATED RECIPE: {draft}

VALIDATION CHECKLIST:
1. Are all recipe ingredients either in USER INVENTORY or listed in missingIngredients?
2. Are portion sizes realistic? (e.g., not "5kg sugar" for 4 servings)
3. Are cooking steps logically ordered?
4. Are cooking times and temperatures appropriate?
5. Is the missingIngredients list complete and accurate?

If errors exist, correct them. Return ONLY the corrected JSON in the same format.
If no errors, return the original JSON unchanged.
Return ONLY valid JSON, no additional text or explanation."""

PRODUCT_VALIDATION = """\
You are a quality control specialist for product recommendations.

SHOPPING LIST: {items}
GENERATED RECOMMENDATIONS: {draft}

VALIDATION CHECKLIST:
1. Are product names specific and searchable?
2. Are quantities realistic?
3. Are there any hallucinated or nonsensical products?
4. Does each recommendation have clear reasoning?

If errors exist, correct them. Return ONLY the corrected JSON in the same format.
If no errors, return the original JSON unchanged.
Return ONLY valid JSON, no additional text or explanation."""


def build_generation_prompt(items: list[str], type_hint: str | None, kind: ArtifactKind) -> str:
    joined = ", ".join(items)
    if kind == ArtifactKind.RECIPE:
        return RECIPE_GENERATION.format(items=joined, recipe_type=type_hint or ANY_RECIPE_TYPE)
    return PRODUCT_GENERATION.format(items=joined)


def build_validation_prompt(draft: str, items: list[str], kind: ArtifactKind) -> str:
    template = RECIPE_VALIDATION if kind == ArtifactKind.RECIPE else PRODUCT_VALIDATION
    return template.format(items=", ".join(items), draft=draft)
