"""Verified generation endpoints — thin wrappers over ``VerificationPipeline``.

All three share one per-client rate limit (see ``dualmodel.api.rate_limit``).
Pipeline errors propagate to the app-level handler, which renders them as
``ErrorResponse`` with the matching status code.
"""

from fastapi import APIRouter, Depends, Request

from dualmodel.api.rate_limit import verified_rate_limit
from dualmodel.dependencies import get_pipeline
from dualmodel.models.contracts import (
    VerifiedProductRequest,
    VerifiedProductResponse,
    VerifiedRecipeRequest,
    VerifiedRecipeResponse,
    VerifiedRecipeWithPricesResponse,
)
from dualmodel.pipeline import VerificationPipeline

router = APIRouter(tags=["verification"])


def _run_id(body_request_id: str | None, request: Request) -> str | None:
    return body_request_id or getattr(request.state, "request_id", None)


@router.post("/recipes/verified", response_model=VerifiedRecipeResponse)
@verified_rate_limit
async def verified_recipe(
    body: VerifiedRecipeRequest,
    request: Request,
    pipeline: VerificationPipeline = Depends(get_pipeline),
) -> VerifiedRecipeResponse:
    return await pipeline.generate_recipe(
        body.inventory,
        body.recipe_type,
        request_id=_run_id(body.request_id, request),
    )


@router.post("/recipes/verified-with-prices", response_model=VerifiedRecipeWithPricesResponse)
@verified_rate_limit
async def verified_recipe_with_prices(
    body: VerifiedRecipeRequest,
    request: Request,
    pipeline: VerificationPipeline = Depends(get_pipeline),
) -> VerifiedRecipeWithPricesResponse:
    return await pipeline.generate_recipe_with_prices(
        body.inventory,
        body.recipe_type,
        request_id=_run_id(body.request_id, request),
    )


@router.post("/products/verified", response_model=VerifiedProductResponse)
@verified_rate_limit
async def verified_products(
    body: VerifiedProductRequest,
    request: Request,
    pipeline: VerificationPipeline = Depends(get_pipeline),
) -> VerifiedProductResponse:
    return await pipeline.generate_product_recommendations(
        body.shopping_list,
        request_id=_run_id(body.request_id, request),
    )
