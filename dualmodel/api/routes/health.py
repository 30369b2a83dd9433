"""Liveness endpoint. Always 200 so load balancers keep routing."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from dualmodel.config import settings
from dualmodel.dependencies import Services, get_services

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(services: Services = Depends(get_services)) -> dict:
    pipeline = services.pipeline
    return {
        "status": "ok",
        "version": "0.1.0",
        "environment": settings.environment,
        "generator": {"provider": pipeline.generator.name, "model": pipeline.generator.model},
        "validator": {"provider": pipeline.validator.name, "model": pipeline.validator.model},
        "cache_enabled": pipeline.cache.enabled,
        "price_search_configured": pipeline.price_client is not None,
        "active_streams": len(services.publisher.active_request_ids()),
        "execution_logs": len(services.log_store),
    }
