"""Service wiring: builds the pipeline and its collaborators from settings.

The object graph is built once per process (``get_services``) and handed to
routes through FastAPI dependencies, so tests can swap it with
``app.dependency_overrides``.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

import structlog
from fastapi import Depends

from dualmodel.adapters.generator import GroqGenerator
from dualmodel.adapters.validators import configured_validators, select_validator
from dualmodel.cache import CacheBackend, FileCacheBackend, MemoryCacheBackend, VerificationCache
from dualmodel.config import Settings, settings
from dualmodel.errors import ConfigurationError
from dualmodel.events import EventPublisher
from dualmodel.execution_log import ExecutionLogStore
from dualmodel.pipeline import VerificationPipeline
from dualmodel.pricing import HttpPriceSearchClient, PriceSearchClient

logger = structlog.get_logger()


@dataclass
class Services:
    pipeline: VerificationPipeline
    publisher: EventPublisher
    log_store: ExecutionLogStore

    async def aclose(self) -> None:
        """Close the HTTP clients owned by the generator and price search."""
        for owner in (self.pipeline.generator, self.pipeline.price_client):
            close = getattr(owner, "aclose", None)
            if close is not None:
                await close()
        logger.info("services_closed")


def build_cache_backend(config: Settings) -> CacheBackend | None:
    backend = config.cache_backend.strip().lower()
    if backend == "memory":
        return MemoryCacheBackend()
    if backend == "file":
        return FileCacheBackend(config.cache_dir)
    if backend == "none":
        return None
    raise ConfigurationError(f"Unknown CACHE_BACKEND {config.cache_backend!r} (expected memory, file or none)")


def build_services(config: Settings) -> Services:
    """Construct every collaborator. Raises ``ConfigurationError`` when unusable."""
    if not config.groq_api_key:
        raise ConfigurationError("GROQ_API_KEY is required for the generator")
    generator = GroqGenerator(
        config.groq_api_key,
        model=config.groq_model,
        base_url=config.groq_base_url,
        temperature=config.groq_temperature,
        max_tokens=config.groq_max_tokens,
    )
    validator = select_validator(configured_validators(config), config.validator_order())

    price_client: PriceSearchClient | None = None
    if config.price_search_url:
        price_client = HttpPriceSearchClient(config.price_search_url)

    publisher = EventPublisher(idle_timeout=config.stream_idle_timeout_seconds)
    log_store = ExecutionLogStore(capacity=config.execution_log_capacity)
    pipeline = VerificationPipeline(
        generator,
        validator,
        cache=VerificationCache(build_cache_backend(config), ttl_seconds=config.cache_ttl_seconds),
        publisher=publisher,
        log_store=log_store,
        price_client=price_client,
        config=config,
    )

    logger.info(
        "services_configured",
        generator=generator.name,
        generator_model=generator.model,
        validator=validator.name,
        validator_model=validator.model,
        cache_backend=config.cache_backend,
        price_search=price_client is not None,
    )
    return Services(pipeline=pipeline, publisher=publisher, log_store=log_store)


@lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services(settings)


def get_pipeline(services: Services = Depends(get_services)) -> VerificationPipeline:
    return services.pipeline


def get_publisher(services: Services = Depends(get_services)) -> EventPublisher:
    return services.publisher


def get_log_store(services: Services = Depends(get_services)) -> ExecutionLogStore:
    return services.log_store
