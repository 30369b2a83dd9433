"""Shared fakes and fixtures.

Model adapters and the price-search client are replaced by in-process fakes;
everything else (cache, publisher, log store, parsing) is the real thing.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from dualmodel.api.rate_limit import limiter
from dualmodel.cache import MemoryCacheBackend, VerificationCache
from dualmodel.config import Settings
from dualmodel.dependencies import Services, get_services
from dualmodel.events import EventPublisher
from dualmodel.execution_log import ExecutionLogStore
from dualmodel.main import app
from dualmodel.models.contracts import ArtifactKind, PriceProduct
from dualmodel.pipeline import VerificationPipeline

RECIPE_DRAFT = json.dumps(
    {
        "recipeName": "Tomato Onion Sauce",
        "ingredients": [
            {"name": "tomato", "quantity": "3", "unit": "pcs"},
            {"name": "onion", "quantity": "1", "unit": "pcs"},
        ],
        "missingIngredients": [{"name": "garlic", "quantity": "2", "unit": "cloves"}],
        "steps": ["Chop the onion", "Simmer with tomatoes for 20 minutes"],
        "prepTime": "10 minutes",
        "cookTime": "20 minutes",
        "servings": 2,
    }
)

PRODUCT_DRAFT = json.dumps(
    {
        "recommendations": [
            {"productName": "Whole milk 1L", "estimatedQuantity": "2", "reasoning": "Weekly use"},
            {"productName": "Free-range eggs (10)", "estimatedQuantity": "1", "reasoning": "Breakfast"},
        ]
    }
)


class FakeGenerator:
    name = "fake-generator"
    model = "fake-gen-1"

    def __init__(
        self,
        response: str = RECIPE_DRAFT,
        *,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.response = response
        self.delay = delay
        self.error = error
        self.calls: list[tuple[list[str], str | None, ArtifactKind]] = []

    async def generate_draft(
        self,
        items: list[str],
        type_hint: str | None,
        kind: ArtifactKind,
        timeout: float,
    ) -> str:
        self.calls.append((items, type_hint, kind))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


class FakeValidator:
    """Echoes the draft unless a response is given."""

    name = "fake-validator"
    model = "fake-val-1"

    def __init__(
        self,
        response: str | None = None,
        *,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.response = response
        self.delay = delay
        self.error = error
        self.calls: list[str] = []

    async def validate_and_correct(
        self,
        draft: str,
        items: list[str],
        kind: ArtifactKind,
        timeout: float,
    ) -> str:
        self.calls.append(draft)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return draft if self.response is None else self.response


class FakePriceClient:
    """Per-name canned results; an Exception value is raised, a float is a delay."""

    def __init__(self, results: dict[str, list[PriceProduct] | Exception | float] | None = None) -> None:
        self.results = results or {}
        self.queries: list[str] = []

    async def search(self, name: str, *, page: int = 1, sort: str = "") -> list[PriceProduct]:
        self.queries.append(name)
        result = self.results.get(name, [])
        if isinstance(result, Exception):
            raise result
        if isinstance(result, float):
            await asyncio.sleep(result)
            return []
        return result


def make_product(name: str, price: float = 10.0, **kwargs) -> PriceProduct:
    return PriceProduct(
        id=name.replace(" ", "-"),
        name=name,
        price=price,
        merchant_name="Market",
        product_url=f"https://shop.example.com/{name.replace(' ', '-')}",
        **kwargs,
    )


def make_settings(**overrides) -> Settings:
    values = {
        "groq_api_key": "test-groq",
        "generator_timeout_seconds": 1.0,
        "validator_timeout_seconds": 1.0,
        "recipe_pipeline_timeout_seconds": 3.0,
        "product_pipeline_timeout_seconds": 3.0,
        "price_lookup_timeout_seconds": 0.5,
        "stream_idle_timeout_seconds": 2.0,
    }
    values.update(overrides)
    return Settings(**values)


def make_pipeline(
    generator: FakeGenerator | None = None,
    validator: FakeValidator | None = None,
    *,
    price_client: FakePriceClient | None = None,
    cache: VerificationCache | None = None,
    publisher: EventPublisher | None = None,
    log_store: ExecutionLogStore | None = None,
    config: Settings | None = None,
) -> VerificationPipeline:
    return VerificationPipeline(
        generator or FakeGenerator(),
        validator or FakeValidator(),
        cache=cache or VerificationCache(MemoryCacheBackend()),
        publisher=publisher or EventPublisher(idle_timeout=2.0),
        log_store=log_store or ExecutionLogStore(capacity=50),
        price_client=price_client,
        config=config or make_settings(),
    )


@pytest.fixture
def services() -> Services:
    pipeline = make_pipeline(price_client=FakePriceClient({"garlic": [make_product("Garlic 250g", 24.9)]}))
    return Services(pipeline=pipeline, publisher=pipeline.publisher, log_store=pipeline.log_store)


@pytest.fixture
async def client(services):
    """HTTP client against the app with fake services wired in."""
    limiter.reset()
    app.dependency_overrides[get_services] = lambda: services
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
