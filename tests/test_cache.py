"""Tests for the verification cache: keys, TTL, backends, failure handling."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import AsyncMock

from dualmodel.cache import (
    NO_TYPE_HINT,
    CachedVerification,
    CacheEntry,
    FileCacheBackend,
    MemoryCacheBackend,
    VerificationCache,
    cache_key,
)
from dualmodel.models.contracts import (
    ArtifactKind,
    NormalizedRequest,
    ProductRecommendationResult,
    RecipeIngredient,
    RecipeResult,
)


def _request(items: list[str], hint: str | None = None, kind: ArtifactKind = ArtifactKind.RECIPE):
    return NormalizedRequest(kind=kind, items=items, type_hint=hint)


def _cached_recipe() -> CachedVerification:
    return CachedVerification(
        result=RecipeResult(
            name="Sauce",
            missing_ingredients=[RecipeIngredient(name="garlic")],
            steps=["Simmer"],
        ),
        was_validated=True,
        corrections=["Minor corrections applied"],
        generator_model="gen",
        validator_model="val",
    )


class TestCacheKey:
    def test_invariant_under_permutation_and_case(self) -> None:
        assert cache_key(_request(["Egg", "Milk"])) == cache_key(_request(["milk", "egg"]))

    def test_whitespace_ignored(self) -> None:
        assert cache_key(_request([" egg ", "milk"])) == cache_key(_request(["egg", "milk"]))

    def test_prefixed_by_kind(self) -> None:
        assert cache_key(_request(["egg"])).startswith("recipe:")
        product_key = cache_key(_request(["egg"], kind=ArtifactKind.PRODUCT_RECOMMENDATIONS))
        assert product_key.startswith("product-recommendations:")

    def test_type_hint_changes_key(self) -> None:
        assert cache_key(_request(["egg"], "Dessert")) != cache_key(_request(["egg"]))

    def test_type_hint_case_insensitive(self) -> None:
        assert cache_key(_request(["egg"], "Dessert")) == cache_key(_request(["egg"], "dessert"))

    def test_absent_hint_uses_sentinel(self) -> None:
        assert cache_key(_request(["egg"])) == cache_key(_request(["egg"], NO_TYPE_HINT))

    def test_sha256_hex_digest(self) -> None:
        digest = cache_key(_request(["egg"])).split(":", 1)[1]
        assert len(digest) == 64
        int(digest, 16)


class TestCacheEntry:
    def test_expiry(self) -> None:
        entry = CacheEntry(value=1, ttl_seconds=10, stored_at=100.0)
        assert not entry.is_expired(now=105.0)
        assert entry.is_expired(now=111.0)


class TestMemoryBackend:
    def test_get_set(self) -> None:
        backend = MemoryCacheBackend()
        asyncio.run(backend.set("k", {"a": 1}, 60))
        assert asyncio.run(backend.get("k")) == {"a": 1}
        assert asyncio.run(backend.get("missing")) is None

    def test_expired_entries_dropped_on_read(self) -> None:
        backend = MemoryCacheBackend()
        backend._entries["k"] = CacheEntry(value=1, ttl_seconds=1, stored_at=time.time() - 10)
        assert asyncio.run(backend.get("k")) is None
        assert len(backend) == 0


class TestFileBackend:
    def test_round_trip_survives_new_instance(self, tmp_path) -> None:
        asyncio.run(FileCacheBackend(tmp_path).set("recipe:abc", {"a": [1, 2]}, 60))
        assert asyncio.run(FileCacheBackend(tmp_path).get("recipe:abc")) == {"a": [1, 2]}

    def test_expired_file_removed(self, tmp_path) -> None:
        backend = FileCacheBackend(tmp_path)
        asyncio.run(backend.set("k", {"a": 1}, -1))
        assert asyncio.run(backend.get("k")) is None
        assert list(tmp_path.iterdir()) == []


class TestVerificationCache:
    def test_put_then_get_returns_equal_copy(self) -> None:
        cache = VerificationCache(MemoryCacheBackend())
        original = _cached_recipe()

        async def run():
            await cache.put("recipe:k", original)
            return await cache.get("recipe:k", ArtifactKind.RECIPE), await cache.get(
                "recipe:k", ArtifactKind.RECIPE
            )

        first, second = asyncio.run(run())
        assert first == original
        assert first is not original
        assert first.result is not second.result
        first.result.steps.append("mutated")
        assert second.result.steps == ["Simmer"]

    def test_kind_mismatch_is_miss(self) -> None:
        cache = VerificationCache(MemoryCacheBackend())

        async def run():
            await cache.put("k", _cached_recipe())
            return await cache.get("k", ArtifactKind.PRODUCT_RECOMMENDATIONS)

        assert asyncio.run(run()) is None

    def test_product_result_round_trip(self) -> None:
        cache = VerificationCache(MemoryCacheBackend())
        value = CachedVerification(result=ProductRecommendationResult(recommendations=["Milk"]))

        async def run():
            await cache.put("k", value)
            return await cache.get("k", ArtifactKind.PRODUCT_RECOMMENDATIONS)

        cached = asyncio.run(run())
        assert cached.result.recommendations[0].product_name == "Milk"

    def test_backend_read_error_is_miss(self) -> None:
        backend = AsyncMock()
        backend.get.side_effect = ConnectionError("redis down")
        cache = VerificationCache(backend)
        assert asyncio.run(cache.get("k", ArtifactKind.RECIPE)) is None

    def test_backend_write_error_is_noop(self) -> None:
        backend = AsyncMock()
        backend.set.side_effect = ConnectionError("redis down")
        cache = VerificationCache(backend)
        asyncio.run(cache.put("k", _cached_recipe()))
        backend.set.assert_awaited_once()

    def test_invalid_entry_is_miss(self) -> None:
        backend = MemoryCacheBackend()
        cache = VerificationCache(backend)
        asyncio.run(backend.set("k", {"unexpected": True}, 60))
        assert asyncio.run(cache.get("k", ArtifactKind.RECIPE)) is None

    def test_default_ttl_used(self) -> None:
        backend = AsyncMock()
        backend.get.return_value = None
        cache = VerificationCache(backend, ttl_seconds=3600)
        asyncio.run(cache.put("k", _cached_recipe()))
        assert backend.set.await_args.args[2] == 3600

    def test_disabled_cache(self) -> None:
        cache = VerificationCache(None)
        assert cache.enabled is False
        asyncio.run(cache.put("k", _cached_recipe()))
        assert asyncio.run(cache.get("k", ArtifactKind.RECIPE)) is None
