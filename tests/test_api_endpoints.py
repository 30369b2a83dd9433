"""API endpoint tests — run against the real app with fake services wired in."""

from __future__ import annotations

import asyncio
import json

import pytest
from conftest import PRODUCT_DRAFT, FakeGenerator
from fastapi import Request

from dualmodel.api import rate_limit
from dualmodel.api.routes.stream import format_sse
from dualmodel.errors import DeadlineExceededError, ProviderError
from dualmodel.models.contracts import PipelineEvent, PipelineStage


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_returns_ok(self, client):
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["generator"] == {"provider": "fake-generator", "model": "fake-gen-1"}
        assert data["validator"]["provider"] == "fake-validator"
        assert data["cache_enabled"] is True
        assert data["price_search_configured"] is True

    @pytest.mark.asyncio
    async def test_response_carries_request_id(self, client):
        resp = await client.get("/api/v1/health", headers={"X-Request-ID": "abc-123"})
        assert resp.headers["X-Request-ID"] == "abc-123"

    @pytest.mark.asyncio
    async def test_request_id_generated_when_absent(self, client):
        resp = await client.get("/api/v1/health")
        assert len(resp.headers["X-Request-ID"]) == 36


class TestVerifiedRecipe:
    @pytest.mark.asyncio
    async def test_returns_recipe_and_metadata(self, client):
        resp = await client.post(
            "/api/v1/recipes/verified",
            json={"inventory": ["tomato", "onion"], "recipe_type": "Italian"},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["recipe"]["name"] == "Tomato Onion Sauce"
        assert data["recipe"]["missing_ingredients"][0]["name"] == "garlic"
        assert data["metadata"]["was_validated"] is True
        assert data["metadata"]["cache_hit"] is False

    @pytest.mark.asyncio
    async def test_body_request_id_used_for_run(self, client, services):
        resp = await client.post(
            "/api/v1/recipes/verified",
            json={"inventory": ["tomato"], "request_id": "body-id"},
        )
        assert resp.json()["request_id"] == "body-id"
        assert services.log_store.get("body-id") is not None

    @pytest.mark.asyncio
    async def test_header_request_id_used_when_body_has_none(self, client, services):
        resp = await client.post(
            "/api/v1/recipes/verified",
            json={"inventory": ["tomato"]},
            headers={"X-Request-ID": "header-id"},
        )
        assert resp.json()["request_id"] == "header-id"
        assert services.log_store.get("header-id").success is True

    @pytest.mark.asyncio
    async def test_empty_inventory_is_400(self, client):
        resp = await client.post("/api/v1/recipes/verified", json={"inventory": []})
        assert resp.status_code == 400
        data = resp.json()
        assert data["error"] == "validation_error"
        assert data["retryable"] is False
        assert "cannot be empty" in data["message"]

    @pytest.mark.asyncio
    async def test_rejected_items_listed_in_detail(self, client):
        resp = await client.post("/api/v1/recipes/verified", json={"inventory": ["milk", "   "]})
        assert resp.status_code == 400
        assert "[1] empty" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_malformed_body_is_422(self, client):
        resp = await client.post("/api/v1/recipes/verified", json={"items": ["milk"]})
        assert resp.status_code == 422
        data = resp.json()
        assert data["error"] == "validation_error"
        assert "inventory" in data["message"]

    @pytest.mark.asyncio
    async def test_generator_timeout_is_504(self, client, services):
        services.pipeline.generator = FakeGenerator(
            error=DeadlineExceededError("fake-generator call timed out after 10 seconds")
        )
        resp = await client.post("/api/v1/recipes/verified", json={"inventory": ["milk"]})
        assert resp.status_code == 504
        data = resp.json()
        assert data["error"] == "deadline_exceeded"
        assert data["retryable"] is True
        assert "stage=generator_started" in data["detail"]

    @pytest.mark.asyncio
    async def test_generator_failure_is_502(self, client, services):
        services.pipeline.generator = FakeGenerator(error=ProviderError("Groq API error (401)", status=401))
        resp = await client.post("/api/v1/recipes/verified", json={"inventory": ["milk"]})
        assert resp.status_code == 502
        data = resp.json()
        assert data["error"] == "provider_error"
        assert data["retryable"] is False

    @pytest.mark.asyncio
    async def test_unparseable_output_is_502(self, client, services):
        services.pipeline.generator = FakeGenerator("no json here")
        resp = await client.post("/api/v1/recipes/verified", json={"inventory": ["milk"]})
        assert resp.status_code == 502
        assert resp.json()["error"] == "unparseable_model_output"


class TestVerifiedRecipeWithPrices:
    @pytest.mark.asyncio
    async def test_prices_keyed_by_missing_ingredient(self, client):
        resp = await client.post(
            "/api/v1/recipes/verified-with-prices",
            json={"inventory": ["tomato", "onion"]},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert list(data["product_prices"]) == ["garlic"]
        assert data["product_prices"]["garlic"][0]["name"] == "Garlic 250g"
        assert data["product_prices"]["garlic"][0]["price"] == 24.9
        assert data["metadata"]["price_lookup_elapsed_ms"] is not None


class TestVerifiedProducts:
    @pytest.mark.asyncio
    async def test_returns_recommendations(self, client, services):
        services.pipeline.generator = FakeGenerator(PRODUCT_DRAFT)
        resp = await client.post("/api/v1/products/verified", json={"shopping_list": ["milk", "eggs"]})
        assert resp.status_code == 200
        data = resp.json()
        names = [r["product_name"] for r in data["result"]["recommendations"]]
        assert names == ["Whole milk 1L", "Free-range eggs (10)"]

    @pytest.mark.asyncio
    async def test_empty_shopping_list_is_400(self, client):
        resp = await client.post("/api/v1/products/verified", json={"shopping_list": []})
        assert resp.status_code == 400
        assert "shopping list" in resp.json()["message"]


class TestRateLimit:
    @pytest.fixture(autouse=True)
    def _two_per_minute(self, monkeypatch):
        monkeypatch.setattr(rate_limit.settings, "verified_rate_limit", "2/minute")

    @pytest.mark.asyncio
    async def test_budget_shared_across_verified_routes(self, client, services):
        assert (await client.post("/api/v1/recipes/verified", json={"inventory": ["tomato"]})).status_code == 200
        resp = await client.post("/api/v1/recipes/verified-with-prices", json={"inventory": ["onion"]})
        assert resp.status_code == 200

        resp = await client.post(
            "/api/v1/products/verified",
            json={"shopping_list": ["milk"]},
            headers={"X-Request-ID": "limited-1"},
        )

        assert resp.status_code == 429
        body = resp.json()
        assert body["error"] == "rate_limit_exceeded"
        assert body["retryable"] is True
        assert "2 per 1 minute" in body["message"]
        assert resp.headers["Retry-After"] == "60"
        assert resp.headers["X-Request-ID"] == "limited-1"
        assert len(services.pipeline.generator.calls) == 2

    @pytest.mark.asyncio
    async def test_clients_keyed_by_forwarded_address(self, client):
        first = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
        for item in ("tomato", "onion"):
            resp = await client.post("/api/v1/recipes/verified", json={"inventory": [item]}, headers=first)
            assert resp.status_code == 200
        resp = await client.post("/api/v1/recipes/verified", json={"inventory": ["leek"]}, headers=first)
        assert resp.status_code == 429

        other = {"X-Forwarded-For": "198.51.100.2"}
        resp = await client.post("/api/v1/recipes/verified", json={"inventory": ["leek"]}, headers=other)
        assert resp.status_code == 200

    def test_client_key_falls_back_to_peer_address(self) -> None:
        request = Request({"type": "http", "headers": [], "client": ("192.0.2.9", 5000)})
        assert rate_limit.client_key(request) == "192.0.2.9"


class TestDebugEndpoints:
    @pytest.mark.asyncio
    async def test_unknown_request_is_404(self, client):
        resp = await client.get("/api/v1/debug/pipeline/nope")
        assert resp.status_code == 404
        assert resp.json()["error"] == "execution_log_not_found"

    @pytest.mark.asyncio
    async def test_entry_after_run(self, client):
        await client.post("/api/v1/recipes/verified", json={"inventory": ["tomato"], "request_id": "dbg-1"})
        resp = await client.get("/api/v1/debug/pipeline/dbg-1")
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["pipeline_type"] == "recipe"
        assert data["generator_response"]
        assert data["finalized"] is True

    @pytest.mark.asyncio
    async def test_list_is_newest_first(self, client):
        for rid in ("first", "second"):
            await client.post("/api/v1/recipes/verified", json={"inventory": ["tomato"], "request_id": rid})
        resp = await client.get("/api/v1/debug/pipeline")
        data = resp.json()
        assert data["count"] == 2
        assert [log["request_id"] for log in data["logs"]] == ["second", "first"]

    @pytest.mark.asyncio
    async def test_stats(self, client):
        await client.post("/api/v1/recipes/verified", json={"inventory": ["tomato"]})
        await client.post("/api/v1/recipes/verified", json={"inventory": []})
        resp = await client.get("/api/v1/debug/stats")
        data = resp.json()
        assert data["total_executions"] == 2
        assert data["failed_executions"] == 1
        assert data["recent_errors"][0]["error_stage"] == "started"

    @pytest.mark.asyncio
    async def test_stats_empty(self, client):
        resp = await client.get("/api/v1/debug/stats")
        assert resp.json() == {"total_executions": 0}


class TestStream:
    def test_format_sse(self) -> None:
        event = PipelineEvent(request_id="r1", stage=PipelineStage.PARSING, message="Parsing model output")
        frame = format_sse(event)
        assert frame.startswith("event: parsing\ndata: ")
        assert frame.endswith("\n\n")
        assert json.loads(frame.split("data: ", 1)[1])["message"] == "Parsing model output"

    @pytest.mark.asyncio
    async def test_streams_buffered_events_until_terminal(self, client, services):
        services.publisher.publish(PipelineEvent(request_id="sse-1", stage=PipelineStage.STARTED, message="go"))

        pending = asyncio.create_task(client.get("/api/v1/stream/sse-1"))
        while not services.publisher.has_subscribers("sse-1"):
            await asyncio.sleep(0.01)
        services.publisher.publish(
            PipelineEvent(request_id="sse-1", stage=PipelineStage.COMPLETED, message="done", is_complete=True)
        )
        resp = await asyncio.wait_for(pending, timeout=2.0)

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        frames = [f for f in resp.text.split("\n\n") if f]
        assert [f.splitlines()[0] for f in frames] == ["event: started", "event: completed"]
