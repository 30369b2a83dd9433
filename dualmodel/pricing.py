"""Price lookup — parallel search for the ingredients a recipe is missing.

One search per item, each under its own deadline, all run concurrently and
joined with a barrier. A failed or slow item degrades to an empty list; the
result always has exactly one key per requested name.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from typing import Any, Protocol

import httpx
import structlog
from pydantic import ValidationError

from dualmodel.errors import ProviderError
from dualmodel.models.contracts import PriceProduct

log = structlog.get_logger("dualmodel.pricing")

DEFAULT_TOP_N = 3
DEFAULT_PER_ITEM_TIMEOUT = 5.0

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


class PriceSearchClient(Protocol):
    """Search a price-comparison source. Results are ranked best-first."""

    async def search(self, name: str, *, page: int = 1, sort: str = "") -> list[PriceProduct]: ...


def _snake_keys(record: dict[str, Any]) -> dict[str, Any]:
    return {_CAMEL_RE.sub("_", key).lower(): value for key, value in record.items()}


class HttpPriceSearchClient:
    """JSON search service client.

    ``GET {base_url}?q=<name>&page=<n>&sort=<s>`` returning
    ``{"products": [...]}`` with snake_case or camelCase product fields.
    """

    def __init__(self, base_url: str, *, http_client: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url
        self._client = http_client or httpx.AsyncClient()

    async def search(self, name: str, *, page: int = 1, sort: str = "") -> list[PriceProduct]:
        params: dict[str, Any] = {"q": name, "page": page}
        if sort:
            params["sort"] = sort
        try:
            resp = await self._client.get(self.base_url, params=params)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Price search transport error: {exc}") from exc

        if resp.status_code != 200:
            raise ProviderError(
                f"Price search returned HTTP {resp.status_code}",
                status=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError("Price search returned non-JSON body") from exc

        raw_products = data.get("products", []) if isinstance(data, dict) else []
        products: list[PriceProduct] = []
        for raw in raw_products:
            if not isinstance(raw, dict):
                continue
            try:
                products.append(PriceProduct.model_validate(_snake_keys(raw)))
            except ValidationError as exc:
                log.debug("price_search_product_skipped", query=name[:80], error=str(exc)[:200])
        return products

    async def aclose(self) -> None:
        await self._client.aclose()


ItemCallback = Callable[[str, list[PriceProduct]], None]


async def _lookup_one(
    client: PriceSearchClient,
    name: str,
    per_item_timeout: float,
    top_n: int,
    on_item: ItemCallback | None,
) -> list[PriceProduct]:
    try:
        products = (await asyncio.wait_for(client.search(name), timeout=per_item_timeout))[:top_n]
    except TimeoutError:
        log.warning("price_lookup_item_timeout", item=name, timeout_s=per_item_timeout)
        products = []
    except Exception as exc:
        log.warning(
            "price_lookup_item_failed",
            item=name,
            error=str(exc)[:200],
            error_type=type(exc).__name__,
        )
        products = []
    if on_item is not None:
        on_item(name, products)
    return products


async def lookup_many(
    client: PriceSearchClient,
    names: list[str],
    per_item_timeout: float = DEFAULT_PER_ITEM_TIMEOUT,
    top_n: int = DEFAULT_TOP_N,
    *,
    on_item: ItemCallback | None = None,
) -> dict[str, list[PriceProduct]]:
    """Search every name concurrently; one key per distinct name, never missing.

    ``on_item`` is called as each lookup settles (in completion order), with
    the item name and its top-N products (empty on timeout or failure).
    """
    unique = list(dict.fromkeys(names))
    if not unique:
        return {}

    tasks = [_lookup_one(client, name, per_item_timeout, top_n, on_item) for name in unique]
    results = await asyncio.gather(*tasks, return_exceptions=True)

    prices: dict[str, list[PriceProduct]] = {}
    for name, result in zip(unique, results, strict=True):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            log.warning("price_lookup_item_failed", item=name, error=str(result)[:200])
            prices[name] = []
        else:
            prices[name] = result

    found = sum(1 for products in prices.values() if products)
    log.info("price_lookup_complete", requested=len(unique), found=found)
    return prices
