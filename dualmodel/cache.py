"""Verification cache — content-addressed store for finished pipeline results.

Keys are derived from the normalized request only (order- and
case-independent), scoped by artifact kind. Values are stored as plain JSON
data and re-validated on every read, so callers never share an instance with
the cache.

Caching is an optimization: any backend failure is logged and treated as a
miss (on read) or a no-op (on write).
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, ValidationError

from dualmodel.models.contracts import (
    ArtifactKind,
    NormalizedRequest,
    ProductRecommendationResult,
    RecipeResult,
)

logger = structlog.get_logger()

DEFAULT_TTL_SECONDS = 3600
NO_TYPE_HINT = "any"


@dataclass
class CacheEntry:
    value: Any
    ttl_seconds: float
    stored_at: float = field(default_factory=time.time)

    def is_expired(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now - self.stored_at > self.ttl_seconds


class CacheBackend(Protocol):
    """Generic get / set-with-TTL over string keys and JSON-serializable values."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None: ...


class MemoryCacheBackend:
    """In-process reference backend. Expired entries are dropped lazily on read."""

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            self._entries.pop(key, None)
            return None
        return entry.value

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._entries[key] = CacheEntry(value=value, ttl_seconds=ttl_seconds)

    def __len__(self) -> int:
        return len(self._entries)


class FileCacheBackend:
    """JSON-file backend: one file per hashed key under ``cache_dir``.

    Useful in development to survive restarts. Corrupt or unreadable files
    surface as exceptions, which ``VerificationCache`` turns into misses.
    """

    def __init__(self, cache_dir: str | Path) -> None:
        self._dir = Path(cache_dir)

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode()).hexdigest()[:32]
        return self._dir / f"{digest}.json"

    def _read(self, key: str) -> Any | None:
        path = self._path(key)
        if not path.exists():
            return None
        record = json.loads(path.read_text())
        entry = CacheEntry(
            value=record["value"],
            ttl_seconds=record["ttl_seconds"],
            stored_at=record["stored_at"],
        )
        if entry.is_expired():
            path.unlink(missing_ok=True)
            return None
        return entry.value

    def _write(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        entry = CacheEntry(value=value, ttl_seconds=ttl_seconds)
        record = {"key": key, "stored_at": entry.stored_at, "ttl_seconds": ttl_seconds, "value": value}
        self._path(key).write_text(json.dumps(record))

    async def get(self, key: str) -> Any | None:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        await asyncio.to_thread(self._write, key, value, ttl_seconds)


class CachedVerification(BaseModel):
    """What a cache hit restores: the sanitized result plus its validation outcome."""

    result: RecipeResult | ProductRecommendationResult
    was_validated: bool = False
    corrections: list[str] = []
    generator_model: str = ""
    validator_model: str = ""


def cache_key(request: NormalizedRequest) -> str:
    """Deterministic key: kind prefix + SHA-256 of sorted, folded items and hint."""
    hint = (request.type_hint or "").strip().lower() or NO_TYPE_HINT
    # JSON keeps the encoding unambiguous (items may contain commas)
    material = json.dumps([hint, request.folded_items], ensure_ascii=False)
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()
    return f"{request.kind.value}:{digest}"


class VerificationCache:
    def __init__(
        self,
        backend: CacheBackend | None,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
    ) -> None:
        self._backend = backend
        self.ttl_seconds = ttl_seconds

    @property
    def enabled(self) -> bool:
        return self._backend is not None

    key = staticmethod(cache_key)

    async def get(self, key: str, kind: ArtifactKind) -> CachedVerification | None:
        if self._backend is None:
            return None
        try:
            raw = await self._backend.get(key)
        except Exception as exc:
            logger.warning(
                "verification_cache_read_failed",
                key=key,
                error=str(exc)[:200],
                error_type=type(exc).__name__,
            )
            return None

        if raw is None:
            logger.debug("verification_cache_miss", key=key)
            return None

        try:
            cached = CachedVerification.model_validate(raw)
        except ValidationError as exc:
            logger.warning("verification_cache_entry_invalid", key=key, error=str(exc)[:200])
            return None

        if cached.result.kind != kind.value:
            logger.warning("verification_cache_kind_mismatch", key=key, kind=kind.value)
            return None

        logger.info("verification_cache_hit", key=key)
        return cached

    async def put(self, key: str, value: CachedVerification, ttl_seconds: float | None = None) -> None:
        if self._backend is None:
            return
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        try:
            await self._backend.set(key, value.model_dump(mode="json"), ttl)
        except Exception as exc:
            logger.warning(
                "verification_cache_write_failed",
                key=key,
                error=str(exc)[:200],
                error_type=type(exc).__name__,
            )
            return
        logger.info("verification_cache_saved", key=key, ttl_seconds=ttl)
