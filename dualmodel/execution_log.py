"""Execution log — bounded audit trail of recent pipeline runs.

Each run creates one ``ExecutionLogEntry`` at start and finalizes it exactly
once (success or failure). Finalized entries go into an ``ExecutionLogStore``
that keeps the most recent N entries and evicts the oldest first.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel, Field

from dualmodel.models.contracts import PipelineStage

logger = structlog.get_logger()

DEFAULT_CAPACITY = 1000


class ExecutionLogEntry(BaseModel):
    request_id: str
    pipeline_type: str  # "recipe", "product-recommendations", "recipe-with-prices"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    items: list[str] = []
    type_hint: str | None = None

    generator_prompt: str = ""
    generator_response: str = ""
    generator_elapsed_ms: int = 0
    validator_prompt: str | None = None
    validator_response: str | None = None
    validator_elapsed_ms: int | None = None
    price_lookup_elapsed_ms: int | None = None

    corrections: list[str] = []
    was_validated: bool = False
    cache_hit: bool = False
    missing_ingredients_count: int | None = None

    success: bool = False
    error_message: str | None = None
    error_stage: PipelineStage | None = None
    total_elapsed_ms: int = 0
    finalized: bool = False

    def finalize(
        self,
        *,
        success: bool,
        total_elapsed_ms: int,
        error_message: str | None = None,
        error_stage: PipelineStage | None = None,
    ) -> None:
        if self.finalized:
            raise RuntimeError(f"Execution log {self.request_id} already finalized")
        self.success = success
        self.total_elapsed_ms = total_elapsed_ms
        if error_message is not None:
            self.error_message = error_message
        self.error_stage = error_stage
        self.finalized = True


class ExecutionLogStore:
    """Thread-safe, capacity-bounded store keyed by request id."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._entries: OrderedDict[str, ExecutionLogEntry] = OrderedDict()
        self._lock = threading.Lock()

    def record(self, entry: ExecutionLogEntry) -> None:
        evicted: list[str] = []
        with self._lock:
            self._entries[entry.request_id] = entry
            self._entries.move_to_end(entry.request_id)
            while len(self._entries) > self.capacity:
                oldest, _ = self._entries.popitem(last=False)
                evicted.append(oldest)

        # Structured copy for external log aggregation
        logger.info(
            "pipeline_execution_logged",
            **entry.model_dump(
                mode="json",
                exclude={"generator_prompt", "validator_prompt", "generator_response", "validator_response"},
            ),
        )
        if evicted:
            logger.debug("pipeline_execution_log_evicted", evicted=evicted)

    def get(self, request_id: str) -> ExecutionLogEntry | None:
        with self._lock:
            return self._entries.get(request_id)

    def list(self) -> list[ExecutionLogEntry]:
        """All retained entries, oldest first."""
        with self._lock:
            return list(self._entries.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict[str, Any]:
        """Aggregate success, validation, cache and timing figures."""
        entries = self.list()
        total = len(entries)
        if total == 0:
            return {"total_executions": 0}

        def _pct(count: int, of: int) -> float:
            return round(count / of * 100, 2) if of else 0.0

        def _avg(values: list[int]) -> float:
            return round(sum(values) / len(values), 2) if values else 0.0

        succeeded = sum(1 for e in entries if e.success)
        validated = sum(1 for e in entries if e.was_validated)
        cache_hits = sum(1 for e in entries if e.cache_hit)
        corrections = sum(len(e.corrections) for e in entries)

        by_type: dict[str, dict[str, Any]] = {}
        for e in entries:
            bucket = by_type.setdefault(e.pipeline_type, {"count": 0, "succeeded": 0})
            bucket["count"] += 1
            bucket["succeeded"] += int(e.success)
        for bucket in by_type.values():
            bucket["success_rate"] = _pct(bucket.pop("succeeded"), bucket["count"])

        recent_errors = [
            {
                "request_id": e.request_id,
                "timestamp": e.timestamp.isoformat(),
                "pipeline_type": e.pipeline_type,
                "error_stage": e.error_stage.value if e.error_stage else None,
                "error_message": e.error_message,
            }
            for e in reversed(entries)
            if not e.success
        ][:5]

        return {
            "total_executions": total,
            "successful_executions": succeeded,
            "failed_executions": total - succeeded,
            "success_rate": _pct(succeeded, total),
            "by_pipeline_type": by_type,
            "average_timings_ms": {
                "generator": _avg([e.generator_elapsed_ms for e in entries if e.generator_elapsed_ms > 0]),
                "validator": _avg([e.validator_elapsed_ms for e in entries if e.validator_elapsed_ms]),
                "total": _avg([e.total_elapsed_ms for e in entries if e.total_elapsed_ms > 0]),
            },
            "validation": {
                "total_validated": validated,
                "validation_rate": _pct(validated, total),
                "total_corrections": corrections,
                "average_corrections_per_validation": round(corrections / validated, 2) if validated else 0.0,
            },
            "cache": {"total_hits": cache_hits, "hit_rate": _pct(cache_hits, total)},
            "recent_errors": recent_errors,
        }
