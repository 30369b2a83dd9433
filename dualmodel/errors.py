"""Pipeline error taxonomy.

Every fatal pipeline failure is raised as a ``PipelineError`` subclass that
records the stage it happened in and how long the run had been going, so a
caller can tell a slow provider apart from a broken one. ``retryable``
mirrors what the HTTP layer reports in ``ErrorResponse``.
"""

from __future__ import annotations

from dualmodel.models.contracts import ItemRejection, PipelineStage


class PipelineError(Exception):
    """Base class for errors surfaced to pipeline callers."""

    error_code = "pipeline_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        stage: PipelineStage | None = None,
        elapsed_ms: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.elapsed_ms = elapsed_ms
        self.retryable = retryable

    def detail(self) -> str | None:
        parts = []
        if self.stage is not None:
            parts.append(f"stage={self.stage.value}")
        if self.elapsed_ms is not None:
            parts.append(f"elapsed_ms={self.elapsed_ms}")
        return ", ".join(parts) or None


class InputValidationError(PipelineError):
    """Rejected input: raised before any external call is made."""

    error_code = "validation_error"
    status_code = 400

    def __init__(self, message: str, rejections: list[ItemRejection] | None = None) -> None:
        super().__init__(message, stage=PipelineStage.STARTED, retryable=False)
        self.rejections = rejections or []

    def detail(self) -> str | None:
        if not self.rejections:
            return None
        return "; ".join(f"[{r.index}] {r.reason}: {r.value!r}" for r in self.rejections)


class DeadlineExceededError(PipelineError):
    """A stage (or the whole request) ran past its deadline."""

    error_code = "deadline_exceeded"
    status_code = 504

    def __init__(self, message: str, **kwargs) -> None:
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)


class ProviderError(PipelineError):
    """Transport failure, non-2xx status or malformed envelope from a provider."""

    error_code = "provider_error"
    status_code = 502

    def __init__(self, message: str, *, status: int | None = None, **kwargs) -> None:
        # 4xx other than 429 will not get better on retry
        kwargs.setdefault("retryable", status is None or status >= 500 or status == 429)
        super().__init__(message, **kwargs)
        self.status = status


class UnparseableOutputError(PipelineError):
    """Model output could not be parsed even after the repair pass."""

    error_code = "unparseable_model_output"
    status_code = 502

    def __init__(self, message: str = "Unparseable model output", **kwargs) -> None:
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)


class ConfigurationError(Exception):
    """Service wiring is impossible with the current settings."""
