"""Optional LangSmith tracing for model calls.

Everything here is a no-op unless LANGSMITH_API_KEY is set. With the key set
but langsmith missing (it is the ``tracing`` extra), or failing to wrap, the
caller gets its object back unchanged and a log line explains why.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from typing import Any

import structlog

_log = structlog.get_logger("tracing")

_INSTALL_HINT = "install with: pip install 'dualmodel-verification[tracing]'"


def tracing_enabled() -> bool:
    return bool(os.environ.get("LANGSMITH_API_KEY", "").strip())


def _identity(fn: Any) -> Any:
    return fn


def _load(module: str, attr: str) -> Callable[..., Any] | None:
    try:
        mod = __import__(module, fromlist=[attr])
    except ImportError:
        _log.warning(
            "langsmith_not_installed",
            reason=f"LANGSMITH_API_KEY is set but langsmith is not installed; {_INSTALL_HINT}",
        )
        return None
    return getattr(mod, attr)


def _wrap_client(client: Any, wrapper_name: str) -> Any:
    if not tracing_enabled():
        return client
    wrap = _load("langsmith.wrappers", wrapper_name)
    if wrap is None:
        return client
    try:
        return wrap(client)
    except Exception as exc:
        _log.error(
            "langsmith_wrap_failed",
            wrapper=wrapper_name,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return client


def wrap_anthropic(client: Any) -> Any:
    """Trace an Anthropic client (sync or async)."""
    return _wrap_client(client, "wrap_anthropic")


def wrap_gemini(client: Any) -> Any:
    """Trace a google-genai client."""
    return _wrap_client(client, "wrap_gemini")


def traceable(**kwargs: Any) -> Callable[[Any], Any]:
    """Decorator factory mirroring ``langsmith.traceable``; identity when disabled."""
    if not tracing_enabled():
        return _identity
    decorator_factory = _load("langsmith", "traceable")
    if decorator_factory is None:
        return _identity
    try:
        return decorator_factory(**kwargs)  # type: ignore[no-any-return]
    except Exception as exc:
        _log.error(
            "langsmith_traceable_failed",
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return _identity
