"""Tests for the optional LangSmith tracing hooks."""

from __future__ import annotations

import types
from unittest.mock import MagicMock, patch

import pytest

from dualmodel.utils.tracing import traceable, tracing_enabled, wrap_anthropic, wrap_gemini


@pytest.fixture
def no_langsmith_key(monkeypatch):
    monkeypatch.delenv("LANGSMITH_API_KEY", raising=False)


@pytest.mark.usefixtures("no_langsmith_key")
class TestTracingDisabled:
    def test_clients_returned_unchanged(self) -> None:
        claude, gemini = MagicMock(), MagicMock()
        assert wrap_anthropic(claude) is claude
        assert wrap_gemini(gemini) is gemini

    def test_traceable_is_identity(self) -> None:
        async def call_model(prompt: str) -> str:
            return prompt

        assert traceable(name="call_model", run_type="llm")(call_model) is call_model

    def test_blank_key_counts_as_unset(self, monkeypatch) -> None:
        monkeypatch.setenv("LANGSMITH_API_KEY", "  ")
        assert tracing_enabled() is False


class TestTracingEnabled:
    @patch.dict("os.environ", {"LANGSMITH_API_KEY": "ls-key"})
    def test_client_wrapped(self) -> None:
        traced = MagicMock(name="traced-client")
        fake_wrappers = types.ModuleType("langsmith.wrappers")
        fake_wrappers.wrap_gemini = MagicMock(return_value=traced)  # type: ignore[attr-defined]

        with patch.dict("sys.modules", {"langsmith": types.ModuleType("langsmith"), "langsmith.wrappers": fake_wrappers}):
            client = MagicMock()
            assert wrap_gemini(client) is traced
            fake_wrappers.wrap_gemini.assert_called_once_with(client)

    @patch.dict("os.environ", {"LANGSMITH_API_KEY": "ls-key"})
    @patch.dict("sys.modules", {"langsmith": None, "langsmith.wrappers": None})
    def test_missing_package_falls_back(self) -> None:
        client = MagicMock()
        assert wrap_anthropic(client) is client

        def original() -> None:
            return None

        assert traceable(name="x")(original) is original

    @patch.dict("os.environ", {"LANGSMITH_API_KEY": "ls-key"})
    def test_wrapper_error_falls_back(self) -> None:
        fake_wrappers = types.ModuleType("langsmith.wrappers")
        fake_wrappers.wrap_anthropic = MagicMock(side_effect=TypeError("unsupported client"))  # type: ignore[attr-defined]

        with patch.dict("sys.modules", {"langsmith": types.ModuleType("langsmith"), "langsmith.wrappers": fake_wrappers}):
            client = MagicMock()
            assert wrap_anthropic(client) is client

    @patch.dict("os.environ", {"LANGSMITH_API_KEY": "ls-key"})
    def test_traceable_error_falls_back(self) -> None:
        fake_langsmith = types.ModuleType("langsmith")
        fake_langsmith.traceable = MagicMock(side_effect=ValueError("bad project"))  # type: ignore[attr-defined]

        with patch.dict("sys.modules", {"langsmith": fake_langsmith}):

            def original() -> None:
                return None

            assert traceable(name="x")(original) is original
