"""Tests for the summarizer adapters (fake models, no network calls)"""

from __future__ import annotations

import threading
from types import SimpleNamespace

import pytest
from conftest import VALID_SUMMARY, ScriptedSummarizer
from tenacity import wait_none

from digestq.infrastructure.errors import TransportError
from digestq.llm.summarizer import GeminiSummarizer, RetryingSummarizer
from digestq.observability.telemetry import get_counters, reset_counters


@pytest.fixture(autouse=True)
def _clean_counters():
    reset_counters()


def test_transport_errors_are_retried():
    inner = ScriptedSummarizer(TimeoutError("deadline"), ConnectionError("503"), VALID_SUMMARY)
    summarizer = RetryingSummarizer(inner, max_attempts=3, wait=wait_none())

    assert summarizer.generate("prompt", {}) == VALID_SUMMARY
    assert len(inner.prompts) == 3
    assert get_counters("summarizer.")["summarizer.retry"] == 2


def test_gives_up_after_max_attempts():
    inner = ScriptedSummarizer(OSError("429"), OSError("429"), VALID_SUMMARY)
    summarizer = RetryingSummarizer(inner, max_attempts=2, wait=wait_none())

    with pytest.raises(OSError):
        summarizer.generate("prompt", {})
    assert len(inner.prompts) == 2


def test_non_retryable_transport_error_propagates_at_once():
    inner = ScriptedSummarizer(TransportError("blocked", status_code=400), VALID_SUMMARY)
    summarizer = RetryingSummarizer(inner, max_attempts=3, wait=wait_none())

    with pytest.raises(TransportError):
        summarizer.generate("prompt", {})
    assert len(inner.prompts) == 1


def test_programming_errors_are_not_retried():
    inner = ScriptedSummarizer(KeyError("schema"), VALID_SUMMARY)
    summarizer = RetryingSummarizer(inner, max_attempts=3, wait=wait_none())

    with pytest.raises(KeyError):
        summarizer.generate("prompt", {})
    assert len(inner.prompts) == 1


def test_same_request_is_repeated():
    inner = ScriptedSummarizer(TimeoutError("deadline"), VALID_SUMMARY)
    RetryingSummarizer(inner, max_attempts=3, wait=wait_none()).generate("the prompt", {"type": "object"})

    assert inner.prompts == ["the prompt", "the prompt"]


class FakeModel:
    def __init__(self, release=None):
        self.release = release
        self.calls = []

    def generate_content(self, prompt, **kwargs):
        self.calls.append(kwargs)
        if self.release is not None:
            self.release.wait(5)
        return SimpleNamespace(text=VALID_SUMMARY)


@pytest.fixture
def use_model(monkeypatch):
    def install(model, backend):
        monkeypatch.setattr("digestq.llm.summarizer.get_summary_model", lambda: model)
        monkeypatch.setattr("digestq.llm.summarizer.current_backend", lambda: backend)

    return install


def test_genai_backend_gets_the_request_timeout(use_model):
    model = FakeModel()
    use_model(model, "genai")

    assert GeminiSummarizer(timeout_seconds=7).generate("prompt", {}) == VALID_SUMMARY
    assert model.calls[0]["request_options"] == {"timeout": 7}


def test_vertex_call_is_bounded_by_the_timeout(use_model):
    release = threading.Event()
    model = FakeModel(release)
    use_model(model, "vertexai")

    try:
        with pytest.raises(TimeoutError, match="timed out after 0.05s"):
            GeminiSummarizer(timeout_seconds=0.05).generate("prompt", {})
    finally:
        release.set()
    assert get_counters("summarizer.timeout") == {"summarizer.timeout": 1}
    assert "request_options" not in model.calls[0]


def test_vertex_call_within_the_timeout_returns_text(use_model):
    use_model(FakeModel(), "vertexai")

    assert GeminiSummarizer(timeout_seconds=5).generate("prompt", {}) == VALID_SUMMARY
