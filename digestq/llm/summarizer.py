"""
Summarizer adapters.

- GeminiSummarizer: calls the model within timeout_seconds; converts Vertex AI
  transport exceptions into builtin TimeoutError / ConnectionError / OSError.
- RetryingSummarizer: composition wrapper adding tenacity retries for those
  transport errors. Independent of the engine's one-shot schema repair: a
  retried call is the same request, a repair is a new one.
"""

from __future__ import annotations

import concurrent.futures
from typing import Any

from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from digestq.config import LLM_MAX_RETRIES, LLM_TIMEOUT_SECONDS
from digestq.contracts import Summarizer
from digestq.infrastructure.errors import TransportError
from digestq.infrastructure.settings import GEMINI_MAX_TOKENS, GEMINI_TEMPERATURE
from digestq.llm.gemini import current_backend, get_summary_model
from digestq.observability.logging import get_logger
from digestq.observability.telemetry import counter

logger = get_logger(__name__)

RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (TimeoutError, ConnectionError, OSError)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, TransportError):
        return exc.retryable
    return isinstance(exc, RETRYABLE_ERRORS)


class GeminiSummarizer:
    """Summarizer backed by Gemini (Vertex AI, or google-generativeai locally)."""

    def __init__(
        self,
        temperature: float = GEMINI_TEMPERATURE,
        max_output_tokens: int = GEMINI_MAX_TOKENS,
        timeout_seconds: float = LLM_TIMEOUT_SECONDS,
    ):
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.timeout_seconds = timeout_seconds

    def generate(self, prompt: str, schema: dict[str, Any]) -> str:
        """
        Raises:
            TimeoutError: Deadline exceeded (retryable)
            ConnectionError: Service unavailable / internal error (retryable)
            OSError: Rate limited (retryable)
            TransportError: Any other model failure (not retried)
        """
        from google.api_core.exceptions import (
            DeadlineExceeded,
            InternalServerError,
            ResourceExhausted,
            ServiceUnavailable,
        )

        model = get_summary_model()
        # The schema is spelled out in the prompt; only the MIME type is set here
        # because the SDKs disagree on how response_schema must be typed.
        generation_config = {
            "temperature": self.temperature,
            "max_output_tokens": self.max_output_tokens,
            "response_mime_type": "application/json",
        }

        try:
            response = self._call_model(model, prompt, generation_config)
            return response.text
        except (DeadlineExceeded, concurrent.futures.TimeoutError) as e:
            counter("summarizer.timeout")
            logger.warning("Summarizer timed out after %ss", self.timeout_seconds)
            raise TimeoutError(f"summarizer timed out after {self.timeout_seconds}s") from e
        except ServiceUnavailable as e:
            counter("summarizer.service_unavailable")
            raise ConnectionError(f"summarizer unavailable: {e}") from e
        except ResourceExhausted as e:
            counter("summarizer.rate_limited")
            raise OSError(f"summarizer rate limited: {e}") from e
        except InternalServerError as e:
            counter("summarizer.internal_error")
            raise ConnectionError(f"summarizer internal error: {e}") from e
        except ValueError as e:
            # response.text raises ValueError when the candidate was blocked or empty;
            # the same prompt would be blocked again, so this is not retryable
            counter("summarizer.empty_response")
            raise TransportError(f"summarizer returned no text: {e}", status_code=400) from e

    def _call_model(self, model: Any, prompt: str, generation_config: dict[str, Any]) -> Any:
        if current_backend() == "genai":
            return model.generate_content(
                prompt,
                generation_config=generation_config,
                request_options={"timeout": self.timeout_seconds},
            )

        # Vertex AI takes no per-request timeout, so the wait is bounded here
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(model.generate_content, prompt, generation_config=generation_config)
            return future.result(timeout=self.timeout_seconds)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)


class RetryingSummarizer:
    """
    Wrap any Summarizer with bounded retries on transport errors.

    Example:
        summarizer = RetryingSummarizer(GeminiSummarizer())
        RetryingSummarizer(fake, wait=wait_none())   # tests: no sleeping
    """

    def __init__(
        self,
        inner: Summarizer,
        max_attempts: int = LLM_MAX_RETRIES,
        wait: wait_base | None = None,
    ):
        self.inner = inner
        self.max_attempts = max_attempts
        self.wait = wait if wait is not None else wait_exponential(multiplier=1, min=1, max=10)

    def generate(self, prompt: str, schema: dict[str, Any]) -> str:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.wait,
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._before_sleep,
            reraise=True,
        )
        return retrying(self.inner.generate, prompt, schema)

    @staticmethod
    def _before_sleep(retry_state: Any) -> None:
        counter("summarizer.retry")
        logger.warning(
            "Summarizer attempt %d failed (%s), retrying",
            retry_state.attempt_number,
            retry_state.outcome.exception() if retry_state.outcome else "unknown",
        )
