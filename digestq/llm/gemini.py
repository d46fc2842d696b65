"""
Gemini model access for the summarizer.

One shared model instance per process, created lazily. Two backends:
  1. Vertex AI SDK (production): GOOGLE_CLOUD_PROJECT + service account
  2. google-generativeai (local development): GOOGLE_API_KEY

The digest-writer system instruction is fixed per model instance, so it is
baked into the cached model rather than passed per call.
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Any

from digestq.infrastructure.settings import GEMINI_LOCATION, GEMINI_MODEL, GOOGLE_CLOUD_PROJECT
from digestq.observability.logging import get_logger

logger = get_logger(__name__)

SYSTEM_INSTRUCTION = (
    "You summarize notification activity for a single reader. "
    "You only restate facts you are given and always answer with one JSON object."
)

# Backend chosen by the last successful get_summary_model() call: "vertexai" or "genai"
_backend: str | None = None


class GeminiInitializationError(RuntimeError):
    """Raised when no Gemini backend can be initialized."""


def _init_vertex(model_name: str) -> Any:
    import vertexai
    from vertexai.generative_models import GenerativeModel

    project = os.getenv("GOOGLE_CLOUD_PROJECT") or GOOGLE_CLOUD_PROJECT
    location = os.getenv("GEMINI_LOCATION") or GEMINI_LOCATION or "us-central1"
    if not project:
        raise GeminiInitializationError("GOOGLE_CLOUD_PROJECT not set")

    vertexai.init(project=project, location=location)
    logger.info("Summary model on Vertex AI: project=%s location=%s model=%s", project, location, model_name)
    return GenerativeModel(model_name, system_instruction=SYSTEM_INSTRUCTION)


def _init_genai(model_name: str) -> Any:
    import google.generativeai as genai

    api_key = os.getenv("GOOGLE_API_KEY")
    if not api_key:
        raise GeminiInitializationError(
            "Neither vertexai nor GOOGLE_API_KEY available. "
            "Install google-cloud-aiplatform or set GOOGLE_API_KEY."
        )
    genai.configure(api_key=api_key)
    logger.info("Summary model on google-generativeai: model=%s", model_name)
    return genai.GenerativeModel(model_name, system_instruction=SYSTEM_INSTRUCTION)


@lru_cache(maxsize=1)
def get_summary_model(model_name: str = GEMINI_MODEL) -> Any:
    """
    Shared summary model (lru_cache gives a thread-safe singleton).

    Raises:
        GeminiInitializationError: If neither backend can be initialized
    """
    global _backend
    try:
        model = _init_vertex(model_name)
        _backend = "vertexai"
        return model
    except ImportError:
        logger.info("Vertex AI SDK not installed, trying google-generativeai")

    try:
        model = _init_genai(model_name)
        _backend = "genai"
        return model
    except ImportError as e:
        raise GeminiInitializationError(
            "No Gemini SDK available. Install google-cloud-aiplatform or google-generativeai."
        ) from e


def current_backend() -> str | None:
    return _backend
