"""Summarizer protocol: the external, non-deterministic text generator."""

from __future__ import annotations

from typing import Any, Protocol


class Summarizer(Protocol):
    """Black-box generator. Nothing about its output is trusted."""

    def generate(self, prompt: str, schema: dict[str, Any]) -> str:
        """Return the raw model response for `prompt`.

        Args:
            prompt: Complete request text, including the output instructions
            schema: JSON schema the response is expected to match

        Returns:
            Raw response text (may be malformed, oversized or off-schema)

        Raises:
            TransportError / TimeoutError / ConnectionError on transport failure
        """
        ...
