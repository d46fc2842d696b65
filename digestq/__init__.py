"""DigestQ - windowed event digests with generated summaries and multi-channel delivery"""

from __future__ import annotations

__version__ = "0.1.0"


# Lazy imports to avoid loading the Gemini SDK when only the store is needed
def __getattr__(name: str):
    if name == "DigestService":
        from digestq.service import DigestService

        return DigestService

    if name in ("IngestionGate", "EventInput"):
        from digestq.ingestion import gate

        return getattr(gate, name)

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)


__all__ = [
    "DigestService",
    "EventInput",
    "IngestionGate",
]
