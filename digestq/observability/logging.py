"""Logger factory plus a unit-of-work adapter that tags lines with the window/summary."""

from __future__ import annotations

import logging
import os
from collections.abc import MutableMapping
from typing import Any, Final

_HANDLER_ATTACHED: bool = False
_FORMAT: Final[str] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _resolve_level() -> int:
    level_name = os.getenv("DIGESTQ_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_name, logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """Return a module logger; the first call attaches one stream handler to the root."""
    global _HANDLER_ATTACHED

    level = _resolve_level()

    if not _HANDLER_ATTACHED:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(level)
        _HANDLER_ATTACHED = True

    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger


class UnitOfWorkAdapter(logging.LoggerAdapter):
    """
    Prefix every message with the unit of work it belongs to.

    Units are one window, one summary or one channel delivery. Recipient ids
    must already be redacted by the caller (see digestq.utils.redaction.redact).

    Usage:
        log = UnitOfWorkAdapter(logger, {"recipient": redact(rid), "window": key})
        log.info("claimed")   # -> "[recipient=hash:... window=...] claimed"
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        tags = " ".join(f"{key}={value}" for key, value in sorted((self.extra or {}).items()))
        return f"[{tags}] {msg}", kwargs


def unit_logger(logger: logging.Logger, **tags: Any) -> UnitOfWorkAdapter:
    return UnitOfWorkAdapter(logger, tags)
